# SPDX-License-Identifier: LGPL-2.1-or-later
#
# This file is part of efikit.
#
# efikit is free software; you can redistribute it and/or modify it
# under the terms of the GNU Lesser General Public License as published by
# the Free Software Foundation; either version 2.1 of the License, or
# (at your option) any later version.
#
# efikit is distributed in the hope that it will be useful, but
# WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the GNU
# General Public License for more details.
#
# You should have received a copy of the GNU Lesser General Public License
# along with efikit; If not, see <https://www.gnu.org/licenses/>.

import contextlib
import fnmatch
import logging
import os
import re
import shlex
import shutil
import subprocess
import sys
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Optional, Union

from efikit.errors import ToolchainError, ToolNotFoundError

log = logging.getLogger(__name__)

EFI_ARCH_MAP = {
    # host_arch glob : [efi_arch, 32_bit_efi_arch if mixed mode is supported]
    'x86_64':        ['x64', 'ia32'],
    'i[3456]86':     ['ia32'],
    'aarch64':       ['aa64'],
    'armv[45678]*l': ['arm'],
    'loongarch64':   ['loongarch64'],
    'riscv64':       ['riscv64'],
}  # fmt: skip


def guess_efi_arch() -> str:
    arch = os.uname().machine

    for glob, mapping in EFI_ARCH_MAP.items():
        if fnmatch.fnmatch(arch, glob):
            efi_arch, *fallback = mapping
            break
    else:
        raise ValueError(f'Unsupported architecture {arch}')

    # A 64-bit kernel may run on 32-bit firmware, the stub has to match the firmware.
    if fallback:
        fw_platform_size = Path('/sys/firmware/efi/fw_platform_size')
        try:
            size = fw_platform_size.read_text().strip()
        except FileNotFoundError:
            pass
        else:
            if int(size) == 32:
                efi_arch = fallback[0]

    return efi_arch


def shell_join(cmd: Sequence[Union[str, Path]]) -> str:
    # TODO: drop in favour of shlex.join once shlex.join supports Path.
    return ' '.join(shlex.quote(str(x)) for x in cmd)


def round_up(x: int, blocksize: int = 4096) -> int:
    return (x + blocksize - 1) // blocksize * blocksize


@contextlib.contextmanager
def temporary_umask(mask: int) -> Iterator[None]:
    # Drop <mask> bits from umask
    old = os.umask(0)
    os.umask(old | mask)
    try:
        yield
    finally:
        os.umask(old)


def read_env_file(text: str) -> dict[str, str]:
    result = {}

    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith('#'):
            continue
        if m := re.match(r'([A-Za-z_][A-Za-z_0-9]*)=(.*)', line):
            name, val = m.groups()
            if val and val[0] in '"\'':
                val = next(shlex.shlex(val, posix=True))

            result[name] = val
        else:
            log.warning('bad line %r', line)

    return result


def find_tool(
    name: str,
    fallback: Optional[str] = None,
    tools: Sequence[Path] = (),
    msg: str = 'Tool {name} not installed!',
) -> Union[str, Path]:
    for d in tools:
        tool = d / name
        if tool.exists():
            return tool

    if shutil.which(name) is not None:
        return name

    if fallback is None:
        raise ToolNotFoundError(msg.format(name=name))

    return fallback


def run(
    cmd: Sequence[Union[str, Path]],
    capture: bool = False,
    error: type[ToolchainError] = ToolchainError,
) -> str:
    """Run an external tool, echoing the command line first.

    Failures are raised as ``error`` with the tool's stderr attached. With
    ``capture`` the tool's stdout is returned, otherwise it goes to our stdout.
    """
    print('+', shell_join(cmd), file=sys.stderr)
    try:
        proc = subprocess.run(
            [os.fspath(c) for c in cmd],
            check=True,
            text=True,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise ToolNotFoundError(f'Tool {cmd[0]} not installed!') from e
    except subprocess.CalledProcessError as e:
        raise error(f'{shell_join(cmd)} failed with exit status {e.returncode}', e.stderr) from e

    if proc.stderr:
        sys.stderr.write(proc.stderr)

    return proc.stdout if capture else ''
