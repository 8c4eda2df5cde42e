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

# pylint: disable=missing-docstring

"""Thin wrappers around sbsigntools and efitools."""

from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

from efikit.errors import SigningFailedError
from efikit.util import find_tool, run

StrPath = Union[str, Path]


class SignTool:
    def sign(self, input_f: StrPath, output_f: StrPath, key: StrPath, cert: StrPath) -> None:
        raise NotImplementedError()

    @staticmethod
    def from_string(name: str, tools: Sequence[Path] = ()) -> 'SignTool':
        if name == 'sbsign':
            return SbSign(tools)
        else:
            raise ValueError(f'Invalid sign tool: {name!r}')


class SbSign(SignTool):
    """Authenticode signing: a detached signature first, then attached to the image."""

    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def sign(self, input_f: StrPath, output_f: StrPath, key: StrPath, cert: StrPath) -> None:
        sbsign = find_tool('sbsign', tools=self.tools, msg='sbsign, required for signing, is not installed')
        sbattach = find_tool('sbattach', tools=self.tools, msg='sbattach, required for signing, is not installed')

        sig = Path(f'{output_f}.sig')
        run(
            [
                sbsign,
                '--key', key,
                '--cert', cert,
                '--detached',
                '--output', sig,
                input_f,
            ],
            error=SigningFailedError,
        )  # fmt: skip

        if Path(input_f) != Path(output_f):
            Path(output_f).write_bytes(Path(input_f).read_bytes())

        run([sbattach, '--attach', sig, output_f], error=SigningFailedError)


class EfiTools:
    """efitools: signature lists, signed variable updates, and raw variable I/O."""

    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def _tool(self, name: str) -> Union[str, Path]:
        return find_tool(name, tools=self.tools, msg=f'{name}, part of efitools, is not installed')

    def cert_to_esl(self, cert: StrPath, esl: StrPath, guid: str) -> None:
        run([self._tool('cert-to-efi-sig-list'), '-g', guid, cert, esl])

    def sign_esl(
        self,
        var: str,
        esl: StrPath,
        auth: StrPath,
        key: StrPath,
        cert: StrPath,
        guid: str,
    ) -> None:
        run(
            [
                self._tool('sign-efi-sig-list'),
                '-g', guid,
                '-k', key,
                '-c', cert,
                var, esl, auth,
            ],
            error=SigningFailedError,
        )  # fmt: skip

    def update_var(
        self,
        var: str,
        cert: Optional[StrPath] = None,
        auth: Optional[StrPath] = None,
        append: bool = False,
    ) -> None:
        if (cert is None) == (auth is None):
            raise ValueError('Exactly one of cert= and auth= must be given')

        cmd: list[StrPath] = [self._tool('efi-updatevar')]
        if append:
            cmd += ['-a']
        if cert is not None:
            cmd += ['-c', cert]
        else:
            assert auth is not None
            cmd += ['-f', auth]
        cmd += [var]

        run(cmd)

    def read_vars(self, var: Optional[str] = None) -> str:
        cmd: list[StrPath] = [self._tool('efi-readvar')]
        if var:
            cmd += ['-v', var]
        return run(cmd, capture=True)
