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

import dataclasses
import enum
import logging
from pathlib import Path
from typing import Optional, Union

from efikit.errors import EmptyLabelError, InputNotFoundError, ValidationError
from efikit.util import read_env_file

log = logging.getLogger(__name__)

CONFIG_SUFFIX = '.conf'

KNOWN_KEYS = {'title', 'kernel', 'initrd', 'options', 'espdir', 'efi', 'efisigned'}


class Variant(enum.Enum):
    STANDARD = 'espdir'
    GENERIC_EFI = 'efi'
    SIGNED_STUB = 'efisigned'


@dataclasses.dataclass(frozen=True)
class BootConfig:
    title: str
    variant: Variant
    kernel: Optional[Path] = None
    initrds: tuple[Path, ...] = ()
    options: str = ''
    esp_dir: Optional[Path] = None
    target: Optional[Path] = None
    source: Optional[Path] = None

    def check_title(self) -> None:
        if not self.title:
            raise EmptyLabelError()

    def __str__(self) -> str:
        return f'{self.title!r} ({self.source or "<inline>"})'


def parse_boot_config(text: str, source: Optional[Path] = None) -> BootConfig:
    """Turn one configuration record into a BootConfig. Does not touch the filesystem."""
    values = read_env_file(text)
    where = source or '<inline>'

    for key in sorted(values.keys() - KNOWN_KEYS):
        log.warning('%s: unknown setting %s=', where, key)

    targets = [v for v in Variant if values.get(v.value)]
    if len(targets) != 1:
        raise ValidationError(
            f'{where}: exactly one of espdir=, efi=, efisigned= must be set, found {len(targets)}'
        )
    variant = targets[0]
    target = Path(values[variant.value])

    kernel = Path(values['kernel']) if values.get('kernel') else None
    if variant != Variant.GENERIC_EFI and kernel is None:
        raise ValidationError(f'{where}: kernel= must be set for {variant.value}=')

    return BootConfig(
        title=values.get('title', '').strip(),
        variant=variant,
        kernel=kernel,
        initrds=tuple(Path(p) for p in values.get('initrd', '').split()),
        options=values.get('options', '').strip(),
        esp_dir=target if variant == Variant.STANDARD else None,
        target=target if variant != Variant.STANDARD else None,
        source=source,
    )


def load_boot_config(path: Union[str, Path]) -> BootConfig:
    path = Path(path)
    try:
        text = path.read_text()
    except FileNotFoundError as e:
        raise InputNotFoundError(path, 'Configuration file') from e
    return parse_boot_config(text, source=path)


def list_config_files(directory: Union[str, Path]) -> list[Path]:
    """Configuration files in their natural (lexicographic file name) order."""
    directory = Path(directory)
    if not directory.is_dir():
        raise InputNotFoundError(directory, 'Configuration directory')
    return sorted(
        (p for p in directory.iterdir() if p.name.endswith(CONFIG_SUFFIX) and p.is_file()),
        key=lambda p: p.name,
    )
