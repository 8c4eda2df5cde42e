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
import logging
import re
from collections.abc import Sequence
from pathlib import Path
from typing import Optional, Union

from efikit.disk import DiskResolver
from efikit.errors import EmptyLabelError, InputNotFoundError
from efikit.util import find_tool, run

log = logging.getLogger(__name__)

ENTRY_PATTERN = re.compile(r'^Boot(?P<num>[0-9A-Fa-f]{4})(?P<active>\*?)\s+(?P<rest>.*)$')
HD_PATTERN = re.compile(r'HD\((?P<part>\d+),')
FILE_PATTERN = re.compile(r'File\((?P<loader>[^)]*)\)(?P<options>.*)$')


@dataclasses.dataclass(frozen=True)
class BootEntry:
    boot_number: str
    label: str
    active: bool = True
    disk: Optional[Path] = None
    partition: Optional[int] = None
    loader: Optional[str] = None
    options: Optional[str] = None


@dataclasses.dataclass
class BootState:
    entries: list[BootEntry] = dataclasses.field(default_factory=list)
    order: list[str] = dataclasses.field(default_factory=list)


def parse_efibootmgr(output: str) -> BootState:
    state = BootState()

    for line in output.splitlines():
        if line.startswith('BootOrder:'):
            order = line.split(':', 1)[1].strip()
            state.order = [n.strip().upper() for n in order.split(',') if n.strip()]
            continue

        m = ENTRY_PATTERN.match(line)
        if not m:
            continue

        # Newer efibootmgr prints the device path after a tab, older ones only the label.
        label, _, device_path = m.group('rest').partition('\t')

        partition = loader = options = None
        if hd := HD_PATTERN.search(device_path):
            partition = int(hd.group('part'))
        if f := FILE_PATTERN.search(device_path):
            loader = f.group('loader')
            options = f.group('options').strip() or None

        state.entries += [
            BootEntry(
                boot_number=m.group('num').upper(),
                label=label.rstrip(),
                active=m.group('active') == '*',
                partition=partition,
                loader=loader,
                options=options,
            )
        ]

    return state


class EfiBootMgr:
    """Firmware boot entries, through efibootmgr.

    Creating an entry always puts it at the front of BootOrder.
    """

    def __init__(self, tools: Sequence[Path] = ()) -> None:
        self.tools = tools

    def _tool(self) -> Union[str, Path]:
        return find_tool('efibootmgr', tools=self.tools, msg='efibootmgr is not installed')

    def state(self) -> BootState:
        return parse_efibootmgr(run([self._tool()], capture=True))

    def delete(self, boot_number: str) -> None:
        run([self._tool(), '--quiet', '--bootnum', boot_number, '--delete-bootnum'])

    def create(
        self,
        disk: Path,
        partition: int,
        loader: str,
        label: str,
        unicode: Optional[str] = None,
    ) -> None:
        run(
            [
                self._tool(),
                '--quiet',
                '--create',
                '--disk', disk,
                '--part', str(partition),
                '--label', label,
                '--loader', loader,
                *(['--unicode', unicode] if unicode else []),
            ]
        )  # fmt: skip


class BootEntryManager:
    def __init__(self, bootmgr: EfiBootMgr, resolver: DiskResolver) -> None:
        self.bootmgr = bootmgr
        self.resolver = resolver

    def entries(self) -> list[BootEntry]:
        return self.bootmgr.state().entries

    def remove(self, label: str) -> int:
        """Delete every entry labelled exactly ``label``. Returns how many were deleted."""
        if not label:
            raise EmptyLabelError()

        matching = [e for e in self.entries() if e.label == label]
        for entry in matching:
            log.info('Removing boot entry Boot%s %r', entry.boot_number, entry.label)
            self.bootmgr.delete(entry.boot_number)

        if not matching:
            log.debug('No boot entry labelled %r', label)
        return len(matching)

    def add(self, label: str, image: Union[str, Path], options: Optional[str] = None) -> BootEntry:
        # The firmware happily stores duplicate labels. Callers keep labels
        # unique by calling remove() first.
        if not label:
            raise EmptyLabelError()

        image = Path(image)
        if not image.is_file():
            raise InputNotFoundError(image, 'Boot image')

        placement = self.resolver.resolve(image.parent)
        loader = placement.loader(image.name)

        log.info('Adding boot entry %r: %s partition %d %s', label, placement.disk, placement.partition, loader)
        self.bootmgr.create(placement.disk, placement.partition, loader, label, options or None)

        # The firmware picks the boot number, callers that need it re-read the state.
        return BootEntry(
            boot_number='',
            label=label,
            disk=placement.disk,
            partition=placement.partition,
            loader=loader,
            options=options or None,
        )
