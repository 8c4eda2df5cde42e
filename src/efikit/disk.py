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

"""Map filesystem paths to the disk + partition addressing used by efibootmgr."""

import dataclasses
import json
import logging
from collections.abc import Sequence
from pathlib import Path, PurePosixPath
from typing import Optional, Union

from efikit.errors import DeviceResolutionError, PathNotFoundError, ToolchainError
from efikit.util import find_tool, run

log = logging.getLogger(__name__)


def firmware_path(directory: str, name: Optional[str] = None) -> str:
    """Join a firmware-relative directory and a file name with backslashes.

    >>> firmware_path('', 'vmlinuz')
    '\\\\vmlinuz'
    """
    if name is None:
        return directory or '\\'
    return f'{directory}\\{name}'


def to_firmware_dir(relative: PurePosixPath) -> str:
    parts = [p for p in relative.parts if p not in ('', '.')]
    return ''.join(f'\\{p}' for p in parts)


@dataclasses.dataclass(frozen=True)
class DiskPlacement:
    disk: Path
    partition: int
    firmware_dir: str

    def loader(self, name: str) -> str:
        return firmware_path(self.firmware_dir, name)


class BlockTopology:
    """Queries against the running system's mount table and /sys/class/block."""

    def __init__(
        self,
        dev_root: Path = Path('/dev'),
        sys_block: Path = Path('/sys/class/block'),
        tools: Sequence[Path] = (),
    ) -> None:
        self.dev_root = dev_root
        self.sys_block = sys_block
        self.tools = tools

    def find_mount(self, path: Path) -> tuple[Path, Optional[str]]:
        findmnt = find_tool('findmnt', tools=self.tools)
        cmd = [findmnt, '--json', '--output', 'TARGET,UUID', '--target', path]
        try:
            out = run(cmd, capture=True)
        except ToolchainError as e:
            raise PathNotFoundError(f'Cannot determine the filesystem containing {path}') from e

        filesystems = json.loads(out).get('filesystems') or []
        if not filesystems:
            raise PathNotFoundError(f'Cannot determine the filesystem containing {path}')

        fs = filesystems[0]
        return Path(fs['target']), fs.get('uuid')

    def device_for_uuid(self, uuid: str) -> Path:
        link = self.dev_root / 'disk' / 'by-uuid' / uuid
        if not link.exists():
            raise DeviceResolutionError(f'No block device with filesystem UUID {uuid}')
        return link.resolve()

    def partition_number(self, device: Path) -> int:
        attr = self.sys_block / device.name / 'partition'
        try:
            return int(attr.read_text().strip())
        except FileNotFoundError as e:
            raise DeviceResolutionError(f'{device} is not a partition') from e
        except ValueError as e:
            raise DeviceResolutionError(f'Cannot parse partition number of {device}') from e

    def parent_disk(self, device: Path) -> Path:
        node = self.sys_block / device.name
        if not node.exists():
            raise DeviceResolutionError(f'{device} is not known to the block layer')

        # /sys/class/block/sda1 -> ../../devices/.../block/sda/sda1
        parent = node.resolve().parent
        if parent.name == 'block' or not (parent / 'dev').exists():
            raise DeviceResolutionError(f'Cannot find the disk containing {device}')
        return self.dev_root / parent.name


class DiskResolver:
    def __init__(self, topology: Optional[BlockTopology] = None) -> None:
        self.topology = topology or BlockTopology()

    def resolve(self, path: Union[str, Path]) -> DiskPlacement:
        path = Path(path)
        if not path.exists():
            raise PathNotFoundError(f'{path} does not exist')

        mountpoint, uuid = self.topology.find_mount(path)
        if not uuid:
            raise DeviceResolutionError(f'Filesystem mounted at {mountpoint} has no UUID')

        try:
            relative = PurePosixPath(path.resolve().relative_to(mountpoint.resolve()))
        except ValueError as e:
            raise PathNotFoundError(f'{path} is not below its mount point {mountpoint}') from e

        device = self.topology.device_for_uuid(uuid)
        placement = DiskPlacement(
            disk=self.topology.parent_disk(device),
            partition=self.topology.partition_number(device),
            firmware_dir=to_firmware_dir(relative),
        )
        log.debug('%s is on %s partition %d at %r',
                  path, placement.disk, placement.partition, placement.firmware_dir or '\\')
        return placement
