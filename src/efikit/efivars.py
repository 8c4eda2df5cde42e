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

"""Raw access to UEFI runtime variables through efivarfs.

Each variable is a file named ``<Name>-<VendorGUID>`` whose content is the
4-byte little-endian attribute word followed by the variable data.
"""

import contextlib
import errno
import fcntl
import logging
import os
import struct
from collections.abc import Iterator
from pathlib import Path
from typing import Optional

from efikit import binary
from efikit.errors import FirmwareVariableError, UnsupportedFeatureError

log = logging.getLogger(__name__)

EFI_GLOBAL_VARIABLE = '8be4df61-93ca-11d2-aa0d-00e098032b8c'
EFI_IMAGE_SECURITY_DATABASE = 'd719b2cb-3d3a-4596-a3bc-dad00e67656f'

VENDOR_GUIDS = {
    'db':  EFI_IMAGE_SECURITY_DATABASE,
    'dbx': EFI_IMAGE_SECURITY_DATABASE,
}  # fmt: skip

EFI_VARIABLE_NON_VOLATILE = 0x00000001
EFI_VARIABLE_BOOTSERVICE_ACCESS = 0x00000002
EFI_VARIABLE_RUNTIME_ACCESS = 0x00000004
DEFAULT_ATTRIBUTES = EFI_VARIABLE_NON_VOLATILE | EFI_VARIABLE_BOOTSERVICE_ACCESS | EFI_VARIABLE_RUNTIME_ACCESS

EFI_OS_INDICATIONS_BOOT_TO_FW_UI = 0

FS_IOC_GETFLAGS = 0x80086601
FS_IOC_SETFLAGS = 0x40086602
FS_IMMUTABLE_FL = 0x00000010


def _get_flags(fd: int) -> Optional[int]:
    try:
        return struct.unpack('i', fcntl.ioctl(fd, FS_IOC_GETFLAGS, struct.pack('i', 0)))[0]
    except OSError as e:
        if e.errno in (errno.ENOTTY, errno.EOPNOTSUPP, errno.EINVAL):
            return None
        raise


def _set_flags(fd: int, flags: int) -> None:
    fcntl.ioctl(fd, FS_IOC_SETFLAGS, struct.pack('i', flags))


@contextlib.contextmanager
def writable(path: Path) -> Iterator[None]:
    """efivarfs marks most variables immutable, lift that for the duration of a write."""
    if not path.exists():
        yield
        return

    fd = os.open(path, os.O_RDONLY)
    try:
        flags = _get_flags(fd)
        if flags is None or not flags & FS_IMMUTABLE_FL:
            yield
            return

        _set_flags(fd, flags & ~FS_IMMUTABLE_FL)
        try:
            yield
        finally:
            _set_flags(fd, flags)
    finally:
        os.close(fd)


class EfiVarStore:
    def __init__(self, root: Path = Path('/sys/firmware/efi/efivars')) -> None:
        self.root = root

    def path(self, name: str, guid: Optional[str] = None) -> Path:
        return self.root / f'{name}-{guid or VENDOR_GUIDS.get(name, EFI_GLOBAL_VARIABLE)}'

    def exists(self, name: str) -> bool:
        return self.path(name).exists()

    def read(self, name: str) -> bytes:
        path = self.path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise FirmwareVariableError(f'EFI variable {name} does not exist') from e
        except OSError as e:
            raise FirmwareVariableError(f'Cannot read EFI variable {name}: {e}') from e

    def write(self, name: str, raw: bytes) -> None:
        path = self.path(name)
        try:
            with writable(path):
                # efivarfs wants attributes and data in one write() call.
                fd = os.open(path, os.O_WRONLY | os.O_CREAT, 0o644)
                try:
                    n = os.write(fd, raw)
                finally:
                    os.close(fd)
        except OSError as e:
            raise FirmwareVariableError(f'Cannot write EFI variable {name}: {e}') from e

        if n != len(raw):
            raise FirmwareVariableError(f'Short write to EFI variable {name}: {n} of {len(raw)} bytes')


class FirmwareVariableAccessor:
    def __init__(self, store: Optional[EfiVarStore] = None) -> None:
        self.store = store or EfiVarStore()

    def read(self, name: str) -> tuple[int, bytes]:
        raw = self.store.read(name)
        if len(raw) < 4:
            raise FirmwareVariableError(f'EFI variable {name} is truncated ({len(raw)} bytes)')
        return binary.decode_u32le(raw), raw[4:]

    def read_boolean(self, name: str) -> bool:
        _, data = self.read(name)
        if not data:
            raise FirmwareVariableError(f'EFI variable {name} has no data')
        return data[0] != 0

    def read_bitmask64(self, name: str) -> int:
        _, data = self.read(name)
        try:
            return binary.decode_u64le(data)
        except ValueError as e:
            raise FirmwareVariableError(f'EFI variable {name} is not a 64-bit value: {e}') from e

    def set_bit(self, name: str, bit: int) -> int:
        if self.store.exists(name):
            attributes, _ = self.read(name)
            value = self.read_bitmask64(name)
        else:
            attributes, value = DEFAULT_ATTRIBUTES, 0

        value = binary.set_bit(value, bit)
        self.store.write(name, binary.encode_u32le(attributes) + binary.encode_u64le(value))
        return value

    def secure_boot_enabled(self) -> bool:
        return self.read_boolean('SecureBoot')

    def setup_mode(self) -> bool:
        return self.read_boolean('SetupMode')

    def variable_is_empty(self, name: str) -> bool:
        if not self.store.exists(name):
            return True
        _, data = self.read(name)
        return not data

    def check_supported(self, bit: int) -> None:
        try:
            supported = self.read_bitmask64('OsIndicationsSupported')
        except FirmwareVariableError as e:
            raise UnsupportedFeatureError(str(e)) from e
        if not supported & (1 << bit):
            raise UnsupportedFeatureError(f'Firmware does not support OsIndications bit {bit}')

    def request_boot_to_setup(self) -> bool:
        """Ask the firmware to enter its setup UI on next boot.

        Returns False, without writing anything, when the firmware does not offer it.
        """
        try:
            self.check_supported(EFI_OS_INDICATIONS_BOOT_TO_FW_UI)
        except UnsupportedFeatureError as e:
            log.warning('Not requesting boot into firmware setup: %s', e)
            return False

        self.set_bit('OsIndications', EFI_OS_INDICATIONS_BOOT_TO_FW_UI)
        log.info('Firmware setup will be entered on next boot.')
        return True
