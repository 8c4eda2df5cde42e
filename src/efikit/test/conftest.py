# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=missing-docstring,redefined-outer-name

import pathlib
import struct

import pytest

from efikit.bootmgr import BootEntry, BootState, EfiBootMgr
from efikit.disk import BlockTopology, DiskResolver
from efikit.efivars import EfiVarStore
from efikit.errors import SigningFailedError
from efikit.signing import SignTool


class FakeTopology(BlockTopology):
    """Everything lives on /dev/sda1, mounted at ``mountpoint``."""

    def __init__(self, mountpoint):
        super().__init__()
        self.mountpoint = mountpoint

    def find_mount(self, path):
        return self.mountpoint, 'ABCD-1234'

    def device_for_uuid(self, uuid):
        return pathlib.Path('/dev/sda1')

    def partition_number(self, device):
        return 1

    def parent_disk(self, device):
        return pathlib.Path('/dev/sda')


class FakeBootMgr(EfiBootMgr):
    """Keeps boot entries in memory. Like the firmware, create() prepends to BootOrder."""

    def __init__(self):
        super().__init__()
        self.entries = {}
        self.order = []
        self.calls = []
        self.next_number = 0

    def state(self):
        return BootState(
            entries=[self.entries[n] for n in sorted(self.entries)],
            order=list(self.order),
        )

    def delete(self, boot_number):
        self.calls += [('delete', boot_number)]
        del self.entries[boot_number]
        self.order.remove(boot_number)

    def create(self, disk, partition, loader, label, unicode=None):
        self.calls += [('create', label)]
        number = f'{self.next_number:04X}'
        self.next_number += 1
        self.entries[number] = BootEntry(
            boot_number=number,
            label=label,
            disk=disk,
            partition=partition,
            loader=loader,
            options=unicode,
        )
        self.order.insert(0, number)

    def labels_in_order(self):
        return [self.entries[n].label for n in self.order]


class FakeSignTool(SignTool):
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def sign(self, input_f, output_f, key, cert):
        self.calls += [(pathlib.Path(input_f), pathlib.Path(output_f), pathlib.Path(key), pathlib.Path(cert))]
        if self.fail:
            raise SigningFailedError('sbsign failed with exit status 1', 'Invalid key')
        pathlib.Path(output_f).write_bytes(pathlib.Path(input_f).read_bytes())


def make_stub():
    """A minimal PE32+ image with a single .text section, enough for pefile."""
    text = bytes(range(256)) * 12

    dos = bytearray(0x40)
    dos[0:2] = b'MZ'
    struct.pack_into('<I', dos, 0x3c, 0x40)

    coff = struct.pack('<HHIIIHH', 0x8664, 1, 0, 0, 0, 240, 0x0022)

    optional = struct.pack(
        '<HBBIIIIIQIIHHHHHHIIIIHHQQQQII',
        0x20b,                  # PE32+
        14, 0,                  # linker version
        len(text), 0, 0,        # SizeOfCode, SizeOfInitializedData, SizeOfUninitializedData
        0x1000, 0x1000,         # AddressOfEntryPoint, BaseOfCode
        0x140000000,            # ImageBase
        0x1000, 0x200,          # SectionAlignment, FileAlignment
        0, 0, 0, 0, 0, 0,       # OS, image and subsystem versions
        0,                      # Win32VersionValue
        0x2000, 0x400, 0,       # SizeOfImage, SizeOfHeaders, CheckSum
        10, 0,                  # EFI application
        0x100000, 0x1000, 0x100000, 0x1000,
        0, 16,                  # LoaderFlags, NumberOfRvaAndSizes
    ) + bytes(16 * 8)
    assert len(optional) == 240

    section = struct.pack(
        '<8sIIIIIIHHI',
        b'.text', len(text), 0x1000, len(text), 0x400, 0, 0, 0, 0, 0x60000020,
    )

    headers = bytes(dos) + b'PE\0\0' + coff + optional + section
    return headers + bytes(0x400 - len(headers)) + text


@pytest.fixture
def stub(tmp_path):
    path = tmp_path / 'linuxx64.efi.stub'
    path.write_bytes(make_stub())
    return path


@pytest.fixture
def esp(tmp_path):
    path = tmp_path / 'esp'
    path.mkdir()
    return path


@pytest.fixture
def resolver(esp):
    return DiskResolver(FakeTopology(esp))


@pytest.fixture
def bootmgr():
    return FakeBootMgr()


@pytest.fixture
def efivars(tmp_path):
    path = tmp_path / 'efivars'
    path.mkdir()
    return EfiVarStore(path)


@pytest.fixture
def signer():
    return FakeSignTool()


@pytest.fixture
def failing_signer():
    return FakeSignTool(fail=True)
