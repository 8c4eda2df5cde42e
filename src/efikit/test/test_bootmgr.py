# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=missing-docstring,redefined-outer-name

import pathlib
import sys
import textwrap

try:
    import pytest
except ImportError as e:
    print(str(e), file=sys.stderr)
    sys.exit(77)

from efikit import bootmgr as bm
from efikit.errors import EmptyLabelError, InputNotFoundError

EFIBOOTMGR_OUTPUT = textwrap.dedent(
    '''\
    BootCurrent: 0001
    Timeout: 1 seconds
    BootOrder: 0001,0000,001a
    Boot0000* Windows Boot Manager\tHD(1,GPT,c5b9bd54-1a2e-4b5c-9f0e-0a8a3f7d1e11,0x800,0x32000)/File(\\EFI\\Microsoft\\Boot\\bootmgfw.efi)
    Boot0001* Linux\tHD(2,GPT,1a2b3c4d-1a2e-4b5c-9f0e-0a8a3f7d1e11,0x32800,0x100000)/File(\\vmlinuz)initrd=\\initrd.img root=/dev/sda1
    Boot001A  Old entry
    ''')

@pytest.fixture
def image(esp):
    path = esp / 'vmlinuz'
    path.write_bytes(b'kernel')
    return path

@pytest.fixture
def manager(bootmgr, resolver):
    return bm.BootEntryManager(bootmgr, resolver)

def test_parse_efibootmgr():
    state = bm.parse_efibootmgr(EFIBOOTMGR_OUTPUT)

    assert state.order == ['0001', '0000', '001A']
    assert [e.boot_number for e in state.entries] == ['0000', '0001', '001A']
    assert [e.label for e in state.entries] == ['Windows Boot Manager', 'Linux', 'Old entry']

    windows, linux, old = state.entries
    assert windows.active
    assert windows.partition == 1
    assert windows.loader == '\\EFI\\Microsoft\\Boot\\bootmgfw.efi'
    assert windows.options is None

    assert linux.partition == 2
    assert linux.loader == '\\vmlinuz'
    assert linux.options == 'initrd=\\initrd.img root=/dev/sda1'

    assert not old.active
    assert old.loader is None

def test_efibootmgr_commands(monkeypatch):
    calls = []
    monkeypatch.setattr(bm, 'find_tool', lambda name, **kwargs: name)
    monkeypatch.setattr(bm, 'run', lambda cmd, capture=False: calls.append(cmd) or EFIBOOTMGR_OUTPUT)

    mgr = bm.EfiBootMgr()
    mgr.create(pathlib.Path('/dev/sda'), 1, '\\vmlinuz', 'Linux', 'initrd=\\initrd.img')
    mgr.delete('0001')
    assert len(mgr.state().entries) == 3

    assert calls == [
        ['efibootmgr', '--quiet', '--create',
         '--disk', pathlib.Path('/dev/sda'), '--part', '1',
         '--label', 'Linux', '--loader', '\\vmlinuz',
         '--unicode', 'initrd=\\initrd.img'],
        ['efibootmgr', '--quiet', '--bootnum', '0001', '--delete-bootnum'],
        ['efibootmgr'],
    ]

def test_add(manager, bootmgr, image):
    entry = manager.add('Linux', image, 'initrd=\\initrd.img root=/dev/sda1')

    assert entry.disk == pathlib.Path('/dev/sda')
    assert entry.partition == 1
    assert entry.loader == '\\vmlinuz'
    assert bootmgr.labels_in_order() == ['Linux']
    assert bootmgr.state().entries[0].options == 'initrd=\\initrd.img root=/dev/sda1'

def test_add_does_not_deduplicate(manager, bootmgr, image):
    manager.add('Linux', image)
    manager.add('Linux', image)
    assert bootmgr.labels_in_order() == ['Linux', 'Linux']

def test_remove_then_add_is_idempotent(manager, bootmgr, image):
    for _ in range(3):
        manager.remove('Linux')
        manager.add('Linux', image)

    assert [e.label for e in manager.entries()] == ['Linux']

def test_remove_all_matches(manager, bootmgr, image):
    manager.add('Linux', image)
    manager.add('Other', image)
    manager.add('Linux', image)

    assert manager.remove('Linux') == 2
    assert bootmgr.labels_in_order() == ['Other']
    assert manager.remove('Linux') == 0
    assert manager.remove('Lin') == 0
    assert bootmgr.labels_in_order() == ['Other']

def test_empty_label(manager, bootmgr, image):
    with pytest.raises(EmptyLabelError):
        manager.remove('')
    with pytest.raises(EmptyLabelError):
        manager.add('', image)
    assert not bootmgr.calls

def test_add_missing_image(manager, bootmgr, esp):
    with pytest.raises(InputNotFoundError):
        manager.add('Linux', esp / 'missing.efi')
    assert not bootmgr.calls

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
