# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=missing-docstring,redefined-outer-name

import pathlib
import sys

try:
    import pytest
except ImportError as e:
    print(str(e), file=sys.stderr)
    sys.exit(77)

from efikit import image
from efikit.bootmgr import BootEntryManager
from efikit.errors import InputNotFoundError, SigningFailedError
from efikit.image import BootImageBuilder
from efikit.reconcile import ConfigSetReconciler, processing_order

@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / 'boot.d'
    path.mkdir()
    return path

@pytest.fixture
def images(esp):
    path = esp / 'EFI' / 'Linux'
    path.mkdir(parents=True)
    for name in ('linux', 'recovery', 'memtest'):
        (path / f'{name}.efi').write_bytes(b'MZ')
    return path

def make_builder(resolver, signer, tmp_path):
    return BootImageBuilder(
        resolver=resolver,
        signtool=signer,
        stub=tmp_path / 'stub.efi',
        os_release=tmp_path / 'os-release',
        key_dir=tmp_path / 'keys',
    )

def write_config(config_dir, name, title, target, options=''):
    (config_dir / name).write_text(f'title="{title}"\nefi={target}\noptions="{options}"\n')

def test_processing_order():
    paths = [pathlib.Path('/etc/boot.d/01-linux.conf'), pathlib.Path('/etc/boot.d/02-recovery.conf')]
    assert [p.name for p in processing_order(paths)] == ['02-recovery.conf', '01-linux.conf']

def test_boot_order_follows_file_names(tmp_path, config_dir, images, resolver, bootmgr, signer):
    write_config(config_dir, '02-recovery.conf', 'Recovery', images / 'recovery.efi', 'single')
    write_config(config_dir, '01-linux.conf', 'Linux', images / 'linux.efi', 'quiet')
    write_config(config_dir, '10-memtest.conf', 'Memtest', images / 'memtest.efi')

    reconciler = ConfigSetReconciler(make_builder(resolver, signer, tmp_path), BootEntryManager(bootmgr, resolver))
    assert reconciler.reconcile_directory(config_dir)

    assert [c for c in bootmgr.calls if c[0] == 'create'] == [
        ('create', 'Memtest'),
        ('create', 'Recovery'),
        ('create', 'Linux'),
    ]
    assert bootmgr.labels_in_order() == ['Linux', 'Recovery', 'Memtest']

    linux = bootmgr.entries[bootmgr.order[0]]
    assert linux.loader == '\\EFI\\Linux\\linux.efi'
    assert linux.options == 'quiet'

def test_reconcile_twice_keeps_one_entry_per_title(tmp_path, config_dir, images, resolver, bootmgr, signer):
    write_config(config_dir, '01-linux.conf', 'Linux', images / 'linux.efi')
    write_config(config_dir, '02-recovery.conf', 'Recovery', images / 'recovery.efi')

    reconciler = ConfigSetReconciler(make_builder(resolver, signer, tmp_path), BootEntryManager(bootmgr, resolver))
    reconciler.reconcile_directory(config_dir)
    reconciler.reconcile_directory(config_dir)

    assert bootmgr.labels_in_order() == ['Linux', 'Recovery']

def test_files_only(tmp_path, config_dir, esp, resolver, bootmgr, signer):
    boot = tmp_path / 'boot'
    boot.mkdir()
    (boot / 'vmlinuz').write_bytes(b'new kernel')
    (config_dir / '01-linux.conf').write_text(f'title=Linux\nespdir={esp}\nkernel={boot / "vmlinuz"}\n')

    reconciler = ConfigSetReconciler(make_builder(resolver, signer, tmp_path), files_only=True)
    assert reconciler.reconcile_directory(config_dir)

    assert (esp / 'vmlinuz').read_bytes() == b'new kernel'
    assert not bootmgr.calls

def test_entries_required():
    with pytest.raises(ValueError):
        ConfigSetReconciler(None)

def test_invalid_record_is_skipped(tmp_path, config_dir, images, resolver, bootmgr, signer, caplog):
    write_config(config_dir, '01-linux.conf', 'Linux', images / 'linux.efi')
    write_config(config_dir, '02-broken.conf', 'Broken', images / 'missing.efi')
    write_config(config_dir, '03-untitled.conf', '', images / 'memtest.efi')
    (config_dir / '04-novariant.conf').write_text('title=Nothing\n')
    write_config(config_dir, '05-recovery.conf', 'Recovery', images / 'recovery.efi')

    reconciler = ConfigSetReconciler(make_builder(resolver, signer, tmp_path), BootEntryManager(bootmgr, resolver))
    assert not reconciler.reconcile_directory(config_dir)

    assert bootmgr.labels_in_order() == ['Linux', 'Recovery']
    assert 'Skipping' in caplog.text
    assert '02-broken.conf' in caplog.text

def test_toolchain_failure_aborts(tmp_path, config_dir, images, resolver, bootmgr, failing_signer, monkeypatch):
    boot = tmp_path / 'boot'
    boot.mkdir()
    (boot / 'vmlinuz').write_bytes(b'kernel')
    (tmp_path / 'stub.efi').write_bytes(b'MZ')
    (tmp_path / 'os-release').write_text('ID=test\n')
    (tmp_path / 'keys').mkdir()
    (tmp_path / 'keys' / 'DB.key').write_text('key')
    (tmp_path / 'keys' / 'DB.pem').write_text('cert')

    write_config(config_dir, '01-linux.conf', 'Linux', images / 'linux.efi')
    (config_dir / '02-signed.conf').write_text(
        f'title=Signed\nefisigned={images / "signed.efi"}\nkernel={boot / "vmlinuz"}\n')
    write_config(config_dir, '03-recovery.conf', 'Recovery', images / 'recovery.efi')

    reconciler = ConfigSetReconciler(
        make_builder(resolver, failing_signer, tmp_path),
        BootEntryManager(bootmgr, resolver),
    )
    built = []

    def fake_pe_add_sections(uki, output):
        built.append([s.name for s in uki.sections])
        output.write_bytes(b'MZ')

    monkeypatch.setattr(image, 'pe_add_sections', fake_pe_add_sections)
    with pytest.raises(SigningFailedError):
        reconciler.reconcile_directory(config_dir)

    assert built == [['.osrel', '.cmdline', '.linux']]
    # Recovery was applied before the failure and stays, Linux was never reached.
    assert bootmgr.labels_in_order() == ['Recovery']
    assert not (images / 'signed.efi').exists()

def test_single_file_errors_propagate(tmp_path, config_dir, images, resolver, bootmgr, signer):
    write_config(config_dir, '01-broken.conf', 'Broken', images / 'missing.efi')

    reconciler = ConfigSetReconciler(make_builder(resolver, signer, tmp_path), BootEntryManager(bootmgr, resolver))
    with pytest.raises(InputNotFoundError):
        reconciler.reconcile_file(config_dir / '01-broken.conf')
    assert not bootmgr.calls

    with pytest.raises(InputNotFoundError):
        reconciler.reconcile_file(config_dir / '99-missing.conf')

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
