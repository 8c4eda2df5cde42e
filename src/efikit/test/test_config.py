# SPDX-License-Identifier: LGPL-2.1-or-later

# pylint: disable=missing-docstring

import pathlib
import sys
import textwrap

try:
    import pytest
except ImportError as e:
    print(str(e), file=sys.stderr)
    sys.exit(77)

from efikit.config import Variant, list_config_files, load_boot_config, parse_boot_config
from efikit.errors import EmptyLabelError, InputNotFoundError, ValidationError

def test_parse_standard():
    config = parse_boot_config(textwrap.dedent(
        '''\
        title=Linux
        espdir=/boot/efi
        kernel=/boot/vmlinuz
        initrd=/boot/initrd.img
        options="root=/dev/sda1   quiet"
        '''))

    assert config.title == 'Linux'
    assert config.variant == Variant.STANDARD
    assert config.esp_dir == pathlib.Path('/boot/efi')
    assert config.target is None
    assert config.kernel == pathlib.Path('/boot/vmlinuz')
    assert config.initrds == (pathlib.Path('/boot/initrd.img'),)
    assert config.options == 'root=/dev/sda1   quiet'

def test_parse_options_kept_verbatim():
    config = parse_boot_config(
        'title=Linux\nespdir=/boot/efi\nkernel=/boot/vmlinuz\n'
        '''options="  root=/dev/sda1 dyndbg='file foo.c  +p'  "\n''')
    assert config.options == "root=/dev/sda1 dyndbg='file foo.c  +p'"

def test_parse_signed_multiple_initrds():
    config = parse_boot_config(textwrap.dedent(
        '''\
        title="Signed Linux"
        efisigned=/boot/efi/EFI/Linux/linux.efi
        kernel=/boot/vmlinuz
        initrd="/boot/intel-ucode.img /boot/initrd.img"
        '''))

    assert config.variant == Variant.SIGNED_STUB
    assert config.target == pathlib.Path('/boot/efi/EFI/Linux/linux.efi')
    assert config.esp_dir is None
    assert config.initrds == (pathlib.Path('/boot/intel-ucode.img'), pathlib.Path('/boot/initrd.img'))
    assert config.options == ''

def test_parse_generic_without_kernel():
    config = parse_boot_config('title=Shell\nefi=/boot/efi/shellx64.efi\n')
    assert config.variant == Variant.GENERIC_EFI
    assert config.kernel is None
    assert config.initrds == ()

@pytest.mark.parametrize('text', [
    'title=Linux\nkernel=/boot/vmlinuz\n',
    'title=Linux\nkernel=/boot/vmlinuz\nespdir=/boot/efi\nefi=/boot/efi/x.efi\n',
])
def test_parse_variant_count(text):
    with pytest.raises(ValidationError, match='exactly one of'):
        parse_boot_config(text)

@pytest.mark.parametrize('variant', ['espdir=/boot/efi', 'efisigned=/boot/efi/x.efi'])
def test_parse_kernel_required(variant):
    with pytest.raises(ValidationError, match='kernel='):
        parse_boot_config(f'title=Linux\n{variant}\n')

def test_parse_unknown_key(caplog):
    config = parse_boot_config('title=Shell\nefi=/x.efi\nfoo=bar\n', source=pathlib.Path('/etc/shell.conf'))
    assert 'unknown setting foo=' in caplog.text
    assert config.source == pathlib.Path('/etc/shell.conf')

def test_parse_keeps_records_independent():
    first = parse_boot_config('title=A\nefi=/a.efi\noptions=quiet\n')
    second = parse_boot_config('title=B\nefi=/b.efi\n')
    assert first.options == 'quiet'
    assert second.options == ''

def test_check_title():
    config = parse_boot_config('efi=/x.efi\n')
    assert config.title == ''
    with pytest.raises(EmptyLabelError):
        config.check_title()

def test_load_missing(tmp_path):
    with pytest.raises(InputNotFoundError) as e:
        load_boot_config(tmp_path / 'nope.conf')
    assert e.value.path == tmp_path / 'nope.conf'

def test_list_config_files(tmp_path):
    for name in ('02-recovery.conf', '01-linux.conf', 'README', '10-memtest.conf'):
        (tmp_path / name).write_text('title=x\nefi=/x.efi\n')
    (tmp_path / 'subdir.conf').mkdir()

    files = list_config_files(tmp_path)
    assert [f.name for f in files] == ['01-linux.conf', '02-recovery.conf', '10-memtest.conf']

def test_list_config_files_missing_dir(tmp_path):
    with pytest.raises(InputNotFoundError):
        list_config_files(tmp_path / 'boot.d')

if __name__ == '__main__':
    sys.exit(pytest.main(sys.argv))
