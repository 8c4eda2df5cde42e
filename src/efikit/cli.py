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

# pylint: disable=missing-docstring,unused-argument

import argparse
import builtins
import configparser
import dataclasses
import logging
import os
import pprint
import pydoc
import sys
import textwrap
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, Optional, Union

from efikit import __version__
from efikit.bootmgr import BootEntryManager, EfiBootMgr
from efikit.disk import BlockTopology, DiskResolver
from efikit.efivars import EfiVarStore, FirmwareVariableAccessor
from efikit.errors import EfikitError, FirmwareVariableError, ValidationError
from efikit.image import BootImageBuilder
from efikit.keys import DEFAULT_VALIDITY_DAYS, KeyLifecycleManager, default_common_name
from efikit.reconcile import ConfigSetReconciler
from efikit.signing import EfiTools, SignTool
from efikit.util import guess_efi_arch

log = logging.getLogger(__name__)

DEFAULT_CONFIG_DIRS = ['/etc/efikit', '/run/efikit', '/usr/local/lib/efikit', '/usr/lib/efikit']
DEFAULT_CONFIG_FILE = 'efikit.conf'


class Style:
    bold = '\033[0;1;39m' if sys.stderr.isatty() else ''
    reset = '\033[0m' if sys.stderr.isatty() else ''


def page(text: str, enabled: Optional[bool]) -> None:
    if enabled:
        os.environ['LESS'] = os.getenv('SYSTEMD_LESS', 'FRSXMK')
        pydoc.pager(text)
    else:
        print(text)


@dataclasses.dataclass(frozen=True)
class ConfigItem:
    @staticmethod
    def config_set_if_unset(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Set namespace.<dest> to value only if it was None"

        if getattr(namespace, dest) is None:
            setattr(namespace, dest, value)

    @staticmethod
    def config_list_prepend(
        namespace: argparse.Namespace,
        dest: str,
        value: Any,
    ) -> None:
        "Prepend value to namespace.<dest>"

        old = getattr(namespace, dest, [])
        if old is None:
            old = []
        setattr(namespace, dest, value + old)

    # arguments for argparse.ArgumentParser.add_argument()
    name: Union[str, tuple[str, str]]
    dest: Optional[str] = None
    metavar: Optional[str] = None
    type: Optional[Callable[[str], Any]] = None
    nargs: Optional[str] = None
    action: Optional[Union[str, Callable[[str], Any], builtins.type[argparse.Action]]] = None
    default: Any = None
    version: Optional[str] = None
    choices: Optional[tuple[str, ...]] = None
    help: Optional[str] = None

    # metadata for config file parsing
    config_key: Optional[str] = None
    config_push: Callable[[argparse.Namespace, str, Any], None] = config_set_if_unset

    def _names(self) -> tuple[str, ...]:
        return self.name if isinstance(self.name, tuple) else (self.name,)

    def argparse_dest(self) -> str:
        if self.dest:
            return self.dest
        return self._names()[0].lstrip('-').replace('-', '_')

    def add_to(self, parser: argparse.ArgumentParser) -> None:
        kwargs = {
            key: val
            for key in dataclasses.asdict(self)
            if (key not in ('name', 'config_key', 'config_push') and (val := getattr(self, key)) is not None)
        }
        args = self._names()
        parser.add_argument(*args, **kwargs)

    def apply_config(self, namespace: argparse.Namespace, section: str, key: str, value: str) -> None:
        assert f'{section}/{key}' == self.config_key

        conv: Callable[[str], Any] = self.type or (lambda s: s)

        # --tools is the only option that repeats on the command line and is a
        # space-separated list in the config file.
        converted: Any
        if self.action == 'append':
            converted = [conv(v) for v in value.split()]
        else:
            converted = conv(value)

        self.config_push(namespace, self.argparse_dest(), converted)

    def config_example(self) -> tuple[Optional[str], Optional[str], Optional[str]]:
        if not self.config_key:
            return None, None, None
        section_name, key = self.config_key.split('/', 1)
        value = self.metavar or self.argparse_dest().upper()
        return (section_name, key, value)


COMMANDS = {
    'bootctl': ('install', 'update', 'rm-entry', 'list'),
    'keys':    ('create', 'install', 'activate', 'list'),
    'uefi':    ('status', 'boot2setup'),
}  # fmt: skip

CONFIG_ITEMS = [
    ConfigItem(
        'positional',
        metavar='COMMAND',
        nargs='*',
        help=argparse.SUPPRESS,
    ),
    ConfigItem(
        '--version',
        action='version',
        version=f'efikit {__version__}',
    ),
    ConfigItem(
        '--summary',
        help='print parsed config and exit',
        action='store_true',
    ),
    ConfigItem(
        ('--config', '-c'),
        metavar='PATH',
        type=Path,
        help='configuration file',
    ),
    ConfigItem(
        ('--verbose', '-v'),
        action='store_true',
        help='print debug messages',
    ),
    ConfigItem(
        '--tools',
        type=Path,
        action='append',
        help='directories to search for external tools',
        config_key='Tools/Directories',
        config_push=ConfigItem.config_list_prepend,
    ),
    ConfigItem(
        '--config-dir',
        type=Path,
        metavar='DIR',
        help='directory with boot configuration records',
        config_key='Boot/ConfigDirectory',
    ),
    ConfigItem(
        '--stub',
        type=Path,
        help='path to the EFI stub used for signed images',
        config_key='Boot/Stub',
    ),
    ConfigItem(
        '--os-release',
        type=Path,
        metavar='PATH',
        help='os-release file embedded into signed images',
        config_key='Boot/OSRelease',
    ),
    ConfigItem(
        '--key-dir',
        type=Path,
        metavar='DIR',
        help='directory holding the PK, KEK and DB keys',
        config_key='Keys/KeyDirectory',
    ),
    ConfigItem(
        '--common-name',
        metavar='NAME',
        help='common name for generated certificates',
        config_key='Keys/CommonName',
    ),
    ConfigItem(
        '--validity',
        type=int,
        metavar='DAYS',
        help=f'validity of generated certificates (default {DEFAULT_VALIDITY_DAYS})',
        config_key='Keys/Validity',
    ),
    ConfigItem(
        '--efivars-dir',
        type=Path,
        metavar='DIR',
        help='where efivarfs is mounted',
        config_key='Firmware/EfiVarsDirectory',
    ),
    ConfigItem(
        ('--yes', '-y'),
        action='store_true',
        help='also enroll the DB certificate without asking',
    ),
    ConfigItem(
        '--no-db',
        action='store_true',
        help='do not enroll the DB certificate',
    ),
]

CONFIGFILE_ITEMS = {item.config_key: item for item in CONFIG_ITEMS if item.config_key}


def apply_config(namespace: argparse.Namespace, filename: Union[str, Path, None] = None) -> None:
    if filename is None:
        if namespace.config:
            # Config set by the user, use that.
            filename = namespace.config
            print(f'Using config file: {filename}', file=sys.stderr)
        else:
            # Try to look for a config file then use the first one found.
            for config_dir in DEFAULT_CONFIG_DIRS:
                filename = Path(config_dir) / DEFAULT_CONFIG_FILE
                if filename.is_file():
                    print(f'Using found config file: {filename}', file=sys.stderr)
                    break
            else:
                # No config file specified or found, nothing to do.
                return

    cp = configparser.ConfigParser(
        comment_prefixes='#',
        inline_comment_prefixes='#',
        delimiters='=',
        empty_lines_in_values=False,
        interpolation=None,
        strict=False,
    )
    # Do not make keys lowercase
    cp.optionxform = lambda option: option  # type: ignore

    read = cp.read(filename)
    if not read:
        raise OSError(f'Failed to read {filename}')

    for section_name, section in cp.items():
        for key, value in section.items():
            if item := CONFIGFILE_ITEMS.get(f'{section_name}/{key}'):
                item.apply_config(namespace, section_name, key, value)
            else:
                print(f'Unknown config setting [{section_name}] {key}=', file=sys.stderr)


def config_example() -> Iterator[str]:
    prev_section: Optional[str] = None
    for item in CONFIG_ITEMS:
        section, key, value = item.config_example()
        if section:
            if prev_section != section:
                if prev_section:
                    yield ''
                yield f'[{section}]'
                prev_section = section
            yield f'{key} = {value}'


class PagerHelpAction(argparse._HelpAction):  # pylint: disable=protected-access
    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Union[str, Sequence[Any], None] = None,
        option_string: Optional[str] = None,
    ) -> None:
        page(parser.format_help(), True)
        parser.exit()


def create_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description='Manage UEFI boot entries, signed boot images and Secure Boot keys',
        usage='\n  '
        + textwrap.dedent("""\
          efikit {b}bootctl{e} install|update [CONFIG] [options…]
            efikit {b}bootctl{e} rm-entry TITLE
            efikit {b}bootctl{e} list
            efikit {b}keys{e} create [more] | install | activate usermode | list
            efikit {b}uefi{e} status | boot2setup
        """).format(b=Style.bold, e=Style.reset),
        allow_abbrev=False,
        add_help=False,
        epilog='\n  '.join(('config file:', *config_example())),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    for item in CONFIG_ITEMS:
        item.add_to(p)

    # Suppress printing of usage synopsis on errors
    p.error = lambda message: p.exit(2, f'{p.prog}: error: {message}\n')  # type: ignore

    # Make --help paged
    p.add_argument(
        '-h', '--help',
        action=PagerHelpAction,
        help='show this help message and exit',
    )  # fmt: skip

    return p


def finalize_command(opts: argparse.Namespace) -> None:
    if len(opts.positional) < 2:
        raise ValueError('A command is required, e.g. "bootctl install"')

    group, command, *args = opts.positional
    if command not in COMMANDS.get(group, ()):
        raise ValueError(f'Unknown command: {group} {command}')
    opts.verb = (group, command)

    opts.config_file = None
    opts.title = None
    opts.more = False

    if group == 'bootctl' and command in ('install', 'update'):
        if len(args) > 1:
            raise ValueError(f'bootctl {command} takes at most one configuration file')
        opts.config_file = Path(args[0]) if args else None
    elif opts.verb == ('bootctl', 'rm-entry'):
        if len(args) != 1:
            raise ValueError('bootctl rm-entry requires exactly one TITLE')
        opts.title = args[0]
    elif opts.verb == ('keys', 'create'):
        if args not in ([], ['more']):
            raise ValueError('keys create takes only the optional argument "more"')
        opts.more = bool(args)
    elif opts.verb == ('keys', 'activate'):
        if args != ['usermode']:
            raise ValueError('Only "keys activate usermode" is supported')
    elif args:
        raise ValueError(f'{group} {command} takes no arguments')


def finalize_options(opts: argparse.Namespace) -> None:
    finalize_command(opts)

    if opts.yes and opts.no_db:
        raise ValueError('--yes and --no-db cannot be used together')

    opts.tools = opts.tools or []

    if opts.config_dir is None:
        opts.config_dir = Path('/etc/efikit/boot.d')
    if opts.key_dir is None:
        opts.key_dir = Path('/etc/efikit/keys')
    if opts.efivars_dir is None:
        opts.efivars_dir = Path('/sys/firmware/efi/efivars')
    if opts.validity is None:
        opts.validity = DEFAULT_VALIDITY_DAYS
    if opts.validity <= 0:
        raise ValueError('--validity= must be a positive number of days')

    if opts.os_release is None:
        p = Path('/etc/os-release')
        if not p.exists():
            p = Path('/usr/lib/os-release')
        opts.os_release = p

    # Only needed, and only guessable, when actually building images.
    if opts.stub is None and opts.verb in (('bootctl', 'install'), ('bootctl', 'update')):
        opts.stub = Path(f'/usr/lib/systemd/boot/efi/linux{guess_efi_arch()}.efi.stub')

    if opts.verb == ('keys', 'create') and not opts.common_name:
        opts.common_name = default_common_name()


def parse_args(args: Optional[list[str]] = None) -> argparse.Namespace:
    opts = create_parser().parse_args(args)
    apply_config(opts)
    finalize_options(opts)
    return opts


def make_resolver(opts: argparse.Namespace) -> DiskResolver:
    return DiskResolver(BlockTopology(tools=opts.tools))


def make_entry_manager(opts: argparse.Namespace) -> BootEntryManager:
    return BootEntryManager(EfiBootMgr(opts.tools), make_resolver(opts))


def make_key_manager(opts: argparse.Namespace) -> KeyLifecycleManager:
    return KeyLifecycleManager(
        opts.key_dir,
        EfiTools(opts.tools),
        FirmwareVariableAccessor(EfiVarStore(opts.efivars_dir)),
    )


def bootctl_install(opts: argparse.Namespace, files_only: bool) -> bool:
    builder = BootImageBuilder(
        resolver=make_resolver(opts),
        signtool=SignTool.from_string('sbsign', opts.tools),
        stub=opts.stub,
        os_release=opts.os_release,
        key_dir=opts.key_dir,
    )
    reconciler = ConfigSetReconciler(
        builder,
        entries=None if files_only else make_entry_manager(opts),
        files_only=files_only,
    )

    if opts.config_file:
        reconciler.reconcile_file(opts.config_file)
        return True
    return reconciler.reconcile_directory(opts.config_dir)


def bootctl_list(opts: argparse.Namespace) -> None:
    state = make_entry_manager(opts).bootmgr.state()
    for entry in state.entries:
        print(f'Boot{entry.boot_number}{"*" if entry.active else " "} {entry.label}')
    print(f'BootOrder: {",".join(state.order)}')


def confirm_db(opts: argparse.Namespace) -> bool:
    if opts.yes:
        return True
    if opts.no_db:
        return False
    if not sys.stdin.isatty():
        raise ValidationError('Not asking whether to enroll DB without a terminal, pass --yes or --no-db')

    answer = input('Enroll the DB certificate as well? Firmware may stop booting other vendors\' images. [y/N] ')
    return answer.strip().lower() in ('y', 'yes')


def uefi_status(opts: argparse.Namespace) -> None:
    firmware = FirmwareVariableAccessor(EfiVarStore(opts.efivars_dir))
    enabled = firmware.secure_boot_enabled()
    print(f'SecureBoot: {"enabled" if enabled else "disabled"}')

    try:
        mode = 'SetupMode' if firmware.setup_mode() else 'UserMode'
    except FirmwareVariableError as e:
        log.debug('%s', e)
        mode = 'unknown'
    print(f'Mode: {mode}')


def run_command(opts: argparse.Namespace) -> bool:
    verb = opts.verb

    if verb == ('bootctl', 'install'):
        return bootctl_install(opts, files_only=False)
    elif verb == ('bootctl', 'update'):
        return bootctl_install(opts, files_only=True)
    elif verb == ('bootctl', 'rm-entry'):
        make_entry_manager(opts).remove(opts.title)
    elif verb == ('bootctl', 'list'):
        bootctl_list(opts)
    elif verb == ('keys', 'create'):
        make_key_manager(opts).create_keys(opts.common_name, more=opts.more, validity=opts.validity)
    elif verb == ('keys', 'install'):
        manager = make_key_manager(opts)
        manager.require_setup_mode('enroll keys')
        manager.enroll_personal_keys(include_db=confirm_db(opts))
    elif verb == ('keys', 'activate'):
        state = make_key_manager(opts).activate_user_mode()
        print(f'Firmware is in {state}')
    elif verb == ('keys', 'list'):
        print(make_key_manager(opts).list_keys(), end='')
    elif verb == ('uefi', 'status'):
        uefi_status(opts)
    elif verb == ('uefi', 'boot2setup'):
        FirmwareVariableAccessor(EfiVarStore(opts.efivars_dir)).request_boot_to_setup()
    else:
        assert False, verb

    return True


def main(args: Optional[list[str]] = None) -> None:
    try:
        opts = parse_args(args)
    except (ValueError, OSError, configparser.Error) as e:
        print(f'efikit: error: {e}', file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=logging.DEBUG if opts.verbose else logging.INFO,
        stream=sys.stderr,
        format='%(message)s',
    )

    if opts.summary:
        pprint.pprint(vars(opts))
        return

    try:
        ok = run_command(opts)
    except EfikitError as e:
        log.error('%s', e)
        sys.exit(1)

    if not ok:
        sys.exit(1)


if __name__ == '__main__':
    main()
