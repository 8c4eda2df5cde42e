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

# pylint: disable=missing-docstring,consider-using-with

import dataclasses
import logging
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Optional

import pefile  # type: ignore

from efikit.config import BootConfig, Variant
from efikit.disk import DiskResolver
from efikit.errors import InputNotFoundError, MissingKeyError, PEError
from efikit.signing import SignTool
from efikit.util import round_up, temporary_umask

log = logging.getLogger(__name__)

# Where systemd-stub expects to find its payload. The kernel gets a large gap
# before .initrd so that big kernels fit without moving anything.
SECTION_OFFSETS = {
    '.osrel':   0x20000,
    '.cmdline': 0x30000,
    '.linux':   0x2000000,
    '.initrd':  0x3000000,
}  # fmt: skip


@dataclasses.dataclass
class Section:
    name: str
    content: Path
    offset: int

    @classmethod
    def create(cls, name: str, content: Path) -> 'Section':
        return cls(name, content, SECTION_OFFSETS[name])


@dataclasses.dataclass
class UKI:
    executable: Path
    sections: list[Section] = dataclasses.field(default_factory=list, init=False)

    def add_section(self, section: Section) -> None:
        if any(section.name == s.name for s in self.sections):
            raise ValueError(f'Duplicate section {section.name}')
        if self.sections and section.offset <= self.sections[-1].offset:
            raise ValueError(f'Section {section.name} must be added in ascending offset order')

        self.sections += [section]


def join_initrds(initrds: Sequence[Path], output: Path) -> None:
    with output.open('wb') as f:
        for file in initrds:
            initrd = file.read_bytes()
            n = len(initrd)
            f.write(initrd)
            f.write(b'\0' * (round_up(n, 4) - n))  # pad to 32 bit alignment


def pe_strip_section_name(name: bytes) -> str:
    return name.rstrip(b'\x00').decode()


def pe_add_sections(uki: UKI, output: Path) -> None:
    pe = pefile.PE(uki.executable, fast_load=True)

    # Old stubs do not have the symbol/string table stripped, even though image files should not have one.
    if symbol_table := pe.FILE_HEADER.PointerToSymbolTable:
        symbol_table_size = 18 * pe.FILE_HEADER.NumberOfSymbols
        if string_table_size := pe.get_dword_from_offset(symbol_table + symbol_table_size):
            symbol_table_size += string_table_size

        # Let's be safe and only strip it if it's at the end of the file.
        if symbol_table + symbol_table_size == len(pe.__data__):
            pe.__data__ = pe.__data__[:symbol_table]
            pe.FILE_HEADER.PointerToSymbolTable = 0
            pe.FILE_HEADER.NumberOfSymbols = 0
            pe.FILE_HEADER.IMAGE_FILE_LOCAL_SYMS_STRIPPED = True

    # Old stubs might have been stripped, leading to unaligned raw data values, so let's fix them up here.
    # pylint: disable=no-member

    for i, section in enumerate(pe.sections):
        oldp = section.PointerToRawData
        oldsz = section.SizeOfRawData
        section.PointerToRawData = round_up(oldp, pe.OPTIONAL_HEADER.FileAlignment)
        section.SizeOfRawData = round_up(oldsz, pe.OPTIONAL_HEADER.FileAlignment)
        padp = section.PointerToRawData - oldp
        padsz = section.SizeOfRawData - oldsz

        for later_section in pe.sections[i + 1 :]:
            later_section.PointerToRawData += padp + padsz

        pe.__data__ = (
            pe.__data__[:oldp]
            + bytes(padp)
            + pe.__data__[oldp : oldp + oldsz]
            + bytes(padsz)
            + pe.__data__[oldp + oldsz :]
        )

    # Make room for the new section headers: everything before the first section's
    # data is unused, so SizeOfHeaders can grow up to the next file alignment boundary.
    pe.OPTIONAL_HEADER.SizeOfHeaders = round_up(
        pe.OPTIONAL_HEADER.SizeOfHeaders, pe.OPTIONAL_HEADER.FileAlignment
    )
    pe = pefile.PE(data=pe.write(), fast_load=True)

    warnings = pe.get_warnings()
    if warnings:
        raise PEError(f'pefile warnings treated as errors: {warnings}')

    security = pe.OPTIONAL_HEADER.DATA_DIRECTORY[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_SECURITY']]
    if security.VirtualAddress != 0:
        raise PEError('Stub image is signed, refusing.')

    for section in uki.sections:
        new_section = pefile.SectionStructure(pe.__IMAGE_SECTION_HEADER_format__, pe=pe)
        new_section.__unpack__(b'\0' * new_section.sizeof())

        offset = pe.sections[-1].get_file_offset() + new_section.sizeof()
        if offset + new_section.sizeof() > pe.OPTIONAL_HEADER.SizeOfHeaders:
            raise PEError(f'Not enough header space to add section {section.name}.')

        data = section.content.read_bytes()

        # The payload addresses are fixed, so the image so far has to end below them.
        image_end = round_up(
            pe.sections[-1].VirtualAddress + pe.sections[-1].Misc_VirtualSize,
            pe.OPTIONAL_HEADER.SectionAlignment,
        )
        if section.offset % pe.OPTIONAL_HEADER.SectionAlignment:
            raise PEError(f'Section {section.name} offset 0x{section.offset:x} is not section aligned.')
        if section.offset < image_end:
            raise PEError(
                f'Section {section.name} at 0x{section.offset:x} overlaps '
                f'{pe_strip_section_name(pe.sections[-1].Name)} ending at 0x{image_end:x}.'
            )

        new_section.set_file_offset(offset)
        new_section.Name = section.name.encode()
        new_section.Misc_VirtualSize = len(data)
        new_section.PointerToRawData = round_up(len(pe.__data__), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.SizeOfRawData = round_up(len(data), pe.OPTIONAL_HEADER.FileAlignment)
        new_section.VirtualAddress = section.offset

        new_section.IMAGE_SCN_MEM_READ = True
        if section.name == '.linux':
            # Old kernels that use EFI handover protocol will be executed inline.
            new_section.IMAGE_SCN_CNT_CODE = True
        else:
            new_section.IMAGE_SCN_CNT_INITIALIZED_DATA = True

        pe.__data__ = (
            pe.__data__[:]
            + bytes(new_section.PointerToRawData - len(pe.__data__))
            + data
            + bytes(new_section.SizeOfRawData - len(data))
        )

        pe.FILE_HEADER.NumberOfSections += 1
        pe.OPTIONAL_HEADER.SizeOfInitializedData += new_section.Misc_VirtualSize
        pe.__structures__.append(new_section)
        pe.sections.append(new_section)

    pe.OPTIONAL_HEADER.CheckSum = 0
    pe.OPTIONAL_HEADER.SizeOfImage = round_up(
        pe.sections[-1].VirtualAddress + pe.sections[-1].Misc_VirtualSize,
        pe.OPTIONAL_HEADER.SectionAlignment,
    )

    pe.write(str(output))


@dataclasses.dataclass(frozen=True)
class BuiltImage:
    path: Path
    options: Optional[str] = None


def check_exists(paths: Sequence[Optional[Path]], what: str = 'Input file') -> None:
    for path in paths:
        if path is None or not path.exists():
            raise InputNotFoundError(path or '(unset)', what)


class BootImageBuilder:
    def __init__(
        self,
        resolver: DiskResolver,
        signtool: SignTool,
        stub: Path,
        os_release: Path,
        key_dir: Path,
    ) -> None:
        self.resolver = resolver
        self.signtool = signtool
        self.stub = stub
        self.os_release = os_release
        self.key_dir = key_dir

    def build(self, config: BootConfig) -> BuiltImage:
        if config.variant == Variant.STANDARD:
            return self.build_standard(config)
        if config.variant == Variant.GENERIC_EFI:
            return self.build_generic(config)
        if config.variant == Variant.SIGNED_STUB:
            return self.build_signed(config)
        assert False, config.variant

    def build_standard(self, config: BootConfig) -> BuiltImage:
        assert config.esp_dir is not None
        assert config.kernel is not None

        check_exists([config.kernel, *config.initrds])
        check_exists([config.esp_dir], 'ESP directory')

        for file in (config.kernel, *config.initrds):
            log.info('Copying %s to %s', file, config.esp_dir)
            shutil.copyfile(file, config.esp_dir / file.name)

        placement = self.resolver.resolve(config.esp_dir)
        options = ' '.join(
            [f'initrd={placement.loader(initrd.name)}' for initrd in config.initrds]
            + ([config.options] if config.options else [])
        )

        return BuiltImage(config.esp_dir / config.kernel.name, options or None)

    def build_generic(self, config: BootConfig) -> BuiltImage:
        assert config.target is not None

        check_exists([config.target], 'EFI image')
        return BuiltImage(config.target, config.options or None)

    def signing_key(self) -> tuple[Path, Path]:
        key, cert = self.key_dir / 'DB.key', self.key_dir / 'DB.pem'
        for path in (key, cert):
            if not path.exists():
                raise MissingKeyError(path)
        return key, cert

    def build_signed(self, config: BootConfig) -> BuiltImage:
        assert config.target is not None
        assert config.kernel is not None

        check_exists([config.kernel, *config.initrds])
        check_exists([self.stub], 'EFI stub')
        check_exists([self.os_release], 'os-release file')
        check_exists([config.target.parent], 'Output directory')
        key, cert = self.signing_key()

        with tempfile.TemporaryDirectory(prefix='efikit-') as tmpdir:
            tmp = Path(tmpdir)

            with temporary_umask(0o077):
                cmdline = tmp / 'cmdline'
                cmdline.write_text(config.options)

                uki = UKI(self.stub)
                uki.add_section(Section.create('.osrel', self.os_release))
                uki.add_section(Section.create('.cmdline', cmdline))
                # The kernel is sized by its file contents. Its own SizeOfImage covers the
                # decompression footprint, which the kernel allocates for itself.
                uki.add_section(Section.create('.linux', config.kernel))
                if config.initrds:
                    initrd = tmp / 'initrd'
                    join_initrds(config.initrds, initrd)
                    uki.add_section(Section.create('.initrd', initrd))

                unsigned = tmp / 'unsigned.efi'
                pe_add_sections(uki, unsigned)

                signed = tmp / 'signed.efi'
                self.signtool.sign(unsigned, signed, key, cert)

            shutil.copyfile(signed, config.target)

        log.info('Wrote signed %s', config.target)
        return BuiltImage(config.target)
