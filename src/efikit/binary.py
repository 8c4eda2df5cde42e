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

"""Little-endian encoding of the fixed-width integers found in EFI variables."""

import struct

U32 = struct.Struct('<I')
U64 = struct.Struct('<Q')


def _pack(fmt: struct.Struct, value: int) -> bytes:
    try:
        return fmt.pack(value)
    except struct.error as e:
        raise ValueError(f'{value} does not fit in {fmt.size * 8} bits') from e


def _unpack(fmt: struct.Struct, data: bytes, offset: int) -> int:
    if len(data) < offset + fmt.size:
        raise ValueError(f'Need {fmt.size} bytes at offset {offset}, buffer has {len(data)}')
    return fmt.unpack_from(data, offset)[0]


def encode_u32le(value: int) -> bytes:
    return _pack(U32, value)


def decode_u32le(data: bytes, offset: int = 0) -> int:
    return _unpack(U32, data, offset)


def encode_u64le(value: int) -> bytes:
    return _pack(U64, value)


def decode_u64le(data: bytes, offset: int = 0) -> int:
    return _unpack(U64, data, offset)


def set_bit(value: int, bit: int) -> int:
    if not 0 <= bit < 64:
        raise ValueError(f'Bit index {bit} out of range')
    return value | (1 << bit)
