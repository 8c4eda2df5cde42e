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

from pathlib import Path
from typing import Optional, Union


class EfikitError(Exception):
    pass


class ValidationError(EfikitError):
    """Bad input: an empty label, a missing file, a malformed record."""


class EmptyLabelError(ValidationError):
    def __init__(self) -> None:
        super().__init__('Boot entry label must not be empty')


class InputNotFoundError(ValidationError):
    def __init__(self, path: Union[str, Path], what: str = 'Input file') -> None:
        super().__init__(f'{what} {path} does not exist')
        self.path = Path(path)


class PEError(ValidationError):
    pass


class MissingKeyError(ValidationError):
    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(f'Key material {path} not found, run "keys create" first')
        self.path = Path(path)


class ResolutionError(EfikitError):
    pass


class PathNotFoundError(ResolutionError):
    pass


class DeviceResolutionError(ResolutionError):
    pass


class ToolchainError(EfikitError):
    def __init__(self, message: str, stderr: Optional[str] = None) -> None:
        if stderr:
            message = f'{message}: {stderr.strip()}'
        super().__init__(message)
        self.stderr = stderr


class ToolNotFoundError(ToolchainError):
    pass


class SigningFailedError(ToolchainError):
    pass


class UnsupportedFeatureError(EfikitError):
    pass


class KeysExistError(EfikitError):
    pass


class TrustStateError(EfikitError):
    pass


class EnrollmentOrderError(EfikitError):
    pass


class FirmwareVariableError(EfikitError):
    pass
