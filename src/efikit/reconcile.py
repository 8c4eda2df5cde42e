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

import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Optional, Union

from efikit.bootmgr import BootEntryManager
from efikit.config import BootConfig, list_config_files, load_boot_config
from efikit.errors import PEError, ValidationError
from efikit.image import BootImageBuilder, BuiltImage

log = logging.getLogger(__name__)


def processing_order(paths: Iterable[Path]) -> list[Path]:
    """Order in which records have to be applied so that BootOrder follows file names.

    Creating a boot entry puts it at the front of BootOrder, so the record
    that should end up first has to be created last. Files are therefore
    processed in reverse lexicographic order of their names.
    """
    return sorted(paths, key=lambda p: p.name, reverse=True)


class ConfigSetReconciler:
    def __init__(
        self,
        builder: BootImageBuilder,
        entries: Optional[BootEntryManager] = None,
        files_only: bool = False,
    ) -> None:
        if entries is None and not files_only:
            raise ValueError('A boot entry manager is required unless only files are updated')
        self.builder = builder
        self.entries = entries
        self.files_only = files_only

    def apply(self, config: BootConfig) -> BuiltImage:
        config.check_title()

        log.info('Processing %s', config)
        image = self.builder.build(config)

        if self.files_only:
            log.debug('Leaving boot entries alone for %r', config.title)
            return image

        # Only touch the firmware once the image exists.
        assert self.entries is not None
        self.entries.remove(config.title)
        self.entries.add(config.title, image.path, image.options)
        return image

    def reconcile_file(self, path: Union[str, Path]) -> BuiltImage:
        return self.apply(load_boot_config(path))

    def reconcile_directory(self, directory: Union[str, Path]) -> bool:
        """Apply every record in ``directory``. Returns False if any record was skipped.

        A record that fails validation is skipped and the remaining ones are
        still processed. Anything else aborts the run, records that were
        already applied stay applied.
        """
        skipped = []

        for path in processing_order(list_config_files(directory)):
            try:
                self.reconcile_file(path)
            except PEError:
                raise
            except ValidationError as e:
                log.error('Skipping %s: %s', path, e)
                skipped += [path]

        if skipped:
            log.warning('%d configuration(s) skipped: %s', len(skipped), ', '.join(p.name for p in skipped))
        return not skipped
