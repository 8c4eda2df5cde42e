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

from efikit.cli import main

if __name__ == '__main__':
    main()
