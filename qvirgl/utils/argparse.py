# Common argument parsing code.
# Copyright (C) 2025  qvirgl contributors

# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published
# by the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.

# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <http://www.gnu.org/licenses/>.

"""
This module contains a few utilities used with :py:mod:`argparse` in a few
places.
"""

import argparse


def create_root_parser(description: str, prog: str | None = None) -> argparse.ArgumentParser:
    """
    Creates a root :py:class:`argparse.ArgumentParser` with some standard flags
    and configuration.
    """
    from qvirgl import __version__

    parser = argparse.ArgumentParser(prog=prog, description=description)
    parser.add_argument(
        "--version",
        action="version",
        version=f"""\
qvirgl v{__version__}

Copyright (C) 2025 qvirgl contributors
License AGPLv3+: GNU AGPL version 3 or later <https://gnu.org/licenses/agpl.html>.
This is free software: you are free to change and redistribute it.
There is NO WARRANTY, to the extent permitted by law.
""",
    )

    return parser
