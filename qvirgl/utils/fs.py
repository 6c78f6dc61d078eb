# Filesystem utilities.
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
This package contains utilities used for dealing with the filesystem.
"""

import contextlib
import os
import os.path as path
import shutil
import stat
import tempfile
import typing as T

AnyPath: T.TypeAlias = os.PathLike[str] | str


@contextlib.contextmanager
def atomic_write_open(
    fpath: AnyPath, mode: str = "w", permissions: int | None = None
) -> T.Generator[T.IO[T.Any], None, None]:
    """
    Opens a temporary file next to ``fpath`` that replaces ``fpath`` once the block
    exits without an exception.  On failure, ``fpath`` is left untouched.

    Args:
      fpath: The file to replace.
      mode: Mode to open the temporary file in.
      permissions: Permission bits of the new file.  If ``None``, the permissions of
                   the existing file are kept, or ``0o644`` used for a new file.
    """
    path_dir = path.dirname(path.abspath(fpath))
    if permissions is None:
        try:
            permissions = stat.S_IMODE(os.stat(fpath).st_mode)
        except FileNotFoundError:
            permissions = 0o644
    with tempfile.NamedTemporaryFile(prefix=".", dir=path_dir, delete=False, mode=mode) as f:
        try:
            yield f
            f.flush()
            os.fchmod(f.fileno(), permissions)
        except BaseException:
            os.unlink(f.name)
            raise
    os.rename(f.name, fpath)


def atomic_write_text(fpath: AnyPath, content: str, permissions: int | None = None) -> None:
    """Atomically replaces the contents of ``fpath`` with ``content``."""
    with atomic_write_open(fpath, "w", permissions) as f:
        f.write(content)


def read_text_or_none(fpath: AnyPath) -> str | None:
    """Returns the contents of ``fpath``, or ``None`` if it does not exist."""
    try:
        with open(fpath, "r") as f:
            return f.read()
    except FileNotFoundError:
        return None


def remove_tree(fpath: AnyPath) -> bool:
    """
    Removes the directory tree at ``fpath`` if it exists.

    Returns:
      ``True`` if something was removed.
    """
    if not path.lexists(fpath):
        return False
    if path.isdir(fpath) and not path.islink(fpath):
        shutil.rmtree(fpath)
    else:
        os.unlink(fpath)
    return True
