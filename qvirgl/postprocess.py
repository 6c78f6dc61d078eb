# Post-processing of installed executables.
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
This module contains the binary post-processor, which records the runtime library
search paths in the installed executables (``LC_RPATH`` load commands), so that they
find the libraries in the install prefix and in Mesa without ``DYLD_LIBRARY_PATH``.
"""

import logging
import os
import os.path as path
import re
import typing as T

if T.TYPE_CHECKING:
    from qvirgl.data.config import BuildConfig
    from qvirgl.utils.proc import CommandRunner

logger = logging.getLogger(__name__)

MACHO_MAGICS = frozenset(
    (
        b"\xfe\xed\xfa\xce",
        b"\xce\xfa\xed\xfe",
        b"\xfe\xed\xfa\xcf",
        b"\xcf\xfa\xed\xfe",
        # Universal binaries.
        b"\xca\xfe\xba\xbe",
        b"\xbe\xba\xfe\xca",
    )
)

_RPATH_PATH_RE = re.compile(r"^\s*path (?P<path>.*) \(offset \d+\)\s*$")


def is_macho(fpath: str) -> bool:
    """``True`` iff ``fpath`` starts with a Mach-O (or universal binary) magic."""
    try:
        with open(fpath, "rb") as f:
            return f.read(4) in MACHO_MAGICS
    except OSError:
        return False


def parse_rpaths(otool_output: str) -> list[str]:
    """
    Extracts the ``LC_RPATH`` entries, in order, from the output of ``otool -l``.
    """
    rpaths = []
    in_rpath = False
    for line in otool_output.splitlines():
        stripped = line.strip()
        if stripped.startswith("cmd "):
            in_rpath = stripped == "cmd LC_RPATH"
            continue
        if not in_rpath:
            continue
        match = _RPATH_PATH_RE.match(line)
        if match:
            rpaths.append(match.group("path"))
            in_rpath = False
    return rpaths


class PostProcessor:
    """
    Adds missing ``LC_RPATH`` entries to the executables in the install prefix.  Reads
    existing entries first, so repeated runs converge instead of accumulating
    duplicates.
    """

    def __init__(
        self, config: "BuildConfig", runner: "CommandRunner", rpaths: T.Sequence[str]
    ) -> None:
        self.config = config
        self.runner = runner
        self.rpaths = list(dict.fromkeys(rpaths))

    def executables(self) -> list[str]:
        """Mach-O executables installed in the ``bin`` directory of the prefix."""
        bin_dir = path.join(self.config.prefix, "bin")
        try:
            names = sorted(os.listdir(bin_dir))
        except FileNotFoundError:
            return []
        return [
            fpath
            for fpath in (path.join(bin_dir, name) for name in names)
            if path.isfile(fpath)
            and not path.islink(fpath)
            and os.access(fpath, os.X_OK)
            and is_macho(fpath)
        ]

    async def current_rpaths(self, executable: str) -> list[str]:
        output = await self.runner.output(self.config.host.otool, "-l", executable)
        return parse_rpaths(output.decode(errors="replace"))

    async def process(self, executable: str) -> list[str]:
        """
        Adds the missing search paths to ``executable``.

        Returns:
          The search paths that were added.
        """
        host = self.config.host
        existing = await self.current_rpaths(executable)
        missing = [rpath for rpath in self.rpaths if rpath not in existing]
        for rpath in missing:
            await self.runner.run(host.install_name_tool, "-add_rpath", rpath, executable)
        if missing:
            # Editing load commands invalidates the signature.  Keep the entitlements,
            # QEMU needs the hypervisor one for HVF.
            await self.runner.run(
                host.codesign,
                "--force",
                "--sign",
                "-",
                "--preserve-metadata=entitlements",
                executable,
            )
            logger.info("added rpaths %r to %s", missing, executable)
        else:
            logger.debug("%s already has all rpaths", executable)
        return missing

    async def run(self, executables: T.Iterable[str] | None = None) -> dict[str, list[str]]:
        """
        Processes ``executables``, or every executable in the prefix if ``None``.

        Returns:
          A mapping from each executable to the search paths added to it.
        """
        if executables is None:
            executables = self.executables()
        return {executable: await self.process(executable) for executable in executables}
