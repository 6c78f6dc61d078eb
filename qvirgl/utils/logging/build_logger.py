# Logger for build-related output, made to redirect into build logs.
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
This module contains a convenient logger used for logging build-specific logs.
"""

import typing as T
from datetime import datetime, timezone

from . import LOG_TS_FORMAT


class BuildLogger:
    """
    A logger for formatting and printing progress of the build pipeline, interleaved
    with the output of the native tools it runs.

    API is inspired by stdlib logging, but far less flexible.
    """

    def __init__(self, out_stream: T.TextIO) -> None:
        """
        Args:
          out_stream: Where to write the formatted output.
        """
        self.out_stream = out_stream
        """
        Where to write the formatted output.

        Subprocess output is redirected here too, so this must be backed by a real file
        descriptor when native tools are run.
        """

    def _log(self, level: T.Literal["INFO", "WARN", "ERROR"], message: str) -> None:
        now_ts = datetime.now(timezone.utc)
        print(
            f"[qvirgl @ {now_ts.strftime(LOG_TS_FORMAT)} {level:>5}] {message}",
            file=self.out_stream,
            flush=True,
        )

    def info(self, message: str) -> None:
        """Logs an informative message."""
        self._log("INFO", message)

    def warning(self, message: str) -> None:
        """Logs a warning."""
        self._log("WARN", message)

    def error(self, message: str) -> None:
        """Logs an error message."""
        self._log("ERROR", message)

    def section(self, title: str) -> None:
        """Prints a banner separating the output of two stages."""
        print(f"\n==> {title}", file=self.out_stream, flush=True)
