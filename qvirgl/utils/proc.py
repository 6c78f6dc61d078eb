# Utilities for dealing with processes.
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
This module contains utilities for executing subprocesses.
"""

import asyncio
import os
import shlex
import typing as T

from qvirgl.errors import NativeBuildFailure

if T.TYPE_CHECKING:
    from .fs import AnyPath
    from .logging.build_logger import BuildLogger


def merge_env(env: dict[str, str]) -> dict[str, str]:
    """Gets the current :py:data:`os.environ`, modified with ``env``."""
    environ = os.environ.copy()
    environ.update(env)
    return environ


async def do_command(
    log_stream: "BuildLogger",
    *args: str,
    env: dict[str, str] | None = None,
    cwd: T.Optional["AnyPath"] = None,
) -> None:
    """
    Runs a subprocess, sending its output into the build log, and throwing an exception
    if it fails.

    Raises:
      NativeBuildFailure: if the process exits with a non-zero status.
    """
    log_stream.info(f"Running command {shlex.join(args)} (env={env!r}, cwd={cwd!r})")
    environ = env and merge_env(env)
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        env=environ,
        cwd=cwd,
        stdout=log_stream.out_stream,
        stderr=asyncio.subprocess.STDOUT,
    )
    rc = await proc.wait()
    log_stream.info(f"Exit code: {rc}")
    if rc != 0:
        raise NativeBuildFailure(rc, args)


async def get_command_output(
    log_stream: "BuildLogger",
    *args: str,
    env: dict[str, str] | None = None,
    cwd: T.Optional["AnyPath"] = None,
) -> bytes:
    """
    Runs a subprocess, collecting its output, and throwing an exception if it fails.
    Standard error still goes into the build log.
    """
    log_stream.info(f"Capturing command {shlex.join(args)} (env={env!r}, cwd={cwd!r})")
    environ = env and merge_env(env)
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=log_stream.out_stream,
        env=environ,
        cwd=cwd,
    )
    (stdout, _) = await proc.communicate()
    rc = proc.returncode
    assert rc is not None
    log_stream.info(f"Exit code: {rc}")
    if rc != 0:
        raise NativeBuildFailure(rc, args)
    return stdout


class CommandRunner:
    """
    Seam through which the pipeline starts native tools.  Binds a build log so that
    callers only name the command.  Tests substitute a recording implementation.
    """

    def __init__(self, log_stream: "BuildLogger") -> None:
        self.log_stream = log_stream

    async def run(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        cwd: T.Optional["AnyPath"] = None,
    ) -> None:
        """See :py:func:`do_command`."""
        await do_command(self.log_stream, *args, env=env, cwd=cwd)

    async def output(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        cwd: T.Optional["AnyPath"] = None,
    ) -> bytes:
        """See :py:func:`get_command_output`."""
        return await get_command_output(self.log_stream, *args, env=env, cwd=cwd)
