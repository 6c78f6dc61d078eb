# Error taxonomy.
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
This module contains the exceptions raised while building.

Only :py:class:`RewriteMiss` is ever absorbed by the pipeline, and then only for
corrections that do not ask for escalation.  Everything else reaches the operator.
"""

import shlex
import typing as T
from subprocess import CalledProcessError


class QvirglError(Exception):
    """Base class of all errors the pipeline reports to the operator."""


class PatchConflict(QvirglError):
    """
    Raised when a patch can neither be applied nor be detected as applied, meaning that
    the source tree diverged from what the patch expects.
    """

    def __init__(self, patch: str, precondition: str) -> None:
        super().__init__(f"patch {patch!r} conflicts: expected {precondition}")
        self.patch = patch
        self.precondition = precondition


class RewriteMiss(QvirglError):
    """
    Raised when a build graph correction whose miss policy is escalation found nothing
    to correct.
    """

    def __init__(self, correction: str, detail: str) -> None:
        super().__init__(f"correction {correction!r} matched nothing: {detail}")
        self.correction = correction
        self.detail = detail


class NativeBuildFailure(CalledProcessError, QvirglError):
    """
    Raised when a native tool (generator, executor, or a host utility) exits with a
    non-zero status.  The tool output was already streamed into the build log.
    """

    def __init__(self, returncode: int, cmd: T.Sequence[str]) -> None:
        super().__init__(returncode, list(cmd))

    def __str__(self) -> str:
        return f"command {shlex.join(self.cmd)} exited with status {self.returncode}"


class MissingPrerequisite(QvirglError):
    """
    Raised before any stage work begins when a source checkout or a host tool is
    missing.
    """

    def __init__(self, what: str, hint: str | None = None) -> None:
        message = f"missing prerequisite: {what}"
        if hint:
            message += f" ({hint})"
        super().__init__(message)
        self.what = what
        self.hint = hint


class StageFailure(QvirglError):
    """
    Wraps a fatal error raised inside a stage with the name of the stage and the step
    that failed.
    """

    def __init__(self, stage: str, step: str, cause: BaseException) -> None:
        super().__init__(f"stage {stage} failed at step {step!r}: {cause}")
        self.stage = stage
        self.step = step
        self.cause = cause
