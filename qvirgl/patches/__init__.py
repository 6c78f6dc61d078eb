# Idempotent source patches.
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
This module contains the patch model and the patch applier.

A :py:class:`Patch` is a named group of :py:class:`Edit` objects, each transforming one
file.  Edits do not touch the filesystem by themselves: they are pure predicates and
transformations over file contents, with ``None`` standing for an absent file.  This
lets the applier decide, before writing anything, whether a patch is already applied,
can be applied, or conflicts with the tree it is pointed at.

Re-running the pipeline over a partially built tree relies on that three-way decision:
an already applied patch is skipped, never re-applied on top of itself.
"""

import dataclasses
import enum
import importlib.resources
import logging
import os
import os.path as path
import re
import typing as T
from abc import ABC, abstractmethod

import qvirgl.utils.fs as qvu_fs
from qvirgl.errors import PatchConflict

if T.TYPE_CHECKING:
    from qvirgl.stages import Stage

logger = logging.getLogger(__name__)

GENERATED_MARKER = "generated by qvirgl"
"""Present in every file shipped in :py:mod:`qvirgl.compat`."""


class PatchState(enum.Enum):
    """Possible outcomes of classifying a patch (or a single edit) against a tree."""

    ALREADY_APPLIED = "ALREADY_APPLIED"
    """The transformed text is present.  Applying is a no-op."""
    APPLICABLE = "APPLICABLE"
    """The expected original text is present and intact."""
    CONFLICTING = "CONFLICTING"
    """Neither the original nor the transformed text is present."""


@dataclasses.dataclass(frozen=True)
class PatchContext:
    """Where the edits of a patch resolve their targets."""

    source_dir: str
    """Root of the project checkout."""
    compat_dir: str
    """Shared directory holding generated compatibility files."""


class Edit(ABC):
    """
    A transformation of a single file.  Implementations must guarantee that
    ``is_applied(transform(content))`` holds whenever ``is_applicable(content)`` does.
    """

    permissions: int | None = None
    """Permission bits of the written file, or ``None`` to keep the existing ones."""

    @abstractmethod
    def target(self, ctx: PatchContext) -> str:
        """Absolute path of the file this edit transforms."""

    @property
    @abstractmethod
    def precondition(self) -> str:
        """Human-readable description of what must be present for this edit to apply."""

    @abstractmethod
    def is_applied(self, content: str | None) -> bool:
        """``True`` iff ``content`` already carries this edit."""

    @abstractmethod
    def is_applicable(self, content: str | None) -> bool:
        """``True`` iff the original text this edit transforms is intact in ``content``."""

    @abstractmethod
    def transform(self, content: str | None) -> str:
        """Returns the transformed ``content``.  Only valid if applicable."""

    def classify(self, content: str | None) -> PatchState:
        if self.is_applied(content):
            return PatchState.ALREADY_APPLIED
        if self.is_applicable(content):
            return PatchState.APPLICABLE
        return PatchState.CONFLICTING


@dataclasses.dataclass(frozen=True)
class Substitute(Edit):
    """Replaces exact text in a file of the project checkout."""

    path: str
    """Path relative to the project source directory."""
    old: str
    new: str
    count: int = 1
    """Exact number of occurrences of ``old`` expected in an unpatched file."""

    def target(self, ctx: PatchContext) -> str:
        return path.join(ctx.source_dir, self.path)

    @property
    def precondition(self) -> str:
        return f"{self.count} occurrence(s) of {self.old!r} in {self.path}"

    def is_applied(self, content: str | None) -> bool:
        if content is None or self.new not in content:
            return False
        # When the replacement embeds the original, both are present after patching.
        return self.old in self.new or self.old not in content

    def is_applicable(self, content: str | None) -> bool:
        return content is not None and content.count(self.old) == self.count

    def transform(self, content: str | None) -> str:
        assert content is not None
        return content.replace(self.old, self.new)


@dataclasses.dataclass(frozen=True)
class RegexSubstitute(Edit):
    """
    Replaces text matching a pattern.  Since a replacement might still match the
    pattern, detection of an applied edit uses a separate ``applied_pattern``.
    """

    path: str
    pattern: str
    replacement: str
    applied_pattern: str
    count: int = 1

    def target(self, ctx: PatchContext) -> str:
        return path.join(ctx.source_dir, self.path)

    @property
    def precondition(self) -> str:
        return f"{self.count} match(es) of /{self.pattern}/ in {self.path}"

    def is_applied(self, content: str | None) -> bool:
        return content is not None and bool(re.search(self.applied_pattern, content, re.M))

    def is_applicable(self, content: str | None) -> bool:
        return content is not None and len(re.findall(self.pattern, content, re.M)) == self.count

    def transform(self, content: str | None) -> str:
        assert content is not None
        return re.sub(self.pattern, self.replacement, content, flags=re.M)


@dataclasses.dataclass(frozen=True)
class CompatFile(Edit):
    """
    Materializes one of the files shipped in :py:mod:`qvirgl.compat` in the compat
    directory.  ``@KEY@`` placeholders in the shipped file are replaced according to
    ``substitutions``.

    Shipped files carry :py:data:`GENERATED_MARKER`.  A file with the marker but
    different content was written by an earlier run with other settings (or by
    another qvirgl version) and is regenerated; a file without it belongs to someone
    else and conflicts.
    """

    name: str
    """Path relative to the compat directory."""
    resource: str
    """Name of the file in :py:mod:`qvirgl.compat`."""
    executable: bool = False
    substitutions: tuple[tuple[str, str], ...] = ()

    @property
    def permissions(self) -> int:  # type: ignore[override]
        return 0o755 if self.executable else 0o644

    @property
    def expected(self) -> str:
        text = importlib.resources.files("qvirgl.compat").joinpath(self.resource).read_text()
        for key, value in self.substitutions:
            text = text.replace(f"@{key}@", value)
        return text

    def target(self, ctx: PatchContext) -> str:
        return path.join(ctx.compat_dir, self.name)

    @property
    def precondition(self) -> str:
        return f"{self.name} to be absent or generated by qvirgl from {self.resource}"

    def is_applied(self, content: str | None) -> bool:
        return content == self.expected

    def is_applicable(self, content: str | None) -> bool:
        return content is None or GENERATED_MARKER in content

    def transform(self, content: str | None) -> str:
        return self.expected


@dataclasses.dataclass(frozen=True)
class Patch:
    """A named, idempotent transformation of one project's tree."""

    name: str
    stage: "Stage"
    description: str
    edits: tuple[Edit, ...]


@dataclasses.dataclass(frozen=True)
class Classification:
    """Result of classifying a patch."""

    state: PatchState
    edit_states: tuple[PatchState, ...]
    failed_precondition: str | None = None
    """For a conflicting patch, the precondition of the first conflicting edit."""


def classify_contents(patch: Patch, contents: T.Sequence[str | None]) -> Classification:
    """
    Classifies ``patch`` given the current contents of the targets of each of its edits,
    in order.  Does not touch the filesystem.
    """
    if len(contents) != len(patch.edits):
        raise ValueError(f"expected {len(patch.edits)} contents, got {len(contents)}")

    edit_states = tuple(edit.classify(content) for edit, content in zip(patch.edits, contents))
    for edit, state in zip(patch.edits, edit_states):
        if state is PatchState.CONFLICTING:
            return Classification(PatchState.CONFLICTING, edit_states, edit.precondition)
    if all(state is PatchState.ALREADY_APPLIED for state in edit_states):
        return Classification(PatchState.ALREADY_APPLIED, edit_states)
    return Classification(PatchState.APPLICABLE, edit_states)


def _read_targets(patch: Patch, ctx: PatchContext) -> list[str | None]:
    return [qvu_fs.read_text_or_none(edit.target(ctx)) for edit in patch.edits]


def classify(patch: Patch, ctx: PatchContext) -> Classification:
    """Classifies ``patch`` against the tree described by ``ctx``."""
    return classify_contents(patch, _read_targets(patch, ctx))


def apply(patch: Patch, ctx: PatchContext) -> PatchState:
    """
    Applies ``patch`` to the tree described by ``ctx``, unless it is already applied.

    All new file contents are computed before anything is written, and each file is
    replaced atomically, so a conflict never leaves a half-patched tree behind.

    Returns:
      The classification the patch had before applying it.

    Raises:
      PatchConflict: if the patch is neither applied nor applicable.
    """
    log = logging.LoggerAdapter(logger, dict(patch=patch.name))
    original = _read_targets(patch, ctx)
    result = classify_contents(patch, original)

    if result.state is PatchState.ALREADY_APPLIED:
        log.info("already applied")
        return result.state
    if result.state is PatchState.CONFLICTING:
        assert result.failed_precondition is not None
        raise PatchConflict(patch.name, result.failed_precondition)

    # Several edits may target the same file; chain them on the pending content.
    pending: dict[str, tuple[str, int | None]] = {}
    for edit, content, state in zip(patch.edits, original, result.edit_states):
        target = edit.target(ctx)
        if target in pending:
            content = pending[target][0]
        if state is PatchState.ALREADY_APPLIED:
            continue
        new_content = edit.transform(content)
        if not edit.is_applied(new_content):
            raise ValueError(f"edit of {target} in patch {patch.name!r} is not idempotent")
        pending[target] = (new_content, edit.permissions)

    for target, (new_content, permissions) in pending.items():
        os.makedirs(path.dirname(target), exist_ok=True)
        qvu_fs.atomic_write_text(target, new_content, permissions)
        log.debug("wrote %s", target)

    log.info("applied (%s)", patch.description)
    return result.state
