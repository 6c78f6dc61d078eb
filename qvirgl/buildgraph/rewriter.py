# Host-specific corrections of generated build graphs.
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
This module contains the build graph rewriter.

Meson and CMake generate Ninja graphs that assume a GNU-ish toolchain: a bare ``ar``
and ``ranlib`` found on ``PATH`` (which, with Homebrew binutils installed, produce
archives the Apple linker rejects), ``D`` for deterministic archives, ``@file``
response files, and library search paths after the objects that need them.  The
generators do not let us parametrize any of this, so the generated graph is corrected
after each configure step.

Every correction is guarded: it only touches text it recognizes, reports whether it
found its target, and recognizes its own output, so rewriting a rewritten graph is a
no-op.  A correction that finds nothing is not fatal by default; the native build is
the actual arbiter of success.
"""

import dataclasses
import enum
import logging
import re
import shlex
import typing as T
from abc import ABC, abstractmethod

from qvirgl.errors import RewriteMiss

from .ninja import NinjaGraph

if T.TYPE_CHECKING:
    from qvirgl.utils.fs import AnyPath
    from qvirgl.utils.logging.build_logger import BuildLogger

logger = logging.getLogger(__name__)

# Command position: start of the command, or right after a shell command separator.
_COMMAND_START = r"(^|&&|;|\|\|)(\s*)"


def _ninja_word(value: str) -> str:
    """Quotes ``value`` as one shell word, escaped for use in a Ninja command or variable."""
    return shlex.quote(value).replace("$", "$$")


def _has_word(text: str, word: str) -> bool:
    return re.search(r"(?:^|\s)" + re.escape(word) + r"(?=\s|$)", text) is not None


class MissPolicy(enum.Enum):
    """What to do when a correction finds neither its target nor its own output."""

    WARN = "WARN"
    """Log a warning and carry on."""
    IGNORE = "IGNORE"
    """Carry on quietly.  For corrections only some generators need."""
    ESCALATE = "ESCALATE"
    """Raise :py:class:`RewriteMiss`."""


class Outcome(enum.Enum):
    APPLIED = "APPLIED"
    """The graph was changed."""
    ALREADY_APPLIED = "ALREADY_APPLIED"
    """The graph already carries the correction."""
    MISSED = "MISSED"
    """Neither the target text nor the corrected text was found."""


@dataclasses.dataclass(frozen=True)
class CorrectionResult:
    name: str
    outcome: Outcome
    changes: int = 0
    detail: str = ""


class Correction(ABC):
    """A guarded, idempotent edit of a :py:class:`NinjaGraph`."""

    name: str
    miss_policy: MissPolicy

    @abstractmethod
    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        """Corrects ``graph`` in place and reports what happened."""

    def _result(self, changes: int, already: bool, detail: str) -> CorrectionResult:
        if changes:
            return CorrectionResult(self.name, Outcome.APPLIED, changes)
        if already:
            return CorrectionResult(self.name, Outcome.ALREADY_APPLIED)
        return CorrectionResult(self.name, Outcome.MISSED, detail=detail)


@dataclasses.dataclass(frozen=True)
class ToolPath(Correction):
    """
    Replaces a bare tool invocation in rule commands (``&& ranlib -c $out``) with an
    absolute path to the host-native tool.
    """

    tool: str
    replacement: str
    name: str = ""
    miss_policy: MissPolicy = MissPolicy.WARN

    def __post_init__(self) -> None:
        if not self.name:
            object.__setattr__(self, "name", f"{self.tool}-path")

    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        replacement = _ninja_word(self.replacement)
        bare = re.compile(_COMMAND_START + re.escape(self.tool) + r"(?=\s)")
        fixed = re.compile(_COMMAND_START + re.escape(replacement) + r"(?=\s)")
        changes = 0
        already = False
        for rule in graph.rules():
            command = rule.command
            (new_command, count) = bare.subn(
                lambda m: f"{m.group(1)}{m.group(2)}{replacement}", command
            )
            if count:
                rule.set("command", new_command)
                changes += count
            elif fixed.search(command):
                already = True
        return self._result(changes, already, f"no rule invokes {self.tool!r}")


@dataclasses.dataclass(frozen=True)
class StripArchiverFlag(Correction):
    """
    Removes a modifier from the archiver flags of static link edges.  Meson passes
    ``csrD``, and BSD ``ar`` knows no ``D``.
    """

    flag: str = "D"
    var: str = "LINK_ARGS"
    rule_pattern: str = r"STATIC_LINKER"
    name: str = "strip-deterministic-archive"
    miss_policy: MissPolicy = MissPolicy.IGNORE

    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        changes = 0
        seen = False
        for edge in graph.edges():
            if not re.search(self.rule_pattern, edge.rule):
                continue
            value = edge.get(self.var)
            if value is None:
                continue
            (modifiers, sep, rest) = value.partition(" ")
            if not modifiers.isalpha():
                continue
            seen = True
            if self.flag in modifiers:
                edge.set(self.var, modifiers.replace(self.flag, "") + sep + rest)
                changes += 1
        return self._result(changes, seen, f"no static link edge sets {self.var}")


@dataclasses.dataclass(frozen=True)
class ResponseFileWrapper(Correction):
    """
    Routes ``ar ... @$out.rsp`` invocations through a wrapper that splices the
    response file into the command line, since BSD ``ar`` cannot read one.
    """

    wrapper: str
    name: str = "archiver-response-file"
    miss_policy: MissPolicy = MissPolicy.IGNORE

    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        archiver = re.compile(
            _COMMAND_START + r"(?:\S*/)?ar(\s+\$LINK_ARGS\s+\$out\s+@\$out\.rsp)"
        )
        wrapper = _ninja_word(self.wrapper)
        changes = 0
        already = False
        for rule in graph.rules():
            command = rule.command
            if wrapper in command:
                already = True
                continue
            (new_command, count) = archiver.subn(
                lambda m: f"{m.group(1)}{m.group(2)}{wrapper}{m.group(3)}", command
            )
            if count:
                rule.set("command", new_command)
                changes += count
        return self._result(changes, already, "no rule archives from a response file")


@dataclasses.dataclass(frozen=True)
class LinkArgumentOrder(Correction):
    """
    Moves the library search variable in front of the inputs of link rules, because the
    host linker wants search paths declared before the libraries they are used for.
    """

    search_var: str = "LINK_ARGS"
    inputs: str = "$in"
    rule_pattern: str = r"LINKER"
    name: str = "link-argument-order"
    miss_policy: MissPolicy = MissPolicy.WARN

    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        var = f"${self.search_var}"
        changes = 0
        already = False
        for rule in graph.rules():
            if not re.search(self.rule_pattern, rule.name) or "STATIC" in rule.name:
                continue
            tokens = rule.command.split()
            if var not in tokens or self.inputs not in tokens:
                continue
            (var_at, inputs_at) = (tokens.index(var), tokens.index(self.inputs))
            if var_at < inputs_at:
                already = True
                continue
            del tokens[var_at]
            tokens.insert(inputs_at, var)
            rule.set("command", " ".join(tokens))
            changes += 1
        return self._result(
            changes, already, f"no link rule uses both {var} and {self.inputs}"
        )


@dataclasses.dataclass(frozen=True)
class InjectSearchPaths(Correction):
    """
    Prepends ``-L`` flags to the link variable of the edges producing the named
    executables, whose generated command lines lack paths for transitively required
    libraries.
    """

    targets: tuple[str, ...]
    paths: tuple[str, ...]
    var: str = "LINK_ARGS"
    name: str = "inject-search-paths"
    miss_policy: MissPolicy = MissPolicy.WARN

    def apply(self, graph: NinjaGraph) -> CorrectionResult:
        flags = [f"-L{_ninja_word(p)}" for p in self.paths]
        changes = 0
        seen = False
        for edge in graph.edges():
            if not edge.produces(self.targets):
                continue
            seen = True
            value = edge.get(self.var) or ""
            missing = [flag for flag in flags if not _has_word(value, flag)]
            if not missing:
                continue
            edge.set(self.var, " ".join(missing + ([value] if value else [])))
            changes += 1
        return self._result(changes, seen, f"no edge produces any of {list(self.targets)}")


def rewrite(
    graph: NinjaGraph,
    corrections: T.Iterable[Correction],
    log_io: T.Optional["BuildLogger"] = None,
) -> list[CorrectionResult]:
    """
    Applies ``corrections`` to ``graph`` in order.

    Raises:
      RewriteMiss: if a correction with :py:attr:`MissPolicy.ESCALATE` missed.
    """
    results = []
    for correction in corrections:
        log = logging.LoggerAdapter(logger, dict(correction=correction.name))
        result = correction.apply(graph)
        results.append(result)
        match result.outcome:
            case Outcome.APPLIED:
                log.info("applied to %d place(s)", result.changes)
            case Outcome.ALREADY_APPLIED:
                log.debug("already applied")
            case Outcome.MISSED:
                match correction.miss_policy:
                    case MissPolicy.ESCALATE:
                        raise RewriteMiss(correction.name, result.detail)
                    case MissPolicy.WARN:
                        log.warning("missed: %s", result.detail)
                        if log_io:
                            log_io.warning(
                                f"build graph correction {correction.name} missed: {result.detail}"
                            )
                    case MissPolicy.IGNORE:
                        log.debug("missed: %s", result.detail)
    return results


def rewrite_file(
    fpath: "AnyPath",
    corrections: T.Iterable[Correction],
    log_io: T.Optional["BuildLogger"] = None,
) -> list[CorrectionResult]:
    """
    Rewrites the Ninja file at ``fpath``.  The file is replaced atomically, and only if
    some correction changed it.
    """
    graph = NinjaGraph.load(fpath)
    results = rewrite(graph, corrections, log_io)
    if any(result.outcome is Outcome.APPLIED for result in results):
        graph.save(fpath)
    return results
