# Minimal Ninja build file model.
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
This module contains a minimally parsed model of a ``build.ninja`` file, as emitted by
Meson and by CMake's Ninja generator.

Only ``rule`` and ``build`` declarations are understood, along with their indented
bindings.  Everything else is kept as verbatim text.  Blocks that are not edited are
written back exactly as they were read, so a parse and dump of an unmodified graph is
the identity.
"""

import dataclasses
import os.path as path
import typing as T

import qvirgl.utils.fs as qvu_fs

if T.TYPE_CHECKING:
    from qvirgl.utils.fs import AnyPath


def _continues(line: str) -> bool:
    """``True`` iff ``line`` ends in an unescaped ``$``, i.e. continues on the next."""
    trailing = len(line) - len(line.rstrip("$"))
    return trailing % 2 == 1


def split_paths(text: str) -> list[str]:
    """
    Splits a Ninja path list on unescaped spaces, resolving the ``$ ``, ``$:`` and
    ``$$`` escapes.  Variable references are kept as-is.
    """
    paths: list[str] = []
    current = ""
    i = 0
    while i < len(text):
        c = text[i]
        if c == "$" and i + 1 < len(text):
            escaped = text[i + 1]
            if escaped in " :$":
                current += escaped
            else:
                current += c + escaped
            i += 2
            continue
        if c == " ":
            if current:
                paths.append(current)
            current = ""
        else:
            current += c
        i += 1
    if current:
        paths.append(current)
    return paths


def _find_unescaped_colon(text: str) -> int:
    i = 0
    while i < len(text):
        if text[i] == "$":
            i += 2
            continue
        if text[i] == ":":
            return i
        i += 1
    return -1


@dataclasses.dataclass
class Binding:
    """A ``name = value`` line belonging to a block."""

    name: str
    value: str
    indent: str = " "
    raw: list[str] | None = None
    """Physical lines this binding was read from, or ``None`` once edited."""

    def lines(self) -> list[str]:
        if self.raw is not None:
            return self.raw
        return [f"{self.indent}{self.name} = {self.value}"]


@dataclasses.dataclass
class Block:
    """A declaration followed by its indented bindings."""

    header: list[str]
    """Physical lines of the declaration."""
    bindings: list[Binding] = dataclasses.field(default_factory=list)

    def get(self, name: str) -> str | None:
        """Returns the value bound to ``name`` in this block, if any."""
        for binding in self.bindings:
            if binding.name == name:
                return binding.value
        return None

    def set(self, name: str, value: str) -> None:
        """Binds ``name`` to ``value``, replacing an existing binding in place."""
        for binding in self.bindings:
            if binding.name == name:
                if binding.value != value:
                    binding.value = value
                    binding.raw = None
                return
        indent = self.bindings[0].indent if self.bindings else " "
        self.bindings.append(Binding(name, value, indent))

    def lines(self) -> list[str]:
        result = list(self.header)
        for binding in self.bindings:
            result.extend(binding.lines())
        return result


@dataclasses.dataclass
class Rule(Block):
    name: str = ""

    @property
    def command(self) -> str:
        return self.get("command") or ""


@dataclasses.dataclass
class Edge(Block):
    outputs: list[str] = dataclasses.field(default_factory=list)
    """Explicit and implicit outputs."""
    rule: str = ""

    def produces(self, names: T.Container[str]) -> bool:
        """``True`` iff any output of this edge has a basename in ``names``."""
        return any(path.basename(output) in names for output in self.outputs)


@dataclasses.dataclass
class Pool(Block):
    name: str = ""


@dataclasses.dataclass
class Verbatim:
    """Lines not understood by this model: comments, top-level variables, defaults..."""

    raw: list[str]

    def lines(self) -> list[str]:
        return self.raw


Item: T.TypeAlias = Rule | Edge | Pool | Verbatim


def _parse_edge(header: list[str], logical: str) -> Edge:
    declaration = logical[len("build ") :]
    colon = _find_unescaped_colon(declaration)
    if colon < 0:
        raise ValueError(f"malformed build statement: {logical!r}")
    outputs = [p for p in split_paths(declaration[:colon]) if p != "|"]
    rest = split_paths(declaration[colon + 1 :])
    if not rest:
        raise ValueError(f"build statement without a rule: {logical!r}")
    return Edge(header=header, outputs=outputs, rule=rest[0])


class NinjaGraph:
    """A parsed ``build.ninja``."""

    def __init__(self, items: list[Item]) -> None:
        self.items = items

    @classmethod
    def parse(cls, text: str) -> "NinjaGraph":
        physical = text.split("\n")
        items: list[Item] = []
        current: Block | None = None
        i = 0
        while i < len(physical):
            start = i
            logical = physical[i]
            while _continues(physical[i]) and i + 1 < len(physical):
                i += 1
                logical = logical[:-1] + physical[i].lstrip()
            raw = physical[start : i + 1]
            i += 1

            stripped = logical.lstrip()
            indent = logical[: len(logical) - len(stripped)]
            if indent and stripped and not stripped.startswith("#") and current is not None:
                name, sep, value = stripped.partition("=")
                if sep:
                    current.bindings.append(Binding(name.strip(), value.lstrip(), indent, raw))
                    continue

            current = None
            if stripped.startswith("rule "):
                current = Rule(header=raw, name=stripped[len("rule ") :].strip())
            elif stripped.startswith("build "):
                current = _parse_edge(raw, stripped)
            elif stripped.startswith("pool "):
                current = Pool(header=raw, name=stripped[len("pool ") :].strip())
            if current is not None:
                items.append(current)
            else:
                items.append(Verbatim(raw))
        return cls(items)

    @classmethod
    def load(cls, fpath: "AnyPath") -> "NinjaGraph":
        with open(fpath, "r") as f:
            return cls.parse(f.read())

    def dump(self) -> str:
        lines: list[str] = []
        for item in self.items:
            lines.extend(item.lines())
        return "\n".join(lines)

    def save(self, fpath: "AnyPath") -> None:
        """Atomically writes the graph to ``fpath``."""
        qvu_fs.atomic_write_text(fpath, self.dump())

    def rules(self) -> list[Rule]:
        return [item for item in self.items if isinstance(item, Rule)]

    def rule(self, name: str) -> Rule | None:
        """Finds a rule by name."""
        return next((rule for rule in self.rules() if rule.name == name), None)

    def edges(self, rule: str | None = None) -> list[Edge]:
        """Returns all build edges, optionally only those using ``rule``."""
        return [
            item
            for item in self.items
            if isinstance(item, Edge) and (rule is None or item.rule == rule)
        ]
