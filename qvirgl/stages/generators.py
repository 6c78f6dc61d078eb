# Build-graph generator abstraction.
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
This module contains the generators that turn a project checkout into a Ninja build
graph.  The generators themselves (Meson, CMake) are external; this module only knows
how to invoke them.
"""

import os.path as path
import typing as T
from abc import ABC, abstractmethod

from . import GeneratorKind, Project, SearchPathSet


class Invocation(T.NamedTuple):
    args: list[str]
    cwd: str


class Generator(ABC):
    """
    Invokes a build-graph generator.  Building and installing is always done by Ninja,
    since both generators emit Ninja files.
    """

    @abstractmethod
    def configure(self, project: Project, prefix: str, search: SearchPathSet) -> Invocation:
        """
        Returns the command producing ``project.build_graph`` for an installation into
        ``prefix``.  Must be re-runnable on an already configured build directory.
        """

    @abstractmethod
    def required_tools(self, project: Project) -> list[str]:
        """Host programs this generator needs to configure ``project``."""

    def environment(self, project: Project, search: SearchPathSet) -> dict[str, str]:
        env = search.environment()
        env.update(project.env)
        return env

    def build(self, project: Project, jobs: int) -> Invocation:
        return Invocation(["ninja", "-C", project.build_dir, "-j", str(jobs)], project.source_dir)

    def install(self, project: Project) -> Invocation:
        return Invocation(["ninja", "-C", project.build_dir, "install"], project.source_dir)


class MesonGenerator(Generator):
    """
    Meson, invoked either directly or through a ``configure`` script wrapping it.
    """

    def configure(self, project: Project, prefix: str, search: SearchPathSet) -> Invocation:
        if project.configure_script:
            # Run out of tree so the build directory name is ours to choose.
            return Invocation(
                [
                    "bash",
                    path.join(project.source_dir, project.configure_script),
                    f"--prefix={prefix}",
                    f"--extra-cflags={search.cflags}",
                    f"--extra-ldflags={search.ldflags}",
                    *project.options,
                ],
                project.build_dir,
            )

        args = ["meson", "setup", project.build_dir, f"--prefix={prefix}", *project.options]
        if path.exists(project.build_graph):
            args.append("--reconfigure")
        return Invocation(args, project.source_dir)

    def required_tools(self, project: Project) -> list[str]:
        tools = ["meson", "ninja", "pkg-config"]
        if project.configure_script:
            tools.append("bash")
        return tools


class CMakeGenerator(Generator):
    """CMake with its Ninja generator."""

    def configure(self, project: Project, prefix: str, search: SearchPathSet) -> Invocation:
        return Invocation(
            [
                "cmake",
                "-S",
                project.source_dir,
                "-B",
                project.build_dir,
                "-G",
                "Ninja",
                f"-DCMAKE_INSTALL_PREFIX={prefix}",
                *project.options,
            ],
            project.source_dir,
        )

    def required_tools(self, project: Project) -> list[str]:
        return ["cmake", "ninja"]


def create_generator(kind: GeneratorKind) -> Generator:
    match kind:
        case GeneratorKind.MESON:
            return MesonGenerator()
        case GeneratorKind.CMAKE:
            return CMakeGenerator()

    # Missed a case?
    T.assert_never(kind)
