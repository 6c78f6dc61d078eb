# Build stages and the projects built in them.
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
This module contains the model of the four upstream projects and of the search paths
threaded through their builds.
"""

import dataclasses
import enum
import logging
import os.path as path
import typing as T

if T.TYPE_CHECKING:
    from qvirgl.buildgraph.rewriter import Correction

logger = logging.getLogger(__name__)


class Stage(enum.Enum):
    """Pipeline stages, declared in the order they run."""

    GRAPHICS_DISPATCH = "GRAPHICS_DISPATCH"
    """libepoxy, the GL/EGL function pointer dispatcher."""
    GPU_RENDERER = "GPU_RENDERER"
    """virglrenderer, the host side of virtio-gpu 3D."""
    DISPLAY_TOOLKIT = "DISPLAY_TOOLKIT"
    """SDL, providing the GLES-capable window QEMU renders into."""
    VM_MONITOR = "VM_MONITOR"
    """QEMU itself."""

    @property
    def number(self) -> int:
        """One-based position of this stage in the pipeline."""
        return list(Stage).index(self) + 1


class BuildState(enum.Enum):
    """States a project goes through during a run."""

    NOT_BUILT = "NOT_BUILT"
    CONFIGURED = "CONFIGURED"
    """The generator produced a (corrected) build graph."""
    BUILT = "BUILT"
    INSTALLED = "INSTALLED"
    """Artifacts are in the shared prefix."""


class GeneratorKind(enum.Enum):
    """Build-graph generators used by the upstream projects.  Both emit Ninja files."""

    MESON = "meson"
    CMAKE = "cmake"


@dataclasses.dataclass
class Project:
    """
    One of the upstream projects.  Declared statically at the start of a run; only its
    :py:attr:`state` changes afterwards.
    """

    stage: Stage
    name: str
    source_dir: str
    """Absolute path to the checkout."""
    build_dir: str
    """Absolute path to the generator's build directory inside the checkout."""
    kind: GeneratorKind
    options: list[str] = dataclasses.field(default_factory=list)
    """Project-specific generator arguments."""
    env: dict[str, str] = dataclasses.field(default_factory=dict)
    """Extra environment for the generator, on top of the search path environment."""
    corrections: list["Correction"] = dataclasses.field(default_factory=list)
    """Build graph corrections applied after configuring."""
    configure_script: str | None = None
    """
    For projects that wrap their generator in a script (QEMU's ``configure``), the name
    of that script relative to :py:attr:`source_dir`.
    """
    state: BuildState = BuildState.NOT_BUILT

    @property
    def build_graph(self) -> str:
        return path.join(self.build_dir, "build.ninja")

    def record_state(self, state: BuildState) -> None:
        logger.debug("%s: %s -> %s", self.name, self.state.value, state.value)
        self.state = state


def _ordered_unique(items: T.Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


@dataclasses.dataclass(frozen=True)
class SearchPathSet:
    """
    Ordered search locations handed to every stage.

    Order is significant: locations earlier in each list win symbol and header
    resolution.  The install prefix comes first, then dependency-built kegs such as
    Mesa, then the package manager prefix.  For programs, the host-native tool
    directory comes before the package manager, so that BSD ``ar`` shadows binutils.
    """

    include_dirs: tuple[str, ...] = ()
    library_dirs: tuple[str, ...] = ()
    runtime_dirs: tuple[str, ...] = ()
    pkg_config_dirs: tuple[str, ...] = ()
    program_dirs: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for field in dataclasses.fields(self):
            object.__setattr__(self, field.name, tuple(_ordered_unique(getattr(self, field.name))))

    def prepend(self, other: "SearchPathSet") -> "SearchPathSet":
        """Returns a set with ``other`` taking precedence over ``self``."""
        return SearchPathSet(
            **{
                field.name: getattr(other, field.name) + getattr(self, field.name)
                for field in dataclasses.fields(self)
            }
        )

    @classmethod
    def for_prefix(cls, prefix: str) -> "SearchPathSet":
        """Search locations provided by an installation prefix."""
        return cls(
            include_dirs=(path.join(prefix, "include"),),
            library_dirs=(path.join(prefix, "lib"),),
            runtime_dirs=(path.join(prefix, "lib"),),
            pkg_config_dirs=(path.join(prefix, "lib", "pkgconfig"),),
            program_dirs=(path.join(prefix, "bin"),),
        )

    @property
    def cflags(self) -> str:
        return " ".join(f"-I{d}" for d in self.include_dirs)

    @property
    def ldflags(self) -> str:
        return " ".join(f"-L{d}" for d in self.library_dirs)

    def environment(self, system_path: str = "/usr/bin:/bin:/usr/sbin:/sbin") -> dict[str, str]:
        """
        Renders the environment variables a stage's generator sees.  ``system_path`` is
        appended after :py:attr:`program_dirs`.
        """
        program_path = _ordered_unique([*self.program_dirs, *system_path.split(":")])
        return {
            "PKG_CONFIG_PATH": ":".join(self.pkg_config_dirs),
            "CFLAGS": self.cflags,
            "CXXFLAGS": self.cflags,
            "LDFLAGS": self.ldflags,
            "PATH": ":".join(p for p in program_path if p),
        }
