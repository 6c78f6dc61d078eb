# Declarations of the upstream projects.
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
This module declares the four projects, their generator options and the build graph
corrections each of them needs.
"""

import os.path as path
import shlex
import typing as T

from qvirgl.buildgraph.rewriter import (
    InjectSearchPaths,
    LinkArgumentOrder,
    MissPolicy,
    ResponseFileWrapper,
    StripArchiverFlag,
    ToolPath,
)

from . import GeneratorKind, Project, SearchPathSet, Stage

if T.TYPE_CHECKING:
    from qvirgl.data.config import BuildConfig


def base_search_paths(config: "BuildConfig") -> SearchPathSet:
    """
    The search paths every stage starts with: the install prefix, the compat headers,
    Mesa, and finally Homebrew.
    """
    host = config.host
    dependencies = SearchPathSet(
        include_dirs=(config.compat_include, path.join(host.mesa_prefix, "include")),
        library_dirs=(path.join(host.mesa_prefix, "lib"),),
        runtime_dirs=(
            path.join(host.mesa_prefix, "lib"),
            path.join(host.homebrew_prefix, "lib"),
        ),
        pkg_config_dirs=(
            path.join(host.mesa_prefix, "lib", "pkgconfig"),
            path.join(host.homebrew_prefix, "lib", "pkgconfig"),
        ),
        program_dirs=(host.native_program_dir, path.join(host.homebrew_prefix, "bin")),
    )
    return dependencies.prepend(SearchPathSet.for_prefix(config.prefix))


def qemu_executables(config: "BuildConfig") -> list[str]:
    """Names of the emulator executables for the configured target list."""
    return [
        f"qemu-system-{target.removesuffix('-softmmu')}"
        for target in config.qemu_targets
        if target.endswith("-softmmu")
    ]


def declare_projects(config: "BuildConfig") -> list[Project]:
    """Declares the projects in stage order."""
    host = config.host

    def _project(stage: Stage, name: str, kind: GeneratorKind, **kwargs: T.Any) -> Project:
        source_dir = config.resolve(name)
        return Project(
            stage=stage,
            name=name,
            source_dir=source_dir,
            build_dir=path.join(source_dir, config.build_subdir),
            kind=kind,
            **kwargs,
        )

    ranlib_path = ToolPath("ranlib", host.ranlib, miss_policy=MissPolicy.IGNORE)
    # QEMU links "-unsigned" executables, then signs them into their final names.
    monitors = qemu_executables(config)

    qemu_options = [
        f"--target-list={','.join(config.qemu_targets)}",
        "--enable-virglrenderer",
        "--enable-sdl",
        "--enable-opengl",
        "--enable-hvf",
        "--disable-werror",
    ]
    if host.python:
        qemu_options.append(f"--python={host.python}")

    return [
        _project(
            Stage.GRAPHICS_DISPATCH,
            "libepoxy",
            GeneratorKind.MESON,
            options=["-Degl=yes", "-Dglx=no", "-Dx11=false", "-Dtests=false"],
            corrections=[ranlib_path],
        ),
        _project(
            Stage.GPU_RENDERER,
            "virglrenderer",
            GeneratorKind.MESON,
            options=[
                "-Dplatforms=egl",
                "-Dvenus=true",
                "-Dvulkan-dload=true",
                "-Drender-server-worker=thread",
                "-Dtests=false",
            ],
            env={"AR": host.ar},
            corrections=[ranlib_path],
        ),
        _project(
            Stage.DISPLAY_TOOLKIT,
            "SDL",
            GeneratorKind.CMAKE,
            options=[
                "-DCMAKE_BUILD_TYPE=Release",
                f"-DCMAKE_AR={host.ar}",
                f"-DCMAKE_RANLIB={host.ranlib}",
                "-DSDL_OPENGLES=ON",
                "-DSDL_X11=OFF",
                "-DSDL_WAYLAND=OFF",
                "-DSDL_TEST=OFF",
                "-DSDL_STATIC=OFF",
            ],
            corrections=[LinkArgumentOrder(search_var="LINK_PATH")],
        ),
        _project(
            Stage.VM_MONITOR,
            "qemu",
            GeneratorKind.MESON,
            options=qemu_options,
            configure_script="configure",
            corrections=[
                ToolPath("ar", host.ar),
                StripArchiverFlag(),
                ResponseFileWrapper(shlex.quote(path.join(config.compat_path, "ar-wrapper.sh"))),
                ranlib_path,
                LinkArgumentOrder(),
                InjectSearchPaths(
                    targets=(*monitors, *(f"{name}-unsigned" for name in monitors), "qemu-img"),
                    paths=(path.join(config.prefix, "lib"), path.join(host.mesa_prefix, "lib")),
                ),
            ],
        ),
    ]
