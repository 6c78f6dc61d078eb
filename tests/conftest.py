# Shared test fixtures.
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

"""Shared test fixtures."""

import io
import os
import os.path as path
import typing as T

import pytest

from qvirgl.data.config import BuildConfig, HostConfig
from qvirgl.errors import NativeBuildFailure
from qvirgl.utils.logging.build_logger import BuildLogger

CHECKOUTS = ("libepoxy", "virglrenderer", "SDL", "qemu")

EPOXY_DISPATCH_H = """\
#if defined(_WIN32)
#define PLATFORM_HAS_EGL ENABLE_EGL
#define PLATFORM_HAS_GLX 0
#elif defined(__APPLE__)
#define PLATFORM_HAS_EGL 0
#define PLATFORM_HAS_GLX ENABLE_GLX
#else
#define PLATFORM_HAS_EGL ENABLE_EGL
#endif
"""

EPOXY_DISPATCH_C = """\
#if defined(__APPLE__)
#define GLX_LIB "/opt/X11/lib/libGL.1.dylib"
#define OPENGL_LIB "/System/Library/Frameworks/OpenGL.framework/Versions/Current/OpenGL"
#define GLES1_LIB "libGLESv1_CM.so"
#define GLES2_LIB "libGLESv2.so"
#elif defined(__ANDROID__)
#define GLX_LIB "libGLESv2.so"
#endif
"""

MESON_GRAPH = """\
# This is the build file for project "qemu"
# It is autogenerated by the Meson build system.
# Do not edit by hand.

ninja_required_version = 1.8.2

# Rules for linking.

rule STATIC_LINKER
 command = rm -f $out && ar $LINK_ARGS $out $in && ranlib -c $out
 description = Linking static target $out

rule STATIC_LINKER_RSP
 command = rm -f $out && ar $LINK_ARGS $out @$out.rsp && ranlib -c $out
 rspfile = $out.rsp
 rspfile_content = $in
 description = Linking static target $out

rule c_LINKER
 command = cc $ARGS -o $out $in $LINK_ARGS
 description = Linking target $out

build libqemuutil.a: STATIC_LINKER util/libqemuutil.a.p/cutils.c.o util/libqemuutil.a.p/osdep.c.o
 LINK_ARGS = csrD

build libqom.fa: STATIC_LINKER_RSP qom/libqom.fa.p/object.c.o
 LINK_ARGS = csrD

build qemu-system-x86_64-unsigned: c_LINKER libqemu-x86_64-softmmu.fa.p/cpu.c.o | libqemuutil.a
 LINK_ARGS = -Wl,-dead_strip_dylibs -lvirglrenderer -lepoxy

build qemu-img: c_LINKER qemu-img.p/qemu-img.c.o libqemuutil.a
 LINK_ARGS = -lz

build all: phony libqemuutil.a libqom.fa qemu-system-x86_64-unsigned qemu-img

default all
"""

CMAKE_GRAPH = """\
# CMAKE generated file: DO NOT EDIT!
# Generated by "Ninja" Generator, CMake Version 3.31

rule C_EXECUTABLE_LINKER__testgles2_Release
  command = $PRE_LINK && /usr/bin/cc $FLAGS $LINK_FLAGS $in -o $TARGET_FILE $LINK_PATH $LINK_LIBRARIES && $POST_BUILD
  description = Linking C executable $TARGET_FILE
  restat = $RESTAT

rule C_STATIC_LIBRARY_LINKER__SDL2main_Release
  command = $PRE_LINK && /usr/bin/ar qc $TARGET_FILE $LINK_FLAGS $in && /usr/bin/ranlib $TARGET_FILE && $POST_BUILD
  description = Linking C static library $TARGET_FILE

build testgles2: C_EXECUTABLE_LINKER__testgles2_Release CMakeFiles/testgles2.dir/test/testgles2.c.o
  LINK_PATH = -L/opt/homebrew/opt/mesa/lib
  TARGET_FILE = testgles2
"""


class FakeRunner:
    """
    Records native tool invocations instead of running them.  Configuring a project
    writes the Ninja graph its generator would have produced.
    """

    def __init__(
        self,
        graphs: dict[str, str] | None = None,
        fail: T.Callable[[tuple[str, ...], str | None], bool] | None = None,
        outputs: dict[str, bytes] | None = None,
    ) -> None:
        self.graphs = graphs if graphs is not None else {"SDL": CMAKE_GRAPH}
        self.fail = fail
        self.outputs = outputs or {}
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self.envs: list[dict[str, str] | None] = []

    def _build_dir(self, args: tuple[str, ...], cwd: str | None) -> str | None:
        match args[0]:
            case "meson":
                return args[2]
            case "cmake":
                return args[args.index("-B") + 1]
            case "bash":
                return cwd
        return None

    async def run(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> None:
        self.calls.append((args, cwd))
        self.envs.append(env)
        if self.fail is not None and self.fail(args, cwd):
            raise NativeBuildFailure(2, args)
        build_dir = self._build_dir(args, cwd)
        if build_dir is not None:
            project = path.basename(path.dirname(build_dir))
            os.makedirs(build_dir, exist_ok=True)
            with open(path.join(build_dir, "build.ninja"), "w") as f:
                f.write(self.graphs.get(project, MESON_GRAPH))

    async def output(
        self,
        *args: str,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> bytes:
        self.calls.append((args, cwd))
        self.envs.append(env)
        return self.outputs.get(args[-1], b"")

    def commands(self) -> list[tuple[str, ...]]:
        return [args for (args, _) in self.calls]


@pytest.fixture
def build_config(tmp_path: T.Any) -> BuildConfig:
    """A configuration rooted in a temporary directory."""
    return BuildConfig(
        root=str(tmp_path),
        host=HostConfig(
            homebrew_prefix="/opt/homebrew",
            mesa_prefix="/opt/homebrew/opt/mesa",
        ),
        jobs=3,
        qemu_targets=["x86_64-softmmu"],
    )


@pytest.fixture
def checkouts(build_config: BuildConfig) -> BuildConfig:
    """Creates pristine upstream checkouts under the configured root."""
    for name in CHECKOUTS:
        os.makedirs(build_config.resolve(name), exist_ok=True)
    epoxy_src = build_config.resolve("libepoxy", "src")
    os.makedirs(epoxy_src)
    with open(path.join(epoxy_src, "dispatch_common.h"), "w") as f:
        f.write(EPOXY_DISPATCH_H)
    with open(path.join(epoxy_src, "dispatch_common.c"), "w") as f:
        f.write(EPOXY_DISPATCH_C)
    with open(build_config.resolve("qemu", "configure"), "w") as f:
        f.write("#!/bin/sh\n")
    return build_config


@pytest.fixture
def log_io() -> BuildLogger:
    return BuildLogger(io.StringIO())
