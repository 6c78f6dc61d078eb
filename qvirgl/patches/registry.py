# Known patches.
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
This module contains the registry of patches applied to the upstream projects.  Each
patch fixes exactly one known defect of one project on macOS.
"""

import typing as T

from qvirgl.stages import Stage

from . import CompatFile, Patch, Substitute

if T.TYPE_CHECKING:
    from qvirgl.data.config import HostConfig


def _epoxy_darwin_egl() -> Patch:
    # Upstream hardwires "no EGL" for Apple and never names an EGL library there.
    return Patch(
        name="epoxy-darwin-egl",
        stage=Stage.GRAPHICS_DISPATCH,
        description="enable EGL dispatch on Apple platforms and load Mesa dylibs",
        edits=(
            Substitute(
                path="src/dispatch_common.h",
                old="#elif defined(__APPLE__)\n#define PLATFORM_HAS_EGL 0\n",
                new="#elif defined(__APPLE__)\n#define PLATFORM_HAS_EGL ENABLE_EGL\n",
            ),
            Substitute(
                path="src/dispatch_common.c",
                old=(
                    '#define OPENGL_LIB "/System/Library/Frameworks/OpenGL.framework/'
                    'Versions/Current/OpenGL"\n'
                    '#define GLES1_LIB "libGLESv1_CM.so"\n'
                    '#define GLES2_LIB "libGLESv2.so"\n'
                    "#elif defined(__ANDROID__)\n"
                ),
                new=(
                    '#define OPENGL_LIB "/System/Library/Frameworks/OpenGL.framework/'
                    'Versions/Current/OpenGL"\n'
                    '#define EGL_LIB "libEGL.dylib"\n'
                    '#define GLES1_LIB "libGLESv1_CM.dylib"\n'
                    '#define GLES2_LIB "libGLESv2.dylib"\n'
                    "#elif defined(__ANDROID__)\n"
                ),
            ),
        ),
    )


def _virgl_c11_threads_shim() -> Patch:
    return Patch(
        name="virgl-c11-threads-shim",
        stage=Stage.GPU_RENDERER,
        description="provide <threads.h>, missing from the macOS SDK",
        edits=(CompatFile(name="include/threads.h", resource="threads.h"),),
    )


def _qemu_ar_rsp_wrapper(host: "HostConfig") -> Patch:
    return Patch(
        name="qemu-ar-rsp-wrapper",
        stage=Stage.VM_MONITOR,
        description="archiver wrapper expanding @response files for BSD ar",
        edits=(
            CompatFile(
                name="ar-wrapper.sh",
                resource="ar-wrapper.sh",
                executable=True,
                substitutions=(("AR", host.ar),),
            ),
        ),
    )


def all_patches(host: "HostConfig") -> list[Patch]:
    """Returns every known patch, in stage order."""
    return [
        _epoxy_darwin_egl(),
        _virgl_c11_threads_shim(),
        _qemu_ar_rsp_wrapper(host),
    ]


def patches_for(stage: Stage, host: "HostConfig") -> list[Patch]:
    """Returns the patches registered for ``stage``, in application order."""
    return [patch for patch in all_patches(host) if patch.stage is stage]
