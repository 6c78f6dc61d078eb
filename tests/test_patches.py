# Tests for the patch applier and registry.
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

"""Patch classification, application and idempotence."""

import os
import os.path as path
import stat

import pytest
from conftest import EPOXY_DISPATCH_C, EPOXY_DISPATCH_H

from qvirgl.data.config import BuildConfig, HostConfig
from qvirgl.errors import PatchConflict
from qvirgl.patches import (
    CompatFile,
    Patch,
    PatchContext,
    PatchState,
    RegexSubstitute,
    Substitute,
    apply,
    classify,
    classify_contents,
)
from qvirgl.patches.registry import all_patches, patches_for
from qvirgl.stages import Stage


def _read(fpath: str) -> str:
    with open(fpath) as f:
        return f.read()


def _write(fpath: str, content: str) -> None:
    os.makedirs(path.dirname(fpath), exist_ok=True)
    with open(fpath, "w") as f:
        f.write(content)


def _patch(*edits) -> Patch:
    return Patch(name="test", stage=Stage.GPU_RENDERER, description="test", edits=edits)


def _epoxy_patch() -> Patch:
    (patch,) = patches_for(Stage.GRAPHICS_DISPATCH, HostConfig())
    return patch


def _epoxy_ctx(checkouts: BuildConfig) -> PatchContext:
    return PatchContext(checkouts.resolve("libepoxy"), checkouts.compat_path)


# -- Classification without a filesystem --


def test_classify_contents_three_ways() -> None:
    patch = _patch(Substitute(path="a.c", old="foo();", new="bar();"))

    assert classify_contents(patch, ["x\nfoo();\n"]).state is PatchState.APPLICABLE
    assert classify_contents(patch, ["x\nbar();\n"]).state is PatchState.ALREADY_APPLIED
    conflict = classify_contents(patch, ["x\nbaz();\n"])
    assert conflict.state is PatchState.CONFLICTING
    assert conflict.failed_precondition is not None
    assert "foo();" in conflict.failed_precondition


def test_classify_contents_absent_file_conflicts() -> None:
    patch = _patch(Substitute(path="a.c", old="foo();", new="bar();"))
    assert classify_contents(patch, [None]).state is PatchState.CONFLICTING


def test_classify_contents_wrong_occurrence_count_conflicts() -> None:
    patch = _patch(Substitute(path="a.c", old="foo();", new="bar();"))
    assert classify_contents(patch, ["foo();\nfoo();\n"]).state is PatchState.CONFLICTING


def test_classify_contents_partially_applied_is_applicable() -> None:
    patch = _patch(
        Substitute(path="a.c", old="foo();", new="bar();"),
        Substitute(path="b.c", old="one", new="two"),
    )
    result = classify_contents(patch, ["bar();", "one"])
    assert result.state is PatchState.APPLICABLE
    assert result.edit_states == (PatchState.ALREADY_APPLIED, PatchState.APPLICABLE)


def test_classify_contents_checks_arity() -> None:
    patch = _patch(Substitute(path="a.c", old="foo();", new="bar();"))
    with pytest.raises(ValueError):
        classify_contents(patch, [])


def test_substitute_embedding_original_is_detected_as_applied() -> None:
    edit = Substitute(path="a.h", old="#include <a.h>\n", new="#include <a.h>\n#include <b.h>\n")
    content = "#include <a.h>\nint x;\n"
    patched = edit.transform(content)

    assert edit.classify(content) is PatchState.APPLICABLE
    assert edit.classify(patched) is PatchState.ALREADY_APPLIED


def test_regex_substitute_uses_applied_pattern() -> None:
    edit = RegexSubstitute(
        path="meson.build",
        pattern=r"^cc\.find_library\('rt'\)$",
        replacement="cc.find_library('rt', required: false)",
        applied_pattern=r"find_library\('rt', required: false\)",
    )
    content = "x = 1\ncc.find_library('rt')\n"

    assert edit.classify(content) is PatchState.APPLICABLE
    patched = edit.transform(content)
    assert patched == "x = 1\ncc.find_library('rt', required: false)\n"
    assert edit.classify(patched) is PatchState.ALREADY_APPLIED


# -- Application on a tree --


def test_epoxy_patch_applies_then_is_detected(checkouts: BuildConfig) -> None:
    patch = _epoxy_patch()
    ctx = _epoxy_ctx(checkouts)

    assert classify(patch, ctx).state is PatchState.APPLICABLE
    assert apply(patch, ctx) is PatchState.APPLICABLE
    assert classify(patch, ctx).state is PatchState.ALREADY_APPLIED

    header = _read(path.join(ctx.source_dir, "src", "dispatch_common.h"))
    source = _read(path.join(ctx.source_dir, "src", "dispatch_common.c"))
    assert "#elif defined(__APPLE__)\n#define PLATFORM_HAS_EGL ENABLE_EGL\n" in header
    assert '#define EGL_LIB "libEGL.dylib"' in source
    assert '#define GLES2_LIB "libGLESv2.dylib"' in source
    assert "libGLESv2.so\"\n#elif defined(__ANDROID__)" not in source


def test_applying_twice_leaves_files_byte_identical(checkouts: BuildConfig) -> None:
    patch = _epoxy_patch()
    ctx = _epoxy_ctx(checkouts)
    targets = [edit.target(ctx) for edit in patch.edits]

    apply(patch, ctx)
    once = [_read(target) for target in targets]
    mtimes = [os.stat(target).st_mtime_ns for target in targets]

    assert apply(patch, ctx) is PatchState.ALREADY_APPLIED
    assert [_read(target) for target in targets] == once
    assert [os.stat(target).st_mtime_ns for target in targets] == mtimes


def test_conflict_leaves_tree_untouched(checkouts: BuildConfig) -> None:
    patch = _epoxy_patch()
    ctx = _epoxy_ctx(checkouts)
    source = path.join(ctx.source_dir, "src", "dispatch_common.c")
    _write(source, "/* rewritten upstream */\n")

    with pytest.raises(PatchConflict) as excinfo:
        apply(patch, ctx)

    assert excinfo.value.patch == "epoxy-darwin-egl"
    assert "dispatch_common.c" in excinfo.value.precondition
    # The header edit was applicable, but nothing is written when another edit conflicts.
    assert _read(path.join(ctx.source_dir, "src", "dispatch_common.h")) == EPOXY_DISPATCH_H
    assert _read(source) == "/* rewritten upstream */\n"


def test_edits_of_the_same_file_are_chained(tmp_path) -> None:
    ctx = PatchContext(str(tmp_path), str(tmp_path / "compat"))
    target = str(tmp_path / "a.c")
    _write(target, "alpha\nbeta\n")
    patch = _patch(
        Substitute(path="a.c", old="alpha", new="ALPHA"),
        Substitute(path="a.c", old="beta", new="BETA"),
    )

    apply(patch, ctx)

    assert _read(target) == "ALPHA\nBETA\n"
    assert classify(patch, ctx).state is PatchState.ALREADY_APPLIED


def test_substitute_keeps_file_permissions(tmp_path) -> None:
    ctx = PatchContext(str(tmp_path), str(tmp_path / "compat"))
    target = str(tmp_path / "configure")
    _write(target, "#!/bin/sh\necho old\n")
    os.chmod(target, 0o755)

    apply(_patch(Substitute(path="configure", old="old", new="new")), ctx)

    assert stat.S_IMODE(os.stat(target).st_mode) == 0o755


def test_threads_shim_is_materialized(checkouts: BuildConfig) -> None:
    (patch,) = patches_for(Stage.GPU_RENDERER, checkouts.host)
    ctx = PatchContext(checkouts.resolve("virglrenderer"), checkouts.compat_path)

    assert classify(patch, ctx).state is PatchState.APPLICABLE
    apply(patch, ctx)

    header = _read(path.join(checkouts.compat_include, "threads.h"))
    assert "thrd_create" in header
    assert "thrd_join" in header
    assert classify(patch, ctx).state is PatchState.ALREADY_APPLIED


def test_ar_wrapper_is_executable_and_names_host_archiver(checkouts: BuildConfig) -> None:
    host = HostConfig(ar="/Library/Developer/CommandLineTools/usr/bin/ar")
    (patch,) = patches_for(Stage.VM_MONITOR, host)
    ctx = PatchContext(checkouts.resolve("qemu"), checkouts.compat_path)

    apply(patch, ctx)

    wrapper = path.join(checkouts.compat_path, "ar-wrapper.sh")
    content = _read(wrapper)
    assert "exec /Library/Developer/CommandLineTools/usr/bin/ar " in content
    assert "@AR@" not in content
    assert stat.S_IMODE(os.stat(wrapper).st_mode) == 0o755


def test_stale_generated_wrapper_is_regenerated(checkouts: BuildConfig) -> None:
    ctx = PatchContext(checkouts.resolve("qemu"), checkouts.compat_path)
    wrapper = path.join(checkouts.compat_path, "ar-wrapper.sh")
    (default,) = patches_for(Stage.VM_MONITOR, HostConfig())
    apply(default, ctx)

    host = HostConfig(ar="/Library/Developer/CommandLineTools/usr/bin/ar")
    (changed,) = patches_for(Stage.VM_MONITOR, host)

    assert classify(changed, ctx).state is PatchState.APPLICABLE
    assert apply(changed, ctx) is PatchState.APPLICABLE
    assert "exec /Library/Developer/CommandLineTools/usr/bin/ar " in _read(wrapper)
    assert classify(changed, ctx).state is PatchState.ALREADY_APPLIED


def test_diverged_compat_file_conflicts(tmp_path) -> None:
    ctx = PatchContext(str(tmp_path), str(tmp_path / "compat"))
    _write(str(tmp_path / "compat" / "include" / "threads.h"), "/* someone else's */\n")
    patch = _patch(CompatFile(name="include/threads.h", resource="threads.h"))

    assert classify(patch, ctx).state is PatchState.CONFLICTING
    with pytest.raises(PatchConflict):
        apply(patch, ctx)


# -- Registry --


def test_registry_targets_every_patch_at_one_stage() -> None:
    patches = all_patches(HostConfig())
    names = [patch.name for patch in patches]

    assert len(set(names)) == len(names)
    assert [patch.stage for patch in patches] == sorted(
        (patch.stage for patch in patches), key=lambda stage: stage.number
    )
    assert patches_for(Stage.DISPLAY_TOOLKIT, HostConfig()) == []


def test_unmodified_upstream_source_is_applicable(checkouts: BuildConfig) -> None:
    """The fixtures mirror upstream; guard against them drifting from the registry."""
    patch = _epoxy_patch()
    contents = [EPOXY_DISPATCH_H, EPOXY_DISPATCH_C]
    assert classify_contents(patch, contents).state is PatchState.APPLICABLE
