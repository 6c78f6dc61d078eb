# Tests for the binary post-processor.
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

"""Recording runtime search paths in installed executables."""

import asyncio
import os
import os.path as path

from conftest import FakeRunner

from qvirgl.data.config import BuildConfig
from qvirgl.postprocess import PostProcessor, is_macho, parse_rpaths

OTOOL_OUTPUT = """\
/tmp/install/bin/qemu-system-x86_64:
Load command 0
      cmd LC_SEGMENT_64
  cmdsize 72
  segname __PAGEZERO
Load command 14
          cmd LC_RPATH
      cmdsize 40
         path /tmp/install/lib (offset 12)
Load command 15
          cmd LC_LOAD_DYLIB
      cmdsize 56
         name /usr/lib/libSystem.B.dylib (offset 24)
Load command 16
          cmd LC_RPATH
      cmdsize 48
         path /opt/homebrew/opt/mesa/lib (offset 12)
"""


def _write_executable(fpath: str, content: bytes, mode: int = 0o755) -> None:
    os.makedirs(path.dirname(fpath), exist_ok=True)
    with open(fpath, "wb") as f:
        f.write(content)
    os.chmod(fpath, mode)


def test_parse_rpaths_reads_only_rpath_commands() -> None:
    assert parse_rpaths(OTOOL_OUTPUT) == ["/tmp/install/lib", "/opt/homebrew/opt/mesa/lib"]
    assert parse_rpaths("") == []


def test_is_macho(tmp_path) -> None:
    binary = str(tmp_path / "a")
    script = str(tmp_path / "b")
    _write_executable(binary, b"\xcf\xfa\xed\xfe" + b"\0" * 28)
    _write_executable(script, b"#!/bin/sh\n")

    assert is_macho(binary)
    assert not is_macho(script)
    assert not is_macho(str(tmp_path / "missing"))


def test_executables_are_mach_o_files_in_bin(build_config: BuildConfig) -> None:
    bin_dir = path.join(build_config.prefix, "bin")
    qemu = path.join(bin_dir, "qemu-system-x86_64")
    _write_executable(qemu, b"\xcf\xfa\xed\xfe" + b"\0" * 28)
    _write_executable(path.join(bin_dir, "qemu-edid.sh"), b"#!/bin/sh\n")
    _write_executable(path.join(bin_dir, "not-executable"), b"\xcf\xfa\xed\xfe", mode=0o644)
    os.symlink(qemu, path.join(bin_dir, "qemu"))

    processor = PostProcessor(build_config, FakeRunner(), ["/lib"])

    assert processor.executables() == [qemu]


def test_missing_bin_dir_has_no_executables(build_config: BuildConfig) -> None:
    assert PostProcessor(build_config, FakeRunner(), []).executables() == []


def test_only_missing_rpaths_are_added_then_resigned(build_config: BuildConfig) -> None:
    executable = "/tmp/install/bin/qemu-system-x86_64"
    runner = FakeRunner(outputs={executable: OTOOL_OUTPUT.encode()})
    rpaths = ["/tmp/install/lib", "/opt/homebrew/opt/mesa/lib", "/opt/homebrew/lib"]
    processor = PostProcessor(build_config, runner, rpaths)

    added = asyncio.run(processor.run([executable]))

    assert added == {executable: ["/opt/homebrew/lib"]}
    assert runner.commands() == [
        ("otool", "-l", executable),
        ("install_name_tool", "-add_rpath", "/opt/homebrew/lib", executable),
        (
            "codesign",
            "--force",
            "--sign",
            "-",
            "--preserve-metadata=entitlements",
            executable,
        ),
    ]


def test_complete_executable_is_left_alone(build_config: BuildConfig) -> None:
    executable = "/tmp/install/bin/qemu-system-x86_64"
    runner = FakeRunner(outputs={executable: OTOOL_OUTPUT.encode()})
    processor = PostProcessor(
        build_config, runner, ["/opt/homebrew/opt/mesa/lib", "/tmp/install/lib"]
    )

    assert asyncio.run(processor.run([executable])) == {executable: []}
    assert runner.commands() == [("otool", "-l", executable)]


def test_duplicate_rpaths_are_requested_once(build_config: BuildConfig) -> None:
    processor = PostProcessor(build_config, FakeRunner(), ["/a", "/b", "/a"])
    assert processor.rpaths == ["/a", "/b"]
