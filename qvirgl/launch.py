# VM launcher.
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
Launches a Linux guest with virgl GPU acceleration using the QEMU built by
``qvirgl-build``.

Usage: ``qvirgl-run <disk-image.qcow2> [qemu arguments...]``.  Guest memory and CPU
count come from the ``RAM`` and ``CPUS`` environment variables.
"""

import os
import os.path as path
import re
import subprocess
import sys
import typing as T

import qvirgl.data.config as config

DEFAULT_RAM = "4G"
DEFAULT_CPUS = "4"

_HVF_RE = re.compile(r"(^|\s)hvf(\s|$)", re.M)


class Accelerator(T.NamedTuple):
    name: str
    cpu_model: str


HVF = Accelerator("hvf", "host")
TCG = Accelerator("tcg", "max")


def detect_accelerator(qemu: str) -> Accelerator:
    """
    Uses Hypervisor.framework if this QEMU reports it as available, and falls back to
    TCG otherwise.
    """
    try:
        listing = subprocess.run(
            [qemu, "-accel", "help"],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            text=True,
            check=False,
        ).stdout
    except OSError:
        listing = ""
    return HVF if _HVF_RE.search(listing) else TCG


def build_command(
    qemu: str,
    disk: str,
    accel: Accelerator,
    ram: str,
    cpus: str,
    extra_args: T.Sequence[str] = (),
) -> list[str]:
    """Constructs the QEMU command line.  ``extra_args`` are appended unmodified."""
    return [
        qemu,
        "-machine", f"q35,accel={accel.name}",
        "-cpu", accel.cpu_model,
        "-smp", cpus,
        "-m", ram,
        "-device", "virtio-gpu-gl,xres=1920,yres=1080",
        "-display", "sdl,gl=es",
        "-drive", f"file={disk},if=virtio,format=qcow2",
        "-device", "virtio-keyboard-pci",
        "-device", "virtio-mouse-pci",
        "-netdev", "user,id=net0",
        "-device", "virtio-net-pci,netdev=net0",
        "-usb",
        *extra_args,
    ]  # fmt: skip


def _usage(prefix: str) -> str:
    return (
        "Usage: qvirgl-run <disk-image.qcow2> [qemu arguments...]\n"
        "\n"
        "Create a disk image with:\n"
        f"  {path.join(prefix, 'bin', 'qemu-img')} create -f qcow2 disk.qcow2 40G"
    )


def main(
    argv: T.Sequence[str] | None = None,
    cfg: config.BuildConfig | None = None,
    environ: T.Mapping[str, str] | None = None,
) -> int:
    if argv is None:
        argv = sys.argv[1:]
    if environ is None:
        environ = os.environ
    if cfg is None:
        cfg = config.load_and_validate_config(config.config_path(), config.BuildConfig)

    if not argv or not argv[0]:
        print(_usage(cfg.prefix), file=sys.stderr)
        return 1
    (disk, *extra_args) = argv

    qemu = path.join(cfg.prefix, "bin", "qemu-system-x86_64")
    if not path.exists(qemu):
        print(f"{qemu} does not exist; run qvirgl-build first", file=sys.stderr)
        return 1

    accel = detect_accelerator(qemu)
    command = build_command(
        qemu,
        disk,
        accel,
        ram=environ.get("RAM") or DEFAULT_RAM,
        cpus=environ.get("CPUS") or DEFAULT_CPUS,
        extra_args=extra_args,
    )

    env = dict(environ)
    if cfg.host.vulkan_icd:
        env["VK_ICD_FILENAMES"] = cfg.host.vulkan_icd
    os.execve(qemu, command, env)
    return 0  # pragma: no cover


def run() -> T.NoReturn:
    sys.exit(main())
