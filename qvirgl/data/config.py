# Configuration file models
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
Data models and validation schemas for configuration files.

All the configuration lives in a single ``qvirgl.toml``, which may be absent, in which
case every value takes its default.  The loaded configuration is passed explicitly to
every stage; nothing here is read from, or written into, :py:data:`os.environ` except
for locating the configuration file itself.
"""

import logging
import os
import os.path as path
import sys
import typing as T

import toml
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "qvirgl.toml"
"""Name of the configuration file looked up in the configuration directory."""


class LoggingConfig(BaseModel):
    """
    Common logging configuration.
    """

    debug: bool = Field(default=False)
    """
    If ``true``, enables logging the debug level.  This can be extremely verbose.
    """


class HostConfig(BaseModel):
    """
    Locations of host tools and of dependencies installed by the host package manager.
    """

    homebrew_prefix: str = Field(default="/opt/homebrew")
    """
    Prefix of the Homebrew installation providing glib, pixman, SDL dependencies and the
    rest of the usual build dependencies.
    """

    mesa_prefix: str = Field(default="/opt/homebrew/opt/mesa")
    """
    Prefix of the Mesa keg providing EGL and GLES.  Mesa is keg-only, so it has to be
    named explicitly in every search path.
    """

    ar: str = Field(default="/usr/bin/ar")
    """
    The host-native archiver.  GNU ``ar`` from binutils produces archives the Apple
    linker rejects, so this must point at the Xcode one.
    """

    ranlib: str = Field(default="/usr/bin/ranlib")
    """The host-native archive indexer.  Same caveat as :py:attr:`ar`."""

    otool: str = Field(default="otool")
    """Tool used to inspect Mach-O load commands."""

    install_name_tool: str = Field(default="install_name_tool")
    """Tool used to edit Mach-O load commands."""

    codesign: str = Field(default="codesign")
    """
    Tool used to re-sign executables after their load commands were edited.  Apple
    Silicon refuses to run binaries whose signature no longer matches.
    """

    python: str | None = Field(default=None)
    """
    Python interpreter handed to QEMU's ``configure``.  If unset, ``configure`` picks
    one by itself.
    """

    vulkan_icd: str | None = Field(default=None)
    """
    Vulkan ICD manifest exported as ``VK_ICD_FILENAMES`` when launching a VM, for
    example the MoltenVK one.
    """

    @property
    def native_program_dir(self) -> str:
        """Directory holding the native archiver, which must win on ``PATH``."""
        return path.dirname(self.ar) or "/usr/bin"


class BuildConfig(BaseModel):
    """
    Configuration model for a build.
    """

    log: LoggingConfig = Field(default_factory=LoggingConfig)
    """
    Logger configuration.  See :py:class:`LoggingConfig`.
    """

    host: HostConfig = Field(default_factory=HostConfig)
    """
    Host tool configuration.  See :py:class:`HostConfig`.
    """

    root: str = Field(default_factory=os.getcwd)
    """
    Directory containing the ``libepoxy``, ``virglrenderer``, ``SDL`` and ``qemu``
    checkouts.  Relative paths below are relative to this directory.
    """

    install_dir: str = Field(default="install")
    """Shared install prefix all stages install into."""

    compat_dir: str = Field(default="macos-compat")
    """Directory holding generated compatibility headers and wrappers."""

    build_subdir: str = Field(default="build")
    """Name of the build directory inside each checkout."""

    jobs: T.Annotated[int, Field(ge=1)] | None = Field(default=None)
    """
    Number of parallel jobs handed to Ninja.  Defaults to the number of host CPUs.
    """

    qemu_targets: list[str] = Field(default_factory=lambda: ["x86_64-softmmu", "aarch64-softmmu"])
    """QEMU target list."""

    def resolve(self, *parts: str) -> str:
        """Resolves ``parts`` relative to :py:attr:`root`."""
        return path.abspath(path.join(self.root, *parts))

    @property
    def prefix(self) -> str:
        """Absolute path to the install prefix."""
        return self.resolve(self.install_dir)

    @property
    def compat_path(self) -> str:
        """Absolute path to the compatibility directory."""
        return self.resolve(self.compat_dir)

    @property
    def compat_include(self) -> str:
        """Absolute path to the compatibility header directory."""
        return path.join(self.compat_path, "include")

    @property
    def parallelism(self) -> int:
        return self.jobs or os.cpu_count() or 1


def config_path() -> str:
    """Gets the configuration file location."""
    config_dir = os.getenv("QVIRGL_CFG_DIR") or os.getcwd()
    return path.join(config_dir, CONFIG_FILE_NAME)


M = T.TypeVar("M", bound=BaseModel)


def load_and_validate_config(config_file: str, model: type[M]) -> M:
    """
    Validate and load a config file as the given model.  A missing file yields the
    model defaults.

    Args:
      config_file: Path of the configuration file.
      model: A Pydantic model by which to validate the loaded config

    Returns:
      A parsed config.

    Raises:
      SystemExit: if configuration parsing fails.  Exit code 1.
    """

    try:
        with open(config_file, "r") as config:
            return model.model_validate(toml.load(config))
    except FileNotFoundError:
        logger.debug("no config at %r, using defaults", config_file)
        return model.model_validate({})
    except (ValidationError, toml.TomlDecodeError):
        logger.exception("failed to parse config %r", config_file)
        sys.exit(1)
    except Exception:
        logger.exception("failed to load config %r", config_file)
        sys.exit(1)
