# Stage orchestration.
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
This module contains the pipeline that builds the projects, one stage after another.

Each stage goes through these steps, in order:

#. Apply the registered patches for the project.
#. Run the project's generator with the accumulated search paths.
#. Correct the generated build graph for the host.
#. Build with Ninja.
#. Install into the shared prefix.

After the last stage, the installed executables are post-processed.  The first failure
halts the run; nothing is retried.  Since patches are idempotent and Ninja builds are
incremental, the operator simply re-runs the pipeline after fixing the cause.
"""

import dataclasses
import logging
import os
import os.path as path
import shutil
import time
import typing as T

import humanize

import qvirgl.patches as qv_patches
import qvirgl.utils.fs as qvu_fs
from qvirgl.buildgraph.rewriter import rewrite_file
from qvirgl.errors import MissingPrerequisite, StageFailure
from qvirgl.patches.registry import patches_for
from qvirgl.postprocess import PostProcessor
from qvirgl.utils.proc import CommandRunner

from . import BuildState, Project, Stage
from .generators import create_generator
from .projects import base_search_paths, declare_projects, qemu_executables

if T.TYPE_CHECKING:
    from qvirgl.data.config import BuildConfig
    from qvirgl.utils.logging.build_logger import BuildLogger

logger = logging.getLogger(__name__)

PREFIX_LAYOUT = ("bin", "lib", path.join("lib", "pkgconfig"))
"""Directories created in the install prefix before the first stage."""


@dataclasses.dataclass(frozen=True)
class PipelineResult:
    """Terminal state of a pipeline run."""

    halted_at: Stage | None = None
    """Stage that failed, or ``None`` if all stages were installed."""
    step: str | None = None
    reason: str | None = None
    states: dict[str, BuildState] = dataclasses.field(default_factory=dict)
    """State each project reached, by name."""

    @property
    def success(self) -> bool:
        return self.halted_at is None


class Pipeline:
    """
    Builds the declared projects sequentially.  All configuration comes from the
    :py:class:`BuildConfig` passed in; the process environment is left alone.
    """

    def __init__(
        self,
        config: "BuildConfig",
        log_io: "BuildLogger",
        runner: CommandRunner | None = None,
        projects: list[Project] | None = None,
    ) -> None:
        self.config = config
        self.log_io = log_io
        self.runner = runner or CommandRunner(log_io)
        self.projects = projects if projects is not None else declare_projects(config)
        self.search = base_search_paths(config)

    def check_prerequisites(self, which: T.Callable[..., str | None] | None = None) -> None:
        """
        Verifies that every checkout and host tool is present.

        Raises:
          MissingPrerequisite: naming the first missing one.
        """
        for project in self.projects:
            if not path.isdir(project.source_dir):
                raise MissingPrerequisite(
                    f"{project.name} checkout at {project.source_dir}",
                    "check out the sources before building",
                )

        which = which or shutil.which
        host = self.config.host
        tools = [host.ar, host.ranlib, host.otool, host.install_name_tool, host.codesign]
        for project in self.projects:
            tools.extend(create_generator(project.kind).required_tools(project))
        search_path = self.search.environment()["PATH"]
        for tool in dict.fromkeys(tools):
            if which(tool, path=search_path) is None:
                raise MissingPrerequisite(f"host tool {tool!r}", "install it with Homebrew")

    def reset(self) -> None:
        """
        Removes every project build directory, the install prefix and the generated
        compat directory.
        """
        for project in self.projects:
            if qvu_fs.remove_tree(project.build_dir):
                self.log_io.info(f"Removed {project.build_dir}")
            project.record_state(BuildState.NOT_BUILT)
        for generated in (self.config.prefix, self.config.compat_path):
            if qvu_fs.remove_tree(generated):
                self.log_io.info(f"Removed {generated}")

    def _prepare_prefix(self) -> None:
        for subdir in PREFIX_LAYOUT:
            os.makedirs(path.join(self.config.prefix, subdir), exist_ok=True)

    async def build_project(self, project: Project) -> None:
        """
        Runs every step of ``project``'s stage.

        Raises:
          StageFailure: wrapping whatever made a step fail.
        """
        log = logging.LoggerAdapter(logger, dict(stage=project.stage.name))
        generator = create_generator(project.kind)
        env = generator.environment(project, self.search)
        step = "patch"
        try:
            ctx = qv_patches.PatchContext(project.source_dir, self.config.compat_path)
            for patch in patches_for(project.stage, self.config.host):
                state = qv_patches.apply(patch, ctx)
                self.log_io.info(f"Patch {patch.name}: {state.value}")

            step = "configure"
            invocation = generator.configure(project, self.config.prefix, self.search)
            os.makedirs(project.build_dir, exist_ok=True)
            await self.runner.run(*invocation.args, env=env, cwd=invocation.cwd)

            step = "rewrite"
            if project.corrections:
                for result in rewrite_file(project.build_graph, project.corrections, self.log_io):
                    log.debug("correction %s: %s", result.name, result.outcome.value)
            project.record_state(BuildState.CONFIGURED)

            step = "build"
            invocation = generator.build(project, self.config.parallelism)
            await self.runner.run(*invocation.args, env=env, cwd=invocation.cwd)
            project.record_state(BuildState.BUILT)

            step = "install"
            invocation = generator.install(project)
            await self.runner.run(*invocation.args, env=env, cwd=invocation.cwd)
            project.record_state(BuildState.INSTALLED)
        except Exception as e:
            raise StageFailure(project.stage.name, step, e) from e

    async def post_process(self) -> None:
        """Post-processes the installed executables, then checks that QEMU runs."""
        processor = PostProcessor(self.config, self.runner, self.search.runtime_dirs)
        await processor.run()

        executables = qemu_executables(self.config)
        if executables:
            monitor = path.join(self.config.prefix, "bin", executables[0])
            await self.runner.run(monitor, "--version")

    async def run(self, reset: bool = False) -> PipelineResult:
        """
        Runs the whole pipeline.

        Raises:
          MissingPrerequisite: before doing anything, if a checkout or tool is missing.

        Returns:
          Where the pipeline stopped.
        """
        self.check_prerequisites()
        if reset:
            self.log_io.section("Cleaning build directories")
            self.reset()
        self._prepare_prefix()

        def _states() -> dict[str, BuildState]:
            return {project.name: project.state for project in self.projects}

        for project in self.projects:
            self.log_io.section(
                f"Stage {project.stage.number}/{len(self.projects)}: building {project.name}"
            )
            start = time.monotonic()
            try:
                await self.build_project(project)
            except StageFailure as e:
                self.log_io.error(str(e))
                return PipelineResult(project.stage, e.step, str(e.cause), _states())
            self.log_io.info(
                f"{project.name} installed in {humanize.naturaldelta(time.monotonic() - start)}"
            )

        self.log_io.section("Post-processing installed executables")
        try:
            await self.post_process()
        except Exception as e:
            self.log_io.error(f"post-processing failed: {e}")
            return PipelineResult(self.projects[-1].stage, "post-process", str(e), _states())

        return PipelineResult(states=_states())
