# qvirgl-build command line interface
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

import asyncio
import logging
import os.path as path
import sys
import typing as T

import qvirgl.data.config as config
import qvirgl.utils.logging as qvu_logging
from qvirgl.errors import MissingPrerequisite
from qvirgl.stages.orchestrator import Pipeline
from qvirgl.utils.argparse import create_root_parser
from qvirgl.utils.logging.build_logger import BuildLogger

logger = logging.getLogger(__name__)


async def amain(
    cfg: config.BuildConfig, clean: bool, out_stream: T.TextIO = sys.stdout
) -> int:
    log_io = BuildLogger(out_stream)
    pipeline = Pipeline(cfg, log_io)
    try:
        result = await pipeline.run(reset=clean)
    except MissingPrerequisite as e:
        log_io.error(str(e))
        return 1

    if not result.success:
        assert result.halted_at is not None
        log_io.error(
            f"Build halted at stage {result.halted_at.number} ({result.halted_at.name}), "
            f"step {result.step!r}: {result.reason}"
        )
        return 1

    log_io.info(f"Done! QEMU installed to: {path.join(cfg.prefix, 'bin')}")
    return 0


def main(argv: T.Sequence[str] | None = None) -> None:
    parser = create_root_parser(
        "Build QEMU with virglrenderer GPU acceleration on macOS.", prog="qvirgl-build"
    )
    parser.add_argument(
        "--clean",
        action="store_true",
        help="remove all build directories and the install prefix before building",
    )
    args = parser.parse_args(argv)

    build_config = config.load_and_validate_config(config.config_path(), config.BuildConfig)
    qvu_logging.apply_logging_config(build_config.log)
    logger.debug("config loaded: %r", build_config)

    sys.exit(asyncio.run(amain(build_config, clean=args.clean)))
