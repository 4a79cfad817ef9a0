from __future__ import annotations

import logging
import os
import sys
from typing import Optional, Sequence

from .kernel.dispatcher import ExecFn
from .kernel.settings import load_settings
from .paths import default_paths
from .stages import BUILTIN_STAGES, StageContext, forward, run_stage
from .util.obslog import setup_logging
from .util.process import exec_replace

logger = logging.getLogger("claude_shim.stages")


def main(stage: str, argv: Optional[Sequence[str]] = None, *, exec_fn: ExecFn = exec_replace) -> int:
    """Entry for installed stage launchers (wrappers.d/<stage>/<command>)."""
    args = list(sys.argv if argv is None else argv)
    command = os.path.basename(args[0]) if args else ""
    paths = default_paths()
    settings = load_settings(paths.home)
    setup_logging(component=f"stage.{stage}", level=settings.log_level, log_path=paths.log_path)
    ctx = StageContext.from_env(
        stage, command, args[1:], env=os.environ, settings=settings, paths=paths, exec_fn=exec_fn
    )
    setup = BUILTIN_STAGES.get(stage)
    if setup is None:
        logger.warning("unknown built-in stage %r; forwarding", stage, extra={"stage": stage})
        return forward(ctx)
    return run_stage(setup, ctx)
