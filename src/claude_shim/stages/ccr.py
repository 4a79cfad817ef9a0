"""Routing stage: run the command through `ccr code`.

The router starts the command by name, so it comes back through the PATH
interceptor and the dispatcher picks up at the already-advanced position.
"""
from __future__ import annotations

import logging
from typing import Union

from ..kernel.resolve import which_filtered
from .base import StageContext

logger = logging.getLogger("claude_shim.stages.ccr")


def setup(ctx: StageContext) -> Union[StageContext, int]:
    excluded = ctx.paths.managed_dirs(ctx.settings.stage_order)
    ccr = which_filtered("ccr", env=ctx.env, excluded=excluded)
    if ccr is None:
        logger.warning("ccr not found on PATH; continuing without the router", extra={"stage": ctx.stage})
        return ctx
    logger.info("handing off to %s code", ccr, extra={"stage": ctx.stage, "command": ctx.command})
    return ctx.exec_fn(ccr, [str(ccr), "code", *ctx.args], ctx.env)
