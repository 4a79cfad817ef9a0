"""Contract every stage satisfies.

A stage does its own setup, then hands control onward by re-entering the
dispatcher (or, for a terminal integration, the real binary). Setup failures
are logged and never stop the user's command.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Sequence, Union

from ..contracts.v1 import Invocation, PipelineContext, strip_pipeline_position
from ..errors import ExecFailed
from ..kernel.dispatcher import ExecFn, dispatch
from ..kernel.settings import ShimSettings
from ..paths import ShimPaths
from ..util.process import exec_replace

logger = logging.getLogger("claude_shim.stages")


@dataclass(frozen=True)
class StageContext:
    stage: str
    command: str
    args: List[str]
    env: Dict[str, str]
    pipeline: PipelineContext
    settings: ShimSettings
    paths: ShimPaths
    exec_fn: ExecFn = field(default=exec_replace, compare=False, repr=False)

    @classmethod
    def from_env(
        cls,
        stage: str,
        command: str,
        args: Sequence[str],
        *,
        env: Mapping[str, str],
        settings: ShimSettings,
        paths: ShimPaths,
        exec_fn: ExecFn = exec_replace,
    ) -> "StageContext":
        return cls(
            stage=stage,
            command=command,
            args=list(args),
            env=dict(env),
            pipeline=PipelineContext.from_env(env),
            settings=settings,
            paths=paths,
            exec_fn=exec_fn,
        )

    def with_args(self, args: Sequence[str]) -> "StageContext":
        return replace(self, args=list(args))


# A setup returns the (possibly rewritten) context to forward, or an exit code
# when it already handed control to something else.
StageSetup = Callable[[StageContext], Union[StageContext, int]]


def forward(ctx: StageContext) -> int:
    """Continue the chain through the dispatcher with the inherited position."""
    return dispatch(
        Invocation(command=ctx.command, args=ctx.args, env=ctx.env),
        settings=ctx.settings,
        paths=ctx.paths,
        exec_fn=ctx.exec_fn,
    )


def forward_to_real_binary(ctx: StageContext) -> int:
    """Terminal stages skip the rest of the chain and run the real binary directly."""
    real = ctx.pipeline.real_binary
    if not real:
        return forward(ctx)
    try:
        return ctx.exec_fn(Path(real), [real, *ctx.args], strip_pipeline_position(ctx.env))
    except OSError as e:
        err = ExecFailed(f"cannot execute {real}: {e.strerror or e}")
        logger.error("%s", err, extra={"stage": ctx.stage, "command": ctx.command, "quiet": True})
        print(f"❌ {ctx.stage.upper()}: Error: {err}", file=sys.stderr, flush=True)
        return err.exit_code


def run_stage(setup: StageSetup, ctx: StageContext) -> int:
    extra = {"stage": ctx.stage, "command": ctx.command, "stage_index": ctx.pipeline.stage_index}
    try:
        result = setup(ctx)
    except Exception as e:
        logger.warning("%s setup failed, continuing without it: %s", ctx.stage, e, exc_info=True, extra=extra)
        result = ctx
    if isinstance(result, int):
        return result
    return forward(result)


def insert_before_separator(args: Sequence[str], extra: Sequence[str]) -> List[str]:
    """Append `extra` after the options but before a `--` separator, if any."""
    out = list(args)
    try:
        i = out.index("--")
    except ValueError:
        return out + list(extra)
    return out[:i] + list(extra) + out[i:]
