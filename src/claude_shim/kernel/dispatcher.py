"""Staged dispatch.

Each dispatcher call strips control flags, resolves the real binary (once per
pipeline run, then inherited through CLAUDE_REAL_BINARY), and hands control to
the next available stage or to the real binary by replacing the process.

The pipeline position travels in CLAUDE_PIPELINE_STAGE: the child of a stage
dispatch always sees index+1 of the stage it runs, so the index only grows and
each configured stage runs at most once. Missing stages are skipped in a loop
bounded by the number of configured stages instead of re-executing ourselves.
"""
from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, TextIO, Tuple

from ..contracts.v1 import Invocation, PipelineContext, strip_pipeline_position
from ..errors import ExecFailed, ShimError
from ..paths import ShimPaths, default_paths
from ..util.process import exec_replace
from .resolve import resolve_real_binary
from .settings import ShimSettings, load_settings
from .stages import StageDescriptor, StageRegistry

logger = logging.getLogger("claude_shim.dispatcher")

ExecFn = Callable[[Path, Sequence[str], Dict[str, str]], int]


@dataclass(frozen=True)
class DispatchPlan:
    target: Path
    argv: List[str]
    env: Dict[str, str]
    stage: Optional[str]
    stage_index: int
    bypass: bool = False
    top_level: bool = True

    @property
    def terminal(self) -> bool:
        return self.stage is None


def strip_control_flags(args: Sequence[str], flags: Sequence[str]) -> Tuple[List[str], List[str]]:
    """Split args into (forwarded args, control flags found)."""
    wanted = set(flags)
    kept: List[str] = []
    found: List[str] = []
    for a in args:
        if a in wanted:
            found.append(a)
        else:
            kept.append(a)
    return kept, found


class Dispatcher:
    def __init__(self, settings: ShimSettings, paths: ShimPaths) -> None:
        self.settings = settings
        self.paths = paths
        self.registry = StageRegistry(settings.stage_order, paths.wrappers_dir, disabled=settings.disabled_stages)

    def excluded_dirs(self) -> List[Path]:
        return self.paths.managed_dirs(self.settings.stage_order)

    def eligible(self, d: StageDescriptor, *, bypass: bool) -> bool:
        if not d.available:
            return False
        return not bypass or d.name in self.settings.bypass_stages

    def summary(self, command: str, *, bypass: bool) -> List[str]:
        """Stages shown to the user; display only, never consulted for control flow.

        In bypass mode the stages that will run come first, followed by the
        installed stages the flag skips.
        """
        active: List[str] = []
        skipped: List[str] = []
        for d in self.registry.descriptors(command):
            if not d.available:
                continue
            if bypass and d.name not in self.settings.bypass_stages:
                skipped.append(f"{d.name} (skipping in {self.settings.bypass_flag} mode)")
            else:
                active.append(d.name)
        return active + skipped

    def prepare(self, invocation: Invocation) -> Tuple[List[str], PipelineContext]:
        args, found = strip_control_flags(invocation.args, [self.settings.bypass_flag])
        ctx = PipelineContext.from_env(invocation.env)
        real = resolve_real_binary(
            invocation.command,
            env=invocation.env,
            excluded=self.excluded_dirs(),
            inherited=ctx.real_binary,
        )
        ctx = ctx.model_copy(update={"bypass": ctx.bypass or bool(found), "real_binary": str(real)})
        return args, ctx

    def plan(self, invocation: Invocation) -> DispatchPlan:
        command = invocation.command
        args, ctx = self.prepare(invocation)
        total = len(self.registry)
        index = ctx.stage_index
        while index < total:
            d = self.registry.descriptor(self.registry.order[index], command)
            if self.eligible(d, bypass=ctx.bypass):
                assert d.executable_path is not None
                child = ctx.model_copy(update={"stage_index": index + 1})
                return DispatchPlan(
                    target=d.executable_path,
                    argv=[str(d.executable_path), *args],
                    env=child.to_env(invocation.env),
                    stage=d.name,
                    stage_index=index + 1,
                    bypass=ctx.bypass,
                    top_level=ctx.top_level,
                )
            logger.debug(
                "skipping stage %s (%s)",
                d.name,
                "bypass" if d.available else d.availability.value,
                extra={"command": command, "stage": d.name, "stage_index": index},
            )
            index += 1

        real = Path(ctx.real_binary)
        return DispatchPlan(
            target=real,
            argv=[str(real), *args],
            env=strip_pipeline_position(ctx.to_env(invocation.env)),
            stage=None,
            stage_index=index,
            bypass=ctx.bypass,
            top_level=ctx.top_level,
        )

    def run(self, invocation: Invocation, *, exec_fn: ExecFn = exec_replace, err: Optional[TextIO] = None) -> int:
        plan = self.plan(invocation)
        if plan.top_level and self.settings.summary:
            entries = self.summary(invocation.command, bypass=plan.bypass)
            if entries:
                stream = err or sys.stderr
                print(f"✨ {invocation.command} shims active: {', '.join(entries)}", file=stream, flush=True)
        logger.info(
            "dispatch -> %s",
            plan.stage or f"real binary {plan.target}",
            extra={"command": invocation.command, "stage": plan.stage or "", "stage_index": plan.stage_index},
        )
        try:
            return exec_fn(plan.target, plan.argv, plan.env)
        except OSError as e:
            raise ExecFailed(f"cannot execute {plan.target}: {e.strerror or e}") from e


def dispatch(
    invocation: Invocation,
    *,
    settings: Optional[ShimSettings] = None,
    paths: Optional[ShimPaths] = None,
    exec_fn: ExecFn = exec_replace,
    err: Optional[TextIO] = None,
) -> int:
    """Run one dispatcher step; fatal errors become a diagnostic and exit code."""
    p = paths or default_paths()
    s = settings or load_settings(p.home)
    try:
        return Dispatcher(s, p).run(invocation, exec_fn=exec_fn, err=err)
    except ShimError as e:
        logger.error("dispatch failed: %s", e, extra={"command": invocation.command, "quiet": True})
        print(f"❌ DISPATCHER: Error: {e}", file=err or sys.stderr, flush=True)
        return e.exit_code
