"""Writes the on-disk layout: dispatcher, PATH interceptors and stage launchers.

Launchers are tiny Python scripts bound to the interpreter that ran the
install, so they import this package without depending on PATH.
"""
from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from ..paths import ShimPaths
from ..util.fs import atomic_write_text

_LAUNCHER = """#!{python}
# Generated by `claude-shim install`; rewritten on reinstall.
from claude_shim.{module} import main

raise SystemExit(main({call_args}))
"""


@dataclass
class InstallReport:
    written: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"written": self.written, "kept": self.kept}


def render_launcher(module: str, call_args: str = "", *, python: Optional[str] = None) -> str:
    return _LAUNCHER.format(python=python or sys.executable, module=module, call_args=call_args)


def _write(path: Path, text: str, *, force: bool, report: InstallReport) -> None:
    if path.exists() and not force:
        report.kept.append(str(path))
        return
    atomic_write_text(path, text, mode=0o755)
    report.written.append(str(path))


def install_layout(
    paths: ShimPaths,
    *,
    commands: Sequence[str] = ("claude",),
    stages: Iterable[str] = (),
    known_stages: Iterable[str] = (),
    python: Optional[str] = None,
    force: bool = False,
) -> InstallReport:
    from ..stages import BUILTIN_STAGES

    selected = list(stages)
    unknown = [s for s in selected if s not in BUILTIN_STAGES]
    if unknown:
        raise ValueError(f"unknown built-in stage(s): {', '.join(unknown)}")
    bad = [c for c in commands if not c or "/" in c or "\\" in c]
    if bad:
        raise ValueError(f"invalid command name(s): {bad!r}")

    report = InstallReport()
    for d in (paths.shims_dir, paths.libexec_dir, paths.wrappers_dir):
        d.mkdir(parents=True, exist_ok=True)
    for name in [*known_stages, *selected]:
        paths.stage_dir(name).mkdir(parents=True, exist_ok=True)

    _write(paths.dispatcher_path, render_launcher("dispatch_main", python=python), force=force, report=report)
    for command in commands:
        _write(
            paths.shims_dir / command,
            render_launcher("interceptor", repr(str(paths.dispatcher_path)), python=python),
            force=force,
            report=report,
        )
        for stage in selected:
            _write(
                paths.stage_dir(stage) / command,
                render_launcher("stage_main", repr(stage), python=python),
                force=force,
                report=report,
            )
    return report
