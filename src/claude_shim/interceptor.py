"""PATH interceptor.

Installed as `shims/<command>`; forwards `<command> args...` to the dispatcher
by absolute path so it can never find itself on PATH again.
"""
from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .errors import DispatcherNotFound, ExecFailed, ShimConfigError, ShimError
from .util.fs import is_executable_file
from .util.process import exec_replace


def build_argv(dispatcher: Path, argv: Sequence[str]) -> List[str]:
    if not argv:
        raise ShimConfigError("interceptor invoked without argv[0]")
    command = os.path.basename(argv[0])
    return [str(dispatcher), command, *argv[1:]]


def check_dispatcher(dispatcher: Path, argv0: str) -> None:
    if not dispatcher.is_absolute():
        raise ShimConfigError(f"dispatcher path must be absolute: {dispatcher}")
    if not is_executable_file(dispatcher):
        raise DispatcherNotFound(f"dispatcher not found: {dispatcher}")
    try:
        me = Path(argv0).resolve()
        if me.exists() and me == dispatcher.resolve():
            raise ShimConfigError(f"interceptor points at itself: {dispatcher}")
    except OSError:
        pass


def main(
    dispatcher: Union[str, Path],
    argv: Optional[Sequence[str]] = None,
    *,
    exec_fn: Callable[[Path, Sequence[str], Dict[str, str]], int] = exec_replace,
) -> int:
    args = list(sys.argv if argv is None else argv)
    target = Path(dispatcher)
    try:
        check_dispatcher(target, args[0] if args else "")
        new_argv = build_argv(target, args)
    except ShimError as e:
        print(f"❌ SHIM: {e}", file=sys.stderr, flush=True)
        return e.exit_code
    try:
        return exec_fn(target, new_argv, dict(os.environ))
    except OSError as e:
        err = ExecFailed(f"cannot execute {target}: {e.strerror or e}")
        print(f"❌ SHIM: {err}", file=sys.stderr, flush=True)
        return err.exit_code
