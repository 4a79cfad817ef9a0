from __future__ import annotations

import os
import sys
from typing import Optional

from .contracts.v1 import Invocation
from .kernel.dispatcher import dispatch
from .kernel.settings import load_settings
from .paths import default_paths
from .util.obslog import setup_logging


def main(argv: Optional[list[str]] = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args or not args[0].strip():
        print("usage: claude-dispatcher <command> [args...]", file=sys.stderr)
        return 2
    command = os.path.basename(args[0].strip())
    paths = default_paths()
    settings = load_settings(paths.home)
    setup_logging(component="dispatcher", level=settings.log_level, log_path=paths.log_path)
    invocation = Invocation(command=command, args=args[1:], env=dict(os.environ))
    return dispatch(invocation, settings=settings, paths=paths)


if __name__ == "__main__":
    raise SystemExit(main())
