from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .errors import ShimError
from .kernel.dispatcher import Dispatcher
from .kernel.layout import install_layout
from .kernel.project import detect_project
from .kernel.resolve import resolve_real_binary
from .kernel.settings import load_settings
from .paths import default_paths
from .services import ServiceStore, ServiceSupervisor
from .util.obslog import setup_logging


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _error(code: str, message: str, *, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message, "details": details or {}}}


def cmd_install(args: argparse.Namespace) -> int:
    paths = default_paths()
    settings = load_settings(paths.home)
    try:
        report = install_layout(
            paths,
            commands=args.command or ["claude"],
            stages=args.stage or [],
            known_stages=settings.stage_order,
            force=bool(args.force),
        )
    except ValueError as e:
        _print_json(_error("invalid_install", str(e)))
        return 2
    _print_json(
        {
            "ok": True,
            "result": {
                **report.to_dict(),
                "path_hint": f'export PATH="{paths.shims_dir}:$PATH"',
            },
        }
    )
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    paths = default_paths()
    settings = load_settings(paths.home)
    d = Dispatcher(settings, paths)
    command = str(args.command or "claude")
    stages = [
        {
            "name": s.name,
            "order": s.order,
            "availability": s.availability.value,
            "path": str(s.executable_path) if s.executable_path else None,
        }
        for s in d.registry.descriptors(command)
    ]
    real: Optional[str] = None
    real_error = ""
    try:
        real = str(resolve_real_binary(command, env=os.environ, excluded=d.excluded_dirs()))
    except ShimError as e:
        real_error = str(e)
    _print_json(
        {
            "ok": not real_error,
            "result": {
                "version": __version__,
                "home": str(paths.home),
                "command": command,
                "stage_order": settings.stage_order,
                "bypass_flag": settings.bypass_flag,
                "bypass_stages": settings.bypass_stages,
                "disabled_stages": settings.disabled_stages,
                "stages": stages,
                "active": d.summary(command, bypass=False),
                "real_binary": real,
                "real_binary_error": real_error,
            },
        }
    )
    return 0 if not real_error else 1


def _supervisor(name: str) -> Optional[ServiceSupervisor]:
    paths = default_paths()
    settings = load_settings(paths.home)
    if name not in settings.services:
        return None
    return ServiceSupervisor(name, settings.service(name), settings.lock, ServiceStore(paths, name))


def cmd_service_status(args: argparse.Namespace) -> int:
    sup = _supervisor(args.service)
    if sup is None:
        _print_json(_error("unknown_service", f"service not configured: {args.service}"))
        return 2
    project = detect_project(Path(args.path))
    rec = sup.store.read(project.key)
    _print_json(
        {
            "ok": True,
            "result": {
                "service": args.service,
                "project": {"root": str(project.root), "key": project.key, "label": project.label},
                "record": rec.model_dump() if rec else None,
                "healthy": bool(rec is not None and sup.is_healthy(rec)),
            },
        }
    )
    return 0


def cmd_service_stop(args: argparse.Namespace) -> int:
    sup = _supervisor(args.service)
    if sup is None:
        _print_json(_error("unknown_service", f"service not configured: {args.service}"))
        return 2
    project = detect_project(Path(args.path))
    rec = sup.stop(project)
    _print_json({"ok": True, "result": {"service": args.service, "stopped": rec.model_dump() if rec else None}})
    return 0


def cmd_service_list(args: argparse.Namespace) -> int:
    sup = _supervisor(args.service)
    if sup is None:
        _print_json(_error("unknown_service", f"service not configured: {args.service}"))
        return 2
    items = [{**rec.model_dump(), "healthy": sup.is_healthy(rec)} for rec in sup.store.list_records()]
    _print_json({"ok": True, "result": {"service": args.service, "records": items}})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="claude-shim", description="Staged wrapper pipeline for AI assistant CLIs")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_install = sub.add_parser("install", help="Write dispatcher, interceptor and stage launchers")
    p_install.add_argument("--command", action="append", help="Command to intercept (repeatable, default: claude)")
    p_install.add_argument("--stage", action="append", help="Built-in stage to install (repeatable)")
    p_install.add_argument("--force", action="store_true", help="Overwrite existing launchers")
    p_install.set_defaults(func=cmd_install)

    p_status = sub.add_parser("status", help="Show stage availability and real binary resolution")
    p_status.add_argument("--command", default="claude")
    p_status.set_defaults(func=cmd_status)

    p_service = sub.add_parser("service", help="Inspect per-project background helpers")
    svc_sub = p_service.add_subparsers(dest="service_cmd", required=True)
    for name, fn, help_text in (
        ("status", cmd_service_status, "Show the helper for a project"),
        ("stop", cmd_service_stop, "Stop the helper for a project and drop its record"),
    ):
        p = svc_sub.add_parser(name, help=help_text)
        p.add_argument("--service", default="serena")
        p.add_argument("--path", default=".")
        p.set_defaults(func=fn)
    p_list = svc_sub.add_parser("list", help="List recorded helpers")
    p_list.add_argument("--service", default="serena")
    p_list.set_defaults(func=cmd_service_list)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    paths = default_paths()
    settings = load_settings(paths.home)
    setup_logging(component="cli", level=settings.log_level, log_path=paths.log_path)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
