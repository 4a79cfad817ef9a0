"""Background-service stage: keep a per-project Serena MCP server running.

After the supervisor reports a healthy helper, an MCP config pointing at it is
written next to the service record and passed to the command.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from ..contracts.v1 import ServiceRecord
from ..kernel.project import detect_project
from ..kernel.settings import ServiceSettings
from ..services import ServiceStore, ServiceSupervisor
from ..util.fs import atomic_write_json
from .base import StageContext, insert_before_separator

logger = logging.getLogger("claude_shim.stages.serena")

SERVICE = "serena"

# Subcommands that do not take --mcp-config.
NO_MCP_SUBCOMMANDS = frozenset({"mcp", "config", "update", "doctor", "install", "migrate-installer", "setup-token"})


def mcp_config(name: str, record: ServiceRecord, settings: ServiceSettings) -> dict:
    url = settings.mcp_url.format(host=record.host, port=record.port)
    return {"mcpServers": {name: {"type": settings.mcp_transport, "url": url}}}


def write_mcp_config(path: Path, name: str, record: ServiceRecord, settings: ServiceSettings) -> Path:
    atomic_write_json(path, mcp_config(name, record, settings))
    return path


def wants_mcp_config(args: list[str]) -> bool:
    return not (args and args[0] in NO_MCP_SUBCOMMANDS)


def setup(ctx: StageContext) -> Union[StageContext, int]:
    svc = ctx.settings.service(SERVICE)
    project = detect_project(Path.cwd())
    store = ServiceStore(ctx.paths, SERVICE)
    result = ServiceSupervisor(SERVICE, svc, ctx.settings.lock, store).ensure(project, ctx.env)
    if not result.healthy or result.record is None:
        return ctx
    if not svc.inject_mcp_config or not wants_mcp_config(ctx.args):
        return ctx
    cfg = write_mcp_config(store.mcp_config_path(project.key), SERVICE, result.record, svc)
    return ctx.with_args(insert_before_separator(ctx.args, ["--mcp-config", str(cfg)]))
