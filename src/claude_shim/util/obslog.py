from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, TextIO


_CONFIGURED: Dict[str, bool] = {}

# Correlation keys copied from `extra={...}` when present.
_CONTEXT_KEYS = ("command", "stage", "stage_index", "project_key", "service", "port", "pid")


def _utc_ts_iso(ts: float) -> str:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")
    except Exception:
        return ""


class JsonlFormatter(logging.Formatter):
    """Minimal JSONL formatter for local-first debugging.

    Keep fields stable and small; extra fields can be added via `logger.*(..., extra={...})`.
    """

    def __init__(self, *, component: str):
        super().__init__()
        self._component = str(component or "").strip() or "claude-shim"

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": _utc_ts_iso(getattr(record, "created", 0.0) or 0.0),
            "level": str(getattr(record, "levelname", "") or ""),
            "logger": str(getattr(record, "name", "") or ""),
            "component": self._component,
            "pid_self": getattr(record, "process", None),
            "msg": record.getMessage(),
        }

        for k in _CONTEXT_KEYS:
            try:
                v = getattr(record, k, None)
            except Exception:
                v = None
            if v is None:
                continue
            sv = str(v).strip()
            if sv:
                payload[k] = sv

        if record.exc_info:
            try:
                payload["exc"] = self.formatException(record.exc_info)
            except Exception:
                payload["exc"] = "exception"

        try:
            return json.dumps(payload, ensure_ascii=False)
        except Exception:
            # Last resort: never crash logging.
            return '{"component":"%s","level":"%s","msg":"(log serialization failed)"}' % (
                self._component,
                payload.get("level", "INFO"),
            )


class _ConsoleFilter(logging.Filter):
    """Drop records marked `extra={"quiet": True}`; the caller already told the user."""

    def filter(self, record: logging.LogRecord) -> bool:
        return not bool(getattr(record, "quiet", False))


class _StderrFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return f"claude-shim: {record.levelname.lower()}: {record.getMessage()}"


def _parse_level(level: str, default: int = logging.INFO) -> int:
    s = str(level or "").strip().upper()
    if not s:
        return default
    v = getattr(logging, s, default)
    return v if isinstance(v, int) else default


def setup_logging(
    *,
    component: str,
    level: str = "INFO",
    log_path: Optional[Path] = None,
    stream: Optional[TextIO] = None,
    stderr_level: str = "WARNING",
    force: bool = False,
) -> None:
    """Configure root logging once per process.

    - JSONL records go to `log_path` (appended) when given, else to `stream`.
    - A short human-readable line goes to stderr for `stderr_level` and above,
      so soft failures are visible without touching stdout.
    - `force=True` clears existing handlers.
    """
    key = f"root:{component}"
    if _CONFIGURED.get(key) and not force:
        return
    _CONFIGURED[key] = True

    root = logging.getLogger()
    lvl = _parse_level(level)
    root.setLevel(min(lvl, _parse_level(stderr_level, logging.WARNING)))

    if force:
        for h in list(root.handlers):
            try:
                root.removeHandler(h)
                h.close()
            except Exception:
                pass

    handler: Optional[logging.Handler] = None
    if log_path is not None:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(str(log_path), encoding="utf-8", delay=True)
        except Exception:
            handler = None
    elif stream is not None:
        handler = logging.StreamHandler(stream)
    if handler is not None:
        handler.setLevel(lvl)
        handler.setFormatter(JsonlFormatter(component=component))
        root.addHandler(handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(_parse_level(stderr_level, logging.WARNING))
    console.setFormatter(_StderrFormatter())
    console.addFilter(_ConsoleFilter())
    root.addHandler(console)
