"""TCP-level health checks and port selection.

Probes only connect and close: application protocols like SSE keep
connections open and would make a request-level probe hang.
"""
from __future__ import annotations

import hashlib
import socket
from typing import Callable

from ..errors import ServiceStartError


def tcp_probe(host: str, port: int, timeout_s: float = 0.25) -> bool:
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            return True
    except OSError:
        return False


def port_is_free(host: str, port: int) -> bool:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        with socket.socket(family, socket.SOCK_STREAM) as s:
            s.bind((host, int(port)))
        return True
    except OSError:
        return False


def preferred_port(key: str, port_min: int, port_max: int) -> int:
    span = port_max - port_min + 1
    h = int(hashlib.sha256(key.encode("utf-8")).hexdigest()[:8], 16)
    return port_min + h % span


def pick_port(
    key: str,
    port_min: int,
    port_max: int,
    *,
    host: str = "127.0.0.1",
    is_free: Callable[[str, int], bool] = port_is_free,
) -> int:
    """First free port at or after the project's preferred port, wrapping around the range."""
    span = port_max - port_min + 1
    start = preferred_port(key, port_min, port_max) - port_min
    for i in range(span):
        port = port_min + (start + i) % span
        if is_free(host, port):
            return port
    raise ServiceStartError(f"no free port in {port_min}-{port_max} on {host}")
