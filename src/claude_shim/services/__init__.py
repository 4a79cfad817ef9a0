from __future__ import annotations

from .probe import pick_port, port_is_free, preferred_port, tcp_probe
from .store import ServiceStore
from .supervisor import EnsureResult, ServiceSupervisor

__all__ = [
    "EnsureResult",
    "ServiceStore",
    "ServiceSupervisor",
    "pick_port",
    "port_is_free",
    "preferred_port",
    "tcp_probe",
]
