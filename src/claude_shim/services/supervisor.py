"""Per-project background helper supervision.

Protocol per invocation: lock the project, reuse the recorded helper if its
pid is alive and its port accepts a TCP connection, otherwise start a fresh
detached helper and poll it until healthy, record it, unlock. Only the final
outcome is persisted, so readers see either no record or a record that was
healthy when written.

Every failure here is soft: the caller forwards the user's command anyway.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Literal, Mapping, Optional

from ..contracts.v1 import ServiceRecord, strip_pipeline_position
from ..errors import ServiceStartError
from ..kernel.project import ProjectIdentity
from ..kernel.settings import LockSettings, ServiceSettings
from ..util.file_lock import best_effort_lock
from ..util.process import pid_alive
from ..util.time import utc_now_iso
from .probe import pick_port, port_is_free, tcp_probe
from .spawn import HelperProcess, render_command, spawn_detached, terminate_helper
from .store import ServiceStore

logger = logging.getLogger("claude_shim.services.supervisor")

EnsureStatus = Literal["reused", "started", "failed"]

Spawner = Callable[..., HelperProcess]


@dataclass(frozen=True)
class EnsureResult:
    status: EnsureStatus
    record: Optional[ServiceRecord] = None
    error: str = ""
    locked: bool = True

    @property
    def healthy(self) -> bool:
        return self.record is not None and self.status != "failed"


class ServiceSupervisor:
    def __init__(
        self,
        name: str,
        settings: ServiceSettings,
        lock: LockSettings,
        store: ServiceStore,
        *,
        spawner: Spawner = spawn_detached,
        prober: Callable[[str, int, float], bool] = tcp_probe,
        port_free: Callable[[str, int], bool] = port_is_free,
        alive: Callable[[int], bool] = pid_alive,
        killer: Callable[[int], None] = terminate_helper,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.settings = settings
        self.lock = lock
        self.store = store
        self._spawn = spawner
        self._probe = prober
        self._port_free = port_free
        self._alive = alive
        self._kill = killer
        self._sleep = sleep
        self._clock = clock

    def _log_extra(self, project: ProjectIdentity, **kw: object) -> Dict[str, object]:
        return {"service": self.name, "project_key": project.key, **kw}

    def is_healthy(self, record: ServiceRecord) -> bool:
        if not self._alive(record.pid):
            return False
        return self._probe(record.host, record.port, self.settings.probe_timeout_s)

    def ensure(self, project: ProjectIdentity, env: Mapping[str, str]) -> EnsureResult:
        lk = self.lock
        with best_effort_lock(
            self.store.lock_path(project.key),
            timeout_s=lk.timeout_s,
            stale_after_s=lk.stale_after_s,
            poll_s=lk.poll_s,
            max_poll_s=lk.max_poll_s,
        ) as handle:
            result = self._check_or_start(project, env)
        return replace(result, locked=handle is not None)

    def stop(self, project: ProjectIdentity) -> Optional[ServiceRecord]:
        lk = self.lock
        with best_effort_lock(
            self.store.lock_path(project.key),
            timeout_s=lk.timeout_s,
            stale_after_s=lk.stale_after_s,
            poll_s=lk.poll_s,
            max_poll_s=lk.max_poll_s,
        ):
            rec = self.store.read(project.key)
            if rec is not None:
                self._kill(rec.pid)
                self.store.remove(project.key)
            return rec

    def _check_or_start(self, project: ProjectIdentity, env: Mapping[str, str]) -> EnsureResult:
        rec = self.store.read(project.key)
        if rec is not None:
            if self.is_healthy(rec):
                logger.debug(
                    "reusing %s on port %s", self.name, rec.port, extra=self._log_extra(project, port=rec.port, pid=rec.pid)
                )
                return EnsureResult(status="reused", record=rec)
            logger.info(
                "%s record is stale (pid %s, port %s); restarting",
                self.name,
                rec.pid,
                rec.port,
                extra=self._log_extra(project, port=rec.port, pid=rec.pid),
            )
            self._kill(rec.pid)
            self.store.remove(project.key)

        try:
            rec = self._start(project, env)
        except ServiceStartError as e:
            self.store.remove(project.key)
            logger.warning("%s not available for %s: %s", self.name, project.label, e, extra=self._log_extra(project))
            return EnsureResult(status="failed", error=str(e))
        self.store.write(rec)
        logger.info(
            "started %s for %s on port %s (pid %s)",
            self.name,
            project.label,
            rec.port,
            rec.pid,
            extra=self._log_extra(project, port=rec.port, pid=rec.pid),
        )
        return EnsureResult(status="started", record=rec)

    def _start(self, project: ProjectIdentity, env: Mapping[str, str]) -> ServiceRecord:
        s = self.settings
        if not s.command:
            raise ServiceStartError(f"no command configured for {self.name}")
        port = pick_port(project.key, s.port_min, s.port_max, host=s.host, is_free=self._port_free)
        cmd: List[str] = render_command(
            s.command, port=port, host=s.host, project_root=str(project.root), project_key=project.key
        )
        proc = self._spawn(
            cmd,
            cwd=Path(project.root),
            env=strip_pipeline_position(env),
            log_path=self.store.log_path(project.key),
        )
        deadline = self._clock() + s.start_timeout_s
        while True:
            if self._probe(s.host, port, s.probe_timeout_s):
                return ServiceRecord(
                    service=self.name,
                    project_key=project.key,
                    project_root=str(project.root),
                    host=s.host,
                    port=port,
                    pid=int(proc.pid),
                    started_at=utc_now_iso(),
                )
            code = proc.poll()
            if code is not None:
                raise ServiceStartError(f"helper exited with code {code} before accepting connections on port {port}")
            if self._clock() >= deadline:
                self._kill(int(proc.pid))
                raise ServiceStartError(f"helper not healthy on port {port} after {s.start_timeout_s:g}s")
            self._sleep(s.poll_interval_s)
