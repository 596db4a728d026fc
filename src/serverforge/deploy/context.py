# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/deploy/context.py

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from serverforge.config.models import SetupConfig
from serverforge.execution.runner import CommandRunner
from serverforge.observers.dispatcher import EventBus
from serverforge.observers.events import new_ctx
from serverforge.ports.registry import PortAssignment, PortRegistry
from serverforge.system.probe import SystemProbe
from serverforge.utils.ssh import probe_ssh_banner


class RunState(str, Enum):
    INIT = "Init"
    PRE_VALIDATE = "PreValidate"
    INSTALLING = "Installing"
    POST_VALIDATE = "PostValidate"
    REPORTING = "Reporting"
    HARDENING = "Hardening"
    DONE = "Done"
    FAILED = "Failed"


@dataclass
class HardeningOutcome:
    port: int
    verified: bool
    service_unit: Optional[str] = None
    banner: Optional[str] = None
    transition_rule_removed: bool = False
    sshd_restarted: bool = False
    error: Optional[str] = None


@dataclass
class OrchestratorContext:
    """
    Everything a run needs, threaded explicitly through every component.
    ``root`` re-bases every host path so tests can use a temporary directory.
    """

    config: SetupConfig
    runner: CommandRunner
    bus: EventBus = field(default_factory=EventBus)
    root: Path = Path("/")
    dry_run: bool = False
    report_only: bool = False
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    log_file: Optional[Path] = None
    workdir: Path = field(default_factory=Path.cwd)

    # injectable clock, sleep and network probe
    sleep: Callable[[float], None] = time.sleep
    now: Callable[[], datetime] = datetime.now
    ssh_probe: Callable[[str, int], Optional[str]] = probe_ssh_banner

    # filled in while the run progresses
    state: RunState = RunState.INIT
    ports: Dict[str, PortAssignment] = field(default_factory=dict)
    previous_ssh_port: Optional[int] = None
    results: List = field(default_factory=list)
    hardening: Optional[HardeningOutcome] = None
    report_path: Optional[Path] = None
    warnings: List[str] = field(default_factory=list)

    _probe: Optional[SystemProbe] = field(default=None, repr=False)
    _hostname: Optional[str] = field(default=None, repr=False)
    _stamp: Optional[str] = field(default=None, repr=False)

    @property
    def probe(self) -> SystemProbe:
        if self._probe is None:
            self._probe = SystemProbe(self.runner, self.root)
        return self._probe

    @property
    def hostname(self) -> str:
        if self._hostname is None:
            self._hostname = self.probe.hostname()
        return self._hostname

    @property
    def stamp(self) -> str:
        """Run timestamp shared by backups, the report and the diagnostic bundle."""
        if self._stamp is None:
            self._stamp = self.now().strftime("%Y%m%d_%H%M%S")
        return self._stamp

    def host_path(self, path: Path | str) -> Path:
        p = Path(path)
        if p.is_absolute():
            p = p.relative_to("/")
        return self.root / p

    def registry(self) -> PortRegistry:
        return PortRegistry(self.host_path(self.config.paths.port_file), probe=self.probe)

    def port(self, service: str) -> int:
        return self.ports[service].port

    def event_ctx(self) -> dict:
        return new_ctx(host=self.hostname, dry_run=self.dry_run, run_id=self.run_id)

    def emit(self, event_cls, **fields) -> None:
        self.bus.emit(event_cls(**fields, **self.event_ctx()))

    def diagnostics_dir(self) -> Path:
        configured = self.config.paths.diagnostics_dir
        return self.host_path(configured) if configured else self.workdir
