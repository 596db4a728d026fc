# src/serverforge/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single setup invocation
    host: str         # hostname being provisioned
    dry_run: bool

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(host: str, dry_run: bool, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "run_id": run_id or str(uuid.uuid4()),
        "host": host,
        "dry_run": dry_run,
    }


# ---------------------------------------------------------------------
# Port registry
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PortsResolved(BaseEvent):
    ports: Dict[str, int]
    source: str        # "file" | "requested" | "defaults"

@dataclass(frozen=True)
class PortReassigned(BaseEvent):
    service: str
    old_port: int
    new_port: int
    reason: str


# ---------------------------------------------------------------------
# Validation gates
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class GateEvaluated(BaseEvent):
    phase: str
    passed: bool
    warnings: List[str]
    fatal: Optional[str] = None


# ---------------------------------------------------------------------
# Stage lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StageStarted(BaseEvent):
    stage: str
    criticality: str

@dataclass(frozen=True)
class StageSucceeded(BaseEvent):
    stage: str
    status: str        # "APPLIED" | "ALREADY_CONFIGURED" | "PREVIEWED"
    duration_ms: int

@dataclass(frozen=True)
class StageSkipped(BaseEvent):
    stage: str
    reason: str

@dataclass(frozen=True)
class StageFailed(BaseEvent):
    stage: str
    criticality: str
    error: str
    exit_code: Optional[int] = None


# ---------------------------------------------------------------------
# Hardening, failure handling & summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class HardeningVerified(BaseEvent):
    port: int
    listening: bool
    service_active: bool
    banner: Optional[str] = None

@dataclass(frozen=True)
class CleanupCompleted(BaseEvent):
    actions: List[str]

@dataclass(frozen=True)
class DiagnosticsWritten(BaseEvent):
    error_file: str
    debug_file: str

@dataclass(frozen=True)
class RunFailed(BaseEvent):
    state: str
    error: str
    exit_code: int

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    applied: int
    already_configured: int
    skipped: int
    failed: int
    exit_code: int
