# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/deploy/stages.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple


class StageName(str, Enum):
    SYSTEM_UPDATE = "system_update"
    UNATTENDED_UPGRADES = "unattended_upgrades"
    CONTAINER_RUNTIME = "container_runtime"
    INTRUSION_PREVENTION = "intrusion_prevention"
    REVERSE_PROXY = "reverse_proxy"
    SSL_CERTIFICATES = "ssl_certificates"
    ADMIN_USERS = "admin_users"
    FIREWALL = "firewall"
    REPORT = "report"
    SSH_HARDENING = "ssh_hardening"


# fixed total order; access-restricting work is always last
STAGE_ORDER: Tuple[StageName, ...] = (
    StageName.SYSTEM_UPDATE,
    StageName.UNATTENDED_UPGRADES,
    StageName.CONTAINER_RUNTIME,
    StageName.INTRUSION_PREVENTION,
    StageName.REVERSE_PROXY,
    StageName.SSL_CERTIFICATES,
    StageName.ADMIN_USERS,
    StageName.FIREWALL,
    StageName.REPORT,
    StageName.SSH_HARDENING,
)

# stages that run after the post-install gate instead of in the install loop
TERMINAL_STAGES = (StageName.REPORT, StageName.SSH_HARDENING)

if set(STAGE_ORDER) != set(StageName):
    raise RuntimeError("STAGE_ORDER must list every StageName exactly once")


class Criticality(str, Enum):
    NORMAL = "normal"
    MUST_NOT_FAIL = "must-not-fail"


@dataclass
class StagePreview:
    """What a stage would do. Dry-run prints this instead of acting."""

    summary: str
    files: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    backups: List[str] = field(default_factory=list)
    services: List[str] = field(default_factory=list)
    commands: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [self.summary]
        for label, items in (
            ("write", self.files),
            ("remove", self.removed),
            ("backup", self.backups),
            ("(re)start", self.services),
            ("run", self.commands),
        ):
            lines += [f"  would {label}: {item}" for item in items]
        return "\n".join(lines)


@dataclass(frozen=True)
class ProvisioningStage:
    name: StageName
    description: str
    action: Callable[[], Optional[str]]
    dry_run_preview: Callable[[], StagePreview]
    idempotent_check: Optional[Callable[[], bool]] = None
    criticality: Criticality = Criticality.NORMAL
    enabled: bool = True
    skip_reason: str = ""
    retryable: bool = False
