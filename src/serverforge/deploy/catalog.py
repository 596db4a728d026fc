# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/deploy/catalog.py

from __future__ import annotations

from typing import Callable, Dict, List

from serverforge.components.container import container_runtime_stage
from serverforge.components.firewall import firewall_stage
from serverforge.components.hardening import ssh_hardening_stage
from serverforge.components.intrusion import intrusion_prevention_stage
from serverforge.components.proxy import reverse_proxy_stage, ssl_certificates_stage
from serverforge.components.system import system_update_stage, unattended_upgrades_stage
from serverforge.components.users import admin_users_stage
from serverforge.report.generator import report_stage

from .stages import STAGE_ORDER, ProvisioningStage, StageName

StageFactory = Callable[..., ProvisioningStage]

STAGE_FACTORIES: Dict[StageName, StageFactory] = {
    StageName.SYSTEM_UPDATE: system_update_stage,
    StageName.UNATTENDED_UPGRADES: unattended_upgrades_stage,
    StageName.CONTAINER_RUNTIME: container_runtime_stage,
    StageName.INTRUSION_PREVENTION: intrusion_prevention_stage,
    StageName.REVERSE_PROXY: reverse_proxy_stage,
    StageName.SSL_CERTIFICATES: ssl_certificates_stage,
    StageName.ADMIN_USERS: admin_users_stage,
    StageName.FIREWALL: firewall_stage,
    StageName.REPORT: report_stage,
    StageName.SSH_HARDENING: ssh_hardening_stage,
}

_missing = set(StageName) - set(STAGE_FACTORIES)
if _missing:
    raise RuntimeError(f"no stage factory for: {', '.join(sorted(m.value for m in _missing))}")


def build_stage(ctx, name: StageName) -> ProvisioningStage:
    stage = STAGE_FACTORIES[name](ctx)
    if stage.name != name:
        raise RuntimeError(f"factory for {name.value} built {stage.name.value}")
    return stage


def build_stages(ctx) -> List[ProvisioningStage]:
    """Every stage in the fixed execution order."""
    return [build_stage(ctx, name) for name in STAGE_ORDER]
