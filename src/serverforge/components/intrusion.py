# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/intrusion.py

from __future__ import annotations

import logging

from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview

from .common import (
    apt_install,
    file_matches,
    install_commands,
    missing_packages,
    pending_backup,
    restart_service,
    write_config,
)
from .template_renderer import render

log = logging.getLogger("serverforge")

PACKAGES = ("sshguard", "fail2ban")
SERVICES = ("sshguard", "fail2ban")

SSHGUARD_CONF = "/etc/sshguard/sshguard.conf"
SSHGUARD_WHITELIST = "/etc/sshguard/whitelist"
SSHGUARD_STATE_DIR = "/var/lib/sshguard"
JAIL_LOCAL = "/etc/fail2ban/jail.local"


def intrusion_files(ssh_port: int) -> dict:
    return {
        SSHGUARD_CONF: render("sshguard.conf.j2"),
        SSHGUARD_WHITELIST: render("sshguard-whitelist.j2"),
        JAIL_LOCAL: render("jail.local.j2", ssh_port=ssh_port),
    }


def intrusion_prevention_stage(ctx) -> ProvisioningStage:
    files = intrusion_files(ctx.port("ssh"))

    def check() -> bool:
        return (
            not missing_packages(ctx, PACKAGES)
            and all(file_matches(ctx, p, c) for p, c in files.items())
            and all(ctx.probe.service_active(s) for s in SERVICES)
        )

    def action() -> str:
        apt_install(ctx, PACKAGES)
        changed = False
        for path, content in files.items():
            changed |= write_config(ctx, path, content, backup=path != SSHGUARD_WHITELIST)
        ctx.host_path(SSHGUARD_STATE_DIR).mkdir(parents=True, exist_ok=True)

        for unit in SERVICES:
            if changed or not ctx.probe.service_active(unit):
                restart_service(ctx, unit)
        return f"sshguard (ufw backend) and fail2ban watching SSH on port {ctx.port('ssh')}"

    def preview() -> StagePreview:
        backups = []
        for path in (SSHGUARD_CONF, JAIL_LOCAL):
            backups += pending_backup(ctx, path, files[path])
        return StagePreview(
            f"Install SSHGuard and Fail2Ban, jail SSH on port {ctx.port('ssh')}",
            files=list(files),
            backups=backups,
            services=list(SERVICES),
            commands=install_commands(ctx, PACKAGES),
        )

    return ProvisioningStage(
        StageName.INTRUSION_PREVENTION,
        "Intrusion prevention (SSHGuard + Fail2Ban)",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
        retryable=True,
    )
