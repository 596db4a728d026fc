# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/system.py

from __future__ import annotations

import logging

from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview

from .common import (
    APT_ENV,
    file_matches,
    install_commands,
    missing_packages,
    pending_backup,
    restart_service,
    run,
    write_config,
)
from .template_renderer import render

log = logging.getLogger("serverforge")

BASE_PACKAGES = (
    "htop", "curl", "wget", "apt-transport-https", "ca-certificates", "gnupg",
    "lsb-release", "software-properties-common", "unzip", "dnsutils",
)

UNATTENDED_CONF = "/etc/apt/apt.conf.d/50unattended-upgrades"
AUTO_UPGRADES_CONF = "/etc/apt/apt.conf.d/20auto-upgrades"


# ---------------------------------------------------------------------
# system_update
# ---------------------------------------------------------------------
def _upgrades_pending(ctx) -> bool:
    # simulation only reads the package cache
    res = ctx.runner.run(["apt-get", "-s", "upgrade"], env=APT_ENV)
    return not (res.ok and "0 upgraded" in res.stdout)


def system_update_stage(ctx) -> ProvisioningStage:
    def check() -> bool:
        return not missing_packages(ctx, BASE_PACKAGES) and not _upgrades_pending(ctx)

    def action() -> str:
        run(ctx, ["apt-get", "update"], env=APT_ENV)
        run(ctx, ["apt-get", "upgrade", "-y"], env=APT_ENV)
        run(ctx, ["apt-get", "install", "-y", *BASE_PACKAGES], env=APT_ENV)
        run(ctx, ["apt-get", "autoremove", "-y"], env=APT_ENV)
        run(ctx, ["apt-get", "autoclean"], env=APT_ENV)
        return "system packages upgraded, essential tools installed"

    def preview() -> StagePreview:
        return StagePreview(
            "Update package cache, upgrade the system and install essential tools",
            commands=[
                "apt-get update",
                "apt-get upgrade -y",
                f"apt-get install -y {' '.join(BASE_PACKAGES)}",
                "apt-get autoremove -y",
                "apt-get autoclean",
            ],
        )

    return ProvisioningStage(
        StageName.SYSTEM_UPDATE,
        "System update",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
        retryable=True,
    )


# ---------------------------------------------------------------------
# unattended_upgrades
# ---------------------------------------------------------------------
def _unattended_files(ctx) -> dict:
    return {
        UNATTENDED_CONF: render("50unattended-upgrades.j2"),
        AUTO_UPGRADES_CONF: render("20auto-upgrades.j2"),
    }


def unattended_upgrades_stage(ctx) -> ProvisioningStage:
    files = _unattended_files(ctx)

    def check() -> bool:
        return (
            not missing_packages(ctx, ["unattended-upgrades"])
            and all(file_matches(ctx, p, c) for p, c in files.items())
            and ctx.probe.service_enabled("unattended-upgrades")
        )

    def action() -> str:
        if missing_packages(ctx, ["unattended-upgrades"]):
            run(ctx, ["apt-get", "update"], env=APT_ENV)
            run(ctx, ["apt-get", "install", "-y", "unattended-upgrades"], env=APT_ENV)
        run(
            ctx,
            ["debconf-set-selections"],
            input="unattended-upgrades unattended-upgrades/enable_auto_updates boolean true\n",
        )
        write_config(ctx, UNATTENDED_CONF, files[UNATTENDED_CONF], backup=True)
        write_config(ctx, AUTO_UPGRADES_CONF, files[AUTO_UPGRADES_CONF])
        restart_service(ctx, "unattended-upgrades")
        return "security updates install automatically (no automatic reboot)"

    def preview() -> StagePreview:
        return StagePreview(
            "Configure unattended security upgrades",
            files=list(files),
            backups=pending_backup(ctx, UNATTENDED_CONF, files[UNATTENDED_CONF]),
            services=["unattended-upgrades"],
            commands=install_commands(ctx, ["unattended-upgrades"]) + ["debconf-set-selections"],
        )

    return ProvisioningStage(
        StageName.UNATTENDED_UPGRADES,
        "Unattended upgrades",
        action,
        preview,
        check,
        Criticality.NORMAL,
        retryable=True,
    )
