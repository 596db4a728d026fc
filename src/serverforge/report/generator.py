# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/report/generator.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from serverforge.components import sshd_config as sshd
from serverforge.components.template_renderer import render
from serverforge.deploy.stages import ProvisioningStage, StageName, StagePreview
from serverforge.utils.files import atomic_write

log = logging.getLogger("serverforge")

REPORT_MODE = 0o600

# (label, units tried in order); sshd goes by two names across distributions
SERVICE_TABLE: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("sshd", ("ssh", "sshd")),
    ("nginx", ("nginx",)),
    ("docker", ("docker",)),
    ("k3s", ("k3s",)),
    ("sshguard", ("sshguard",)),
    ("fail2ban", ("fail2ban",)),
    ("ufw", ("ufw",)),
    ("unattended-upgrades", ("unattended-upgrades",)),
)

SSH_SETTINGS = (
    "Port",
    "PermitRootLogin",
    "PasswordAuthentication",
    "PubkeyAuthentication",
    "KbdInteractiveAuthentication",
    "MaxAuthTries",
    "LoginGraceTime",
)


@dataclass
class ServiceStatus:
    name: str
    active: bool
    unit: Optional[str] = None


def report_filename(stamp: str) -> str:
    return f"server-setup-{stamp}.report"


class ReportGenerator:
    """
    Reads the run context and the live host and formats the operator report.
    Only ``write`` touches the filesystem, and only the report file itself.
    """

    def __init__(self, ctx):
        self.ctx = ctx

    @property
    def path(self) -> Path:
        return self.ctx.host_path(self.ctx.config.paths.report_dir) / report_filename(self.ctx.stamp)

    def services(self) -> List[ServiceStatus]:
        probe = self.ctx.probe
        rows = []
        for label, units in SERVICE_TABLE:
            active = next((u for u in units if probe.service_active(u)), None)
            rows.append(ServiceStatus(label, active is not None, active))
        return rows

    def ssh_settings(self) -> Dict[str, str]:
        path = self.ctx.host_path(self.ctx.config.paths.sshd_config)
        current = sshd.effective_settings(path.read_text()) if path.is_file() else {}
        return {k: current.get(k.lower(), "(default)") for k in SSH_SETTINGS}

    def certificate(self) -> str:
        certbot = self.ctx.config.certbot
        if not certbot.enabled:
            return "not configured"
        live = self.ctx.host_path(f"/etc/letsencrypt/live/{certbot.domain}/fullchain.pem")
        return f"issued for {certbot.domain}" if live.is_file() else f"NOT issued for {certbot.domain}"

    def hardening(self) -> str:
        outcome = self.ctx.hardening
        if outcome is not None:
            if outcome.verified:
                banner = f", banner {outcome.banner}" if outcome.banner else ""
                return f"verified: {outcome.service_unit or 'ssh'} listening on port {outcome.port}{banner}"
            return f"FAILED: {outcome.error}"
        status = {r.name: r.status.value for r in self.ctx.results}.get(StageName.SSH_HARDENING.value)
        if status == "ALREADY_CONFIGURED":
            return f"already hardened, listening on port {self.ctx.port('ssh')}"
        if status == "PREVIEWED":
            return "dry-run, not applied"
        return "pending (applied after this report is written)"

    def context(self) -> dict:
        ctx = self.ctx
        probe = ctx.probe
        admin = ctx.config.admin.username if ctx.config.admin else None
        services = self.services()
        ssh_up = services[0].active
        return {
            "hostname": ctx.hostname,
            "generated": ctx.now().strftime("%Y-%m-%d %H:%M:%S"),
            "dry_run": ctx.dry_run,
            "ip": probe.primary_ip() or ctx.hostname,
            "admin": admin,
            "recovery": ctx.config.recovery.username if ctx.config.recovery.enabled else None,
            "ports": sorted(ctx.ports.values(), key=lambda a: a.port),
            "ssh_port": ctx.port("ssh") if "ssh" in ctx.ports else 22,
            "services": services,
            "ssh_up": ssh_up,
            "certificate": self.certificate(),
            "ufw": probe.ufw_status().strip() or "ufw inactive or not installed",
            "users": probe.login_users(),
            "sudoers": probe.group_members("sudo"),
            "ssh_settings": self.ssh_settings(),
            "hardening": self.hardening(),
            "results": ctx.results,
            "warnings": ctx.warnings,
            "sshd_config": str(ctx.config.paths.sshd_config),
        }

    def render(self) -> str:
        return render("report.j2", **self.context())

    def write(self) -> Path:
        path = self.path
        path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(path, self.render(), mode=REPORT_MODE)
        self.ctx.report_path = path
        log.info(f"Report written to {path}")
        return path


def report_stage(ctx) -> ProvisioningStage:
    generator = ReportGenerator(ctx)

    def action() -> str:
        return f"report at {generator.write()}"

    def preview() -> StagePreview:
        report_dir = Path(ctx.config.paths.report_dir)
        return StagePreview(
            "Write the setup report (mode 0600)",
            files=[str(report_dir / report_filename(ctx.stamp))],
        )

    return ProvisioningStage(StageName.REPORT, "Setup report", action, preview)
