# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/hardening.py

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from serverforge.deploy import recovery
from serverforge.deploy.context import HardeningOutcome
from serverforge.deploy.errors import HardeningFailure
from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview
from serverforge.execution.runner import CommandError
from serverforge.observers.events import HardeningVerified
from serverforge.utils.files import atomic_write, backup_file, backup_path
from serverforge.utils.retry import wait_until

from . import sshd_config as sshd
from .firewall import remove_transition_rule, transition_rule

log = logging.getLogger("serverforge")

SSH_SOCKET = "ssh.socket"
SSH_UNIT_PATHS = ("/etc/systemd/system/ssh.service", "/usr/lib/systemd/system/ssh.service")
SSH_UNIT_OVERRIDE = "/etc/systemd/system/ssh.service"

RESTART_COMMANDS = (
    ["systemctl", "restart", "ssh"],
    ["systemctl", "restart", "sshd"],
    ["service", "ssh", "restart"],
)


def _config_path(ctx) -> Path:
    return ctx.host_path(ctx.config.paths.sshd_config)


def _directives(ctx):
    return sshd.desired_directives(ctx.config.hardening, ctx.port("ssh"))


def _socket_unit_requiring(ctx) -> Optional[Path]:
    for unit in SSH_UNIT_PATHS:
        p = ctx.host_path(unit)
        if p.is_file() and "Requires=ssh.socket" in p.read_text():
            return p
    return None


def _listening(ctx, port: int) -> bool:
    return ctx.probe.sshd_listening(port)


def _disable_socket_activation(ctx) -> None:
    # Ubuntu 24.04 socket activation ignores Port in sshd_config
    if ctx.probe.service_active(SSH_SOCKET) or ctx.probe.service_enabled(SSH_SOCKET):
        for verb in ("stop", "disable"):
            res = ctx.runner.run(["systemctl", verb, SSH_SOCKET])
            if not res.ok:
                log.warning(f"systemctl {verb} {SSH_SOCKET} failed: {res.stderr.strip()}")
        log.info("SSH socket activation disabled")

    unit = _socket_unit_requiring(ctx)
    if unit is not None:
        atomic_write(ctx.host_path(SSH_UNIT_OVERRIDE), sshd.remove_socket_requirement(unit.read_text()))
        ctx.runner.run(["systemctl", "daemon-reload"])
        ctx.runner.run(["systemctl", "enable", "ssh"])
        log.info("Removed the ssh.socket dependency from ssh.service")


def _restart_ssh(ctx) -> Optional[str]:
    for argv in RESTART_COMMANDS:
        if ctx.runner.run(argv).ok:
            return " ".join(argv)
    return None


def ssh_hardened(ctx) -> bool:
    path = _config_path(ctx)
    if not path.is_file() or not sshd.is_hardened(path.read_text(), _directives(ctx)):
        return False
    rule = transition_rule(ctx)
    return (
        ctx.probe.ssh_active() is not None
        and _listening(ctx, ctx.port("ssh"))
        and not ctx.probe.service_active(SSH_SOCKET)
        and (rule is None or not rule.present(ctx.probe))
    )


def apply_hardening(ctx) -> str:
    """
    Rewrite sshd_config, validate it, restart SSH and verify the new port.

    A rejected config is restored and raised as a normal stage error, before
    anything irreversible happened. Once SSH has been restarted every problem
    is a HardeningFailure, which the orchestrator must not clean up after.
    """
    port = ctx.port("ssh")
    sshd_path = str(ctx.config.paths.sshd_config)
    path = _config_path(ctx)
    original = path.read_text() if path.is_file() else ""
    updated = sshd.apply_directives(original, _directives(ctx))

    backup = None
    if updated != original:
        backup = backup_file(path, ctx.stamp)
        atomic_write(path, updated, mode=0o644)
        log.info(f"Hardened {sshd_path} (backup: {backup.name if backup else 'none'})")

    res = ctx.runner.run(["sshd", "-t", "-f", str(path)])
    if not res.ok:
        atomic_write(path, original, mode=0o644)
        log.error(f"sshd -t rejected the hardened configuration, restored the original: {res.stderr.strip()}")
        raise CommandError(res, "sshd -t rejected the hardened configuration (original restored)")

    _disable_socket_activation(ctx)

    backup_name = str(backup_path(Path(sshd_path), ctx.stamp)) if backup else None
    outcome = HardeningOutcome(port=port, verified=False, sshd_restarted=True)
    ctx.hardening = outcome

    restarted_with = _restart_ssh(ctx)
    if restarted_with is None:
        outcome.error = "SSH could not be restarted under ssh, sshd or the service command"
        _report(ctx, outcome)
        raise HardeningFailure(outcome.error, recovery=recovery.hardening_failed(port, sshd_path, backup_name))
    log.info(f"SSH restarted ({restarted_with})")

    policy = ctx.config.hardening
    verified = wait_until(
        lambda: ctx.probe.ssh_active() is not None and _listening(ctx, port),
        retries=policy.verify_retries,
        delay=policy.verify_delay,
        sleep=ctx.sleep,
    )
    outcome.service_unit = ctx.probe.ssh_active()
    if verified and policy.banner_probe:
        outcome.banner = ctx.ssh_probe("127.0.0.1", port)
        if outcome.banner is None:
            log.warning(f"Port {port} is bound by sshd but returned no SSH banner")

    if not verified:
        outcome.error = (
            f"SSH is not listening on port {port} after "
            f"{policy.verify_retries} checks {policy.verify_delay:g}s apart"
        )
        _report(ctx, outcome)
        raise HardeningFailure(outcome.error, recovery=recovery.hardening_failed(port, sshd_path, backup_name))

    outcome.verified = True
    try:
        outcome.transition_rule_removed = remove_transition_rule(ctx)
    except CommandError as exc:
        log.warning(f"Could not close the transition SSH port: {exc}")
    _report(ctx, outcome)
    return f"SSH verified on port {port}, root login {policy.root_login}, password authentication off"


def _report(ctx, outcome: HardeningOutcome) -> None:
    ctx.emit(
        HardeningVerified,
        port=outcome.port,
        listening=_listening(ctx, outcome.port),
        service_active=outcome.service_unit is not None or ctx.probe.ssh_active() is not None,
        banner=outcome.banner,
    )


def ssh_hardening_stage(ctx) -> ProvisioningStage:
    def preview() -> StagePreview:
        path = _config_path(ctx)
        original = path.read_text() if path.is_file() else ""
        changes = original != sshd.apply_directives(original, _directives(ctx))
        sshd_path = str(ctx.config.paths.sshd_config)
        commands: List[str] = [f"sshd -t -f {sshd_path}"]
        files = [sshd_path] if changes else []
        if ctx.probe.service_active(SSH_SOCKET) or ctx.probe.service_enabled(SSH_SOCKET):
            commands += [f"systemctl stop {SSH_SOCKET}", f"systemctl disable {SSH_SOCKET}"]
        if _socket_unit_requiring(ctx) is not None:
            files.append(SSH_UNIT_OVERRIDE)
            commands.append("systemctl daemon-reload")
        commands.append("systemctl restart ssh")
        rule = transition_rule(ctx)
        if rule is not None:
            commands.append(f"ufw delete allow {rule.spec}   (after SSH is verified on {ctx.port('ssh')})")
        settings = ", ".join(f"{k} {v}" for k, v in _directives(ctx))
        return StagePreview(
            f"Harden SSH: {settings}",
            files=files,
            backups=[str(backup_path(Path(sshd_path), ctx.stamp))] if changes and path.is_file() else [],
            services=["ssh"],
            commands=commands,
        )

    return ProvisioningStage(
        StageName.SSH_HARDENING,
        "SSH hardening",
        lambda: apply_hardening(ctx),
        preview,
        lambda: ssh_hardened(ctx),
        Criticality.MUST_NOT_FAIL,
    )
