# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/validation/checks.py

from __future__ import annotations

from typing import Iterable, List, Mapping, Optional

from serverforge.ports.registry import DEFAULT_SSH_PORT, PortAssignment, ServiceSpec
from serverforge.system.probe import SystemProbe
from serverforge.validation.gate import CheckOutcome, Phase, Severity, ValidationCheck


def _gib(kb: int) -> str:
    return f"{kb / 1024 / 1024:.1f} GiB"


# ---------------------------------------------------------------------
# Pre-install
# ---------------------------------------------------------------------
def _ubuntu(probe: SystemProbe) -> CheckOutcome:
    release = probe.os_release()
    distro = release.get("ID")
    if distro == "ubuntu":
        return CheckOutcome(True)
    return CheckOutcome(False, f"detected {distro or 'unknown OS'}")


def _disk(probe: SystemProbe, minimum_kb: int) -> CheckOutcome:
    free = probe.disk_free_kb("/")
    if free is None:
        return CheckOutcome(False, "could not read free space of /")
    return CheckOutcome(free >= minimum_kb, f"available {_gib(free)}, required {_gib(minimum_kb)}")


def _memory(probe: SystemProbe, minimum_mb: int) -> CheckOutcome:
    total = probe.memory_total_mb()
    if total is None:
        return CheckOutcome(False, "could not read total memory")
    return CheckOutcome(total >= minimum_mb, f"available {total} MB, required {minimum_mb} MB")


def _service_installed(probe: SystemProbe, spec: ServiceSpec) -> bool:
    if spec.name == "ssh":
        # sshd is always present but is being moved onto this port
        return False
    return any(probe.command_exists(p) for p in spec.process_names)


def _foreign_holder(probe: SystemProbe, spec: ServiceSpec, port: int):
    if spec.name == "ssh" and probe.sshd_listening(port):
        return None
    listener = probe.port_listener(port)
    if listener is None or listener.process in spec.process_names:
        return None
    return listener.process or "an unknown process"


def _port_available(probe: SystemProbe, spec: ServiceSpec, port: int, *, installed: bool) -> CheckOutcome:
    """Fatal variant covers services not installed yet, the warning variant installed ones."""
    if _service_installed(probe, spec) != installed:
        return CheckOutcome(True)
    holder = _foreign_holder(probe, spec, port)
    return CheckOutcome(holder is None, f"port {port} is held by {holder}")


def pre_install_checks(
    probe: SystemProbe,
    config,
    assignments: Mapping[str, PortAssignment],
    services: List[ServiceSpec],
) -> List[ValidationCheck]:
    t = config.thresholds
    checks = [
        ValidationCheck("ubuntu", Phase.PRE, lambda: _ubuntu(probe),
                        "this setup supports Ubuntu only"),
        ValidationCheck("disk_space", Phase.PRE, lambda: _disk(probe, t.min_disk_kb),
                        "insufficient disk space on /"),
        ValidationCheck("memory", Phase.PRE, lambda: _memory(probe, t.min_memory_mb),
                        "insufficient memory"),
    ]
    for spec in services:
        a = assignments.get(spec.name)
        if a is None:
            continue
        checks.append(ValidationCheck(
            f"port_{spec.name}",
            Phase.PRE,
            lambda spec=spec, a=a: _port_available(probe, spec, a.port, installed=False),
            f"{spec.description} port {a.port} collides with a running service",
        ))
        checks.append(ValidationCheck(
            f"port_{spec.name}_shared",
            Phase.PRE,
            lambda spec=spec, a=a: _port_available(probe, spec, a.port, installed=True),
            f"{spec.description} port {a.port} is also used by another process",
            Severity.WARN,
        ))
    return checks


# ---------------------------------------------------------------------
# Post-install
# ---------------------------------------------------------------------
def _ssh_active(probe: SystemProbe) -> CheckOutcome:
    unit = probe.ssh_active()
    return CheckOutcome(unit is not None, "checked units ssh and sshd")


def _ssh_listening(probe: SystemProbe, candidates: Iterable[int]) -> CheckOutcome:
    ports = probe.sshd_ports(candidates)
    if ports:
        return CheckOutcome(True, f"listening on {', '.join(map(str, ports))}")
    return CheckOutcome(False, "no sshd listener found")


def _admin_access(probe: SystemProbe, username: str) -> CheckOutcome:
    if not probe.user_exists(username):
        return CheckOutcome(False, f"user {username} does not exist")
    if "sudo" not in probe.user_groups(username):
        return CheckOutcome(False, f"{username} is not in the sudo group")
    if not probe.authorized_keys(username):
        return CheckOutcome(False, f"{username} has no authorized SSH key")
    return CheckOutcome(True)


def _firewall_allows_ssh(probe: SystemProbe, port: int) -> CheckOutcome:
    if not probe.ufw_active():
        return CheckOutcome(False, "ufw is not active")
    return CheckOutcome(probe.ufw_allows(port, "tcp"), f"no ALLOW rule for {port}/tcp")


def _active(probe: SystemProbe, unit: str) -> CheckOutcome:
    return CheckOutcome(probe.service_active(unit))


def post_install_checks(
    probe: SystemProbe,
    config,
    assignments: Mapping[str, PortAssignment],
    *,
    dry_run: bool,
    current_ssh_port: Optional[int] = None,
) -> List[ValidationCheck]:
    """
    SSH liveness is fatal in every mode. Checks that depend on stages a dry
    run only previews (accounts, firewall rules) are downgraded to warnings.
    """
    pending = Severity.WARN if dry_run else Severity.FATAL
    ssh_port = assignments["ssh"].port
    ssh_candidates = {p for p in (ssh_port, current_ssh_port, DEFAULT_SSH_PORT) if p}

    checks = [
        ValidationCheck("ssh_active", Phase.POST, lambda: _ssh_active(probe),
                        "SSH daemon is not active", Severity.FATAL),
        ValidationCheck("ssh_listening", Phase.POST, lambda: _ssh_listening(probe, ssh_candidates),
                        "SSH daemon is not listening", Severity.FATAL),
    ]

    for account in config.admin_accounts():
        checks.append(ValidationCheck(
            f"admin_access_{account.username}",
            Phase.POST,
            lambda u=account.username: _admin_access(probe, u),
            f"no verified key-based admin access for {account.username}",
            pending,
        ))
    if not config.admin_accounts():
        checks.append(ValidationCheck(
            "admin_access", Phase.POST, lambda: False,
            "no admin account configured; hardening would lock out every user", Severity.FATAL,
        ))

    checks += [
        ValidationCheck("firewall_ssh_rule", Phase.POST, lambda: _firewall_allows_ssh(probe, ssh_port),
                        f"firewall does not allow SSH on port {ssh_port}", pending),
        ValidationCheck("sshguard_active", Phase.POST, lambda: _active(probe, "sshguard"),
                        "sshguard is not active", Severity.WARN),
        ValidationCheck("fail2ban_active", Phase.POST, lambda: _active(probe, "fail2ban"),
                        "fail2ban is not active", Severity.WARN),
    ]

    if config.platform == "k3s":
        checks.append(ValidationCheck("k3s_active", Phase.POST, lambda: _active(probe, "k3s"),
                                      "k3s is not active", Severity.WARN))
    else:
        checks.append(ValidationCheck("docker_active", Phase.POST, lambda: _active(probe, "docker"),
                                      "docker is not active", Severity.WARN))
        checks.append(ValidationCheck(
            "swarm_active", Phase.POST, lambda: CheckOutcome(probe.swarm_state() == "active"),
            "docker swarm is not active", Severity.WARN,
        ))

    if config.nginx:
        checks.append(ValidationCheck("nginx_active", Phase.POST, lambda: _active(probe, "nginx"),
                                      "nginx is not active", Severity.WARN))
    return checks
