# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/diagnostics/cleanup.py

from __future__ import annotations

import logging
from typing import List

from serverforge.observers.events import CleanupCompleted

log = logging.getLogger("serverforge")

CLEANUP_SERVICES = ("docker", "k3s", "sshguard", "fail2ban")
K3S_UNINSTALL = "/usr/local/bin/k3s-uninstall.sh"


def run_cleanup(ctx) -> List[str]:
    """
    Return the host to a known state after a failed run. Every action is
    best-effort: a failing cleanup command is logged and the next one runs.
    SSH and an active firewall are never touched.
    """
    runner = ctx.runner
    probe = ctx.probe
    actions: List[str] = []

    def attempt(argv: List[str], label: str) -> None:
        res = runner.run(argv)
        if res.ok:
            actions.append(label)
            log.info(f"cleanup: {label}")
        else:
            log.warning(f"cleanup: {label} failed (exit {res.returncode}): {res.stderr.strip()}")

    active = [s for s in CLEANUP_SERVICES if probe.service_active(s)]
    if active:
        attempt(["systemctl", "stop", *active], f"stopped {' '.join(active)}")

    if ctx.host_path(K3S_UNINSTALL).is_file() and "k3s" not in active:
        attempt([K3S_UNINSTALL], "uninstalled the inactive k3s")

    # an inactive ufw may hold half-applied rules; a reset leaves it disabled
    if probe.command_exists("ufw") and not probe.ufw_active():
        attempt(["ufw", "--force", "reset"], "reset the inactive firewall")

    ctx.emit(CleanupCompleted, actions=actions)
    return actions
