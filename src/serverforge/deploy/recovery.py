# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/deploy/recovery.py
#
# Concrete operator commands printed on every fatal path.

from __future__ import annotations

from typing import List, Optional


def ssh_down(sshd_config: str) -> List[str]:
    return [
        "Connect through the provider console (VNC/KVM/serial)",
        f"Check the SSH configuration: sshd -t -f {sshd_config}",
        "Start SSH: systemctl start ssh   (or: systemctl start sshd)",
        "Confirm it is listening: ss -tlnp | grep sshd",
        "Then re-run: sudo serverforge setup",
    ]


def hardening_failed(port: int, sshd_config: str, backup: Optional[str]) -> List[str]:
    steps = [
        "Access the server via console/VNC/KVM; SSH may be unreachable",
        f"Test the configuration: sshd -t -f {sshd_config}",
    ]
    if backup:
        steps.append(f"Restore the previous configuration: cp {backup} {sshd_config}")
    steps += [
        "Start SSH: systemctl start ssh   (or: systemctl start sshd)",
        f"Check the listener: ss -tlnp | grep ':{port} '",
        f"Check the firewall allows it: ufw status | grep {port}",
    ]
    return steps


def admin_access(username: Optional[str]) -> List[str]:
    who = username or "<admin>"
    return [
        f"Verify the account: id {who}",
        f"Verify the key: cat /home/{who}/.ssh/authorized_keys",
        "Re-run with --admin-user/--admin-key; SSH hardening was NOT applied",
    ]


def validation(fatal: str) -> List[str]:
    steps = ["No changes were made to this host"]
    if "disk" in fatal:
        steps.append("Free space on /: df -h /; sudo apt-get clean; sudo journalctl --vacuum-size=100M")
    if "memory" in fatal:
        steps.append("Use a host with at least 1 GiB of RAM: free -m")
    if "port" in fatal:
        steps.append("Find the holder: sudo ss -tulnp; pick another port with --ssh-port/--api-port")
    if "Ubuntu" in fatal:
        steps.append("Run on Ubuntu 22.04 or newer: cat /etc/os-release")
    return steps


def generic(log_file: Optional[str], bundle: Optional[str]) -> List[str]:
    steps = []
    if bundle:
        steps.append(f"Read the diagnostics: less {bundle}")
    if log_file:
        steps.append(f"Full command trace: less {log_file}")
    steps += [
        "Check services: systemctl status ssh ufw",
        "Fix the cause, then re-run: completed stages are detected and skipped",
    ]
    return steps
