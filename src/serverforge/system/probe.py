# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/system/probe.py

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from serverforge.execution.runner import CommandRunner

log = logging.getLogger("serverforge")

SSH_UNITS = ("ssh", "sshd")
_PROCESS_RE = re.compile(r'\(\("([^"]+)"')


@dataclass(frozen=True)
class Listener:
    proto: str
    address: str
    port: int
    process: Optional[str] = None


@dataclass(frozen=True)
class LoginUser:
    name: str
    uid: int
    home: str
    shell: str


class SystemProbe:
    """
    Read-only queries against the host. Nothing here mutates state, so every
    call is safe in dry-run mode and during validation gates.
    """

    def __init__(self, runner: CommandRunner, root: Path = Path("/")):
        self.runner = runner
        self.root = root

    # ---------------- services & packages ----------------
    def service_active(self, unit: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", unit]).ok

    def service_enabled(self, unit: str) -> bool:
        return self.runner.run(["systemctl", "is-enabled", "--quiet", unit]).ok

    def ssh_active(self) -> Optional[str]:
        """Name of the active SSH unit; Debian calls it ssh, others sshd."""
        for unit in SSH_UNITS:
            if self.service_active(unit):
                return unit
        return None

    def command_exists(self, name: str) -> bool:
        return self.runner.run(["sh", "-c", f"command -v {name}"]).ok

    def package_installed(self, package: str) -> bool:
        res = self.runner.run(["dpkg-query", "-W", "-f=${Status}", package])
        return res.ok and "install ok installed" in res.stdout

    # ---------------- network ----------------
    def listeners(self) -> List[Listener]:
        res = self.runner.run(["ss", "-tulnp"])
        if not res.ok:
            log.debug(f"ss failed: {res.stderr.strip()}")
            return []
        found = []
        for line in res.stdout.splitlines()[1:]:
            cols = line.split()
            if len(cols) < 5:
                continue
            address, _, port = cols[4].rpartition(":")
            if not port.isdigit():
                continue
            m = _PROCESS_RE.search(line)
            found.append(Listener(cols[0], address, int(port), m.group(1) if m else None))
        return found

    def port_listener(self, port: int) -> Optional[Listener]:
        for listener in self.listeners():
            if listener.port == port:
                return listener
        return None

    def is_port_bound(self, port: int) -> bool:
        return self.port_listener(port) is not None

    def sshd_listening(self, port: int) -> bool:
        """
        Without root, ss prints no process column; a bound port then counts
        as sshd's while an SSH unit is active.
        """
        listener = self.port_listener(port)
        if listener is None:
            return False
        if listener.process is None:
            return self.ssh_active() is not None
        return listener.process == "sshd"

    def sshd_ports(self, candidates: Iterable[int] = ()) -> List[int]:
        listeners = self.listeners()
        named = sorted({l.port for l in listeners if l.process == "sshd"})
        if named or self.ssh_active() is None:
            return named
        wanted = set(candidates)
        return sorted({l.port for l in listeners if l.process is None and l.port in wanted})

    def primary_ip(self) -> Optional[str]:
        res = self.runner.run(["hostname", "-I"])
        parts = res.stdout.split() if res.ok else []
        return parts[0] if parts else None

    def host_ips(self) -> List[str]:
        res = self.runner.run(["hostname", "-I"])
        return res.stdout.split() if res.ok else []

    def hostname(self) -> str:
        res = self.runner.run(["hostname"])
        return res.stdout.strip() if res.ok and res.stdout.strip() else "localhost"

    # ---------------- resources ----------------
    def disk_free_kb(self, path: str = "/") -> Optional[int]:
        res = self.runner.run(["df", "-Pk", path])
        lines = res.stdout.strip().splitlines() if res.ok else []
        if len(lines) < 2:
            return None
        try:
            return int(lines[1].split()[3])
        except (IndexError, ValueError):
            return None

    def memory_total_mb(self) -> Optional[int]:
        res = self.runner.run(["free", "-m"])
        if not res.ok:
            return None
        for line in res.stdout.splitlines():
            if line.startswith("Mem:"):
                try:
                    return int(line.split()[1])
                except (IndexError, ValueError):
                    return None
        return None

    # ---------------- users ----------------
    def user_exists(self, user: str) -> bool:
        return self.runner.run(["id", "-u", user]).ok

    def password_usable(self, user: str) -> bool:
        """passwd -S reports P for a usable password, L (locked) or NP otherwise."""
        res = self.runner.run(["passwd", "-S", user])
        fields = res.stdout.split() if res.ok else []
        return len(fields) > 1 and fields[1] == "P"

    def user_groups(self, user: str) -> Set[str]:
        res = self.runner.run(["id", "-nG", user])
        return set(res.stdout.split()) if res.ok else set()

    def group_exists(self, group: str) -> bool:
        return self.runner.run(["getent", "group", group]).ok

    def group_members(self, group: str) -> List[str]:
        res = self.runner.run(["getent", "group", group])
        if not res.ok:
            return []
        fields = res.stdout.strip().split(":")
        if len(fields) < 4 or not fields[3]:
            return []
        return fields[3].split(",")

    def login_users(self) -> List[LoginUser]:
        res = self.runner.run(["getent", "passwd"])
        users = []
        for line in res.stdout.splitlines() if res.ok else []:
            fields = line.split(":")
            if len(fields) < 7 or not fields[2].isdigit():
                continue
            uid = int(fields[2])
            if 1000 <= uid <= 65533:
                users.append(LoginUser(fields[0], uid, fields[5], fields[6]))
        return users

    def home_dir(self, user: str) -> Path:
        return self.root / "home" / user

    def authorized_keys(self, user: str) -> List[str]:
        path = self.home_dir(user) / ".ssh" / "authorized_keys"
        if not path.is_file():
            return []
        return [l.strip() for l in path.read_text().splitlines() if l.strip() and not l.startswith("#")]

    # ---------------- firewall & platforms ----------------
    def ufw_status(self) -> str:
        res = self.runner.run(["ufw", "status", "verbose"])
        return res.stdout if res.ok else ""

    def ufw_active(self) -> bool:
        return "Status: active" in self.ufw_status()

    def ufw_allows(self, port: int, proto: str = "tcp") -> bool:
        rule = re.compile(rf"^{port}/{proto}\s+ALLOW\b")
        return any(rule.match(l.strip()) for l in self.ufw_status().splitlines())

    def ufw_allows_interface(self, interface: str) -> bool:
        return any(f"on {interface}" in l and "ALLOW" in l for l in self.ufw_status().splitlines())

    def ufw_default_deny_incoming(self) -> bool:
        status = self.ufw_status()
        return "deny (incoming)" in status and "allow (outgoing)" in status

    def swarm_state(self) -> Optional[str]:
        res = self.runner.run(["docker", "info", "--format", "{{.Swarm.LocalNodeState}}"])
        return res.stdout.strip() if res.ok else None

    def os_release(self) -> Dict[str, str]:
        path = self.root / "etc" / "os-release"
        if not path.is_file():
            return {}
        data = {}
        for line in path.read_text().splitlines():
            key, sep, value = line.partition("=")
            if sep:
                data[key.strip()] = value.strip().strip('"')
        return data

    def kernel(self) -> str:
        res = self.runner.run(["uname", "-r"])
        return res.stdout.strip() if res.ok else "unknown"
