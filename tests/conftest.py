# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from serverforge.config.models import SetupConfig
from serverforge.deploy.context import OrchestratorContext
from serverforge.execution.runner import CommandResult
from serverforge.observers.dispatcher import EventBus

ADMIN_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHh0ZXN0a2V5Zm9yc2VydmVyZm9yZ2V0ZXN0cw admin@laptop"
RECOVERY_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHJlY292ZXJ5a2V5Zm9yc2VydmVyZm9yZ2U recovery@vault"

UBUNTU_SSHD_CONFIG = """\
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#PermitRootLogin prohibit-password
PasswordAuthentication yes
KbdInteractiveAuthentication no
UsePAM yes
X11Forwarding yes
PrintMotd no
AcceptEnv LANG LC_*
Subsystem sftp /usr/lib/openssh/sftp-server

Match User anoncvs
    X11Forwarding no
"""

# packages whose installation puts a binary on PATH (and possibly starts a unit)
PACKAGE_BINARIES = {
    "ufw": ("ufw", None),
    "nginx": ("nginx", "nginx"),
    "sshguard": ("sshguard", None),
    "fail2ban": ("fail2ban-client", None),
    "certbot": ("certbot", None),
    "docker-ce": ("docker", "docker"),
    "unattended-upgrades": ("unattended-upgrade", None),
}


# --------- Test doubles ----------

class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)

    def of(self, cls):
        return [e for e in self.events if isinstance(e, cls)]

    def names(self):
        return [e.__class__.__name__ for e in self.events]


@dataclass
class FakeHost:
    """
    A simulated Ubuntu host behind the CommandRunner interface. Files live
    under ``root``; everything else (services, packages, users, sockets,
    firewall) is in-memory state driven by the commands it receives.
    """

    root: Path
    services: Dict[str, bool] = field(default_factory=lambda: {"ssh": True})
    enabled: Set[str] = field(default_factory=lambda: {"ssh"})
    packages: Set[str] = field(default_factory=lambda: {"openssh-server"})
    binaries: Set[str] = field(default_factory=lambda: {"sshd", "sh", "curl"})
    users: Dict[str, dict] = field(default_factory=dict)
    groups: Dict[str, List[str]] = field(default_factory=lambda: {"sudo": [], "adm": []})
    listeners: List[Tuple[str, str, int, str]] = field(default_factory=lambda: [("tcp", "0.0.0.0", 22, "sshd")])
    ufw_active: bool = False
    ufw_defaults: Tuple[str, str] = ("allow", "allow")
    ufw_rules: List[Tuple[str, str]] = field(default_factory=list)
    swarm: str = "inactive"
    networks: Set[str] = field(default_factory=set)
    upgrades_pending: bool = True
    disk_kb: int = 20 * 1024 * 1024
    memory_mb: int = 4096
    dns: Dict[str, str] = field(default_factory=dict)
    ip: str = "203.0.113.10"
    name: str = "testhost"
    ssh_restart_fails: bool = False
    ssh_ignores_config: bool = False
    ss_hides_processes: bool = False    # ss run without root prints no process column
    failures: Dict[Tuple[str, ...], Tuple[int, str]] = field(default_factory=dict)
    commands: List[Tuple[str, ...]] = field(default_factory=list)
    inputs: List[Tuple[Tuple[str, ...], str]] = field(default_factory=list)
    on_command: Optional[object] = None

    # ------------------------------------------------------------------
    # test controls
    # ------------------------------------------------------------------
    def fail_on(self, *prefix: str, rc: int = 1, stderr: str = "simulated failure") -> None:
        self.failures[tuple(prefix)] = (rc, stderr)

    def ran(self, *prefix: str) -> bool:
        return any(c[: len(prefix)] == prefix for c in self.commands)

    def count(self, *prefix: str) -> int:
        return sum(1 for c in self.commands if c[: len(prefix)] == prefix)

    def path(self, p: str) -> Path:
        return self.root / p.lstrip("/")

    def ssh_ports(self) -> List[int]:
        return sorted(p for _, _, p, proc in self.listeners if proc == "sshd")

    def ssh_banner(self, host: str, port: int) -> Optional[str]:
        return "SSH-2.0-OpenSSH_9.6p1 Ubuntu-3ubuntu13" if port in self.ssh_ports() else None

    # ------------------------------------------------------------------
    # CommandRunner
    # ------------------------------------------------------------------
    def run(self, argv, *, input=None, env=None) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        self.commands.append(argv)
        if input is not None:
            self.inputs.append((argv, input))
        if self.on_command is not None:
            self.on_command(argv)
        for prefix, (rc, stderr) in self.failures.items():
            if argv[: len(prefix)] == prefix:
                return CommandResult(argv, rc, "", stderr)
        rc, out = self._dispatch(argv)
        return CommandResult(argv, rc, out, "" if rc == 0 else f"{argv[0]}: exit {rc}")

    def _dispatch(self, argv) -> Tuple[int, str]:
        cmd, args = argv[0], list(argv[1:])
        handler = getattr(self, "_cmd_" + cmd.replace("-", "_").replace("/", "_").replace(".", "_"), None)
        if handler is None:
            return 0, ""
        return handler(args)

    # --- systemd ---
    def _cmd_systemctl(self, args):
        verb = args[0]
        if verb == "is-active":
            return (0, "") if self.services.get(args[-1]) else (3, "")
        if verb == "is-enabled":
            return (0, "") if args[-1] in self.enabled else (1, "")
        if verb == "daemon-reload":
            return 0, ""
        units = args[1:]
        for unit in units:
            if verb == "enable":
                self.enabled.add(unit)
            elif verb == "disable":
                self.enabled.discard(unit)
            elif verb == "stop":
                self.services[unit] = False
            elif verb in ("start", "restart", "reload"):
                if unit in ("ssh", "sshd"):
                    if not self._restart_ssh(unit):
                        return 1, ""
                else:
                    self.services[unit] = True
        return 0, ""

    def _cmd_service(self, args):
        if args[0] in ("ssh", "sshd") and args[1] == "restart":
            return (0, "") if self._restart_ssh("ssh") else (1, "")
        return 0, ""

    def _restart_ssh(self, unit: str) -> bool:
        if unit == "sshd":
            # Ubuntu only ships the ssh unit
            return False
        if self.ssh_restart_fails:
            self.services["ssh"] = False
            self.listeners = [l for l in self.listeners if l[3] != "sshd"]
            return False
        self.services["ssh"] = True
        if not self.ssh_ignores_config:
            port = self._configured_ssh_port()
            self.listeners = [l for l in self.listeners if l[3] != "sshd"]
            self.listeners.append(("tcp", "0.0.0.0", port, "sshd"))
        return True

    def _configured_ssh_port(self) -> int:
        text = self.path("/etc/ssh/sshd_config").read_text()
        m = re.search(r"^Port\s+(\d+)", text, re.MULTILINE)
        return int(m.group(1)) if m else 22

    # --- packages ---
    def _cmd_sh(self, args):
        if args[0] == "-c" and args[1].startswith("command -v "):
            return (0, f"/usr/bin/{args[1].split()[-1]}\n") if args[1].split()[-1] in self.binaries else (1, "")
        if args and args[0] == "/tmp/k3s-install.sh":
            self._install_k3s()
        return 0, ""

    def _install_k3s(self):
        self.binaries.add("k3s")
        self.services["k3s"] = True
        self.enabled.add("k3s")
        uninstall = self.path("/usr/local/bin/k3s-uninstall.sh")
        uninstall.parent.mkdir(parents=True, exist_ok=True)
        uninstall.write_text("#!/bin/sh\n")
        config = self.path("/etc/rancher/k3s/config.yaml")
        m = re.search(r"https-listen-port: (\d+)", config.read_text()) if config.is_file() else None
        self.listeners.append(("tcp", "*", int(m.group(1)) if m else 6443, "k3s-server"))

    def _cmd_dpkg_query(self, args):
        pkg = args[-1]
        return (0, "install ok installed") if pkg in self.packages else (1, "")

    def _cmd_dpkg(self, args):
        if args[0] == "--print-architecture":
            return 0, "amd64\n"
        return 0, "\n".join(f"ii  {p}  1.0  amd64  package" for p in sorted(self.packages)) + "\n"

    def _cmd_apt_get(self, args):
        if args[0] == "-s":
            n = 7 if self.upgrades_pending else 0
            return 0, f"{n} upgraded, 0 newly installed, 0 to remove and 0 not upgraded.\n"
        if args[0] == "upgrade":
            self.upgrades_pending = False
        if args[0] == "install":
            for pkg in (a for a in args[1:] if not a.startswith("-")):
                self.packages.add(pkg)
                binary, unit = PACKAGE_BINARIES.get(pkg, (None, None))
                if binary:
                    self.binaries.add(binary)
                if unit:
                    self.services[unit] = True
                    self.enabled.add(unit)
                if pkg == "docker-ce":
                    self.groups.setdefault("docker", [])
        return 0, ""

    # --- network ---
    def _cmd_ss(self, args):
        lines = ["Netid State  Recv-Q Send-Q Local Address:Port Peer Address:Port Process"]
        for proto, addr, port, proc in self.listeners:
            users = "" if self.ss_hides_processes else f'    users:(("{proc}",pid=100,fd=3))'
            lines.append(f"{proto}   LISTEN 0      128    {addr}:{port}    0.0.0.0:*{users}")
        return 0, "\n".join(lines) + "\n"

    def _cmd_hostname(self, args):
        if args == ["-I"]:
            return 0, f"{self.ip} 10.0.0.5 \n"
        return 0, f"{self.name}\n"

    def _cmd_dig(self, args):
        answer = self.dns.get(args[-1])
        return 0, f"{answer}\n" if answer else ""

    def _cmd_ip(self, args):
        return 0, f"2: eth0: <BROADCAST,UP>\n    inet {self.ip}/24\n"

    def _cmd_ps(self, args):
        return 0, "USER PID %CPU %MEM COMMAND\nroot 1 0.0 0.1 /sbin/init\nroot 812 0.0 0.1 sshd: /usr/sbin/sshd -D\n"

    # --- resources ---
    def _cmd_df(self, args):
        return 0, (
            "Filesystem 1024-blocks Used Available Capacity Mounted on\n"
            f"/dev/sda1 41152736 1000000 {self.disk_kb} 10% /\n"
        )

    def _cmd_free(self, args):
        return 0, (
            "               total        used        free      shared  buff/cache   available\n"
            f"Mem:            {self.memory_mb}         800        2000          10        1200        3000\n"
        )

    def _cmd_uname(self, args):
        return 0, "6.8.0-45-generic\n"

    # --- users ---
    def _cmd_id(self, args):
        user = self.users.get(args[-1])
        if user is None:
            return 1, ""
        if args[0] == "-u":
            return 0, f"{user['uid']}\n"
        groups = [args[-1]] + [g for g, members in self.groups.items() if args[-1] in members]
        return 0, " ".join(groups) + "\n"

    def _cmd_getent(self, args):
        if args[0] == "group":
            if args[1] not in self.groups:
                return 2, ""
            return 0, f"{args[1]}:x:27:{','.join(self.groups[args[1]])}\n"
        lines = ["root:x:0:0:root:/root:/bin/bash", "nobody:x:65534:65534:nobody:/nonexistent:/usr/sbin/nologin"]
        for name, u in self.users.items():
            lines.append(f"{name}:x:{u['uid']}:{u['uid']}::/home/{name}:/bin/bash")
        return 0, "\n".join(lines) + "\n"

    def _cmd_useradd(self, args):
        name = args[-1]
        if name in self.users:
            return 9, ""
        self.users[name] = {"uid": 1000 + len(self.users)}
        self.path(f"/home/{name}").mkdir(parents=True, exist_ok=True)
        return 0, ""

    def _cmd_chpasswd(self, args):
        user, _, password = self.inputs[-1][1].strip().partition(":")
        if user not in self.users:
            return 1, ""
        self.users[user]["password"] = password
        return 0, ""

    def _cmd_passwd(self, args):
        user = self.users.get(args[-1])
        if user is None:
            return 1, ""
        # useradd leaves the password locked until chpasswd sets one
        return 0, f"{args[-1]} {'P' if user.get('password') else 'L'} 10/18/2026 0 99999 7 -1\n"

    def _cmd_usermod(self, args):
        group, user = args[-2], args[-1]
        if group not in self.groups:
            return 6, ""
        if user not in self.groups[group]:
            self.groups[group].append(user)
        return 0, ""

    # --- firewall ---
    def _cmd_ufw(self, args):
        if "ufw" not in self.binaries:
            return 127, ""
        if args[:2] == ["status", "verbose"]:
            return 0, self._ufw_status()
        if args[0] == "default":
            policy, direction = args[1], args[2]
            incoming, outgoing = self.ufw_defaults
            self.ufw_defaults = (policy, outgoing) if direction == "incoming" else (incoming, policy)
            return 0, ""
        if args[0] == "allow":
            spec = " ".join(args[1: args.index("comment")] if "comment" in args else args[1:])
            comment = args[args.index("comment") + 1] if "comment" in args else ""
            if spec not in [s for s, _ in self.ufw_rules]:
                self.ufw_rules.append((spec, comment))
            return 0, ""
        if args[:2] == ["delete", "allow"]:
            spec = " ".join(args[2:])
            self.ufw_rules = [r for r in self.ufw_rules if r[0] != spec]
            return 0, ""
        if args == ["--force", "enable"]:
            self.ufw_active = True
            self.services["ufw"] = True
            return 0, ""
        if args == ["--force", "reset"]:
            self.ufw_active = False
            self.ufw_rules = []
            self.ufw_defaults = ("deny", "allow")
            return 0, ""
        return 0, ""

    def _ufw_status(self) -> str:
        if not self.ufw_active:
            return "Status: inactive\n"
        incoming, outgoing = self.ufw_defaults
        lines = [
            "Status: active",
            "Logging: on (low)",
            f"Default: {incoming} (incoming), {outgoing} (outgoing), disabled (routed)",
            "New profiles: skip",
            "",
            "To                         Action      From",
            "--                         ----        ----",
        ]
        for spec, comment in self.ufw_rules:
            to = f"Anywhere {spec[3:]}" if spec.startswith("in on ") else spec
            lines.append(f"{to:<26} ALLOW IN    Anywhere                   # {comment}")
        return "\n".join(lines) + "\n"

    # --- containers ---
    def _cmd_docker(self, args):
        if "docker" not in self.binaries:
            return 127, ""
        if args[0] == "info":
            return 0, f"{self.swarm}\n"
        if args[:2] == ["swarm", "init"]:
            self.swarm = "active"
            return 0, ""
        if args[:2] == ["network", "inspect"]:
            return (0, "[]") if args[2] in self.networks else (1, "")
        if args[:2] == ["network", "create"]:
            self.networks.add(args[-1])
        return 0, ""

    def _cmd_k3s(self, args):
        return (0, "node   Ready\n") if self.services.get("k3s") else (1, "")

    def _cmd_certbot(self, args):
        domain = args[args.index("-d") + 1]
        live = self.path(f"/etc/letsencrypt/live/{domain}/fullchain.pem")
        live.parent.mkdir(parents=True, exist_ok=True)
        live.write_text("-----BEGIN CERTIFICATE-----\n")
        return 0, ""

    def _cmd__usr_local_bin_k3s_uninstall_sh(self, args):
        self.binaries.discard("k3s")
        self.services.pop("k3s", None)
        self.path("/usr/local/bin/k3s-uninstall.sh").unlink()
        return 0, ""


def make_host(root: Path, **kwargs) -> FakeHost:
    host = FakeHost(root=root, **kwargs)
    os_release = host.path("/etc/os-release")
    os_release.parent.mkdir(parents=True, exist_ok=True)
    os_release.write_text('NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="24.04"\nVERSION_CODENAME=noble\n')
    sshd = host.path("/etc/ssh/sshd_config")
    sshd.parent.mkdir(parents=True, exist_ok=True)
    sshd.write_text(UBUNTU_SSHD_CONFIG)
    return host


def make_config(**overrides) -> SetupConfig:
    data = {
        "admin": {"username": "deploy", "password": "correct-horse", "ssh_keys": [ADMIN_KEY]},
        "ports": {"ssh": 2222, "k3s_api": 16443},
    }
    data.update(overrides)
    return SetupConfig.model_validate(data)


# --------- Fixtures ----------

@pytest.fixture
def host(tmp_path) -> FakeHost:
    return make_host(tmp_path / "host")


@pytest.fixture
def config() -> SetupConfig:
    return make_config()


@pytest.fixture
def capture() -> Capture:
    return Capture()


@pytest.fixture
def make_ctx(host, config, capture, tmp_path):
    workdir = tmp_path / "cwd"
    workdir.mkdir()

    def _make(cfg: Optional[SetupConfig] = None, **kwargs) -> OrchestratorContext:
        params = dict(
            config=cfg or config,
            runner=host,
            bus=EventBus([capture]),
            root=host.root,
            workdir=workdir,
            sleep=lambda seconds: None,
            now=lambda: datetime(2026, 10, 18, 12, 0, 0),
            ssh_probe=host.ssh_banner,
        )
        params.update(kwargs)
        return OrchestratorContext(**params)

    return _make


@pytest.fixture
def ctx(make_ctx) -> OrchestratorContext:
    return make_ctx()
