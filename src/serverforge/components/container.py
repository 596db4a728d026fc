# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/container.py

from __future__ import annotations

import json
import logging

import yaml

from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview
from serverforge.execution.runner import CommandError
from serverforge.utils.retry import wait_until

from .common import APT_ENV, file_matches, pending_backup, restart_service, run, write_config

log = logging.getLogger("serverforge")

K3S_CONFIG = "/etc/rancher/k3s/config.yaml"
K3S_INSTALLER = "/tmp/k3s-install.sh"
K3S_AUDIT_LOG = "/var/log/k3s-audit.log"

DOCKER_KEYRING = "/usr/share/keyrings/docker-archive-keyring.gpg"
DOCKER_LIST = "/etc/apt/sources.list.d/docker.list"
DOCKER_DAEMON = "/etc/docker/daemon.json"
DOCKER_PACKAGES = ("docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin")
SWARM_NETWORK = "secure-network"


# ---------------------------------------------------------------------
# k3s
# ---------------------------------------------------------------------
def k3s_config(api_port: int, advertise_ip: str | None) -> str:
    """k3s reads this file on every start, so a port change only needs a restart."""
    cfg = {
        "https-listen-port": api_port,
        "disable": ["traefik"],
        "write-kubeconfig-mode": "0600",
        "kube-apiserver-arg": [
            "enable-admission-plugins=NodeRestriction",
            f"audit-log-path={K3S_AUDIT_LOG}",
            "audit-log-maxage=30",
            "audit-log-maxbackup=10",
            "audit-log-maxsize=100",
            "service-account-lookup=true",
        ],
        "kubelet-arg": [
            "read-only-port=0",
            "streaming-connection-idle-timeout=30m",
        ],
    }
    if advertise_ip:
        cfg["tls-san"] = [advertise_ip]
    return "# Managed by serverforge\n" + yaml.safe_dump(cfg, sort_keys=False)


def _k3s_stage(ctx) -> ProvisioningStage:
    content = k3s_config(ctx.port("k3s_api"), ctx.probe.primary_ip())

    def check() -> bool:
        return (
            ctx.probe.command_exists("k3s")
            and ctx.probe.service_active("k3s")
            and file_matches(ctx, K3S_CONFIG, content, 0o600)
        )

    def action() -> str:
        changed = write_config(ctx, K3S_CONFIG, content, mode=0o600, backup=True)
        if not ctx.probe.command_exists("k3s"):
            run(ctx, ["curl", "-sfL", "https://get.k3s.io", "-o", K3S_INSTALLER])
            run(ctx, ["sh", K3S_INSTALLER], env={"INSTALL_K3S_EXEC": "server"})
        elif changed or not ctx.probe.service_active("k3s"):
            restart_service(ctx, "k3s")

        ready = wait_until(
            lambda: ctx.runner.run(["k3s", "kubectl", "get", "nodes"]).ok,
            retries=15,
            delay=2,
            sleep=ctx.sleep,
        )
        if not ready:
            log.warning("k3s installed but the node is not ready yet")
        return f"k3s API on port {ctx.port('k3s_api')}"

    def preview() -> StagePreview:
        commands = []
        if not ctx.probe.command_exists("k3s"):
            commands = [
                f"curl -sfL https://get.k3s.io -o {K3S_INSTALLER}",
                f"INSTALL_K3S_EXEC=server sh {K3S_INSTALLER}",
            ]
        return StagePreview(
            f"Install k3s with the API server on port {ctx.port('k3s_api')} (traefik disabled)",
            files=[K3S_CONFIG],
            backups=pending_backup(ctx, K3S_CONFIG, content),
            services=["k3s"],
            commands=commands,
        )

    return ProvisioningStage(
        StageName.CONTAINER_RUNTIME,
        "Container runtime (k3s)",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
        retryable=True,
    )


# ---------------------------------------------------------------------
# Docker CE + Swarm
# ---------------------------------------------------------------------
DAEMON_JSON = json.dumps(
    {
        "log-driver": "json-file",
        "log-opts": {"max-size": "10m", "max-file": "3"},
        "storage-driver": "overlay2",
        "live-restore": True,
    },
    indent=4,
) + "\n"


def _docker_list(ctx) -> str:
    arch = ctx.runner.run(["dpkg", "--print-architecture"]).stdout.strip() or "amd64"
    codename = ctx.probe.os_release().get("VERSION_CODENAME", "noble")
    return (
        f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
        f"https://download.docker.com/linux/ubuntu {codename} stable\n"
    )


def _install_docker(ctx) -> None:
    run(ctx, ["curl", "-fsSL", "https://download.docker.com/linux/ubuntu/gpg", "-o", "/tmp/docker.gpg"])
    run(ctx, ["gpg", "--dearmor", "--yes", "-o", str(ctx.host_path(DOCKER_KEYRING)), "/tmp/docker.gpg"])
    write_config(ctx, DOCKER_LIST, _docker_list(ctx))
    run(ctx, ["apt-get", "update"], env=APT_ENV)
    run(ctx, ["apt-get", "install", "-y", *DOCKER_PACKAGES], env=APT_ENV)


def _swarm_stage(ctx) -> ProvisioningStage:
    def check() -> bool:
        return (
            ctx.probe.command_exists("docker")
            and ctx.probe.service_active("docker")
            and file_matches(ctx, DOCKER_DAEMON, DAEMON_JSON)
            and ctx.probe.swarm_state() == "active"
        )

    def action() -> str:
        if not ctx.probe.command_exists("docker"):
            _install_docker(ctx)
        changed = write_config(ctx, DOCKER_DAEMON, DAEMON_JSON, backup=True)
        if changed or not ctx.probe.service_active("docker"):
            restart_service(ctx, "docker")

        if ctx.probe.swarm_state() != "active":
            ip = ctx.probe.primary_ip()
            if not ip:
                raise CommandError(
                    ctx.runner.run(["hostname", "-I"]),
                    "cannot determine an advertise address for docker swarm",
                )
            run(ctx, ["docker", "swarm", "init", "--advertise-addr", ip, "--data-path-port", "4789"])
        if not ctx.runner.run(["docker", "network", "inspect", SWARM_NETWORK]).ok:
            run(ctx, ["docker", "network", "create", "--driver", "overlay", "--opt", "encrypted", SWARM_NETWORK])
        return "docker swarm manager initialised"

    def preview() -> StagePreview:
        installed = ctx.probe.command_exists("docker")
        files = [DOCKER_DAEMON] if installed else [DOCKER_KEYRING, DOCKER_LIST, DOCKER_DAEMON]
        commands = [] if installed else [f"apt-get install -y {' '.join(DOCKER_PACKAGES)}"]
        if ctx.probe.swarm_state() != "active":
            commands.append("docker swarm init --advertise-addr <primary ip> --data-path-port 4789")
        return StagePreview(
            "Install Docker CE and initialise a Swarm manager",
            files=files,
            backups=pending_backup(ctx, DOCKER_DAEMON, DAEMON_JSON),
            services=["docker"],
            commands=commands,
        )

    return ProvisioningStage(
        StageName.CONTAINER_RUNTIME,
        "Container runtime (Docker Swarm)",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
        retryable=True,
    )


def container_runtime_stage(ctx) -> ProvisioningStage:
    if ctx.config.platform == "k3s":
        return _k3s_stage(ctx)
    return _swarm_stage(ctx)
