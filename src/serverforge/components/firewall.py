# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/firewall.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview

from .common import apt_install, install_commands, run

log = logging.getLogger("serverforge")

TRANSITION_COMMENT = "SSH (transition)"


@dataclass(frozen=True)
class FirewallRule:
    comment: str
    port: Optional[int] = None
    proto: str = "tcp"
    interface: Optional[str] = None

    @property
    def spec(self) -> str:
        if self.interface:
            return f"in on {self.interface}"
        return f"{self.port}/{self.proto}"

    def allow_argv(self) -> List[str]:
        return ["ufw", "allow", *self.spec.split(), "comment", self.comment]

    def present(self, probe) -> bool:
        if self.interface:
            return probe.ufw_allows_interface(self.interface)
        return probe.ufw_allows(self.port, self.proto)


def desired_rules(ctx) -> List[FirewallRule]:
    """Rules in the order they are added; the SSH port always comes first."""
    rules = [FirewallRule("SSH", ctx.port("ssh"))]
    transition = transition_rule(ctx)
    if transition:
        rules.append(transition)

    if ctx.config.platform == "k3s":
        rules += [
            FirewallRule("k3s API", ctx.port("k3s_api")),
            FirewallRule("k3s Flannel VXLAN", 8472, "udp"),
            FirewallRule("k3s Kubelet", 10250),
        ]
    else:
        rules += [
            FirewallRule("Swarm management", 2377),
            FirewallRule("Swarm node communication", 7946),
            FirewallRule("Swarm node communication", 7946, "udp"),
            FirewallRule("Swarm overlay network", 4789, "udp"),
            FirewallRule("Docker bridge", interface="docker0"),
        ]

    if ctx.config.nginx:
        rules += [FirewallRule("HTTP", 80), FirewallRule("HTTPS", 443)]
    return rules


def transition_rule(ctx) -> Optional[FirewallRule]:
    """
    Keeps the port the operator is connected through open until hardening
    has verified SSH on the new port.
    """
    previous = ctx.previous_ssh_port
    if previous is None or previous == ctx.port("ssh"):
        return None
    return FirewallRule(TRANSITION_COMMENT, previous)


def remove_transition_rule(ctx) -> bool:
    rule = transition_rule(ctx)
    if rule is None or not rule.present(ctx.probe):
        return False
    run(ctx, ["ufw", "delete", "allow", rule.spec])
    log.info(f"Closed transition SSH port {rule.port}")
    return True


def firewall_stage(ctx) -> ProvisioningStage:
    def missing_rules() -> List[FirewallRule]:
        return [r for r in desired_rules(ctx) if not r.present(ctx.probe)]

    def check() -> bool:
        return (
            ctx.probe.command_exists("ufw")
            and ctx.probe.ufw_active()
            and ctx.probe.ufw_default_deny_incoming()
            and not missing_rules()
        )

    def action() -> str:
        apt_install(ctx, ["ufw"])
        run(ctx, ["ufw", "default", "deny", "incoming"])
        run(ctx, ["ufw", "default", "allow", "outgoing"])
        added = []
        # open SSH before anything can enable the firewall
        for rule in missing_rules():
            run(ctx, rule.allow_argv())
            added.append(rule.spec)
        if not ctx.probe.ufw_active():
            run(ctx, ["ufw", "--force", "enable"])
        return f"ufw active, opened {', '.join(added) or 'nothing new'}"

    def preview() -> StagePreview:
        commands = install_commands(ctx, ["ufw"]) + ["ufw default deny incoming", "ufw default allow outgoing"]
        for rule in missing_rules():
            commands.append(" ".join(rule.allow_argv()))
        if not ctx.probe.ufw_active():
            commands.append("ufw --force enable")
        return StagePreview(
            f"Firewall: deny incoming, allow SSH on {ctx.port('ssh')}/tcp",
            services=["ufw"],
            commands=commands,
        )

    return ProvisioningStage(
        StageName.FIREWALL,
        "Firewall (ufw)",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
    )
