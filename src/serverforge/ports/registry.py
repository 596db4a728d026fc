# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/ports/registry.py

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from serverforge.deploy.errors import ProvisioningError
from serverforge.utils.files import atomic_write

log = logging.getLogger("serverforge")

PORT_FILE_MODE = 0o600
PRIVILEGED_BELOW = 1024


class PortError(ProvisioningError):
    """A port assignment is out of range or collides with another service."""


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    config_key: str          # key in the persisted key=value file
    default_port: int
    description: str
    process_names: Tuple[str, ...] = ()   # processes that legitimately hold the port


# sshd's compiled-in port when sshd_config sets none
DEFAULT_SSH_PORT = 22

# catalogue order decides which entry is reset when a loaded file conflicts
SERVICES: Tuple[ServiceSpec, ...] = (
    ServiceSpec("ssh", "SSH_PORT", DEFAULT_SSH_PORT, "SSH", ("sshd",)),
    ServiceSpec("k3s_api", "K3S_API_PORT", 6443, "k3s Kubernetes API", ("k3s", "k3s-server")),
)


@dataclass(frozen=True)
class PortAssignment:
    service_name: str
    port: int
    description: str

    @property
    def privileged(self) -> bool:
        return self.port < PRIVILEGED_BELOW


@dataclass(frozen=True)
class Allocation:
    assignment: PortAssignment
    warnings: Tuple[str, ...] = ()


@dataclass(frozen=True)
class PortRepair:
    service: str
    old_port: int
    new_port: int
    reason: str


def _next_free(start: int, taken: Mapping[int, str]) -> int:
    """The default port, or the first port above it that no other entry holds."""
    port = start
    while port in taken:
        port = port + 1 if port < 65535 else 1
    return port


@dataclass
class PortRegistry:
    """
    Custom port assignments for obfuscated services.

    ``allocate`` validates a proposal against the other assignments held in
    this registry and (best effort) against sockets bound on the host.
    ``load`` repairs self-inflicted conflicts from earlier runs by resetting
    the later entry to its default, or to the next free port above it.
    ``persist`` writes key=value lines with mode 0600.
    """

    path: Path
    probe: Optional[object] = None        # SystemProbe; None disables the bound-socket check
    services: Tuple[ServiceSpec, ...] = SERVICES
    assignments: Dict[str, PortAssignment] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    repairs: List[PortRepair] = field(default_factory=list)
    loaded: Optional[Dict[str, PortAssignment]] = None     # file contents seen by resolve

    def spec(self, service: str) -> ServiceSpec:
        for s in self.services:
            if s.name == service:
                return s
        raise PortError(f"unknown service: {service}")

    def defaults(self) -> Dict[str, PortAssignment]:
        return {s.name: PortAssignment(s.name, s.default_port, s.description) for s in self.services}

    # ------------------------------------------------------------------
    # allocate
    # ------------------------------------------------------------------
    def allocate(self, service: str, proposed_port: int) -> Allocation:
        spec = self.spec(service)
        try:
            port = int(proposed_port)
        except (TypeError, ValueError):
            raise PortError(f"invalid port number for {service}: {proposed_port!r}") from None
        if not 1 <= port <= 65535:
            raise PortError(f"{spec.description} port must be between 1 and 65535, got {port}")

        for other in self.assignments.values():
            if other.service_name != service and other.port == port:
                raise PortError(
                    f"port {port} is already assigned to {other.service_name}",
                    recovery=[f"choose a different port for {service} (e.g. --{service.replace('_', '-')}-port)"],
                )

        warnings = []
        if port < PRIVILEGED_BELOW:
            warnings.append(f"port {port} for {spec.description} is a privileged port (< {PRIVILEGED_BELOW})")

        listener = self._bound_by_other(spec, port)
        if listener:
            warnings.append(f"port {port} appears to be in use by {listener}")

        assignment = PortAssignment(service, port, spec.description)
        self.assignments[service] = assignment
        for w in warnings:
            log.warning(w)
        self.warnings.extend(warnings)
        return Allocation(assignment, tuple(warnings))

    def _bound_by_other(self, spec: ServiceSpec, port: int) -> Optional[str]:
        if self.probe is None:
            return None
        listener = self.probe.port_listener(port)
        if listener is None:
            return None
        if listener.process in spec.process_names:
            return None
        return listener.process or "an unknown process"

    # ------------------------------------------------------------------
    # load / persist
    # ------------------------------------------------------------------
    def load(self) -> Optional[Dict[str, PortAssignment]]:
        """None when no port file exists yet."""
        if not self.path.is_file():
            return None

        log.info(f"Loading existing port configuration from {self.path}")
        by_key = {s.config_key: s for s in self.services}
        raw: Dict[str, str] = {}
        for lineno, line in enumerate(self.path.read_text().splitlines(), 1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            key, sep, value = line.partition("=")
            key = key.strip()
            if not sep or key not in by_key:
                self._warn(f"{self.path}:{lineno}: ignoring unknown entry {line!r}")
                continue
            raw[key] = value.strip().strip('"')

        resolved: Dict[str, PortAssignment] = {}
        taken: Dict[int, str] = {}
        for s in self.services:
            value = raw.get(s.config_key)
            port = s.default_port
            if value is None:
                log.debug(f"{s.config_key} missing, using default {s.default_port}")
            elif value.isdigit() and 1 <= int(value) <= 65535:
                port = int(value)
            else:
                self._warn(f"invalid {s.config_key}={value!r}, using default {s.default_port}")

            if port in taken:
                new_port = _next_free(s.default_port, taken)
                repair = PortRepair(s.name, port, new_port, f"port {port} already assigned to {taken[port]}")
                log.warning(
                    f"Port conflict in {self.path}: {s.name} and {taken[port]} both use {port}; "
                    f"resetting {s.name} to {new_port}"
                )
                self.repairs.append(repair)
                port = new_port

            taken[port] = s.name
            resolved[s.name] = PortAssignment(s.name, port, s.description)

        self.assignments = dict(resolved)
        return resolved

    def render(self, assignments: Mapping[str, PortAssignment]) -> str:
        lines = [
            "# Server port configuration",
            "# Managed by serverforge; re-read on every run.",
            "# Unknown keys are ignored, missing keys fall back to defaults.",
            "",
        ]
        for s in self.services:
            a = assignments.get(s.name)
            port = a.port if a else s.default_port
            lines.append(f"{s.config_key}={port}")
        return "\n".join(lines) + "\n"

    def persist(self, assignments: Optional[Mapping[str, PortAssignment]] = None) -> str:
        assignments = self.assignments if assignments is None else assignments
        content = self.render(assignments)
        atomic_write(self.path, content, mode=PORT_FILE_MODE)
        log.info(f"Port configuration saved to {self.path}")
        return content

    # ------------------------------------------------------------------
    # resolve: file or defaults, then requested remaps
    # ------------------------------------------------------------------
    def resolve(self, requested: Optional[Mapping[str, int]] = None) -> Dict[str, PortAssignment]:
        self.loaded = self.load()
        base = self.loaded or self.defaults()
        target = {name: a.port for name, a in base.items()}
        for service, port in (requested or {}).items():
            self.spec(service)
            target[service] = port

        self.assignments = {}
        for s in self.services:
            self.allocate(s.name, target[s.name])
        return dict(self.assignments)

    def _warn(self, msg: str) -> None:
        log.warning(msg)
        self.warnings.append(msg)
