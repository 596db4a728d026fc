# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Optional, Sequence


class ProvisioningError(RuntimeError):
    """Base class for every failure the orchestrator reports to the operator."""

    exit_code: int = 1

    def __init__(self, message: str, *, recovery: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.recovery: list[str] = list(recovery or [])


class ValidationFailure(ProvisioningError):
    """Pre-conditions unmet; raised before any mutation."""


class StepFailure(ProvisioningError):
    def __init__(
        self,
        message: str,
        *,
        stage: str,
        criticality: str,
        exit_code: Optional[int] = None,
        command: Optional[str] = None,
        recovery: Optional[Sequence[str]] = None,
    ):
        super().__init__(message, recovery=recovery)
        self.stage = stage
        self.criticality = criticality
        self.command = command
        # propagate the failing command's code where there is one
        if exit_code:
            self.exit_code = exit_code


class PostconditionFailure(ProvisioningError):
    """The host does not match intent after the install sequence."""


class InterruptedFailure(ProvisioningError):
    exit_code = 130

    def __init__(self, signum: int, *, recovery: Optional[Sequence[str]] = None):
        super().__init__(f"interrupted by signal {signum}", recovery=recovery)
        self.signum = signum


class HardeningFailure(ProvisioningError):
    """SSH was restarted but could not be verified on the new port."""
