# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/validation/gate.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Optional, Tuple, Union

log = logging.getLogger("serverforge")


class Phase(str, Enum):
    PRE = "pre"
    POST = "post"


class Severity(str, Enum):
    WARN = "warn"
    FATAL = "fatal"


@dataclass(frozen=True)
class CheckOutcome:
    ok: bool
    detail: str = ""


Predicate = Callable[[], Union[bool, CheckOutcome]]


@dataclass(frozen=True)
class ValidationCheck:
    name: str
    phase: Phase
    predicate: Predicate
    failure_message: str
    severity: Severity = Severity.FATAL


@dataclass(frozen=True)
class GateResult:
    phase: Phase
    passed: bool
    warnings: Tuple[str, ...] = ()
    fatal: Optional[str] = None
    failed: Tuple[str, ...] = ()      # names of failed checks, any severity


class ValidationGate:
    """
    Evaluates named, read-only predicates for one phase. Every check runs,
    so warnings are complete even when an earlier check is fatal.
    """

    def run(self, phase: Phase, checks: Iterable[ValidationCheck]) -> GateResult:
        warnings: list[str] = []
        fatals: list[str] = []
        failed: list[str] = []

        for check in checks:
            if check.phase != phase:
                log.debug(f"[gate:{phase.value}] skipping {check.name} ({check.phase.value} check)")
                continue

            outcome = self._evaluate(check)
            if outcome.ok:
                log.debug(f"[gate:{phase.value}] {check.name}: ok")
                continue

            message = check.failure_message
            if outcome.detail:
                message = f"{message} ({outcome.detail})"
            failed.append(check.name)

            if check.severity is Severity.FATAL:
                log.error(f"[gate:{phase.value}] {check.name}: {message}")
                fatals.append(message)
            else:
                log.warning(f"[gate:{phase.value}] {check.name}: {message}")
                warnings.append(message)

        return GateResult(
            phase=phase,
            passed=not fatals,
            warnings=tuple(warnings),
            fatal="; ".join(fatals) or None,
            failed=tuple(failed),
        )

    @staticmethod
    def _evaluate(check: ValidationCheck) -> CheckOutcome:
        try:
            result = check.predicate()
        except Exception as exc:
            # a check that cannot be evaluated has not passed
            return CheckOutcome(False, f"check raised {type(exc).__name__}: {exc}")
        if isinstance(result, CheckOutcome):
            return result
        return CheckOutcome(bool(result))
