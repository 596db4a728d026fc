# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from serverforge.execution.runner import CommandError
from serverforge.observers.events import (
    StageFailed,
    StageStarted,
    StageSkipped,
    StageSucceeded,
)
from serverforge.utils.retry import RetryError, retry

from .errors import InterruptedFailure, ProvisioningError
from .stages import ProvisioningStage

log = logging.getLogger("serverforge")


@dataclass
class StepOptions:
    retries: int = 3
    backoff_seconds: float = 5.0


class StepStatus(str, Enum):
    APPLIED = "APPLIED"
    ALREADY_CONFIGURED = "ALREADY_CONFIGURED"
    PREVIEWED = "PREVIEWED"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


@dataclass
class StepResult:
    name: str
    ok: bool
    status: StepStatus
    output: str = ""
    error: Optional[str] = None
    exit_code: Optional[int] = None
    command: Optional[str] = None
    duration_ms: int = 0
    exception: Optional[BaseException] = field(default=None, repr=False)
    recovery: List[str] = field(default_factory=list)


@dataclass
class RunReport:
    results: List[StepResult] = field(default_factory=list)

    def add(self, result: StepResult) -> None:
        self.results.append(result)

    def count(self, status: StepStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    def summary(self) -> str:
        return (
            f"APPLIED={self.count(StepStatus.APPLIED)} "
            f"ALREADY_CONFIGURED={self.count(StepStatus.ALREADY_CONFIGURED)} "
            f"PREVIEWED={self.count(StepStatus.PREVIEWED)} "
            f"SKIPPED={self.count(StepStatus.SKIPPED)} "
            f"FAILED={self.count(StepStatus.FAILED)}"
        )


class StepRunner:
    """
    Runs one stage: idempotence check, then either the dry-run preview or the
    action. Failures are captured in the StepResult; deciding whether the
    run continues is the orchestrator's job.
    """

    def __init__(self, ctx, options: Optional[StepOptions] = None):
        self.ctx = ctx
        self.options = options or StepOptions(
            retries=ctx.config.steps.retries,
            backoff_seconds=ctx.config.steps.backoff_seconds,
        )

    def _already_configured(self, stage: ProvisioningStage) -> bool:
        if stage.idempotent_check is None:
            return False
        try:
            return bool(stage.idempotent_check())
        except InterruptedFailure:
            raise
        except Exception as exc:
            log.warning(f"[{stage.name.value}] state check failed, running the stage anyway: {exc}")
            return False

    def _call_action(self, stage: ProvisioningStage) -> Optional[str]:
        if not stage.retryable or self.options.retries <= 0:
            return stage.action()

        def on_retry(attempt, exc):
            log.warning(f"[{stage.name.value}] attempt {attempt} failed ({exc}); retrying in {self.options.backoff_seconds:g}s")

        wrapped = retry(
            retries=self.options.retries,
            delay=self.options.backoff_seconds,
            retry_on=(CommandError,),
            on_retry=on_retry,
            sleep=self.ctx.sleep,
        )(stage.action)
        try:
            return wrapped()
        except RetryError as exc:
            raise exc.__cause__ or exc

    def execute(self, stage: ProvisioningStage) -> StepResult:
        ctx = self.ctx
        name = stage.name.value

        if not stage.enabled:
            reason = stage.skip_reason or "disabled by configuration"
            log.info(f"[{name}] skipped: {reason}")
            ctx.emit(StageSkipped, stage=name, reason=reason)
            return StepResult(name, True, StepStatus.SKIPPED, output=reason)

        ctx.emit(StageStarted, stage=name, criticality=stage.criticality.value)
        log.info(f"[{name}] {stage.description}")
        t0 = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - t0) * 1000)

        if self._already_configured(stage):
            log.info(f"[{name}] already configured")
            ctx.emit(StageSucceeded, stage=name, status=StepStatus.ALREADY_CONFIGURED.value, duration_ms=elapsed())
            return StepResult(name, True, StepStatus.ALREADY_CONFIGURED, output="already configured", duration_ms=elapsed())

        if ctx.dry_run:
            preview = str(stage.dry_run_preview())
            for line in preview.splitlines():
                log.info(f"[{name}] [dry-run] {line}")
            ctx.emit(StageSucceeded, stage=name, status=StepStatus.PREVIEWED.value, duration_ms=elapsed())
            return StepResult(name, True, StepStatus.PREVIEWED, output=preview, duration_ms=elapsed())

        try:
            output = self._call_action(stage) or ""
        except InterruptedFailure:
            raise
        except Exception as exc:
            result = StepResult(
                name,
                False,
                StepStatus.FAILED,
                error=str(exc),
                duration_ms=elapsed(),
                exception=exc,
            )
            if isinstance(exc, CommandError):
                result.exit_code = exc.exit_code
                result.command = exc.result.command
            elif isinstance(exc, ProvisioningError):
                result.recovery = exc.recovery
            log.error(f"[{name}] failed: {exc}")
            ctx.emit(
                StageFailed,
                stage=name,
                criticality=stage.criticality.value,
                error=str(exc),
                exit_code=result.exit_code,
            )
            return result

        log.info(f"[{name}] done{': ' + output if output else ''}")
        ctx.emit(StageSucceeded, stage=name, status=StepStatus.APPLIED.value, duration_ms=elapsed())
        return StepResult(name, True, StepStatus.APPLIED, output=output, duration_ms=elapsed())
