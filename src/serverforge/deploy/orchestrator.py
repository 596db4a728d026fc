# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/deploy/orchestrator.py

from __future__ import annotations

import logging
import signal
import threading
from typing import List, Optional

from serverforge.components import sshd_config as sshd
from serverforge.diagnostics.capture import DiagnosticCapture
from serverforge.diagnostics.cleanup import run_cleanup
from serverforge.observers.events import (
    GateEvaluated,
    PortReassigned,
    PortsResolved,
    RunFailed,
    RunSummary,
)
from serverforge.ports.registry import DEFAULT_SSH_PORT
from serverforge.report.generator import ReportGenerator
from serverforge.validation.checks import post_install_checks, pre_install_checks
from serverforge.validation.gate import GateResult, Phase, ValidationGate

from . import recovery
from .catalog import build_stages
from .context import OrchestratorContext, RunState
from .errors import (
    HardeningFailure,
    InterruptedFailure,
    PostconditionFailure,
    ProvisioningError,
    StepFailure,
    ValidationFailure,
)
from .executor import RunReport, StepResult, StepRunner, StepStatus
from .stages import TERMINAL_STAGES, Criticality, ProvisioningStage, StageName

log = logging.getLogger("serverforge")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class Orchestrator:
    """
    Init -> PreValidate -> Installing -> PostValidate -> Reporting -> Hardening -> Done,
    with Failed reachable from every state.

    Hardening only runs after the post-install gate has confirmed SSH is up
    and an admin can log in with a key. Every fatal path ends in
    ``_fail``: diagnostics, cleanup where it is safe, recovery commands.
    """

    def __init__(self, ctx: OrchestratorContext, *, gate: Optional[ValidationGate] = None):
        self.ctx = ctx
        self.gate = gate or ValidationGate()
        self.steps = StepRunner(ctx)
        self._interrupted: Optional[int] = None
        self._previous_handlers: dict = {}

    # ------------------------------------------------------------------
    # signals
    # ------------------------------------------------------------------
    def _on_signal(self, signum, frame) -> None:
        # recorded only; the run stops at the next stage or gate boundary
        if self._interrupted is None:
            log.warning(f"Received {signal.Signals(signum).name}; stopping after the current step")
        self._interrupted = signum

    def _interrupt_recovery(self) -> List[str]:
        return [
            "Re-run the same command; completed stages are detected and skipped",
            "Check SSH is still up before closing this session: ss -tlnp | grep sshd",
        ]

    def _install_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for sig in HANDLED_SIGNALS:
            self._previous_handlers[sig] = signal.signal(sig, self._on_signal)

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    def _check_interrupted(self) -> None:
        if self._interrupted is not None:
            raise InterruptedFailure(self._interrupted, recovery=self._interrupt_recovery())

    def _enter(self, state: RunState) -> None:
        self._check_interrupted()
        log.debug(f"state {self.ctx.state.value} -> {state.value}")
        self.ctx.state = state

    # ------------------------------------------------------------------
    # entry point
    # ------------------------------------------------------------------
    def run(self) -> int:
        ctx = self.ctx
        mode = "dry-run" if ctx.dry_run else ("report-only" if ctx.report_only else "live")
        log.info(f"serverforge run {ctx.run_id} on {ctx.hostname} ({mode})")
        self._install_signal_handlers()
        try:
            if ctx.report_only:
                return self._report_only()
            return self._provision()
        except ProvisioningError as exc:
            return self._fail(exc)
        finally:
            self._restore_signal_handlers()

    def _report_only(self) -> int:
        registry = self.ctx.registry()
        self.ctx.ports = registry.load() or registry.defaults()
        self.ctx.state = RunState.REPORTING
        path = ReportGenerator(self.ctx).write()
        log.info(f"Report only: {path}")
        self.ctx.state = RunState.DONE
        return 0

    def _provision(self) -> int:
        ctx = self.ctx

        self._enter(RunState.INIT)
        self._resolve_ports()

        self._enter(RunState.PRE_VALIDATE)
        self._pre_validate()
        self._persist_ports()

        stages = {s.name: s for s in build_stages(ctx)}

        self._enter(RunState.INSTALLING)
        for stage in stages.values():
            if stage.name in TERMINAL_STAGES:
                continue
            self._execute(stage)

        self._enter(RunState.POST_VALIDATE)
        self._post_validate()

        self._enter(RunState.REPORTING)
        self._execute(stages[StageName.REPORT])

        self._enter(RunState.HARDENING)
        result = self._execute(stages[StageName.SSH_HARDENING])
        if result.status is StepStatus.APPLIED and not ctx.dry_run:
            ReportGenerator(ctx).write()

        self._enter(RunState.DONE)
        self._summary(0)
        log.info("Setup complete" if not ctx.dry_run else "Dry run complete: no changes were made")
        if ctx.report_path:
            log.info(f"Report: {ctx.report_path}")
        return 0

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------
    def _resolve_ports(self) -> None:
        ctx = self.ctx
        registry = ctx.registry()
        ctx.ports = registry.resolve(ctx.config.ports)
        existing = registry.loaded
        ctx.warnings.extend(registry.warnings)

        for repair in registry.repairs:
            ctx.emit(PortReassigned, service=repair.service, old_port=repair.old_port,
                     new_port=repair.new_port, reason=repair.reason)
        if existing:
            for name, assignment in ctx.ports.items():
                before = existing.get(name)
                if before and before.port != assignment.port:
                    ctx.emit(PortReassigned, service=name, old_port=before.port,
                             new_port=assignment.port, reason="requested")

        source = "requested" if ctx.config.ports else ("file" if existing else "defaults")
        ctx.emit(PortsResolved, ports={n: a.port for n, a in ctx.ports.items()}, source=source)
        for a in ctx.ports.values():
            log.info(f"Port {a.port:>5}  {a.description}")

        ctx.previous_ssh_port = self._current_ssh_port()
        if ctx.previous_ssh_port is not None and ctx.previous_ssh_port != ctx.port("ssh"):
            log.info(f"SSH moves from port {ctx.previous_ssh_port} to {ctx.port('ssh')}; "
                     f"{ctx.previous_ssh_port} stays open until the new port is verified")

    def _current_ssh_port(self) -> int:
        ctx = self.ctx
        configured = DEFAULT_SSH_PORT
        path = ctx.host_path(ctx.config.paths.sshd_config)
        if path.is_file():
            value = sshd.effective_settings(path.read_text()).get("port", "")
            if value.isdigit():
                configured = int(value)
        ports = ctx.probe.sshd_ports(candidates=(configured, ctx.port("ssh")))
        return ports[0] if ports else configured

    def _persist_ports(self) -> None:
        ctx = self.ctx
        registry = ctx.registry()
        content = registry.render(ctx.ports)
        if ctx.dry_run:
            log.info(f"[dry-run] would write {ctx.config.paths.port_file} (mode 0600)")
            return
        if registry.path.is_file() and registry.path.read_text() == content:
            log.debug(f"{registry.path} unchanged")
            return
        registry.persist(ctx.ports)

    # ------------------------------------------------------------------
    # gates
    # ------------------------------------------------------------------
    def _gate(self, phase: Phase, checks) -> GateResult:
        result = self.gate.run(phase, checks)
        self.ctx.warnings.extend(result.warnings)
        self.ctx.emit(GateEvaluated, phase=phase.value, passed=result.passed,
                      warnings=list(result.warnings), fatal=result.fatal)
        self._check_interrupted()
        return result

    def _pre_validate(self) -> None:
        ctx = self.ctx
        registry = ctx.registry()
        checks = pre_install_checks(ctx.probe, ctx.config, ctx.ports, registry.services)
        result = self._gate(Phase.PRE, checks)
        if not result.passed:
            raise ValidationFailure(
                f"pre-install validation failed: {result.fatal}",
                recovery=recovery.validation(result.fatal or ""),
            )
        log.info("Pre-install validation passed")

    def _post_validate(self) -> None:
        ctx = self.ctx
        checks = post_install_checks(
            ctx.probe, ctx.config, ctx.ports, dry_run=ctx.dry_run, current_ssh_port=ctx.previous_ssh_port,
        )
        result = self._gate(Phase.POST, checks)
        if result.passed:
            log.info("Post-install validation passed")
            return

        steps: List[str] = []
        if {"ssh_active", "ssh_listening"} & set(result.failed):
            steps += recovery.ssh_down(str(ctx.config.paths.sshd_config))
        admin = next((n for n in result.failed if n.startswith("admin_access")), None)
        if admin:
            steps += recovery.admin_access(ctx.config.admin.username if ctx.config.admin else None)
        log.critical("Refusing to harden SSH: post-install validation failed")
        raise PostconditionFailure(f"post-install validation failed: {result.fatal}", recovery=steps)

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------
    def _execute(self, stage: ProvisioningStage) -> StepResult:
        result = self.steps.execute(stage)
        self.ctx.results.append(result)
        self._check_interrupted()
        if result.ok:
            return result

        if isinstance(result.exception, HardeningFailure):
            raise result.exception
        if stage.criticality is Criticality.MUST_NOT_FAIL:
            steps = list(result.recovery)
            if stage.name is StageName.SSH_HARDENING:
                steps += recovery.ssh_down(str(self.ctx.config.paths.sshd_config))
            raise StepFailure(
                f"{stage.name.value} failed: {result.error}",
                stage=stage.name.value,
                criticality=stage.criticality.value,
                exit_code=result.exit_code,
                command=result.command,
                recovery=steps,
            )

        warning = f"{stage.name.value} failed and was skipped: {result.error}"
        log.warning(warning)
        self.ctx.warnings.append(warning)
        for step in result.recovery:
            log.warning(f"  {step}")
        return result

    # ------------------------------------------------------------------
    # Failed
    # ------------------------------------------------------------------
    def _fail(self, exc: ProvisioningError) -> int:
        ctx = self.ctx
        failed_in = ctx.state
        ctx.state = RunState.FAILED
        exit_code = exc.exit_code
        hardening_failed = isinstance(exc, HardeningFailure)
        sshd_restarted = bool(ctx.hardening and ctx.hardening.sshd_restarted)

        if hardening_failed:
            log.critical(f"SSH HARDENING FAILED: {exc}")
            log.critical("SSH may not be reachable. Do NOT close this session.")
        else:
            log.error(f"Setup failed in {failed_in.value}: {exc}")

        stage = getattr(exc, "stage", None)
        command = getattr(exc, "command", None)
        bundle = None
        try:
            bundle = DiagnosticCapture(ctx).snapshot(
                error=str(exc), exit_code=exit_code, stage=stage, command=command, recovery=exc.recovery,
            )
        except OSError as err:
            log.error(f"Could not write the diagnostic bundle: {err}")

        # nothing was changed before installation began, and a restarted sshd must be left alone
        if failed_in in (RunState.INIT, RunState.PRE_VALIDATE) or ctx.dry_run:
            log.info("Cleanup not needed: no changes were made")
        elif hardening_failed or sshd_restarted:
            log.warning("Cleanup skipped: SSH was already restarted with the new configuration")
        else:
            run_cleanup(ctx)

        if hardening_failed:
            try:
                ReportGenerator(ctx).write()
            except OSError as err:
                log.error(f"Could not write the final report: {err}")

        steps = list(exc.recovery) + recovery.generic(
            str(ctx.log_file) if ctx.log_file else None,
            str(bundle.error_file) if bundle else None,
        )
        log.error("Recovery:")
        for i, step in enumerate(steps, 1):
            log.error(f"  {i}. {step}")

        ctx.emit(RunFailed, state=failed_in.value, error=str(exc), exit_code=exit_code)
        self._summary(exit_code)
        return exit_code

    def _summary(self, exit_code: int) -> None:
        report = RunReport(self.ctx.results)
        log.info(f"Summary: {report.summary()}")
        self.ctx.emit(
            RunSummary,
            applied=report.count(StepStatus.APPLIED),
            already_configured=report.count(StepStatus.ALREADY_CONFIGURED),
            skipped=report.count(StepStatus.SKIPPED),
            failed=report.count(StepStatus.FAILED),
            exit_code=exit_code,
        )
