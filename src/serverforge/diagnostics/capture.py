# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/diagnostics/capture.py

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

import yaml

from serverforge.observers.events import DiagnosticsWritten

log = logging.getLogger("serverforge")

SECRET_MARKERS = ("PASSWORD", "SECRET", "TOKEN", "KEY")
LOG_TAIL_LINES = 20
PROCESS_LINES = 20
PACKAGE_TAIL_LINES = 10


@dataclass(frozen=True)
class DiagnosticBundle:
    error_file: Path
    debug_file: Path


def mask_environment(env: Mapping[str, str]) -> List[str]:
    lines = []
    for key in sorted(env):
        value = "********" if any(m in key.upper() for m in SECRET_MARKERS) else env[key]
        lines.append(f"{key}={value}")
    return lines


def _tail(lines: Iterable[str], n: int) -> List[str]:
    lines = list(lines)
    return lines[-n:] if n else []


def _command_section(runner, argv: List[str], *, head: Optional[int] = None, tail: Optional[int] = None) -> str:
    res = runner.run(argv)
    text = res.stdout if res.ok else (res.stderr or f"exit {res.returncode}")
    lines = text.rstrip().splitlines()
    if head is not None:
        lines = lines[:head]
    if tail is not None:
        lines = _tail(lines, tail)
    return "\n".join(lines)


class DiagnosticCapture:
    """
    Writes the two-file bundle for a failed run. Files are opened exclusively
    so an existing bundle is never overwritten.
    """

    def __init__(self, ctx):
        self.ctx = ctx

    def _log_tail(self) -> str:
        log_file = self.ctx.log_file
        if not log_file or not Path(log_file).is_file():
            return "(no log file)"
        with open(log_file, "r", errors="replace") as fh:
            return "\n".join(_tail(fh.read().splitlines(), LOG_TAIL_LINES))

    def _paths(self) -> DiagnosticBundle:
        base = self.ctx.diagnostics_dir() / f"server-setup-{self.ctx.stamp}"
        return DiagnosticBundle(base.with_suffix(".error"), base.with_suffix(".debug"))

    def error_text(self, *, error: str, exit_code: int, stage: Optional[str], command: Optional[str], recovery: List[str]) -> str:
        ctx = self.ctx
        runner = ctx.runner
        sections = [
            ("Failure", "\n".join([
                f"timestamp: {ctx.now().isoformat(timespec='seconds')}",
                f"run id: {ctx.run_id}",
                f"state: {ctx.state.value}",
                f"exit code: {exit_code}",
                f"stage: {stage or '-'}",
                f"command: {command or '-'}",
                f"error: {error}",
            ])),
            ("Host", f"hostname: {ctx.hostname}\nkernel: {ctx.probe.kernel()}"),
            (f"Last {LOG_TAIL_LINES} log lines", self._log_tail()),
            ("Processes", _command_section(runner, ["ps", "aux"], head=PROCESS_LINES)),
            ("Network", _command_section(runner, ["ip", "addr", "show"])),
            (f"Last {PACKAGE_TAIL_LINES} packages", _command_section(runner, ["dpkg", "-l"], tail=PACKAGE_TAIL_LINES)),
            ("Recovery", "\n".join(f"  {i}. {step}" for i, step in enumerate(recovery, 1)) or "  (none)"),
        ]
        return "".join(f"=== {title} ===\n{body}\n\n" for title, body in sections)

    def debug_text(self) -> str:
        ctx = self.ctx
        results = [
            {
                "stage": r.name,
                "status": r.status.value,
                "error": r.error,
                "exit_code": r.exit_code,
                "command": r.command,
                "duration_ms": r.duration_ms,
            }
            for r in ctx.results
        ]
        ports = {name: a.port for name, a in ctx.ports.items()}
        return (
            "=== Environment ===\n"
            + "\n".join(mask_environment(os.environ))
            + "\n\n=== Configuration ===\n"
            + yaml.safe_dump(ctx.config.redacted(), sort_keys=False)
            + "\n=== Ports ===\n"
            + yaml.safe_dump(ports, sort_keys=True)
            + "\n=== Stage results ===\n"
            + yaml.safe_dump(results, sort_keys=False)
        )

    def snapshot(
        self,
        *,
        error: str,
        exit_code: int,
        stage: Optional[str] = None,
        command: Optional[str] = None,
        recovery: Optional[List[str]] = None,
    ) -> DiagnosticBundle:
        bundle = self._paths()
        bundle.error_file.parent.mkdir(parents=True, exist_ok=True)
        error_text = self.error_text(
            error=error, exit_code=exit_code, stage=stage, command=command, recovery=list(recovery or [])
        )
        with open(bundle.error_file, "x") as fh:
            fh.write(error_text)
        with open(bundle.debug_file, "x") as fh:
            fh.write(self.debug_text())
        log.error(f"Diagnostics written to {bundle.error_file} and {bundle.debug_file}")
        self.ctx.emit(DiagnosticsWritten, error_file=str(bundle.error_file), debug_file=str(bundle.debug_file))
        return bundle
