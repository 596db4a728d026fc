# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from typing import Mapping, Optional, Protocol, Sequence

log = logging.getLogger("serverforge")

# conventional shell exit code for "command not found"
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    def output(self) -> str:
        return "\n".join(p for p in (self.stdout.rstrip(), self.stderr.rstrip()) if p)


class CommandError(RuntimeError):
    """A required host command exited non-zero."""

    def __init__(self, result: CommandResult, message: Optional[str] = None):
        self.result = result
        super().__init__(message or f"command failed (exit {result.returncode}): {result.command}")

    @property
    def exit_code(self) -> int:
        return self.result.returncode


class CommandRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult: ...


@dataclass
class SubprocessRunner:
    """
    Runs host commands and records every invocation in the run log:
    the command line, stdout/stderr, exit code and duration.
    """

    label: str = "cmd"
    timeout: Optional[float] = None

    def run(
        self,
        argv: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        argv = tuple(str(a) for a in argv)
        log.debug(f"[{self.label}] $ {' '.join(argv)}")

        merged_env = None
        if env:
            merged_env = {**os.environ, **env}

        start = time.time()
        try:
            cp = subprocess.run(
                list(argv),
                input=input,
                capture_output=True,
                text=True,
                env=merged_env,
                timeout=self.timeout,
            )
            result = CommandResult(argv, cp.returncode, cp.stdout or "", cp.stderr or "")
        except FileNotFoundError as exc:
            result = CommandResult(argv, EXIT_NOT_FOUND, "", str(exc))
        except subprocess.TimeoutExpired as exc:
            result = CommandResult(argv, 124, "", f"timed out after {exc.timeout}s")

        duration = time.time() - start
        if result.stdout:
            log.debug(f"[{self.label}][stdout]\n{result.stdout.rstrip()}")
        if result.stderr:
            log.debug(f"[{self.label}][stderr]\n{result.stderr.rstrip()}")
        log.debug(f"[{self.label}][exit {result.returncode}] ({duration:.2f}s)")

        return result


def check_call(
    runner: CommandRunner,
    argv: Sequence[str],
    *,
    input: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    message: Optional[str] = None,
) -> CommandResult:
    result = runner.run(argv, input=input, env=env)
    if not result.ok:
        raise CommandError(result, message)
    return result
