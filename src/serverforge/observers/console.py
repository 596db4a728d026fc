# src/serverforge/observers/console.py
import typer

from .events import (
    BaseEvent,
    GateEvaluated,
    PortReassigned,
    StageStarted,
    StageSucceeded,
    StageSkipped,
    StageFailed,
    HardeningVerified,
    CleanupCompleted,
)


class ConsoleObserver:
    """Short, coloured progress lines for an operator watching the terminal."""

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StageStarted):
            typer.secho(f"==> {event.stage}", fg=typer.colors.BLUE, bold=True)
        elif isinstance(event, StageSucceeded):
            label = event.status.lower().replace("_", " ")
            typer.secho(f"  ✓ {event.stage}: {label} ({event.duration_ms} ms)", fg=typer.colors.GREEN)
        elif isinstance(event, StageSkipped):
            typer.secho(f"  ○ {event.stage}: {event.reason}", fg=typer.colors.CYAN)
        elif isinstance(event, StageFailed):
            colour = typer.colors.RED if event.criticality == "must-not-fail" else typer.colors.YELLOW
            typer.secho(f"  ✗ {event.stage}: {event.error}", fg=colour, err=True)
        elif isinstance(event, GateEvaluated):
            for warning in event.warnings:
                typer.secho(f"  ! {warning}", fg=typer.colors.YELLOW)
            if event.fatal:
                typer.secho(f"  ✗ {event.phase} validation: {event.fatal}", fg=typer.colors.RED, err=True)
        elif isinstance(event, PortReassigned):
            typer.secho(
                f"  ! {event.service}: port {event.old_port} -> {event.new_port} ({event.reason})",
                fg=typer.colors.YELLOW,
            )
        elif isinstance(event, HardeningVerified):
            ok = event.listening and event.service_active
            colour = typer.colors.GREEN if ok else typer.colors.RED
            typer.secho(f"  SSH on port {event.port}: {'listening' if ok else 'NOT VERIFIED'}", fg=colour)
        elif isinstance(event, CleanupCompleted):
            for action in event.actions:
                typer.secho(f"  cleanup: {action}", fg=typer.colors.YELLOW)
