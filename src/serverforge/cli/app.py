# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/cli/app.py
from __future__ import annotations

import os
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import List, Optional

import typer
from pydantic import ValidationError

from serverforge.cli.wizard import read_key, run_wizard
from serverforge.config.loader import load_config
from serverforge.config.models import SetupConfig
from serverforge.deploy.context import OrchestratorContext
from serverforge.deploy.orchestrator import Orchestrator
from serverforge.execution.runner import SubprocessRunner
from serverforge.logging.log import DEFAULT_FALLBACK_DIR, init_logging
from serverforge.observers.console import ConsoleObserver
from serverforge.observers.dispatcher import EventBus
from serverforge.observers.jsonfile import JsonFileObserver
from serverforge.observers.logger import LoggerObserver
from serverforge.ports.registry import PortRegistry

# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="Provision and harden a fresh Ubuntu container host", no_args_is_help=True)

EXIT_USAGE = 2


def _fail(message: str, code: int = EXIT_USAGE) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code)


def cli_overrides(
    *,
    admin_user: Optional[str] = None,
    admin_password: Optional[str] = None,
    admin_key: Optional[List[str]] = None,
    recovery_key: Optional[List[str]] = None,
    ssh_port: Optional[int] = None,
    api_port: Optional[int] = None,
    platform: Optional[str] = None,
    no_nginx: bool = False,
    certbot_email: Optional[str] = None,
    certbot_domain: Optional[str] = None,
    root_login: Optional[str] = None,
) -> dict:
    """Flags as a config fragment; merged over the config file."""
    overrides: dict = {}

    admin = {}
    if admin_user:
        admin["username"] = admin_user
    if admin_password:
        admin["password"] = admin_password
    if admin_key:
        admin["ssh_keys"] = [read_key(k) for k in admin_key]
    if admin:
        overrides["admin"] = admin
    if recovery_key:
        overrides["recovery"] = {"ssh_keys": [read_key(k) for k in recovery_key]}

    ports = {}
    if ssh_port:
        ports["ssh"] = ssh_port
    if api_port:
        ports["k3s_api"] = api_port
    if ports:
        overrides["ports"] = ports

    if platform:
        overrides["platform"] = platform
    if no_nginx:
        overrides["nginx"] = False

    certbot = {}
    if certbot_email:
        certbot["email"] = certbot_email
    if certbot_domain:
        certbot["domain"] = certbot_domain
    if certbot:
        overrides["certbot"] = certbot

    if root_login:
        overrides["hardening"] = {"root_login": root_login}
    return overrides


def _load(config: Optional[Path], overrides: dict) -> SetupConfig:
    try:
        return load_config(config, overrides)
    except FileNotFoundError as exc:
        _fail(str(exc))
    except ValidationError as exc:
        lines = [f"  {'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in exc.errors()]
        _fail("Invalid configuration:\n" + "\n".join(lines))


def _require_non_interactive_inputs(cfg: SetupConfig, *, dry_run: bool) -> None:
    if cfg.admin is None:
        _fail("--yes needs an admin account: pass --admin-user and --admin-key (or set admin in --config)")
    if not cfg.admin.ssh_keys:
        _fail(f"--yes needs an SSH key for {cfg.admin.username}: pass --admin-key")
    # sudo is the only way to root once root login is disabled
    if not dry_run and not cfg.admin.password:
        _fail(f"--yes needs a password for {cfg.admin.username}: pass --admin-password")


# ------------------------------------------------------------------------------
# setup
# ------------------------------------------------------------------------------

@app.command()
def setup(
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show what would change; change nothing"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Non-interactive; requires --admin-user/--admin-key"),
    report_only: bool = typer.Option(False, "--report-only", "-r", help="Only (re)generate the setup report"),
    verbose: bool = typer.Option(False, "--verbose", help="Show the full command trace on the console"),
    config: Optional[Path] = typer.Option(None, "--config", help="Setup YAML (secrets.yaml beside it is merged)"),
    admin_user: Optional[str] = typer.Option(None, "--admin-user"),
    admin_password: Optional[str] = typer.Option(None, "--admin-password"),
    admin_key: Optional[List[str]] = typer.Option(None, "--admin-key", help="Public key or .pub path; repeatable"),
    recovery_key: Optional[List[str]] = typer.Option(None, "--recovery-key", help="Key for the recovery admin"),
    ssh_port: Optional[int] = typer.Option(None, "--ssh-port", min=1, max=65535),
    api_port: Optional[int] = typer.Option(None, "--api-port", min=1, max=65535, help="k3s API server port"),
    platform: Optional[str] = typer.Option(None, "--platform", help="k3s or swarm"),
    no_nginx: bool = typer.Option(False, "--no-nginx", help="Skip the reverse proxy (and certbot)"),
    certbot_email: Optional[str] = typer.Option(None, "--certbot-email"),
    certbot_domain: Optional[str] = typer.Option(None, "--certbot-domain"),
    root_login: Optional[str] = typer.Option(None, "--root-login", help="no or prohibit-password"),
    events_file: Optional[Path] = typer.Option(None, "--events-file", help="Write lifecycle events as JSONL"),
):
    """Provision the host: packages, container runtime, protection, users, firewall, then SSH hardening."""
    overrides = cli_overrides(
        admin_user=admin_user,
        admin_password=admin_password,
        admin_key=admin_key,
        recovery_key=recovery_key,
        ssh_port=ssh_port,
        api_port=api_port,
        platform=platform,
        no_nginx=no_nginx,
        certbot_email=certbot_email,
        certbot_domain=certbot_domain,
        root_login=root_login,
    )
    cfg = _load(config, overrides)

    if not dry_run and os.geteuid() != 0:
        _fail("serverforge setup must run as root (use sudo), or pass --dry-run", code=1)

    if yes and not report_only:
        _require_non_interactive_inputs(cfg, dry_run=dry_run)
    elif not report_only:
        cfg = run_wizard(cfg, port_file=cfg.paths.port_file, dry_run=dry_run)

    logger, run_id, log_path = init_logging(log_file=cfg.paths.log_file, verbose=verbose)

    typer.echo("")
    typer.secho("Server Setup Started" + (" (dry-run)" if dry_run else ""), bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    bus = EventBus(observers=[
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(events_file or DEFAULT_FALLBACK_DIR / f"{run_id}.jsonl"),
    ])

    ctx = OrchestratorContext(
        config=cfg,
        runner=SubprocessRunner(),
        bus=bus,
        dry_run=dry_run,
        report_only=report_only,
        run_id=run_id,
        log_file=log_path,
    )
    code = Orchestrator(ctx).run()
    raise typer.Exit(code)


# ------------------------------------------------------------------------------
# ports
# ------------------------------------------------------------------------------

@app.command()
def ports(
    config: Optional[Path] = typer.Option(None, "--config", help="Setup YAML naming the port file"),
):
    """Show the persisted port assignments."""
    cfg = _load(config, {})
    registry = PortRegistry(cfg.paths.port_file)
    assignments = registry.load()
    if assignments is None:
        typer.echo(f"No port file at {registry.path}; defaults apply:")
        assignments = registry.defaults()
    for a in assignments.values():
        flag = "  (privileged)" if a.privileged else ""
        typer.echo(f"  {a.service_name:<10} {a.port:>5}  {a.description}{flag}")
    for warning in registry.warnings:
        typer.secho(f"  ! {warning}", fg=typer.colors.YELLOW)
    for repair in registry.repairs:
        typer.secho(
            f"  ! {repair.service}: {repair.old_port} -> {repair.new_port} on next run ({repair.reason})",
            fg=typer.colors.YELLOW,
        )


@app.command()
def version():
    """Print the installed version."""
    try:
        typer.echo(package_version("serverforge"))
    except PackageNotFoundError:
        typer.echo("serverforge (not installed)")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
