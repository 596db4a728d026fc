# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/cli/wizard.py

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import click
import typer

from serverforge.config.models import PUBKEY_RE, SetupConfig, check_username
from serverforge.ports.registry import PortRegistry


def _ask(label: str, check: Callable[[str], Optional[str]], **kwargs) -> str:
    """Prompt until *check* returns no error message."""
    while True:
        value = typer.prompt(label, **kwargs)
        error = check(value)
        if error is None:
            return value
        typer.secho(f"  {error}", fg=typer.colors.RED)


def _username_error(value: str) -> Optional[str]:
    try:
        check_username(value)
    except ValueError as exc:
        return str(exc)
    return None


def _password_error(value: str) -> Optional[str]:
    return None if len(value) >= 8 else "password must be at least 8 characters long"


def _key_error(value: str) -> Optional[str]:
    if not value:
        return None
    return None if PUBKEY_RE.match(value.strip()) else "that does not look like an SSH public key"


def read_key(value: str) -> str:
    """Accept either a public key or the path of a .pub file."""
    path = Path(value).expanduser()
    if len(value) < 4096 and path.is_file():
        return path.read_text().strip()
    return value.strip()


def run_wizard(cfg: SetupConfig, *, port_file: Path, dry_run: bool = False) -> SetupConfig:
    """
    Fill in whatever the config file and flags left open. Values that are
    already set become the prompt defaults.
    """
    data = cfg.model_dump()
    typer.secho("\nServer setup", bold=True)

    # ---------------- admin identity ----------------
    admin = data.get("admin") or {}
    admin["username"] = _ask("Admin username", _username_error, default=admin.get("username") or None)
    if not admin.get("password"):
        admin["password"] = _ask(
            "Admin password (for sudo)", _password_error, hide_input=True, confirmation_prompt=True
        )
    if not admin.get("ssh_keys"):
        key = _ask(f"SSH public key for {admin['username']} (key or .pub path)",
                   lambda v: _key_error(read_key(v)) or (None if v else "a key is required"))
        admin["ssh_keys"] = [read_key(key)]
    data["admin"] = admin

    if not data["recovery"]["ssh_keys"]:
        key = _ask("Recovery admin SSH key (optional, Enter to skip)",
                   lambda v: _key_error(read_key(v)) if v else None, default="", show_default=False)
        if key:
            data["recovery"]["ssh_keys"] = [read_key(key)]

    # ---------------- platform & proxy ----------------
    data["platform"] = typer.prompt(
        "Container platform", default=data["platform"], type=click.Choice(["k3s", "swarm"])
    )
    if data["nginx"] and not data["certbot"]["email"]:
        email = typer.prompt("Certbot email (optional, Enter to skip)", default="", show_default=False)
        if email:
            data["certbot"]["email"] = email
            data["certbot"]["domain"] = typer.prompt("Domain for the certificate")

    # ---------------- ports ----------------
    requested = dict(data["ports"])
    existing = PortRegistry(port_file).load()
    if existing and not requested:
        typer.echo(f"Existing port configuration in {port_file}:")
        for a in existing.values():
            typer.echo(f"  {a.description:<25} {a.port}")
        if typer.confirm("Keep these ports?", default=True):
            requested = {name: a.port for name, a in existing.items()}
    if not requested:
        defaults = {name: a.port for name, a in (existing or PortRegistry(port_file).defaults()).items()}
        requested["ssh"] = typer.prompt("SSH port", default=defaults["ssh"], type=click.IntRange(1, 65535))
        if data["platform"] == "k3s":
            requested["k3s_api"] = typer.prompt(
                "k3s API port", default=defaults["k3s_api"], type=click.IntRange(1, 65535)
            )
    data["ports"] = requested

    cfg = SetupConfig.model_validate(data)

    typer.echo("")
    typer.secho("Summary", bold=True)
    typer.echo(f"  Admin      : {cfg.admin.username}")
    typer.echo(f"  Recovery   : {cfg.recovery.username if cfg.recovery.enabled else '(none)'}")
    typer.echo(f"  Platform   : {cfg.platform}")
    typer.echo(f"  Nginx      : {'yes' if cfg.nginx else 'no'}")
    typer.echo(f"  Certificate: {cfg.certbot.domain or '(none)'}")
    typer.echo(f"  Ports      : {', '.join(f'{k}={v}' for k, v in cfg.ports.items())}")
    typer.echo(f"  Root login : {cfg.hardening.root_login}")
    if not dry_run:
        typer.secho(
            "SSH will be restricted to key-based logins for the accounts above.",
            fg=typer.colors.YELLOW,
        )
        typer.confirm("Proceed with setup?", default=False, abort=True)
    return cfg
