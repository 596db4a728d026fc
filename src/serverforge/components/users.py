# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/users.py

from __future__ import annotations

import logging
import os
from typing import List

from serverforge.config.models import AdminUser
from serverforge.deploy.errors import ValidationFailure
from serverforge.deploy.stages import Criticality, ProvisioningStage, StageName, StagePreview

from .common import run

log = logging.getLogger("serverforge")

ADMIN_GROUPS = ("sudo", "docker")


def _ssh_paths(ctx, user: str):
    ssh_dir = ctx.probe.home_dir(user) / ".ssh"
    return ssh_dir, ssh_dir / "authorized_keys"


def _wanted_groups(ctx) -> List[str]:
    # docker exists only on the swarm platform (or a preinstalled engine)
    return [g for g in ADMIN_GROUPS if g == "sudo" or ctx.probe.group_exists(g)]


def _missing_keys(ctx, account: AdminUser) -> List[str]:
    present = set(ctx.probe.authorized_keys(account.username))
    return [k for k in account.ssh_keys if k not in present]


def _needs_password(ctx, account: AdminUser) -> bool:
    return bool(account.password) and not ctx.probe.password_usable(account.username)


def _sudo_password_missing(ctx, account: AdminUser) -> bool:
    """The primary admin needs a password for sudo once root login is off."""
    return (
        account is ctx.config.admin
        and not account.password
        and not ctx.probe.password_usable(account.username)
    )


def account_configured(ctx, account: AdminUser) -> bool:
    if not ctx.probe.user_exists(account.username):
        return False
    if _needs_password(ctx, account):
        return False
    if set(_wanted_groups(ctx)) - ctx.probe.user_groups(account.username):
        return False
    if _missing_keys(ctx, account):
        return False
    ssh_dir, auth_keys = _ssh_paths(ctx, account.username)
    if not auth_keys.is_file():
        return False
    return (ssh_dir.stat().st_mode & 0o777) == 0o700 and (auth_keys.stat().st_mode & 0o777) == 0o600


def ensure_account(ctx, account: AdminUser) -> List[str]:
    """Create or repair one admin account; returns the changes made."""
    user = account.username
    changes = []

    if ctx.probe.user_exists(user):
        log.info(f"User {user} already exists")
    else:
        run(ctx, ["useradd", "-m", "-s", "/bin/bash", user])
        changes.append(f"created {user}")

    # unset or locked passwords are applied on every run
    if _needs_password(ctx, account):
        run(ctx, ["chpasswd"], input=f"{user}:{account.password}\n")
        changes.append(f"set password for {user}")

    groups = ctx.probe.user_groups(user)
    for group in _wanted_groups(ctx):
        if group not in groups:
            run(ctx, ["usermod", "-aG", group, user])
            changes.append(f"added {user} to {group}")

    ssh_dir, auth_keys = _ssh_paths(ctx, user)
    ssh_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(ssh_dir, 0o700)
    missing = _missing_keys(ctx, account)
    if missing:
        existing = auth_keys.read_text() if auth_keys.is_file() else ""
        if existing and not existing.endswith("\n"):
            existing += "\n"
        auth_keys.write_text(existing + "".join(f"{k}\n" for k in missing))
        changes.append(f"installed {len(missing)} key(s) for {user}")
    if auth_keys.is_file():
        os.chmod(auth_keys, 0o600)
    run(ctx, ["chown", "-R", f"{user}:{user}", str(ssh_dir)])

    # ~/.docker left root-owned by earlier `sudo docker` use
    docker_dir = ctx.probe.home_dir(user) / ".docker"
    if docker_dir.is_dir():
        run(ctx, ["chown", "-R", f"{user}:{user}", str(docker_dir)])
        run(ctx, ["chmod", "-R", "g+rwx", str(docker_dir)])

    return changes


def admin_users_stage(ctx) -> ProvisioningStage:
    accounts = ctx.config.admin_accounts()

    def check() -> bool:
        if not accounts or any(_sudo_password_missing(ctx, a) for a in accounts):
            return False
        return all(account_configured(ctx, a) for a in accounts)

    def action() -> str:
        if not accounts:
            raise ValidationFailure(
                "no admin account configured",
                recovery=["re-run with --admin-user, --admin-password and --admin-key"],
            )
        changes = []
        for account in accounts:
            if not account.ssh_keys and not ctx.probe.authorized_keys(account.username):
                raise ValidationFailure(
                    f"{account.username} has no SSH key; password login is about to be disabled",
                    recovery=[f"re-run with --admin-key '<public key for {account.username}>'"],
                )
            if _sudo_password_missing(ctx, account):
                raise ValidationFailure(
                    f"{account.username} has no password; sudo would be unusable once root login is disabled",
                    recovery=[f"re-run with --admin-password '<password for {account.username}>'"],
                )
            changes += ensure_account(ctx, account)
        return "; ".join(changes) or "accounts already in place"

    def preview() -> StagePreview:
        files, commands = [], []
        for a in accounts:
            _, auth_keys = _ssh_paths(ctx, a.username)
            files.append(f"/{auth_keys.relative_to(ctx.root)}")
            if not ctx.probe.user_exists(a.username):
                commands.append(f"useradd -m -s /bin/bash {a.username}")
            if _needs_password(ctx, a):
                commands.append(f"chpasswd  (password for {a.username})")
            groups = ctx.probe.user_groups(a.username)
            for g in _wanted_groups(ctx):
                if g not in groups:
                    commands.append(f"usermod -aG {g} {a.username}")
        names = ", ".join(a.username for a in accounts) or "(none configured)"
        return StagePreview(
            f"Provision key-only admin accounts with sudo: {names}",
            files=files,
            commands=commands,
        )

    return ProvisioningStage(
        StageName.ADMIN_USERS,
        "Admin and recovery users",
        action,
        preview,
        check,
        Criticality.MUST_NOT_FAIL,
    )
