# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Optional

from serverforge.execution.runner import CommandResult, check_call
from serverforge.utils.files import backup_file, backup_path, write_if_changed

log = logging.getLogger("serverforge")

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def run(ctx, argv, **kwargs) -> CommandResult:
    return check_call(ctx.runner, argv, **kwargs)


def missing_packages(ctx, packages: Iterable[str]) -> List[str]:
    return [p for p in packages if not ctx.probe.package_installed(p)]


def apt_install(ctx, packages: Iterable[str]) -> List[str]:
    """Installs whatever is missing; returns the packages that were installed."""
    missing = missing_packages(ctx, packages)
    if not missing:
        return []
    run(ctx, ["apt-get", "update"], env=APT_ENV)
    run(ctx, ["apt-get", "install", "-y", *missing], env=APT_ENV)
    log.info(f"Installed {' '.join(missing)}")
    return missing


def install_commands(ctx, packages: Iterable[str]) -> List[str]:
    missing = missing_packages(ctx, packages)
    if not missing:
        return []
    return ["apt-get update", f"apt-get install -y {' '.join(missing)}"]


def restart_service(ctx, unit: str) -> None:
    run(ctx, ["systemctl", "enable", unit])
    run(ctx, ["systemctl", "restart", unit])


def file_matches(ctx, path: str, content: str, mode: Optional[int] = None) -> bool:
    p = ctx.host_path(path)
    if not p.is_file() or p.read_text() != content:
        return False
    return mode is None or (p.stat().st_mode & 0o777) == mode


def write_config(ctx, path: str, content: str, *, mode: int = 0o644, backup: bool = False) -> bool:
    """Writes *content* under the host root; True when the file changed."""
    p = ctx.host_path(path)
    if backup and p.is_file() and p.read_text() != content:
        saved = backup_file(p, ctx.stamp)
        log.info(f"Backed up {path} to {saved.name}")
    changed = write_if_changed(p, content, mode=mode)
    if changed:
        log.info(f"Wrote {path}")
    return changed


def pending_backup(ctx, path: str, content: str) -> List[str]:
    """Backup the live run would take, for previews."""
    p = ctx.host_path(path)
    if p.is_file() and p.read_text() != content:
        return [str(backup_path(Path(path), ctx.stamp))]
    return []


def pending_writes(ctx, files: dict) -> List[str]:
    return [path for path, content in files.items() if not file_matches(ctx, path, content)]
