# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional


def atomic_write(path: Path, content: str, *, mode: int = 0o644) -> None:
    """Write via a sibling temp file and rename, so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def write_if_changed(path: Path, content: str, *, mode: int = 0o644) -> bool:
    """Returns True when the file was (re)written."""
    if path.exists() and path.read_text() == content:
        if (path.stat().st_mode & 0o777) != mode:
            os.chmod(path, mode)
        return False
    atomic_write(path, content, mode=mode)
    return True


def backup_path(path: Path, stamp: str) -> Path:
    return path.with_name(f"{path.name}.backup.{stamp}")


def backup_file(path: Path, stamp: str) -> Optional[Path]:
    if not path.exists():
        return None
    backup = backup_path(path, stamp)
    shutil.copy2(path, backup)
    return backup
