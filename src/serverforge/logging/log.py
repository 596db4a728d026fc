# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
import uuid

DEFAULT_FALLBACK_DIR = Path.home() / ".serverforge" / "logs"


def _open_file_handler(log_file: Path) -> logging.FileHandler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    return logging.FileHandler(log_file)


def init_logging(
    *,
    log_file: Path | None = None,
    name: str = "serverforge",
    verbose: bool = False,
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - append-only log file with the full command trace
      - console output (INFO, or DEBUG when --verbose is passed)
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if log_file is None:
        log_file = DEFAULT_FALLBACK_DIR / f"{name}.log"

    try:
        fh = _open_file_handler(log_file)
    except OSError:
        # /var/log is root-only; a non-root dry run still gets a trace
        log_file = DEFAULT_FALLBACK_DIR / log_file.name
        fh = _open_file_handler(log_file)

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = False

    formatter = logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)

    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(formatter)

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.debug("=== Server setup run started ===")
    logger.debug(f"run_id={run_id}")
    logger.debug(f"log_file={log_file}")

    return logger, run_id, log_file
