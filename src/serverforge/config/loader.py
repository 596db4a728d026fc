# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/config/loader.py

import logging
import os
import yaml
from pathlib import Path
from .models import SetupConfig

log = logging.getLogger("serverforge")

SECRETS_ENV = "SERVERFORGE_SECRETS_FILE"


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Recursively merge *override* into *base* (mutates base).
    Only overwrites when the override value is non-empty.
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            if value not in (None, ""):
                base[key] = value
    return base


def _find_secrets_file(config_path: Path) -> Path | None:
    """
    1. SERVERFORGE_SECRETS_FILE environment variable
    2. secrets.yaml in the same directory as the setup config
    """
    env = os.environ.get(SECRETS_ENV)
    if env:
        p = Path(env)
        if p.is_file():
            return p
        log.warning("%s=%s does not exist, skipping", SECRETS_ENV, env)
        return None

    p = config_path.parent / "secrets.yaml"
    if p.is_file():
        return p

    return None


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    return yaml.safe_load(expanded) or {}


def load_config(path: str | Path | None = None, overrides: dict | None = None) -> SetupConfig:
    """
    Load and validate a setup config.

    Admin passwords and keys usually live in a ``secrets.yaml`` that mirrors
    the config layout; it is deep-merged before validation. ``${ENV_VAR}``
    placeholders in either file are expanded at load time. *overrides*
    (CLI flags) are merged last and win over both files.
    """
    data: dict = {}
    if path is not None:
        path = Path(path)
        if not path.is_file():
            raise FileNotFoundError(f"config file not found: {path}")
        data = _load_yaml(path)

        secrets_path = _find_secrets_file(path)
        if secrets_path:
            log.debug("Merging secrets from %s", secrets_path)
            _deep_merge(data, _load_yaml(secrets_path))
        else:
            log.debug("No secrets.yaml found, proceeding without secrets merge")

    if overrides:
        _deep_merge(data, overrides)

    return SetupConfig.model_validate(data)
