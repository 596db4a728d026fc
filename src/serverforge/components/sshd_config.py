# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/components/sshd_config.py

from __future__ import annotations

import re
from typing import Dict, List, Tuple

BEGIN = "# BEGIN serverforge hardening"
END = "# END serverforge hardening"

_MATCH_RE = re.compile(r"^\s*Match\s", re.IGNORECASE)
_DIRECTIVE_RE = re.compile(r"^\s*#?\s*([A-Za-z0-9]+)(\s+|\s*=\s*)(.*)$")


def desired_directives(policy, port: int) -> List[Tuple[str, str]]:
    return [
        ("Port", str(port)),
        ("PermitRootLogin", policy.root_login),
        ("PasswordAuthentication", "no"),
        ("KbdInteractiveAuthentication", "no"),
        ("PubkeyAuthentication", "yes"),
        ("MaxAuthTries", str(policy.max_auth_tries)),
        ("LoginGraceTime", str(policy.login_grace_time)),
        ("PermitEmptyPasswords", "no"),
        ("X11Forwarding", "no"),
    ]


def _strip_managed_block(lines: List[str]) -> List[str]:
    out, inside = [], False
    for line in lines:
        if line.strip() == BEGIN:
            inside = True
            continue
        if line.strip() == END:
            inside = False
            continue
        if not inside:
            out.append(line)
    return out


def apply_directives(text: str, directives: List[Tuple[str, str]]) -> str:
    """
    Put *directives* in a managed block at the very top of sshd_config.

    sshd keeps the first value it reads for a keyword, so the block wins over
    later lines and over anything pulled in by ``Include``. Earlier settings
    (active or commented out) for the same keywords are removed from the
    global section; ``Match`` blocks are left exactly as they were.
    """
    keys = {k.lower() for k, _ in directives}
    lines = _strip_managed_block(text.splitlines())

    kept: List[str] = []
    in_match = False
    for line in lines:
        if _MATCH_RE.match(line):
            in_match = True
        if not in_match:
            m = _DIRECTIVE_RE.match(line)
            if m and m.group(1).lower() in keys:
                continue
        kept.append(line)

    while kept and not kept[0].strip():
        kept.pop(0)

    block = [BEGIN] + [f"{k} {v}" for k, v in directives] + [END, ""]
    return "\n".join(block + kept) + "\n"


def effective_settings(text: str) -> Dict[str, str]:
    """Global settings as sshd resolves them (first occurrence wins, Match excluded)."""
    settings: Dict[str, str] = {}
    for line in text.splitlines():
        if _MATCH_RE.match(line):
            break
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        m = _DIRECTIVE_RE.match(stripped)
        if not m:
            continue
        key = m.group(1)
        if key.lower() == "include":
            continue
        settings.setdefault(key.lower(), m.group(3).strip())
    return settings


def is_hardened(text: str, directives: List[Tuple[str, str]]) -> bool:
    current = effective_settings(text)
    return all(current.get(k.lower()) == v for k, v in directives)


def remove_socket_requirement(unit_text: str) -> str:
    return "\n".join(l for l in unit_text.splitlines() if l.strip() != "Requires=ssh.socket") + "\n"
