# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import socket
from typing import Optional

import paramiko

log = logging.getLogger("serverforge")


def probe_ssh_banner(
    host: str,
    port: int,
    *,
    timeout: float = 5.0,
) -> Optional[str]:
    """
    Open a TCP connection and complete the SSH version exchange.

    Returns the remote version string (e.g. "SSH-2.0-OpenSSH_9.6") or None when
    nothing SSH-speaking answers. No authentication is attempted.
    """
    sock = None
    transport = None
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        transport = paramiko.Transport(sock)
        transport.banner_timeout = timeout
        transport.start_client(timeout=timeout)
        return transport.remote_version
    except (OSError, paramiko.SSHException) as exc:
        log.debug(f"[ssh-probe] {host}:{port} did not answer: {exc}")
        return None
    finally:
        if transport is not None:
            transport.close()
        elif sock is not None:
            sock.close()
