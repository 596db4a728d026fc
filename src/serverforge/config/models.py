# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/serverforge/config/models.py

import re
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional

from pydantic import AfterValidator, BaseModel, Field, field_validator

USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
PUBKEY_RE = re.compile(r"^(ssh-(rsa|ed25519|dss)|ecdsa-sha2-\S+|sk-\S+)\s+[A-Za-z0-9+/]+={0,3}(\s.*)?$")


def check_username(value: str) -> str:
    if value == "root":
        raise ValueError("'root' cannot be used as an admin username")
    if len(value) > 32:
        raise ValueError("username too long (maximum 32 characters)")
    if not USERNAME_RE.match(value):
        raise ValueError("use lowercase letters, digits, underscore or hyphen")
    return value


def _check_keys(keys: List[str]) -> List[str]:
    cleaned = [k.strip() for k in keys if k and k.strip()]
    for key in cleaned:
        if not PUBKEY_RE.match(key):
            raise ValueError(f"not an SSH public key: {key[:40]}...")
    return cleaned


Username = Annotated[str, AfterValidator(check_username)]
PublicKeys = Annotated[List[str], AfterValidator(_check_keys)]


class AdminUser(BaseModel):
    username: Username
    password: Optional[str] = None     # required for sudo; --yes and the admin_users stage enforce it
    ssh_keys: PublicKeys = Field(default_factory=list)

    @field_validator("password")
    @classmethod
    def _password_length(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) < 8:
            raise ValueError("password must be at least 8 characters long")
        return v


class RecoveryAdmin(BaseModel):
    """Key-only failsafe account; created only when at least one key is given."""
    username: Username = "recovery_admin"
    ssh_keys: PublicKeys = Field(default_factory=list)

    @property
    def enabled(self) -> bool:
        return bool(self.ssh_keys)


class CertbotConfig(BaseModel):
    email: Optional[str] = None
    domain: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _email_format(cls, v: Optional[str]) -> Optional[str]:
        if v and not EMAIL_RE.match(v):
            raise ValueError(f"invalid email address: {v}")
        return v or None

    @property
    def enabled(self) -> bool:
        return bool(self.email and self.domain)


class Thresholds(BaseModel):
    min_disk_kb: int = 5 * 1024 * 1024      # 5 GiB
    min_memory_mb: int = 1024


class Paths(BaseModel):
    port_file: Path = Path("/etc/server-ports.conf")
    report_dir: Path = Path("/root")
    log_file: Path = Path("/var/log/server-setup.log")
    diagnostics_dir: Optional[Path] = None      # invoking directory when unset
    sshd_config: Path = Path("/etc/ssh/sshd_config")


class HardeningPolicy(BaseModel):
    root_login: Literal["no", "prohibit-password"] = "no"
    max_auth_tries: int = Field(3, ge=1)
    login_grace_time: int = Field(20, ge=1)
    verify_retries: int = Field(10, ge=1)
    verify_delay: float = Field(1.0, ge=0)
    banner_probe: bool = True


class StepPolicy(BaseModel):
    """Retries for stages that only fetch or install (apt, installer downloads)."""
    retries: int = Field(3, ge=1)
    backoff_seconds: float = Field(5.0, ge=0)


class SetupConfig(BaseModel):
    admin: Optional[AdminUser] = None
    recovery: RecoveryAdmin = RecoveryAdmin()
    platform: Literal["k3s", "swarm"] = "k3s"
    nginx: bool = True
    certbot: CertbotConfig = CertbotConfig()
    ports: Dict[str, int] = Field(default_factory=dict)     # requested remaps, e.g. {"ssh": 2222}
    thresholds: Thresholds = Thresholds()
    paths: Paths = Paths()
    hardening: HardeningPolicy = HardeningPolicy()
    steps: StepPolicy = StepPolicy()

    @field_validator("ports")
    @classmethod
    def _port_range(cls, v: Dict[str, int]) -> Dict[str, int]:
        for service, port in v.items():
            if not 1 <= int(port) <= 65535:
                raise ValueError(f"{service}: port must be between 1 and 65535, got {port}")
        return v

    def admin_accounts(self) -> List[AdminUser]:
        """Accounts that keep SSH access once root/password login is disabled."""
        accounts = [self.admin] if self.admin else []
        if self.recovery.enabled:
            accounts.append(AdminUser(username=self.recovery.username, ssh_keys=self.recovery.ssh_keys))
        return accounts

    def redacted(self) -> dict:
        data = self.model_dump(mode="json")
        if data.get("admin") and data["admin"].get("password"):
            data["admin"]["password"] = "********"
        return data
