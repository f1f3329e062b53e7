"""Data models for pvescripts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

# ---------------------------------------------------------------------------
# Connection targets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PasswordAuth:
    secret: str = field(repr=False)


@dataclass(frozen=True)
class KeyAuth:
    key_material: str = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)


type Auth = PasswordAuth | KeyAuth


@dataclass(frozen=True)
class LocalTarget:
    """Run on this host, no network hop."""


@dataclass(frozen=True)
class RemoteTarget:
    host: str
    user: str
    auth: Auth
    port: int = 22

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"


type ConnectionTarget = LocalTarget | RemoteTarget

LOCAL = LocalTarget()


@dataclass(frozen=True)
class Server:
    """A Proxmox host as known to the catalog or supplied by a session request."""

    id: int | None
    name: str
    target: RemoteTarget

    @property
    def ip(self) -> str:
        return self.target.host

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Server:
        """Build from the session-protocol / catalog shape.

        ``auth_method`` selects the variant; the other credential fields are
        ignored, so a server can never carry both.
        """
        if raw.get("auth_method") == "ssh_key":
            auth: Auth = KeyAuth(
                key_material=raw.get("ssh_key") or "",
                passphrase=raw.get("ssh_key_passphrase") or None,
            )
        else:
            auth = PasswordAuth(secret=raw.get("password") or "")
        port = raw.get("ssh_port")
        try:
            port = int(port) if port is not None else 22
        except (TypeError, ValueError):
            port = 22
        server_id = raw.get("id")
        return cls(
            id=int(server_id) if server_id is not None else None,
            name=raw.get("name") or raw.get("ip", ""),
            target=RemoteTarget(
                host=raw.get("ip", ""),
                user=raw.get("user", "root"),
                auth=auth,
                port=port,
            ),
        )


# ---------------------------------------------------------------------------
# Storages and backups
# ---------------------------------------------------------------------------

StorageKind = Literal["local", "storage", "pbs"]


@dataclass
class Storage:
    name: str
    type: str
    content: list[str] = field(default_factory=list)
    nodes: list[str] = field(default_factory=list)
    server: str | None = None  # PBS host
    datastore: str | None = None  # PBS datastore

    @property
    def supports_backup(self) -> bool:
        return self.type == "pbs" or "backup" in self.content


@dataclass
class BackupRecord:
    container_id: str
    server_id: int
    hostname: str
    backup_name: str
    backup_path: str
    storage_name: str
    storage_kind: StorageKind
    size: int | None = None
    created_at: datetime | None = None
    id: int | None = None  # assigned by the catalog

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "container_id": self.container_id,
            "server_id": self.server_id,
            "hostname": self.hostname,
            "backup_name": self.backup_name,
            "backup_path": self.backup_path,
            "size": self.size,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "storage_name": self.storage_name,
            "storage_type": self.storage_kind,
        }


@dataclass
class PBSCredential:
    server_id: int
    storage_name: str
    password: str = field(repr=False)
    pbs_ip: str | None = None
    pbs_datastore: str | None = None
    fingerprint: str | None = None


@dataclass
class InstalledScript:
    id: int
    script_name: str
    container_id: str | None = None
    server_id: int | None = None
    server: Server | None = None


@dataclass
class LXCConfig:
    rootfs_storage: str | None = None
    hostname: str | None = None


# ---------------------------------------------------------------------------
# Commands and restore progress
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    """Outcome of a one-shot command. Non-zero exit codes are data, not errors."""

    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class RestoreProgress:
    step: str
    message: str


@dataclass
class RestoreResult:
    success: bool
    progress: list[RestoreProgress]
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "progress": [{"step": p.step, "message": p.message} for p in self.progress],
        }
