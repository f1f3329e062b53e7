"""SQLite catalog backed by aiosqlite.

One connection per catalog instance, owned by whoever opened it (the
service container in production, a fixture in tests).

``_SCHEMA`` is the source of truth for table definitions; ``CREATE TABLE
IF NOT EXISTS`` handles brand-new databases.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from pvescripts.logger import logger
from pvescripts.types import (
    BackupRecord,
    InstalledScript,
    LXCConfig,
    PBSCredential,
    Server,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS servers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    ip TEXT NOT NULL,
    user TEXT NOT NULL DEFAULT 'root',
    auth_method TEXT NOT NULL DEFAULT 'password',
    password TEXT,
    ssh_key TEXT,
    ssh_key_passphrase TEXT,
    ssh_port INTEGER NOT NULL DEFAULT 22
);

CREATE TABLE IF NOT EXISTS installed_scripts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    script_name TEXT NOT NULL,
    container_id TEXT,
    server_id INTEGER,
    FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_installed_scripts_container
    ON installed_scripts(container_id, server_id);

CREATE TABLE IF NOT EXISTS lxc_configs (
    installed_script_id INTEGER PRIMARY KEY,
    rootfs_storage TEXT,
    hostname TEXT,
    FOREIGN KEY (installed_script_id) REFERENCES installed_scripts(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS pbs_storage_credentials (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    server_id INTEGER NOT NULL,
    storage_name TEXT NOT NULL,
    pbs_ip TEXT,
    pbs_datastore TEXT,
    pbs_password TEXT NOT NULL,
    pbs_fingerprint TEXT,
    updated_at TEXT NOT NULL,
    UNIQUE (server_id, storage_name),
    FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS backups (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    container_id TEXT NOT NULL,
    server_id INTEGER NOT NULL,
    hostname TEXT NOT NULL,
    backup_name TEXT NOT NULL,
    backup_path TEXT NOT NULL,
    size INTEGER,
    created_at TEXT,
    storage_name TEXT NOT NULL,
    storage_type TEXT NOT NULL,
    discovered_at TEXT NOT NULL,
    UNIQUE (container_id, server_id, backup_path),
    FOREIGN KEY (server_id) REFERENCES servers(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_backups_container ON backups(container_id);
CREATE INDEX IF NOT EXISTS idx_backups_server ON backups(server_id);
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_server(row: aiosqlite.Row) -> Server:
    return Server.from_dict(dict(row))


def _row_to_backup(row: aiosqlite.Row) -> BackupRecord:
    return BackupRecord(
        id=row["id"],
        container_id=row["container_id"],
        server_id=row["server_id"],
        hostname=row["hostname"],
        backup_name=row["backup_name"],
        backup_path=row["backup_path"],
        size=row["size"],
        created_at=_from_iso(row["created_at"]),
        storage_name=row["storage_name"],
        storage_kind=row["storage_type"],
    )


class SqliteCatalog:
    """Implements :class:`pvescripts.catalog.Catalog`."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db
        # Multi-statement writes share one connection; see atomic_write()
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: Path | str) -> SqliteCatalog:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(path))
        db.row_factory = aiosqlite.Row
        await db.execute("PRAGMA foreign_keys = ON")
        await db.executescript(_SCHEMA)
        await db.commit()
        logger.debug("Catalog opened", path=str(path))
        return cls(db)

    @classmethod
    async def open_in_memory(cls) -> SqliteCatalog:
        """Fresh in-memory catalog (for tests)."""
        return await cls.open(":memory:")

    async def close(self) -> None:
        await self._db.close()

    @asynccontextmanager
    async def atomic_write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Hold the write lock and commit on success, roll back on failure."""
        async with self._write_lock:
            try:
                yield self._db
                await self._db.commit()
            except Exception:
                await self._db.rollback()
                raise

    # ------------------------------------------------------------------
    # Servers, scripts, configs, credentials
    # ------------------------------------------------------------------

    async def add_server(
        self,
        *,
        name: str,
        ip: str,
        user: str = "root",
        auth_method: str = "password",
        password: str | None = None,
        ssh_key: str | None = None,
        ssh_key_passphrase: str | None = None,
        ssh_port: int = 22,
    ) -> int:
        async with self.atomic_write() as db:
            cursor = await db.execute(
                "INSERT INTO servers (name, ip, user, auth_method, password, ssh_key, "
                "ssh_key_passphrase, ssh_port) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (name, ip, user, auth_method, password, ssh_key, ssh_key_passphrase, ssh_port),
            )
            assert cursor.lastrowid is not None
            return cursor.lastrowid

    async def get_server_by_id(self, server_id: int) -> Server | None:
        cursor = await self._db.execute("SELECT * FROM servers WHERE id = ?", (server_id,))
        row = await cursor.fetchone()
        return _row_to_server(row) if row else None

    async def add_installed_script(
        self,
        script_name: str,
        *,
        container_id: str | None = None,
        server_id: int | None = None,
    ) -> int:
        async with self.atomic_write() as db:
            cursor = await db.execute(
                "INSERT INTO installed_scripts (script_name, container_id, server_id) "
                "VALUES (?, ?, ?)",
                (script_name, container_id, server_id),
            )
            assert cursor.lastrowid is not None
            return cursor.lastrowid

    async def get_installed_scripts(self) -> list[InstalledScript]:
        cursor = await self._db.execute(
            "SELECT s.id AS script_id, s.script_name, s.container_id, s.server_id, "
            "v.id, v.name, v.ip, v.user, v.auth_method, v.password, v.ssh_key, "
            "v.ssh_key_passphrase, v.ssh_port "
            "FROM installed_scripts s LEFT JOIN servers v ON v.id = s.server_id "
            "ORDER BY s.id"
        )
        scripts: list[InstalledScript] = []
        for row in await cursor.fetchall():
            server = _row_to_server(row) if row["id"] is not None else None
            scripts.append(
                InstalledScript(
                    id=row["script_id"],
                    script_name=row["script_name"],
                    container_id=row["container_id"],
                    server_id=row["server_id"],
                    server=server,
                )
            )
        return scripts

    async def set_lxc_config(
        self,
        script_id: int,
        *,
        rootfs_storage: str | None = None,
        hostname: str | None = None,
    ) -> None:
        async with self.atomic_write() as db:
            await db.execute(
                "INSERT INTO lxc_configs (installed_script_id, rootfs_storage, hostname) "
                "VALUES (?, ?, ?) ON CONFLICT(installed_script_id) DO UPDATE SET "
                "rootfs_storage = excluded.rootfs_storage, hostname = excluded.hostname",
                (script_id, rootfs_storage, hostname),
            )

    async def get_lxc_config_by_script_id(self, script_id: int) -> LXCConfig | None:
        cursor = await self._db.execute(
            "SELECT rootfs_storage, hostname FROM lxc_configs WHERE installed_script_id = ?",
            (script_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return LXCConfig(rootfs_storage=row["rootfs_storage"], hostname=row["hostname"])

    async def set_pbs_credential(self, credential: PBSCredential) -> None:
        async with self.atomic_write() as db:
            await db.execute(
                "INSERT INTO pbs_storage_credentials (server_id, storage_name, pbs_ip, "
                "pbs_datastore, pbs_password, pbs_fingerprint, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(server_id, storage_name) DO UPDATE SET "
                "pbs_ip = excluded.pbs_ip, pbs_datastore = excluded.pbs_datastore, "
                "pbs_password = excluded.pbs_password, "
                "pbs_fingerprint = excluded.pbs_fingerprint, updated_at = excluded.updated_at",
                (
                    credential.server_id,
                    credential.storage_name,
                    credential.pbs_ip,
                    credential.pbs_datastore,
                    credential.password,
                    credential.fingerprint,
                    datetime.now(UTC).isoformat(),
                ),
            )

    async def get_pbs_credential(
        self, server_id: int, storage_name: str
    ) -> PBSCredential | None:
        cursor = await self._db.execute(
            "SELECT * FROM pbs_storage_credentials WHERE server_id = ? AND storage_name = ?",
            (server_id, storage_name),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return PBSCredential(
            server_id=row["server_id"],
            storage_name=row["storage_name"],
            password=row["pbs_password"],
            pbs_ip=row["pbs_ip"],
            pbs_datastore=row["pbs_datastore"],
            fingerprint=row["pbs_fingerprint"],
        )

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    async def create_or_update_backup(self, backup: BackupRecord) -> int:
        """Upsert keyed on (container_id, server_id, backup_path). Returns the row id."""
        async with self.atomic_write() as db:
            await db.execute(
                "INSERT INTO backups (container_id, server_id, hostname, backup_name, "
                "backup_path, size, created_at, storage_name, storage_type, discovered_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(container_id, server_id, backup_path) DO UPDATE SET "
                "hostname = excluded.hostname, backup_name = excluded.backup_name, "
                "size = excluded.size, created_at = excluded.created_at, "
                "storage_name = excluded.storage_name, storage_type = excluded.storage_type, "
                "discovered_at = excluded.discovered_at",
                (
                    backup.container_id,
                    backup.server_id,
                    backup.hostname,
                    backup.backup_name,
                    backup.backup_path,
                    backup.size,
                    _iso(backup.created_at),
                    backup.storage_name,
                    backup.storage_kind,
                    datetime.now(UTC).isoformat(),
                ),
            )
            cursor = await db.execute(
                "SELECT id FROM backups WHERE container_id = ? AND server_id = ? "
                "AND backup_path = ?",
                (backup.container_id, backup.server_id, backup.backup_path),
            )
            row = await cursor.fetchone()
            if row is None:
                raise RuntimeError(f"Backup {backup.backup_path} vanished after upsert")
            return row["id"]

    async def get_backup_by_id(self, backup_id: int) -> BackupRecord | None:
        cursor = await self._db.execute("SELECT * FROM backups WHERE id = ?", (backup_id,))
        row = await cursor.fetchone()
        return _row_to_backup(row) if row else None

    async def get_all_backups(self) -> list[BackupRecord]:
        cursor = await self._db.execute(
            "SELECT * FROM backups ORDER BY container_id, created_at DESC"
        )
        return [_row_to_backup(row) for row in await cursor.fetchall()]

    async def delete_backups_for_container(self, container_id: str, server_id: int) -> None:
        async with self.atomic_write() as db:
            await db.execute(
                "DELETE FROM backups WHERE container_id = ? AND server_id = ?",
                (container_id, server_id),
            )

    async def get_backups_grouped(self) -> list[dict[str, Any]]:
        """Backups grouped by container, newest first, with server names."""
        cursor = await self._db.execute(
            "SELECT b.*, v.name AS server_name FROM backups b "
            "LEFT JOIN servers v ON v.id = b.server_id "
            "ORDER BY b.container_id, b.created_at DESC"
        )
        groups: dict[str, dict[str, Any]] = {}
        for row in await cursor.fetchall():
            group = groups.setdefault(
                row["container_id"],
                {"container_id": row["container_id"], "hostname": row["hostname"], "backups": []},
            )
            group["backups"].append(
                {
                    "id": row["id"],
                    "backup_name": row["backup_name"],
                    "backup_path": row["backup_path"],
                    "size": row["size"],
                    "created_at": row["created_at"],
                    "storage_name": row["storage_name"],
                    "storage_type": row["storage_type"],
                    "discovered_at": row["discovered_at"],
                    "server_id": row["server_id"],
                    "server_name": row["server_name"],
                }
            )
        return list(groups.values())
