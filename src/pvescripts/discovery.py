"""Backup discovery across local dumps, mounted storages and PBS.

Discovery is read-only on the host and best-effort: a sub-scan that fails
or hits its deadline contributes no records, it never fails the whole run.
The catalog is only touched by ``refresh_container`` and ``discover_all``,
which replace a container's records wholesale.
"""

from __future__ import annotations

import asyncio
import re
from datetime import UTC, datetime
from pathlib import PurePosixPath

from pvescripts import pbs
from pvescripts.catalog import Catalog
from pvescripts.config import Settings
from pvescripts.errors import CommandTimeoutError, PveScriptsError
from pvescripts.logger import logger
from pvescripts.storage import StorageService, canonical_hostname, filter_storages_for_host
from pvescripts.transport import ShellTransport
from pvescripts.types import BackupRecord, Server, Storage, StorageKind

LOCAL_DUMP_DIR = "/var/lib/vz/dump/"

_TABLE_CHARS = "┌├╞└╘─═"
_ERROR_MARKERS = ("error", "Error", "repository", "PBS_ERROR")
_DIGITS_RE = re.compile(r"\d+")

# ssh reserves 255 for its own failures (unreachable host, auth refused)
_SSH_FAILURE = 255


def _catalog_id(server: Server) -> int:
    if server.id is None:
        raise PveScriptsError(f"Server {server.name} has no catalog id")
    return server.id


def find_command(dump_dir: str, container_id: str) -> str:
    return (
        f'timeout 10 find "{dump_dir}" -type f '
        f'-name "vzdump-lxc-{container_id}-*.tar*" 2>/dev/null'
    )


def stat_command(path: str) -> str:
    return (
        f'stat -c "%s|%Y|%n" "{path}" 2>/dev/null || '
        f'stat -f "%z|%m|%N" "{path}" 2>/dev/null || echo ""'
    )


def parse_stat(output: str) -> tuple[int | None, datetime | None]:
    """``size|mtime|name`` → (size, created_at). Unparsable → (None, None)."""
    parts = output.strip().split("|")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None, None
    try:
        size = int(parts[0])
        mtime = int(parts[1])
    except ValueError:
        return None, None
    created_at = datetime.fromtimestamp(mtime, tz=UTC) if mtime > 0 else None
    return size, created_at


def _parse_snapshot_time(snapshot: str, second_column: str | None) -> datetime | None:
    last = snapshot.rsplit("/", 1)[-1]
    try:
        return datetime.fromisoformat(last.replace("Z", "+00:00"))
    except ValueError:
        pass
    if second_column:
        m = _DIGITS_RE.search(second_column)
        if m:
            stamp = int(m.group(0))
            # seconds or milliseconds
            seconds = stamp / 1000 if stamp > 1_000_000_000_000 else stamp
            try:
                return datetime.fromtimestamp(seconds, tz=UTC)
            except (OverflowError, OSError, ValueError):
                return None
    return None


def parse_pbs_snapshots(
    output: str,
    *,
    storage_name: str,
    container_id: str,
    server_id: int,
    hostname: str,
) -> list[BackupRecord]:
    """Turn ``proxmox-backup-client snapshots`` output into backup records.

    Handles both the boxed table layout and plain whitespace columns.
    """
    if "PBS_ERROR" in output:
        return []

    records: list[BackupRecord] = []
    for line in output.splitlines():
        stripped = line.strip()
        if not stripped or any(c in stripped for c in _TABLE_CHARS):
            continue
        if any(marker in stripped for marker in _ERROR_MARKERS):
            continue

        if "│" in stripped:
            columns = [c.strip() for c in stripped.strip("│").split("│")]
        else:
            columns = stripped.split()
        if not columns or not columns[0] or columns[0].lower() == "snapshot":
            continue

        snapshot = columns[0]
        snapshot_path = snapshot if "/" in snapshot else f"host/{container_id}/{snapshot}"
        second = columns[1] if len(columns) > 1 else None
        records.append(
            BackupRecord(
                container_id=container_id,
                server_id=server_id,
                hostname=hostname,
                backup_name=snapshot,
                backup_path=f"pbs://{storage_name}/{snapshot_path}",
                storage_name=storage_name,
                storage_kind="pbs",
                size=None,
                created_at=_parse_snapshot_time(snapshot, second),
            )
        )
    return records


class BackupDiscovery:
    def __init__(
        self,
        transport: ShellTransport,
        storage_service: StorageService,
        catalog: Catalog,
        settings: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._storages = storage_service
        self._catalog = catalog
        self._settings = settings or transport.settings

    async def get_server_hostname(self, server: Server) -> str:
        result = await self._transport.run_once(
            server.target, "hostname", timeout=self._settings.discovery.find_timeout
        )
        if not result.ok:
            raise PveScriptsError(f"hostname command failed with exit code {result.exit_code}")
        return canonical_hostname(result.output)

    # ------------------------------------------------------------------
    # Sub-scans
    # ------------------------------------------------------------------

    async def _scan_dump_dir(
        self,
        server: Server,
        dump_dir: str,
        container_id: str,
        hostname: str,
        storage_name: str,
        kind: StorageKind,
    ) -> list[BackupRecord]:
        cfg = self._settings.discovery
        server_id = _catalog_id(server)
        try:
            result = await self._transport.run_once(
                server.target, find_command(dump_dir, container_id), timeout=cfg.find_timeout
            )
        except CommandTimeoutError:
            logger.info("Backup scan timed out", storage=storage_name, ct=container_id)
            return []

        if result.exit_code == _SSH_FAILURE:
            logger.warning(
                "Backup scan could not reach host",
                storage=storage_name,
                ct=container_id,
                output=result.output.strip(),
            )
            return []

        # stderr is merged into the output; only real paths under dump_dir count
        prefix = dump_dir.rstrip("/") + "/"
        paths = [
            line.strip() for line in result.output.splitlines() if line.strip().startswith(prefix)
        ]
        records: list[BackupRecord] = []
        for path in paths:
            size, created_at = None, None
            try:
                stat = await self._transport.run_once(
                    server.target, stat_command(path), timeout=cfg.stat_timeout
                )
                size, created_at = parse_stat(stat.output)
            except CommandTimeoutError:
                logger.debug("stat timed out", path=path)
            records.append(
                BackupRecord(
                    container_id=container_id,
                    server_id=server_id,
                    hostname=hostname,
                    backup_name=PurePosixPath(path).name,
                    backup_path=path,
                    storage_name=storage_name,
                    storage_kind=kind,
                    size=size,
                    created_at=created_at,
                )
            )
        logger.info(
            "Scanned dump directory",
            storage=storage_name,
            ct=container_id,
            found=len(records),
        )
        return records

    async def discover_local_backups(
        self, server: Server, container_id: str, hostname: str
    ) -> list[BackupRecord]:
        return await self._scan_dump_dir(
            server, LOCAL_DUMP_DIR, container_id, hostname, "local", "local"
        )

    async def discover_storage_backups(
        self, server: Server, storage: Storage, container_id: str, hostname: str
    ) -> list[BackupRecord]:
        return await self._scan_dump_dir(
            server,
            f"/mnt/pve/{storage.name}/dump/",
            container_id,
            hostname,
            storage.name,
            "storage",
        )

    async def discover_pbs_backups(
        self, server: Server, storage: Storage, container_id: str, hostname: str
    ) -> list[BackupRecord]:
        cfg = self._settings.discovery
        server_id = _catalog_id(server)
        access = await pbs.resolve_access(self._catalog, server, storage)
        if access is None:
            return []
        if not await pbs.login(self._transport, server, access, timeout=cfg.pbs_login_timeout):
            logger.info("Skipping PBS storage, login failed", storage=storage.name)
            return []
        try:
            result = await self._transport.run_once(
                server.target,
                pbs.snapshots_command(storage.name, container_id),
                timeout=cfg.pbs_list_timeout,
            )
        except CommandTimeoutError:
            logger.info("PBS snapshot listing timed out", storage=storage.name)
            return []
        records = parse_pbs_snapshots(
            result.output,
            storage_name=storage.name,
            container_id=container_id,
            server_id=server_id,
            hostname=hostname,
        )
        logger.info("Listed PBS snapshots", storage=storage.name, ct=container_id, found=len(records))
        return records

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def discover_container(
        self, server: Server, container_id: str, hostname: str
    ) -> list[BackupRecord]:
        """Every backup of *container_id* reachable from *server*."""
        try:
            host = await self.get_server_hostname(server)
        except PveScriptsError as exc:
            logger.warning("Could not determine server hostname", server=server.name, err=str(exc))
            host = ""

        try:
            storages = await self._storages.get_backup_storages(server, force_refresh=True)
        except PveScriptsError as exc:
            logger.warning("Could not list storages", server=server.name, err=str(exc))
            storages = []
        applicable = filter_storages_for_host(storages, host)
        logger.info(
            "Discovering backups",
            server=server.name,
            hostname=host,
            ct=container_id,
            storages=[s.name for s in applicable],
        )

        scans = [self.discover_local_backups(server, container_id, hostname)]
        for storage in applicable:
            if storage.type == "pbs":
                scans.append(self.discover_pbs_backups(server, storage, container_id, hostname))
            else:
                scans.append(
                    self.discover_storage_backups(server, storage, container_id, hostname)
                )

        results = await asyncio.gather(*scans, return_exceptions=True)
        backups: list[BackupRecord] = []
        for result in results:
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Backup scan failed", ct=container_id, err=str(result))
                continue
            backups.extend(result)
        return backups

    async def refresh_container(
        self, server: Server, container_id: str, hostname: str
    ) -> list[BackupRecord]:
        """Replace the catalog's records for one container with a fresh scan."""
        server_id = _catalog_id(server)
        backups = await self.discover_container(server, container_id, hostname)
        await self._catalog.delete_backups_for_container(container_id, server_id)
        for backup in backups:
            backup.id = await self._catalog.create_or_update_backup(backup)
        return backups

    async def discover_all(self) -> int:
        """Re-discover backups for every installed script with a container.

        Existing records are cleared first. Returns the number of records
        written.
        """
        for backup in await self._catalog.get_all_backups():
            await self._catalog.delete_backups_for_container(backup.container_id, backup.server_id)

        total = 0
        for script in await self._catalog.get_installed_scripts():
            if not script.container_id or script.server_id is None or script.server is None:
                continue
            hostname = script.script_name or f"CT-{script.container_id}"
            lxc = await self._catalog.get_lxc_config_by_script_id(script.id)
            if lxc is not None and lxc.hostname:
                hostname = lxc.hostname
            try:
                backups = await self.discover_container(
                    script.server, script.container_id, hostname
                )
                for backup in backups:
                    backup.id = await self._catalog.create_or_update_backup(backup)
            except Exception:
                logger.exception(
                    "Backup discovery failed for script",
                    script_id=script.id,
                    ct=script.container_id,
                )
                continue
            total += len(backups)
            logger.info(
                "Discovered backups for script",
                script_id=script.id,
                ct=script.container_id,
                found=len(backups),
            )
        return total
