"""Restore orchestration — stop, destroy, restore, clean up.

One run restores one container from one backup record::

    reading_config → stopping → destroying [→ skipping] → restoring → complete
                                                  │
                     pbs: pbs_login → pbs_download → pbs_pack → restoring → cleanup

Any failure appends a single ``error`` step and ends the run. Missing
containers are expected (a restore often targets a container that was
already removed), so stop and destroy failures never end the run.

Progress is kept in memory for the returned :class:`RestoreResult` and
appended to a log file that pollers read with :func:`read_restore_log`.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pvescripts import pbs
from pvescripts.catalog import Catalog
from pvescripts.config import Settings
from pvescripts.errors import CommandTimeoutError, PveScriptsError, RestoreError
from pvescripts.logger import logger
from pvescripts.outcomes import Outcome, classify
from pvescripts.storage import StorageService
from pvescripts.transport import ShellTransport
from pvescripts.types import BackupRecord, RestoreProgress, RestoreResult, Server
from pvescripts.utils import now_iso, strip_ansi

_ROOTFS_RE = re.compile(r"^rootfs:\s*([^:]+):")
_STORAGE_PREFIX_RE = re.compile(r"^([^:]+)")
_PBS_PATH_RE = re.compile(r"pbs://[^/]+/(.+)$")
_CONTAINER_ID_RE = re.compile(r"^\d+$")

PBS_DUMP_DIR = "/var/lib/vz/dump"

AddProgress = Callable[[str, str], None]


def _human_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    return f"{seconds:g} seconds"


# ---------------------------------------------------------------------------
# Progress log
# ---------------------------------------------------------------------------


class RestoreLog:
    """Line-oriented progress file: ``[<iso time>] [<step>] <message>``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def reset(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")

    def append(self, step: str, message: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as f:
            f.write(f"[{now_iso()}] [{step}] {message}\n")


@dataclass
class RestoreLogStatus:
    lines: list[str]
    is_complete: bool
    success: bool

    def to_dict(self) -> dict[str, Any]:
        return {"lines": self.lines, "isComplete": self.is_complete, "success": self.success}


def read_restore_log(path: Path) -> RestoreLogStatus:
    """Read the progress log. A missing file reads as an empty, running log."""
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return RestoreLogStatus(lines=[], is_complete=False, success=False)

    lines = [line for line in strip_ansi(text).splitlines() if line.strip()]
    completed = any("[complete]" in line for line in lines)
    failed = any("[error]" in line for line in lines)
    return RestoreLogStatus(lines=lines, is_complete=completed or failed, success=completed and not failed)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class RestoreOrchestrator:
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
        self.log = RestoreLog(self._settings.restore_log_path)

    # --- container steps ---

    async def get_rootfs_storage(self, server: Server, container_id: str) -> str | None:
        """Storage backing the container's rootfs, from its config or the catalog."""
        try:
            result = await self._transport.run_once(
                server.target, f'cat "/etc/pve/lxc/{container_id}.conf" 2>/dev/null || echo ""'
            )
            for line in result.output.splitlines():
                m = _ROOTFS_RE.match(line.strip())
                if m:
                    return m.group(1).strip()
        except PveScriptsError as exc:
            logger.warning("Could not read container config", ct=container_id, err=str(exc))

        for script in await self._catalog.get_installed_scripts():
            if script.container_id != container_id or script.server_id != server.id:
                continue
            lxc = await self._catalog.get_lxc_config_by_script_id(script.id)
            if lxc is not None and lxc.rootfs_storage:
                m = _STORAGE_PREFIX_RE.match(lxc.rootfs_storage.strip())
                if m and m.group(1).strip():
                    return m.group(1).strip()
        return None

    async def container_exists(self, server: Server, container_id: str) -> bool:
        result = await self._transport.run_once(
            server.target,
            f'pct list {container_id} 2>&1 | grep -q "^{container_id}" '
            f'&& echo "exists" || echo "notfound"',
        )
        return "notfound" not in result.output

    async def stop_container(self, server: Server, container_id: str) -> None:
        """Stop the container. Already stopped or missing is fine."""
        try:
            result = await self._transport.run_once(
                server.target, f"pct stop {container_id} 2>&1 || true"
            )
        except PveScriptsError as exc:
            logger.warning("Stop failed, continuing", ct=container_id, err=str(exc))
            return
        logger.debug("Stopped container", ct=container_id, outcome=classify(result).value)

    async def destroy_container(self, server: Server, container_id: str) -> str | None:
        """Destroy the container. Returns a skip message if it could not be destroyed."""
        try:
            result = await self._transport.run_once(
                server.target, f"pct destroy {container_id} 2>&1"
            )
        except PveScriptsError as exc:
            return f"Destroy failed ({exc}), continuing..."

        outcome = classify(result)
        if outcome == Outcome.OK:
            logger.info("Destroyed container", ct=container_id)
            return None
        if outcome == Outcome.ABSENT:
            logger.info("Container does not exist", ct=container_id)
            return "Container does not exist or already destroyed, continuing..."
        logger.warning(
            "Destroy failed, continuing",
            ct=container_id,
            exit_code=result.exit_code,
            output_tail=result.output[-300:],
        )
        detail = result.output.strip() or f"exit code {result.exit_code}"
        return f"Destroy failed ({detail}), continuing..."

    async def restore_local_backup(
        self, server: Server, container_id: str, backup_path: str, storage: str
    ) -> None:
        result = await self._transport.run_once(
            server.target, f'pct restore {container_id} "{backup_path}" --storage={storage}'
        )
        if not result.ok:
            raise RestoreError(
                f"Restore failed with exit code {result.exit_code}: {result.output.strip()}"
            )

    # --- PBS ---

    async def _remove_artifacts(self, server: Server, folder: str, tar: str) -> None:
        try:
            await self._transport.run_once(
                server.target, f'rm -rf "{folder}" "{tar}" 2>&1 || true'
            )
        except PveScriptsError as exc:
            logger.warning("Cleanup of PBS artifacts failed", folder=folder, err=str(exc))

    async def _run_fatal(
        self, server: Server, command: str, *, timeout: float, label: str, what: str
    ) -> None:
        try:
            result = await self._transport.run_once(
                server.target, command, timeout=timeout, label=label
            )
        except CommandTimeoutError:
            raise RestoreError(f"{what} timeout after {_human_duration(timeout)}") from None
        if not result.ok:
            raise RestoreError(
                f"{what} failed with exit code {result.exit_code}: {result.output.strip()}"
            )

    async def _check_exists(self, server: Server, test_flag: str, path: str) -> bool:
        result = await self._transport.run_once(
            server.target, f'test {test_flag} "{path}" && echo "exists" || echo "notfound"'
        )
        return "exists" in result.output

    async def restore_pbs_backup(
        self,
        server: Server,
        backup: BackupRecord,
        container_id: str,
        rootfs_storage: str,
        add: AddProgress,
    ) -> None:
        storages = await self._storages.get_storages(server, False)
        storage = next((s for s in storages if s.name == backup.storage_name), None)
        if storage is None:
            raise RestoreError(f"Storage {backup.storage_name} not found")

        m = _PBS_PATH_RE.search(backup.backup_path)
        if not m:
            raise RestoreError(f"Invalid PBS backup path format: {backup.backup_path}")
        snapshot_path = m.group(1)

        access = await pbs.resolve_access(self._catalog, server, storage)
        if access is None:
            raise RestoreError(f"No usable PBS credentials for storage {storage.name}")

        # tar does not like colons in file names
        snapshot_name = snapshot_path.rsplit("/", 1)[-1].replace(":", "_")
        folder = f"{PBS_DUMP_DIR}/vzdump-lxc-{container_id}-{snapshot_name}"
        tar = f"{folder}.tar"
        cfg = self._settings

        add("pbs_login", "Logging into PBS...")
        if not await pbs.login(
            self._transport, server, access, timeout=cfg.discovery.pbs_login_timeout
        ):
            raise RestoreError(f"Failed to login to PBS for storage {storage.name}")

        add("pbs_download", "Downloading backup from PBS...")
        try:
            await self._run_fatal(
                server,
                pbs.restore_command(access, snapshot_path, folder),
                timeout=cfg.restore.download_timeout,
                label="proxmox-backup-client restore",
                what="Download",
            )
            if not await self._check_exists(server, "-d", folder):
                raise RestoreError(f"Downloaded folder {folder} does not exist")

            add("pbs_pack", "Packing backup folder...")
            await self._run_fatal(
                server,
                f'tar -cf "{tar}" -C "{folder}" . 2>&1',
                timeout=cfg.restore.pack_timeout,
                label="tar",
                what="Pack",
            )
            if not await self._check_exists(server, "-f", tar):
                raise RestoreError(f"Packed tar file {tar} does not exist")
        except Exception:
            await self._remove_artifacts(server, folder, tar)
            raise

        add("restoring", "Restoring container...")
        try:
            await self.restore_local_backup(server, container_id, tar, rootfs_storage)
        finally:
            add("cleanup", "Cleaning up temporary files...")
            await self._remove_artifacts(server, folder, tar)

    # --- entry point ---

    async def execute_restore(
        self, backup_id: int, container_id: str, server_id: int
    ) -> RestoreResult:
        """Run a full restore. Never raises; failures come back in the result."""
        progress: list[RestoreProgress] = []
        try:
            self.log.reset()
        except OSError as exc:
            logger.warning("Failed to reset restore log", path=str(self.log.path), err=str(exc))

        def add(step: str, message: str) -> None:
            progress.append(RestoreProgress(step=step, message=message))
            try:
                self.log.append(step, message)
            except OSError as exc:
                logger.warning("Failed to write restore log", err=str(exc))
            logger.info("Restore progress", ct=container_id, step=step, message=message)

        try:
            if not _CONTAINER_ID_RE.match(container_id):
                raise RestoreError(f"Invalid container id: {container_id}")
            backup = await self._catalog.get_backup_by_id(backup_id)
            if backup is None:
                raise RestoreError(f"Backup with ID {backup_id} not found")
            server = await self._catalog.get_server_by_id(server_id)
            if server is None:
                raise RestoreError(f"Server with ID {server_id} not found")
            logger.info(
                "Starting restore",
                backup=backup.backup_name,
                kind=backup.storage_kind,
                ct=container_id,
                server=server.name,
            )

            add("reading_config", "Reading container configuration...")
            rootfs_storage = await self.get_rootfs_storage(server, container_id)
            if not rootfs_storage:
                if not await self.container_exists(server, container_id):
                    raise RestoreError(
                        f"Container {container_id} does not exist and storage could not be "
                        "determined. Please ensure the container exists or specify the "
                        "storage manually."
                    )
                raise RestoreError(
                    f"Could not determine rootfs storage for container {container_id}. "
                    "Please ensure the container exists and has a valid configuration."
                )

            add("stopping", "Stopping container...")
            await self.stop_container(server, container_id)

            add("destroying", "Destroying container...")
            skip_message = await self.destroy_container(server, container_id)
            if skip_message is not None:
                add("skipping", skip_message)

            if backup.storage_kind == "pbs":
                await self.restore_pbs_backup(server, backup, container_id, rootfs_storage, add)
            else:
                add("restoring", "Restoring container...")
                await self.restore_local_backup(
                    server, container_id, backup.backup_path, rootfs_storage
                )

            add("complete", "Restore completed successfully")
            return RestoreResult(success=True, progress=progress)
        except PveScriptsError as exc:
            logger.warning("Restore failed", ct=container_id, err=str(exc))
            message = str(exc)
        except Exception as exc:
            logger.exception("Restore failed unexpectedly", ct=container_id)
            message = str(exc) or "Unknown error occurred"

        add("error", f"Error: {message}")
        return RestoreResult(success=False, progress=progress, error=message)
