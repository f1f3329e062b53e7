"""Catalog contract — the persistence the engine reads and writes.

Discovery and restore only depend on this protocol. ``SqliteCatalog`` is
the bundled implementation.
"""

from __future__ import annotations

from typing import Protocol

from pvescripts.types import (
    BackupRecord,
    InstalledScript,
    LXCConfig,
    PBSCredential,
    Server,
)


class Catalog(Protocol):
    async def get_installed_scripts(self) -> list[InstalledScript]: ...

    async def get_lxc_config_by_script_id(self, script_id: int) -> LXCConfig | None: ...

    async def get_pbs_credential(
        self, server_id: int, storage_name: str
    ) -> PBSCredential | None: ...

    async def get_server_by_id(self, server_id: int) -> Server | None: ...

    async def get_backup_by_id(self, backup_id: int) -> BackupRecord | None: ...

    async def get_all_backups(self) -> list[BackupRecord]: ...

    async def create_or_update_backup(self, backup: BackupRecord) -> int: ...

    async def delete_backups_for_container(self, container_id: str, server_id: int) -> None: ...


from pvescripts.catalog.sqlite import SqliteCatalog  # noqa: E402

__all__ = ["Catalog", "SqliteCatalog"]
