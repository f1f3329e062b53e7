"""Storage enumeration from a host's ``/etc/pve/storage.cfg``.

The file is a sequence of sections::

    dir: local
            path /var/lib/vz
            content iso,vztmpl,backup

    pbs: pbs-main
            datastore store1
            server 10.0.0.5
            content backup
            nodes pve1,pve2

Results are cached per server; ``force_refresh`` bypasses the cache (node
assignments change, and discovery always wants the current view).
"""

from __future__ import annotations

import re

from pvescripts.config import Settings
from pvescripts.errors import TransportError
from pvescripts.logger import logger
from pvescripts.transport import ShellTransport
from pvescripts.types import Server, Storage

STORAGE_CFG = "/etc/pve/storage.cfg"

_SECTION_RE = re.compile(r"^([A-Za-z0-9_-]+):\s*(\S+)\s*$")


def _split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_storage_config(text: str) -> list[Storage]:
    """Parse storage.cfg content. Unknown properties are ignored."""
    storages: list[Storage] = []
    current: Storage | None = None
    for raw in text.splitlines():
        if not raw.strip() or raw.lstrip().startswith("#"):
            continue
        if not raw[0].isspace():
            m = _SECTION_RE.match(raw)
            current = Storage(name=m.group(2), type=m.group(1)) if m else None
            if current is not None:
                storages.append(current)
            continue
        if current is None:
            continue
        key, _, value = raw.strip().partition(" ")
        value = value.strip()
        match key:
            case "content":
                current.content = _split_list(value)
            case "nodes":
                current.nodes = _split_list(value)
            case "server":
                current.server = value or None
            case "datastore":
                current.datastore = value or None
    return storages


def canonical_hostname(name: str) -> str:
    return name.strip().lower()


def storage_applies_to_host(storage: Storage, hostname: str) -> bool:
    """A storage with no node restriction applies everywhere."""
    if not storage.nodes:
        return True
    return canonical_hostname(hostname) in {canonical_hostname(n) for n in storage.nodes}


def filter_storages_for_host(storages: list[Storage], hostname: str) -> list[Storage]:
    return [s for s in storages if storage_applies_to_host(s, hostname)]


class StorageService:
    def __init__(self, transport: ShellTransport, settings: Settings | None = None) -> None:
        self._transport = transport
        self._settings = settings or transport.settings
        self._cache: dict[str, list[Storage]] = {}

    @staticmethod
    def _cache_key(server: Server) -> str:
        return str(server.id) if server.id is not None else server.ip

    def invalidate(self, server: Server | None = None) -> None:
        if server is None:
            self._cache.clear()
        else:
            self._cache.pop(self._cache_key(server), None)

    async def get_storages(self, server: Server, force_refresh: bool = False) -> list[Storage]:
        """All storages declared on *server*.

        Raises TransportError if the configuration cannot be read.
        """
        key = self._cache_key(server)
        if not force_refresh and key in self._cache:
            return self._cache[key]

        result = await self._transport.run_once(
            server.target,
            f"cat {STORAGE_CFG}",
            timeout=self._settings.discovery.find_timeout,
        )
        if not result.ok:
            raise TransportError(
                f"Failed to read storage configuration on {server.name}: "
                f"{result.output.strip() or f'exit code {result.exit_code}'}"
            )
        storages = parse_storage_config(result.output)
        self._cache[key] = storages
        logger.debug("Loaded storages", server=server.name, count=len(storages))
        return storages

    async def get_backup_storages(
        self, server: Server, force_refresh: bool = False
    ) -> list[Storage]:
        """Storages that can hold backups (``content`` has backup, or PBS)."""
        storages = await self.get_storages(server, force_refresh)
        return [s for s in storages if s.supports_backup]
