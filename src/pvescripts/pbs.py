"""Proxmox Backup Server helpers shared by discovery and restore.

All PBS access happens by running ``proxmox-backup-client`` on the Proxmox
host itself, so credentials travel inside the remote command line. Those
commands are always run with an explicit log label.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pvescripts.catalog import Catalog
from pvescripts.errors import CommandTimeoutError
from pvescripts.logger import logger
from pvescripts.transport import ShellTransport
from pvescripts.types import Server, Storage
from pvescripts.utils import single_quote_escape

LOGIN_SUCCESS_PHRASES = ("successfully", "logged in")


@dataclass
class PbsAccess:
    """Resolved PBS coordinates for one storage on one server."""

    storage_name: str
    ip: str
    datastore: str
    password: str = field(repr=False)

    @property
    def repository(self) -> str:
        return f"root@pam@{self.ip}:{self.datastore}"


async def resolve_access(catalog: Catalog, server: Server, storage: Storage) -> PbsAccess | None:
    """Credential + coordinates for *storage*, or None if anything is missing.

    IP and datastore from the stored credential win over the storage config.
    """
    if server.id is None:
        return None
    credential = await catalog.get_pbs_credential(server.id, storage.name)
    if credential is None:
        logger.info("No PBS credentials for storage", storage=storage.name)
        return None
    ip = credential.pbs_ip or storage.server
    datastore = credential.pbs_datastore or storage.datastore
    if not ip or not datastore:
        logger.info("Missing PBS IP or datastore", storage=storage.name)
        return None
    return PbsAccess(
        storage_name=storage.name, ip=ip, datastore=datastore, password=credential.password
    )


def _double_quote_for_echo_e(value: str) -> str:
    """Escape *value* for ``echo -e "..."`` so it arrives byte-for-byte."""
    return (
        value.replace("\\", "\\\\\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )


def login_command(access: PbsAccess) -> str:
    # "y" accepts the server fingerprint, then the password is read from stdin
    password = _double_quote_for_echo_e(access.password)
    return (
        f'echo -e "y\\n{password}" | timeout 10 proxmox-backup-client login '
        f"--repository {access.repository} 2>&1"
    )


def restore_command(access: PbsAccess, snapshot_path: str, target_folder: str) -> str:
    password = single_quote_escape(access.password)
    return (
        f"PBS_PASSWORD='{password}' PBS_REPOSITORY='{access.repository}' "
        f'timeout 300 proxmox-backup-client restore "{snapshot_path}" root.pxar '
        f"\"{target_folder}\" --repository '{access.repository}' 2>&1"
    )


def snapshots_command(storage_name: str, container_id: str) -> str:
    return (
        f"timeout 30 proxmox-backup-client snapshots host/{container_id} "
        f'--repository {storage_name} 2>&1 || echo "PBS_ERROR"'
    )


async def login(
    transport: ShellTransport, server: Server, access: PbsAccess, *, timeout: float
) -> bool:
    """Log into PBS on *server*. A timeout counts as failure."""
    try:
        result = await transport.run_once(
            server.target,
            login_command(access),
            timeout=timeout,
            label="proxmox-backup-client login",
        )
    except CommandTimeoutError:
        logger.warning("PBS login timed out", repository=access.repository)
        return False
    if result.ok or any(p in result.output for p in LOGIN_SUCCESS_PHRASES):
        logger.info("Logged into PBS", repository=access.repository)
        return True
    logger.warning(
        "PBS login failed",
        repository=access.repository,
        exit_code=result.exit_code,
        output_tail=result.output[-300:],
    )
    return False
