"""Mirror the local scripts directory to a remote host with rsync.

One-way and delete-reconciling: files removed locally disappear remotely on
the next sync. Log and temp files are never transferred.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from pvescripts.errors import SyncError, TransportError
from pvescripts.logger import logger
from pvescripts.transport import ShellTransport
from pvescripts.types import RemoteTarget

OnOutput = Callable[[str], Awaitable[None]]


class FileSynchronizer:
    def __init__(self, transport: ShellTransport) -> None:
        self._transport = transport

    def build_command(self, target: RemoteTarget, local_dir: Path, rsh: str) -> list[str]:
        s = self._transport.settings
        excludes = [f"--exclude={pattern}" for pattern in s.scripts.sync_excludes]
        remote_dir = s.scripts.remote_dir.rstrip("/") + "/"
        return [
            "rsync",
            "-avz",
            "--delete",
            *excludes,
            f"--rsh={rsh}",
            f"{str(local_dir).rstrip('/')}/",
            f"{target.destination}:{remote_dir}",
        ]

    async def sync(
        self,
        target: RemoteTarget,
        local_dir: Path | None = None,
        *,
        on_output: OnOutput | None = None,
    ) -> None:
        """Run rsync to completion. Raises SyncError on a non-zero exit."""
        local_dir = local_dir or self._transport.settings.scripts_dir
        ssh = self._transport.ssh_command(target, interactive=False)
        try:
            argv = self.build_command(target, local_dir, ssh.as_rsh())
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env={**os.environ, **ssh.env},
                )
            except OSError as exc:
                raise TransportError(f"Failed to start rsync: {exc}") from exc

            assert proc.stdout is not None
            collected: list[str] = []
            try:
                while True:
                    chunk = await proc.stdout.read(8192)
                    if not chunk:
                        break
                    text = chunk.decode(errors="replace")
                    collected.append(text)
                    if on_output is not None:
                        await on_output(text)
                exit_code = await proc.wait()
            except asyncio.CancelledError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
                logger.info("rsync cancelled", host=target.host)
                raise
        finally:
            ssh.cleanup()

        if exit_code != 0:
            logger.error("rsync failed", host=target.host, exit_code=exit_code)
            raise SyncError(exit_code, "".join(collected))
        logger.info("Synced scripts", host=target.host, local_dir=str(local_dir))
