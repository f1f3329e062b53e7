"""Execution session registry — live interactive processes keyed by execution id.

The registry is the single owner of the id → session map. Each session
belongs to one channel (a WebSocket connection, or anything implementing
:class:`SessionChannel`); every event for the session goes to that channel.

Lifecycle of one session::

    start ──▶ starting ──(sync, spawn)──▶ running ──(exit)──▶ ended
                 │                            │
                 └────────(stop)──────────────┴──▶ ended (removed at once)

A session leaves the map on stop, process exit, start failure, or channel
disconnect, whichever comes first. Whoever removes it owns the final
``end`` event; a process that exits after its session was removed is
ignored.
"""

from __future__ import annotations

import asyncio
import contextlib
import re
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal, Protocol

from pvescripts.config import Settings
from pvescripts.errors import TransportError
from pvescripts.logger import logger
from pvescripts.sync import FileSynchronizer
from pvescripts.transport import (
    PtyProcess,
    ShellTransport,
    local_script_command,
    remote_script_command,
)
from pvescripts.types import LOCAL, ConnectionTarget, RemoteTarget, Server
from pvescripts.utils import create_background_task, now_ms

EventType = Literal["start", "output", "error", "end"]

_CONTAINER_ID_RE = re.compile(r"^\d+$")
_STORAGE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# How long shutdown() waits for SIGTERM'd children before SIGKILL
_SHUTDOWN_GRACE = 5.0


@dataclass
class SessionEvent:
    type: EventType
    data: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data, "timestamp": self.timestamp}


class SessionChannel(Protocol):
    """Where a session's events are delivered."""

    async def send_event(self, event: SessionEvent) -> None: ...


class SessionKind(StrEnum):
    SCRIPT = "script"
    SHELL = "shell"  # pct enter <ct>
    UPDATE = "update"  # optional backup, then pct enter <ct> and type "update"
    BACKUP = "backup"  # vzdump <ct>


class SessionState(StrEnum):
    STARTING = "starting"
    RUNNING = "running"
    ENDED = "ended"


@dataclass
class SessionRequest:
    """What to run. Built from a ``start`` message by :meth:`from_message`."""

    script_path: str
    kind: SessionKind = SessionKind.SCRIPT
    server: Server | None = None
    container_id: str | None = None
    storage: str | None = None
    backup_storage: str | None = None

    @property
    def target(self) -> ConnectionTarget:
        return self.server.target if self.server is not None else LOCAL

    @property
    def is_remote(self) -> bool:
        return self.server is not None

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> SessionRequest:
        """Parse a ``start`` message. Raises ValueError on unusable input."""
        server: Server | None = None
        if message.get("mode") == "ssh":
            raw_server = message.get("server")
            if not isinstance(raw_server, dict):
                raise ValueError("SSH mode requires server details")
            server = Server.from_dict(raw_server)

        container_id = message.get("containerId")
        container_id = str(container_id) if container_id not in (None, "") else None
        if container_id is not None and not _CONTAINER_ID_RE.match(container_id):
            raise ValueError(f"Invalid container id: {container_id}")

        storage = message.get("storage") or None
        backup_storage = message.get("backupStorage") or None
        for name in (storage, backup_storage):
            if name is not None and not _STORAGE_NAME_RE.match(name):
                raise ValueError(f"Invalid storage name: {name}")

        if message.get("isBackup") and container_id and storage:
            kind = SessionKind.BACKUP
        elif message.get("isUpdate") and container_id:
            kind = SessionKind.UPDATE
        elif message.get("isShell") and container_id:
            kind = SessionKind.SHELL
        else:
            kind = SessionKind.SCRIPT

        return cls(
            script_path=message["scriptPath"],
            kind=kind,
            server=server,
            container_id=container_id,
            storage=storage,
            backup_storage=backup_storage,
        )

    def start_message(self) -> str:
        match self.kind:
            case SessionKind.BACKUP:
                return (
                    f"Starting backup for container {self.container_id} "
                    f"to storage {self.storage}..."
                )
            case SessionKind.UPDATE:
                return f"Starting update for container {self.container_id}..."
            case SessionKind.SHELL:
                return f"Starting shell session for container {self.container_id}..."
            case _:
                if self.server is not None:
                    return (
                        f"Starting SSH execution of {self.script_path} "
                        f"on {self.server.name} ({self.server.ip})"
                    )
                return f"Starting execution of {self.script_path}"


@dataclass
class ExecutionSession:
    id: str
    channel: SessionChannel
    request: SessionRequest
    state: SessionState = SessionState.STARTING
    process: PtyProcess | None = None
    pump_task: asyncio.Task[None] | None = None
    start_task: asyncio.Task[None] | None = None


def backup_command(container_id: str, storage: str) -> str:
    return f"vzdump {container_id} --storage {storage} --mode snapshot"


class ExecutionSessionRegistry:
    """Routes start/stop/input for every live session."""

    def __init__(
        self,
        transport: ShellTransport,
        synchronizer: FileSynchronizer,
        settings: Settings | None = None,
    ) -> None:
        self._transport = transport
        self._synchronizer = synchronizer
        self._settings = settings or transport.settings
        self._sessions: dict[str, ExecutionSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, execution_id: str) -> ExecutionSession | None:
        return self._sessions.get(execution_id)

    @property
    def active_ids(self) -> list[str]:
        return list(self._sessions)

    def _is_current(self, session: ExecutionSession) -> bool:
        return self._sessions.get(session.id) is session

    def _remove(self, session: ExecutionSession) -> bool:
        """Remove *session* if it is still the registered one for its id."""
        if not self._is_current(session):
            return False
        del self._sessions[session.id]
        session.state = SessionState.ENDED
        return True

    async def _emit(self, channel: SessionChannel, type_: EventType, data: str) -> None:
        try:
            await channel.send_event(SessionEvent(type=type_, data=data))
        except Exception as exc:
            # A closed channel must not take the output pump down with it
            logger.warning("Failed to deliver session event", event_type=type_, err=str(exc))

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _register(
        self, channel: SessionChannel, execution_id: str, request: SessionRequest
    ) -> ExecutionSession | None:
        existing = self._sessions.get(execution_id)
        if existing is not None and existing.state != SessionState.ENDED:
            return None
        session = ExecutionSession(id=execution_id, channel=channel, request=request)
        self._sessions[execution_id] = session
        return session

    def _abort(self, session: ExecutionSession) -> None:
        """Terminate the session's process and cancel an unfinished launch."""
        if session.process is not None:
            session.process.terminate()
        task = session.start_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def start(
        self,
        channel: SessionChannel,
        execution_id: str,
        request: SessionRequest,
    ) -> None:
        """Register and launch; returns once the process runs or has failed."""
        session = self._register(channel, execution_id, request)
        if session is None:
            await self._emit(channel, "error", "Script execution already running")
            return
        await self._run(session)

    async def submit(
        self,
        channel: SessionChannel,
        execution_id: str,
        request: SessionRequest,
    ) -> asyncio.Task[None] | None:
        """Register now and launch in the background.

        The session is in the map before this returns, so a stop or a
        disconnect that arrives during rsync or spawn finds it and cancels
        the launch.
        """
        session = self._register(channel, execution_id, request)
        if session is None:
            await self._emit(channel, "error", "Script execution already running")
            return None
        session.start_task = create_background_task(
            self._run(session), name=f"start-{execution_id}"
        )
        return session.start_task

    async def _run(self, session: ExecutionSession) -> None:
        channel, execution_id, request = session.channel, session.id, session.request
        logger.info(
            "Starting execution",
            execution_id=execution_id,
            kind=request.kind.value,
            remote=request.is_remote,
        )
        await self._emit(channel, "start", request.start_message())

        try:
            proc = await self._launch(session)
        except Exception as exc:
            logger.warning(
                "Execution failed to start",
                execution_id=execution_id,
                err=str(exc),
            )
            if self._remove(session):
                await self._emit(channel, "error", f"Failed to start: {exc}")
                await self._emit(channel, "end", "Script execution failed to start")
            return

        if not self._is_current(session):
            # Stopped or disconnected while starting
            proc.terminate()
            return

        session.process = proc
        session.state = SessionState.RUNNING
        session.pump_task = create_background_task(
            self._pump(session, proc), name=f"session-{execution_id}"
        )
        if request.kind == SessionKind.UPDATE:
            create_background_task(
                self._type_after_delay(session, proc, "update\n"),
                name=f"session-update-{execution_id}",
            )

    async def input(self, channel: SessionChannel, execution_id: str, data: str) -> None:
        session = self._sessions.get(execution_id)
        if session is None or session.state != SessionState.RUNNING or session.process is None:
            await self._emit(channel, "error", f"No running execution for id {execution_id}")
            return
        try:
            session.process.write(data)
        except TransportError as exc:
            await self._emit(channel, "error", str(exc))

    async def stop(self, execution_id: str) -> bool:
        session = self._sessions.get(execution_id)
        if session is None or not self._remove(session):
            return False
        self._abort(session)
        logger.info("Execution stopped by user", execution_id=execution_id)
        await self._emit(session.channel, "end", "Script execution stopped by user")
        return True

    async def disconnect(self, channel: SessionChannel) -> None:
        owned = [s for s in self._sessions.values() if s.channel is channel]
        for session in owned:
            self._remove(session)
            self._abort(session)
        if owned:
            logger.info("Channel disconnected, sessions terminated", count=len(owned))

    async def shutdown(self) -> None:
        sessions = list(self._sessions.values())
        procs = [s.process for s in sessions if s.process is not None]
        for session in sessions:
            self._remove(session)
            self._abort(session)
        for proc in procs:
            try:
                await asyncio.wait_for(proc.wait(), timeout=_SHUTDOWN_GRACE)
            except TimeoutError:
                logger.warning("Session did not exit, force killing", pid=proc.pid)
                with contextlib.suppress(ProcessLookupError):
                    proc.proc.kill()
        logger.info("Session registry shut down", terminated=len(procs))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _launch(self, session: ExecutionSession) -> PtyProcess:
        request = session.request
        target = request.target
        label = session.id

        match request.kind:
            case SessionKind.SCRIPT:
                if isinstance(target, RemoteTarget):
                    await self._synchronizer.sync(
                        target,
                        on_output=lambda text: self._emit(session.channel, "output", text),
                    )
                    command = remote_script_command(
                        request.script_path,
                        remote_dir=self._settings.scripts.remote_dir,
                        term=self._settings.terminal.term,
                        columns=self._settings.terminal.remote_columns,
                        rows=self._settings.terminal.remote_rows,
                    )
                    return await self._transport.run_interactive(target, command, label=label)
                script = self._confine(request.script_path)
                return await self._transport.run_interactive(
                    LOCAL,
                    local_script_command(str(script)),
                    cwd=str(self._settings.scripts_dir),
                    label=label,
                )
            case SessionKind.SHELL:
                return await self._transport.run_interactive(
                    target, f"pct enter {request.container_id}", label=label
                )
            case SessionKind.UPDATE:
                if request.backup_storage and isinstance(target, RemoteTarget):
                    await self._pre_update_backup(
                        session, target, str(request.container_id), request.backup_storage
                    )
                    if not self._is_current(session):
                        raise TransportError("Execution stopped during backup")
                    await self._emit(
                        session.channel,
                        "start",
                        f"Starting update for container {request.container_id}...",
                    )
                return await self._transport.run_interactive(
                    target, f"pct enter {request.container_id}", label=label
                )
            case SessionKind.BACKUP:
                if not isinstance(target, RemoteTarget):
                    raise ValueError("Backup is only supported via SSH")
                if request.container_id is None or request.storage is None:
                    raise ValueError("Backup requires containerId and storage")
                return await self._transport.run_interactive(
                    target, backup_command(request.container_id, request.storage), label=label
                )
            case _:
                raise ValueError(f"Unsupported session kind: {request.kind}")

    def _confine(self, script_path: str) -> Path:
        """Resolve a local script path, refusing anything outside scripts_dir."""
        p = Path(script_path)
        if not p.is_absolute():
            p = self._settings.project_root / p
        resolved = p.resolve()
        if not resolved.is_relative_to(self._settings.scripts_dir):
            raise ValueError("Script path is not within the allowed scripts directory")
        return resolved

    async def _pre_update_backup(
        self, session: ExecutionSession, target: RemoteTarget, container_id: str, storage: str
    ) -> None:
        await self._emit(
            session.channel,
            "start",
            f"Starting backup before update for container {container_id}...",
        )
        try:
            proc = await self._transport.run_interactive(
                target,
                backup_command(container_id, storage),
                label=f"backup_{session.id}",
            )
        except TransportError as exc:
            await self._emit(
                session.channel,
                "output",
                f"\n⚠️ Backup error: {exc}. Proceeding with update...\n",
            )
            return

        session.process = proc
        async for chunk in proc.output:
            if self._is_current(session):
                await self._emit(session.channel, "output", chunk)
        code = await proc.wait()
        session.process = None

        if code == 0:
            message = "\n✅ Backup completed successfully. Starting update...\n"
        else:
            message = "\n⚠️ Backup failed, but proceeding with update as requested...\n"
        if self._is_current(session):
            await self._emit(session.channel, "output", message)

    async def _pump(self, session: ExecutionSession, proc: PtyProcess) -> None:
        """Forward output in production order, then report the exit."""
        async for chunk in proc.output:
            if self._is_current(session):
                await self._emit(session.channel, "output", chunk)
        code = await proc.wait()

        if not self._remove(session):
            logger.debug("Discarding exit of removed session", execution_id=session.id, code=code)
            return

        if session.request.kind == SessionKind.BACKUP:
            if code != 0:
                await self._emit(session.channel, "error", f"Backup failed with exit code: {code}")
            status = "completed" if code == 0 else "failed"
            await self._emit(
                session.channel, "output", f"\n[Backup {status} with exit code: {code}]\n"
            )
        logger.info("Execution finished", execution_id=session.id, code=code)
        await self._emit(session.channel, "end", f"Script execution finished with code: {code}")

    async def _type_after_delay(
        self, session: ExecutionSession, proc: PtyProcess, text: str
    ) -> None:
        await asyncio.sleep(self._settings.sessions.update_input_delay)
        if not self._is_current(session) or proc.returncode is not None:
            return
        try:
            proc.write(text)
        except TransportError as exc:
            logger.warning("Failed to send update command", execution_id=session.id, err=str(exc))
