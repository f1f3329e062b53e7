"""Tests for the execution session registry and start-message parsing."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakePtyProcess, RecordingChannel, wait_for_event
from pvescripts.errors import SyncError
from pvescripts.sessions import (
    ExecutionSessionRegistry,
    SessionKind,
    SessionRequest,
    backup_command,
)
from pvescripts.transport import ShellTransport
from pvescripts.types import KeyAuth, PasswordAuth

SERVER = {"id": 1, "name": "pve1", "ip": "10.0.0.2", "user": "root", "password": "pw"}


def _ssh_message(**extra):
    return {"scriptPath": "scripts/ct/app.sh", "mode": "ssh", "server": dict(SERVER), **extra}


def _registry(settings, *, synchronizer=None):
    transport = ShellTransport(settings)
    sync = synchronizer or AsyncMock()
    return ExecutionSessionRegistry(transport, sync, settings), transport, sync


# ---------------------------------------------------------------------------
# Start-message parsing
# ---------------------------------------------------------------------------


class TestSessionRequest:
    def test_local_script(self):
        req = SessionRequest.from_message({"scriptPath": "scripts/a.sh", "mode": "local"})
        assert req.kind == SessionKind.SCRIPT
        assert req.server is None
        assert not req.is_remote
        assert req.start_message() == "Starting execution of scripts/a.sh"

    def test_ssh_script_builds_server(self):
        req = SessionRequest.from_message(_ssh_message())
        assert req.is_remote
        assert req.server.ip == "10.0.0.2"
        assert req.server.target.auth == PasswordAuth("pw")
        assert req.start_message() == "Starting SSH execution of scripts/ct/app.sh on pve1 (10.0.0.2)"

    def test_ssh_key_auth_method(self):
        server = {**SERVER, "auth_method": "ssh_key", "ssh_key": "KEY", "ssh_key_passphrase": ""}
        req = SessionRequest.from_message({**_ssh_message(), "server": server})
        assert req.server.target.auth == KeyAuth("KEY", None)

    def test_ssh_without_server_rejected(self):
        with pytest.raises(ValueError, match="requires server"):
            SessionRequest.from_message({"scriptPath": "a.sh", "mode": "ssh"})

    def test_kind_priority_backup_over_update_over_shell(self):
        msg = _ssh_message(
            containerId="100", isShell=True, isUpdate=True, isBackup=True, storage="local"
        )
        assert SessionRequest.from_message(msg).kind == SessionKind.BACKUP
        msg.pop("isBackup")
        assert SessionRequest.from_message(msg).kind == SessionKind.UPDATE
        msg.pop("isUpdate")
        assert SessionRequest.from_message(msg).kind == SessionKind.SHELL

    def test_flags_without_container_fall_back_to_script(self):
        req = SessionRequest.from_message(_ssh_message(isShell=True))
        assert req.kind == SessionKind.SCRIPT

    def test_backup_needs_storage(self):
        req = SessionRequest.from_message(_ssh_message(containerId="100", isBackup=True))
        assert req.kind == SessionKind.SCRIPT

    def test_numeric_container_id_accepted(self):
        req = SessionRequest.from_message(_ssh_message(containerId=105, isShell=True))
        assert req.container_id == "105"
        assert req.start_message() == "Starting shell session for container 105..."

    def test_invalid_container_id_rejected(self):
        with pytest.raises(ValueError, match="Invalid container id"):
            SessionRequest.from_message(_ssh_message(containerId="100; rm -rf /", isShell=True))

    def test_invalid_storage_rejected(self):
        with pytest.raises(ValueError, match="Invalid storage name"):
            SessionRequest.from_message(
                _ssh_message(containerId="100", isBackup=True, storage="local && reboot")
            )

    def test_backup_command(self):
        assert backup_command("100", "nas") == "vzdump 100 --storage nas --mode snapshot"


# ---------------------------------------------------------------------------
# Local scripts (real pty)
# ---------------------------------------------------------------------------


class TestLocalExecution:
    async def test_runs_script_and_reports_exit_code(self, settings):
        (settings.scripts_dir / "hello.sh").write_text("echo hello from script\nexit 2\n")
        registry, _, _ = _registry(settings)
        channel = RecordingChannel()
        request = SessionRequest.from_message({"scriptPath": "scripts/hello.sh", "mode": "local"})

        await registry.start(channel, "e1", request)
        await wait_for_event(channel, "end")

        assert channel.types[0] == "start"
        assert "hello from script" in "".join(channel.of_type("output"))
        assert channel.of_type("end") == ["Script execution finished with code: 2"]
        assert registry.get("e1") is None
        assert len(registry) == 0

    async def test_script_outside_scripts_dir_rejected(self, settings, tmp_path):
        (tmp_path / "evil.sh").write_text("echo nope\n")
        registry, _, _ = _registry(settings)
        channel = RecordingChannel()
        request = SessionRequest.from_message(
            {"scriptPath": "scripts/../evil.sh", "mode": "local"}
        )

        await registry.start(channel, "e1", request)

        assert channel.types == ["start", "error", "end"]
        assert "not within the allowed scripts directory" in channel.of_type("error")[0]
        assert channel.of_type("end") == ["Script execution failed to start"]
        assert registry.get("e1") is None

    async def test_stop_terminates_running_script(self, settings):
        (settings.scripts_dir / "slow.sh").write_text("sleep 30\n")
        registry, _, _ = _registry(settings)
        channel = RecordingChannel()
        request = SessionRequest.from_message({"scriptPath": "scripts/slow.sh", "mode": "local"})

        await registry.start(channel, "e1", request)
        session_proc = registry.get("e1").process
        assert await registry.stop("e1") is True
        await asyncio.wait_for(session_proc.wait(), timeout=5)
        await asyncio.sleep(0.05)

        assert channel.of_type("end") == ["Script execution stopped by user"]


# ---------------------------------------------------------------------------
# Remote sessions (transport mocked)
# ---------------------------------------------------------------------------


class TestRemoteExecution:
    async def test_script_syncs_then_runs_remote_command(self, settings):
        registry, transport, sync = _registry(settings)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)) as run:
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))

        sync.sync.assert_awaited_once()
        command = run.call_args.args[1]
        assert command.startswith("cd /tmp/scripts && chmod +x ct/app.sh")

        proc.emit("line 1\n")
        proc.emit("line 2\n")
        proc.exit(0)
        await wait_for_event(channel, "end")
        assert channel.of_type("output") == ["line 1\n", "line 2\n"]
        assert channel.of_type("end") == ["Script execution finished with code: 0"]

    async def test_sync_failure_fails_start(self, settings):
        sync = AsyncMock()
        sync.sync.side_effect = SyncError(23, "partial transfer")
        registry, transport, _ = _registry(settings, synchronizer=sync)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock()) as run:
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))

        run.assert_not_called()
        assert channel.of_type("error") == ["Failed to start: rsync failed with code 23"]
        assert channel.of_type("end") == ["Script execution failed to start"]

    async def test_duplicate_start_rejected_while_running(self, settings):
        registry, transport, _ = _registry(settings)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=FakePtyProcess())):
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))

        assert channel.of_type("error") == ["Script execution already running"]
        assert len(registry) == 1

    async def test_input_forwarded_to_process(self, settings):
        registry, transport, _ = _registry(settings)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)):
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))

        await registry.input(channel, "e1", "y\n")
        assert proc.written == ["y\n"]

    async def test_input_for_unknown_session_is_an_error(self, settings):
        registry, _, _ = _registry(settings)
        channel = RecordingChannel()
        await registry.input(channel, "missing", "y\n")
        assert channel.of_type("error") == ["No running execution for id missing"]

    async def test_stop_unknown_session_returns_false(self, settings):
        registry, _, _ = _registry(settings)
        assert await registry.stop("missing") is False

    async def test_exit_after_stop_is_discarded(self, settings):
        registry, transport, _ = _registry(settings)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)):
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))

        assert await registry.stop("e1") is True
        assert proc.terminated
        await asyncio.sleep(0.05)
        assert channel.of_type("end") == ["Script execution stopped by user"]

    async def test_stop_while_starting_terminates_late_process(self, settings):
        release = asyncio.Event()
        sync = AsyncMock()

        async def slow_sync(*args, **kwargs):
            await release.wait()

        sync.sync.side_effect = slow_sync
        registry, transport, _ = _registry(settings, synchronizer=sync)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)):
            task = asyncio.create_task(
                registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))
            )
            await asyncio.sleep(0.01)
            assert await registry.stop("e1") is True
            release.set()
            await task

        assert proc.terminated
        assert channel.of_type("end") == ["Script execution stopped by user"]
        assert registry.get("e1") is None

    async def test_submit_registers_before_launch_runs(self, settings):
        registry, transport, sync = _registry(settings)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=FakePtyProcess())):
            task = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            assert registry.active_ids == ["e1"]
            await task
        assert registry.get("e1").process is not None

    async def test_submit_duplicate_rejected(self, settings):
        registry, transport, _ = _registry(settings)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=FakePtyProcess())):
            first = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            second = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            await first
        assert second is None
        assert len(registry) == 1
        assert channel.of_type("error") == ["Script execution already running"]

    async def test_disconnect_before_launch_begins(self, settings):
        registry, transport, sync = _registry(settings)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock()) as run:
            task = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            await registry.disconnect(channel)
            await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        sync.sync.assert_not_called()
        run.assert_not_called()
        assert registry.active_ids == []

    async def test_disconnect_during_sync_cancels_launch(self, settings):
        cancelled = asyncio.Event()
        sync = AsyncMock()

        async def slow_sync(*args, **kwargs):
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        sync.sync.side_effect = slow_sync
        registry, transport, _ = _registry(settings, synchronizer=sync)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock()) as run:
            task = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            await asyncio.sleep(0.01)
            await registry.disconnect(channel)
            await asyncio.gather(task, return_exceptions=True)

        assert cancelled.is_set()
        run.assert_not_called()
        assert len(registry) == 0

    async def test_stop_during_sync_cancels_launch(self, settings):
        sync = AsyncMock()

        async def slow_sync(*args, **kwargs):
            await asyncio.sleep(30)

        sync.sync.side_effect = slow_sync
        registry, transport, _ = _registry(settings, synchronizer=sync)
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock()) as run:
            task = await registry.submit(
                channel, "e1", SessionRequest.from_message(_ssh_message())
            )
            await asyncio.sleep(0.01)
            assert await registry.stop("e1") is True
            await asyncio.gather(task, return_exceptions=True)

        assert task.cancelled()
        run.assert_not_called()
        assert channel.of_type("end") == ["Script execution stopped by user"]

    async def test_disconnect_terminates_only_that_channels_sessions(self, settings):
        registry, transport, _ = _registry(settings)
        mine, theirs = FakePtyProcess(1), FakePtyProcess(2)
        a, b = RecordingChannel(), RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(side_effect=[mine, theirs])):
            await registry.start(a, "e1", SessionRequest.from_message(_ssh_message()))
            await registry.start(b, "e2", SessionRequest.from_message(_ssh_message()))

        await registry.disconnect(a)
        assert mine.terminated
        assert not theirs.terminated
        assert registry.active_ids == ["e2"]

    async def test_shell_runs_pct_enter(self, settings):
        registry, transport, sync = _registry(settings)
        channel = RecordingChannel()
        msg = _ssh_message(containerId="101", isShell=True)
        with patch.object(
            transport, "run_interactive", AsyncMock(return_value=FakePtyProcess())
        ) as run:
            await registry.start(channel, "e1", SessionRequest.from_message(msg))

        assert run.call_args.args[1] == "pct enter 101"
        sync.sync.assert_not_called()

    async def test_update_types_update_after_delay(self, settings):
        settings.sessions.update_input_delay = 0
        registry, transport, _ = _registry(settings)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        msg = _ssh_message(containerId="101", isUpdate=True)
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)):
            await registry.start(channel, "e1", SessionRequest.from_message(msg))
        await asyncio.sleep(0.05)
        assert proc.written == ["update\n"]

    async def test_update_with_backup_runs_vzdump_first(self, settings):
        settings.sessions.update_input_delay = 0
        registry, transport, _ = _registry(settings)
        backup_proc, update_proc = FakePtyProcess(1), FakePtyProcess(2)
        channel = RecordingChannel()
        msg = _ssh_message(containerId="101", isUpdate=True, backupStorage="nas")
        with patch.object(
            transport, "run_interactive", AsyncMock(side_effect=[backup_proc, update_proc])
        ) as run:
            task = asyncio.create_task(
                registry.start(channel, "e1", SessionRequest.from_message(msg))
            )
            await asyncio.sleep(0.01)
            backup_proc.emit("INFO: starting new backup job\n")
            backup_proc.exit(0)
            await task

        commands = [c.args[1] for c in run.call_args_list]
        assert commands == ["vzdump 101 --storage nas --mode snapshot", "pct enter 101"]
        assert channel.of_type("start") == [
            "Starting update for container 101...",
            "Starting backup before update for container 101...",
            "Starting update for container 101...",
        ]
        outputs = "".join(channel.of_type("output"))
        assert "INFO: starting new backup job" in outputs
        assert "Backup completed successfully" in outputs

    async def test_failed_pre_update_backup_still_updates(self, settings):
        registry, transport, _ = _registry(settings)
        backup_proc, update_proc = FakePtyProcess(1), FakePtyProcess(2)
        channel = RecordingChannel()
        msg = _ssh_message(containerId="101", isUpdate=True, backupStorage="nas")
        with patch.object(
            transport, "run_interactive", AsyncMock(side_effect=[backup_proc, update_proc])
        ):
            task = asyncio.create_task(
                registry.start(channel, "e1", SessionRequest.from_message(msg))
            )
            await asyncio.sleep(0.01)
            backup_proc.exit(1)
            await task

        assert "Backup failed, but proceeding with update" in "".join(channel.of_type("output"))
        assert registry.get("e1").process is update_proc

    async def test_backup_failure_reports_exit_code(self, settings):
        registry, transport, _ = _registry(settings)
        proc = FakePtyProcess()
        channel = RecordingChannel()
        msg = _ssh_message(containerId="101", isBackup=True, storage="nas")
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)) as run:
            await registry.start(channel, "e1", SessionRequest.from_message(msg))

        assert run.call_args.args[1] == "vzdump 101 --storage nas --mode snapshot"
        assert channel.of_type("start") == [
            "Starting backup for container 101 to storage nas..."
        ]
        proc.exit(1)
        await wait_for_event(channel, "end")
        assert channel.of_type("error") == ["Backup failed with exit code: 1"]
        assert "[Backup failed with exit code: 1]" in "".join(channel.of_type("output"))
        assert channel.of_type("end") == ["Script execution finished with code: 1"]

    async def test_local_backup_not_supported(self, settings):
        registry, _, _ = _registry(settings)
        channel = RecordingChannel()
        msg = {"scriptPath": "x", "mode": "local", "containerId": "101", "isBackup": True,
               "storage": "nas"}
        await registry.start(channel, "e1", SessionRequest.from_message(msg))
        assert channel.of_type("error") == ["Failed to start: Backup is only supported via SSH"]

    async def test_channel_send_failure_does_not_break_pump(self, settings):
        registry, transport, _ = _registry(settings)
        proc = FakePtyProcess()

        class FlakyChannel(RecordingChannel):
            async def send_event(self, event):
                if event.type == "output":
                    raise ConnectionResetError("gone")
                await super().send_event(event)

        channel = FlakyChannel()
        with patch.object(transport, "run_interactive", AsyncMock(return_value=proc)):
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))
        proc.emit("dropped")
        proc.exit(0)
        await wait_for_event(channel, "end")
        assert registry.get("e1") is None

    async def test_shutdown_terminates_everything(self, settings):
        registry, transport, _ = _registry(settings)
        procs = [FakePtyProcess(1), FakePtyProcess(2)]
        channel = RecordingChannel()
        with patch.object(transport, "run_interactive", AsyncMock(side_effect=procs)):
            await registry.start(channel, "e1", SessionRequest.from_message(_ssh_message()))
            await registry.start(channel, "e2", SessionRequest.from_message(_ssh_message()))

        await registry.shutdown()
        assert all(p.terminated for p in procs)
        assert len(registry) == 0
