"""Shared test fixtures for pvescripts."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from pvescripts.errors import TransportError
from pvescripts.transport import OutputStream
from pvescripts.types import CommandResult, PasswordAuth, RemoteTarget, Server

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures: importable by test files)
# ---------------------------------------------------------------------------

# Cached property names that must be set via __dict__ (not model_construct).
_CACHED_PROPERTY_NAMES = frozenset(
    {
        "project_root",
        "data_dir",
        "scripts_dir",
        "key_dir",
        "catalog_path",
        "restore_log_path",
    }
)


def make_settings(**overrides):
    """Create a Settings object with sensible defaults for testing.

    Accepts both model fields (server, restore, etc.) and cached property
    overrides (project_root, data_dir, scripts_dir, etc.).

    Usage::

        s = make_settings(data_dir=tmp_path)
        s = make_settings(restore=RestoreConfig(download_timeout=1))
        s = make_settings(project_root=tmp_path, scripts_dir=tmp_path / "scripts")
    """
    from pvescripts.config import (
        DiscoveryConfig,
        LoggingConfig,
        RestoreConfig,
        ScriptsConfig,
        ServerConfig,
        SessionsConfig,
        Settings,
        SshConfig,
        TerminalConfig,
    )

    cached = {k: overrides.pop(k) for k in list(overrides) if k in _CACHED_PROPERTY_NAMES}

    defaults = {
        "server": ServerConfig(),
        "scripts": ScriptsConfig(),
        "terminal": TerminalConfig(),
        "ssh": SshConfig(),
        "discovery": DiscoveryConfig(),
        "restore": RestoreConfig(),
        "sessions": SessionsConfig(),
        "logging": LoggingConfig(),
    }
    defaults.update(overrides)
    s = Settings.model_construct(**defaults)

    for key, value in cached.items():
        s.__dict__[key] = value

    return s


def make_server(
    server_id: int | None = 1,
    *,
    name: str = "pve1",
    ip: str = "10.0.0.2",
    password: str = "hunter2",
) -> Server:
    return Server(
        id=server_id,
        name=name,
        target=RemoteTarget(host=ip, user="root", auth=PasswordAuth(password)),
    )


class FakeTransport:
    """Stands in for ShellTransport in discovery/storage/restore tests.

    ``on(fragment, ...)`` scripts a response for any command containing
    *fragment*; the first matching rule wins. Unmatched commands succeed
    with empty output. Every call is recorded in ``calls``.
    """

    def __init__(self, settings) -> None:
        self.settings = settings
        self.calls: list[str] = []
        self.labels: list[str | None] = []
        self._rules: list[tuple[str, CommandResult | BaseException]] = []

    def on(
        self,
        fragment: str,
        output: str = "",
        exit_code: int = 0,
        *,
        raises: BaseException | None = None,
    ) -> FakeTransport:
        response = raises if raises is not None else CommandResult(exit_code, output)
        self._rules.append((fragment, response))
        return self

    def commands_matching(self, fragment: str) -> list[str]:
        return [c for c in self.calls if fragment in c]

    async def run_once(self, target, command, *, timeout=None, label=None) -> CommandResult:
        self.calls.append(command)
        self.labels.append(label)
        for fragment, response in self._rules:
            if fragment in command:
                if isinstance(response, BaseException):
                    raise response
                return response
        return CommandResult(0, "")


class FakePtyProcess:
    """Minimal PtyProcess double driven by the test."""

    def __init__(self, pid: int = 4242) -> None:
        self.pid = pid
        self.output = OutputStream()
        self.written: list[str] = []
        self.terminated = False
        self.returncode: int | None = None
        self._done: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    def emit(self, chunk: str) -> None:
        self.output.feed(chunk)

    def exit(self, code: int) -> None:
        self.returncode = code
        self.output.close()
        if not self._done.done():
            self._done.set_result(code)

    def write(self, data: str) -> None:
        if self.returncode is not None:
            raise TransportError("Process terminal is closed")
        self.written.append(data)

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-15)

    async def wait(self) -> int:
        return await asyncio.shield(self._done)


class RecordingChannel:
    """SessionChannel that keeps every event it receives."""

    def __init__(self) -> None:
        self.events = []

    async def send_event(self, event) -> None:
        self.events.append(event)

    def of_type(self, type_: str) -> list[str]:
        return [e.data for e in self.events if e.type == type_]

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


async def wait_for_event(channel: RecordingChannel, type_: str, timeout: float = 5.0) -> None:
    """Poll until *channel* has received at least one event of *type_*."""

    async def _poll() -> None:
        while type_ not in channel.types:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


# ---------------------------------------------------------------------------
# Autouse fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch, tmp_path):
    """Ensure each test starts with a clean Settings singleton.

    Uses ``make_settings()`` to build from pure defaults — no config.toml,
    no .env, no file I/O outside the test's tmp_path.
    """
    safe = make_settings(
        project_root=tmp_path,
        data_dir=tmp_path / "data",
        scripts_dir=tmp_path / "scripts",
        key_dir=tmp_path / "keys",
        catalog_path=tmp_path / "data" / "pvescripts.db",
        restore_log_path=tmp_path / "data" / "restore.log",
    )
    monkeypatch.setattr("pvescripts.config._settings", safe)


# ---------------------------------------------------------------------------
# Reusable fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path):
    scripts = tmp_path / "scripts"
    scripts.mkdir()
    return make_settings(
        project_root=tmp_path,
        data_dir=tmp_path / "data",
        scripts_dir=scripts.resolve(),
        key_dir=tmp_path / "keys",
        catalog_path=tmp_path / "data" / "pvescripts.db",
        restore_log_path=tmp_path / "data" / "restore.log",
    )


@pytest.fixture
def fake_transport(settings) -> FakeTransport:
    return FakeTransport(settings)


@pytest.fixture
async def catalog():
    from pvescripts.catalog import SqliteCatalog

    cat = await SqliteCatalog.open_in_memory()
    yield cat
    await cat.close()
