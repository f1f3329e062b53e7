"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Environment variables override it
using ``__`` as the nested delimiter (e.g. ``SERVER__PORT=3001``).

Priority (highest wins): init args > env vars > .env > config.toml

Server credentials are never part of the settings: they arrive with each
request (session protocol) or from the catalog.

Usage::

    from pvescripts.config import get_settings

    s = get_settings()
    print(s.server.port)
    print(s.restore.download_timeout)
"""

from __future__ import annotations

import tempfile
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class ServerConfig(_StrictModel):
    host: str = "0.0.0.0"
    port: int = 3000


class ScriptsConfig(_StrictModel):
    local_dir: str = "scripts"  # relative to project root or absolute
    remote_dir: str = "/tmp/scripts"
    sync_excludes: list[str] = ["*.log", "*.tmp"]


class TerminalConfig(_StrictModel):
    term: str = "xterm-256color"
    remote_columns: int = 120
    remote_rows: int = 30
    local_columns: int = 80
    local_rows: int = 24


class SshConfig(_StrictModel):
    connect_timeout: int = 10
    key_dir: str | None = None  # None = <tmpdir>/pvescripts

    @field_validator("connect_timeout")
    @classmethod
    def clamp_connect_timeout(cls, v: int) -> int:
        return max(1, v)


class DiscoveryConfig(_StrictModel):
    find_timeout: float = 15.0
    stat_timeout: float = 5.0
    pbs_login_timeout: float = 15.0
    pbs_list_timeout: float = 35.0


class RestoreConfig(_StrictModel):
    download_timeout: float = 300.0  # 5 minutes
    pack_timeout: float = 120.0  # 2 minutes
    log_file: str = "restore.log"  # relative to data_dir


class SessionsConfig(_StrictModel):
    update_input_delay: float = 4.0  # seconds before typing "update" into pct enter


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerConfig = ServerConfig()
    scripts: ScriptsConfig = ScriptsConfig()
    terminal: TerminalConfig = TerminalConfig()
    ssh: SshConfig = SshConfig()
    discovery: DiscoveryConfig = DiscoveryConfig()
    restore: RestoreConfig = RestoreConfig()
    sessions: SessionsConfig = SessionsConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def scripts_dir(self) -> Path:
        p = Path(self.scripts.local_dir)
        if not p.is_absolute():
            p = self.project_root / p
        return p.resolve()

    @cached_property
    def key_dir(self) -> Path:
        if self.ssh.key_dir:
            return Path(self.ssh.key_dir)
        return Path(tempfile.gettempdir()) / "pvescripts"

    @cached_property
    def catalog_path(self) -> Path:
        return self.data_dir / "pvescripts.db"

    @cached_property
    def restore_log_path(self) -> Path:
        return self.data_dir / self.restore.log_file


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
