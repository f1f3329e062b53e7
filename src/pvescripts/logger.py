"""Process-wide structlog logger.

The initial level comes from the LOG_LEVEL environment variable because the
logger exists before Settings is loaded; ServiceContainer re-applies the
configured level through :func:`set_level` once settings are available.

Credentials travel through this codebase (SSH passwords, private keys, PBS
passwords), so every event dict passes through ``redact_secrets`` before it
is rendered.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog

REDACTED = "***REDACTED***"

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "ssh_key",
        "sshkey",
        "ssh_key_passphrase",
        "passphrase",
        "key_material",
        "pbs_password",
        "token",
        "access_token",
        "authorization",
        "cookie",
        "api_key",
        "apikey",
    }
)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            k: REDACTED if isinstance(k, str) and k.lower() in SENSITIVE_KEYS else _redact(v)
            for k, v in value.items()
        }
    if isinstance(value, list | tuple):
        return type(value)(_redact(v) for v in value)
    return value


def redact_secrets(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor — mask values whose key looks like a credential."""
    for key in list(event_dict):
        if key.lower() in SENSITIVE_KEYS:
            event_dict[key] = REDACTED
        elif isinstance(event_dict[key], dict | list | tuple):
            event_dict[key] = _redact(event_dict[key])
    return event_dict


def _level_from_name(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def set_level(name: str) -> None:
    """Change the root level; filter_by_level consults it on every call."""
    logging.getLogger().setLevel(_level_from_name(name))


def _configure() -> structlog.stdlib.BoundLogger:
    # stdlib root must be set up before filter_by_level can see a level
    logging.basicConfig(
        level=_level_from_name(os.environ.get("LOG_LEVEL", "INFO")),
        format="%(message)s",
        stream=sys.stderr,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            redact_secrets,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger()


logger = _configure()


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
