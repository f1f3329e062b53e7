"""Exception hierarchy.

Expected-absence conditions (container already stopped, container missing)
are not exceptions — see ``pvescripts.outcomes``.
"""

from __future__ import annotations


class PveScriptsError(Exception):
    """Base class for all pvescripts errors."""


class AuthenticationError(PveScriptsError):
    """No usable credential. Raised before any process is spawned."""


class TransportError(PveScriptsError):
    """A process could not be spawned or failed unexpectedly."""


class CommandTimeoutError(TransportError, TimeoutError):
    """A one-shot command exceeded its deadline and was killed."""

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"Command timed out after {timeout:g}s: {command}")
        self.command = command
        self.timeout = timeout


class SyncError(TransportError):
    """rsync of the scripts directory exited non-zero."""

    def __init__(self, exit_code: int, output: str = "") -> None:
        super().__init__(f"rsync failed with code {exit_code}")
        self.exit_code = exit_code
        self.output = output


class RestoreError(PveScriptsError):
    """A restore step failed; ends the current restore run."""
