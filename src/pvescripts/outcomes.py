"""Classification of expected-absence outcomes in ``pct`` output.

``pct stop`` on a stopped container and ``pct destroy`` on a missing one are
normal during a restore. They show up as non-zero exit codes with a
recognizable phrase in the output, so the restore flow asks this module
instead of treating them as errors.

Matching is best-effort: the phrases come from the Proxmox CLI and may
change between releases. Unknown failures fall through as ``FAILED``.
"""

from __future__ import annotations

from enum import StrEnum

from pvescripts.types import CommandResult


class Outcome(StrEnum):
    OK = "ok"
    ALREADY_STOPPED = "already_stopped"
    ABSENT = "absent"
    FAILED = "failed"


ABSENT_PHRASES: tuple[str, ...] = (
    "does not exist",
    "not found",
    "No such file",
)

ALREADY_STOPPED_PHRASES: tuple[str, ...] = (
    "not running",
    "already stopped",
)


def _contains_any(text: str, phrases: tuple[str, ...]) -> bool:
    lowered = text.lower()
    return any(p.lower() in lowered for p in phrases)


def classify(result: CommandResult) -> Outcome:
    """Map a ``pct`` command result onto an :class:`Outcome`."""
    if result.ok:
        return Outcome.OK
    if _contains_any(result.output, ABSENT_PHRASES):
        return Outcome.ABSENT
    if _contains_any(result.output, ALREADY_STOPPED_PHRASES):
        return Outcome.ALREADY_STOPPED
    return Outcome.FAILED
