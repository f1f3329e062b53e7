"""One-shot commands with captured, combined output."""

from __future__ import annotations

import asyncio
import contextlib
from asyncio.subprocess import DEVNULL, PIPE, STDOUT

from pvescripts.errors import CommandTimeoutError, TransportError
from pvescripts.logger import logger
from pvescripts.types import CommandResult


async def _spawn(
    argv: list[str] | None,
    shell_command: str | None,
    env: dict[str, str] | None,
) -> asyncio.subprocess.Process:
    try:
        if argv is not None:
            return await asyncio.create_subprocess_exec(
                *argv, stdin=DEVNULL, stdout=PIPE, stderr=STDOUT, env=env
            )
        if shell_command is not None:
            return await asyncio.create_subprocess_shell(
                shell_command, stdin=DEVNULL, stdout=PIPE, stderr=STDOUT, env=env
            )
    except OSError as exc:
        program = argv[0] if argv else "shell"
        raise TransportError(f"Failed to start {program}: {exc}") from exc
    raise ValueError("capture() needs argv or shell_command")


async def capture(
    *,
    label: str,
    argv: list[str] | None = None,
    shell_command: str | None = None,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run to completion and return exit code plus stdout+stderr.

    Exactly one of *argv* / *shell_command* must be given. A non-zero exit
    is returned, not raised. If *timeout* fires the child is killed and
    CommandTimeoutError is raised.
    """
    process = await _spawn(argv, shell_command, env)
    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        with contextlib.suppress(Exception):
            await process.wait()
        logger.warning("Command timed out", command=label, timeout=timeout)
        raise CommandTimeoutError(label, timeout or 0) from None

    # communicate() has reaped the child, so wait() returns at once
    exit_code = await process.wait()
    output = stdout.decode(errors="replace") if stdout else ""
    logger.debug("Command finished", command=label, exit_code=exit_code)
    return CommandResult(exit_code=exit_code, output=output)
