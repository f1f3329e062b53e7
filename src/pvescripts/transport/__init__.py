"""Remote shell transport — run one shell invocation on a local or remote host.

Two entry points:
  - ``run_interactive`` spawns on a pseudo-terminal and returns a
    :class:`PtyProcess` whose ``output`` is an async iterator.
  - ``run_once`` runs to completion and returns a :class:`CommandResult`.

Remote targets go through ssh (see ``_ssh.build_ssh_command``). Temporary
key files are removed when the process exits or is terminated, or when the
call raises.
"""

from __future__ import annotations

import os
import shlex

from pvescripts.config import Settings, get_settings
from pvescripts.errors import TransportError
from pvescripts.logger import logger
from pvescripts.transport._keys import key_file_cleanup
from pvescripts.transport._oneshot import capture
from pvescripts.transport._pty import OutputStream, PtyProcess, spawn_pty
from pvescripts.transport._ssh import (
    SshCommand,
    build_ssh_command,
    check_auth,
    remote_script_command,
    terminal_env,
)
from pvescripts.types import CommandResult, ConnectionTarget, LocalTarget, RemoteTarget

__all__ = [
    "OutputStream",
    "PtyProcess",
    "ShellTransport",
    "SshCommand",
    "build_ssh_command",
    "check_auth",
    "describe_command",
    "local_script_command",
    "remote_script_command",
    "terminal_env",
]


class ShellTransport:
    """Spawns local or remote shell invocations.

    Stateless apart from settings; safe to share across sessions, discovery
    and restore runs.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    @property
    def settings(self) -> Settings:
        return self._settings

    def ssh_command(self, target: RemoteTarget, *, interactive: bool = False) -> SshCommand:
        """Build the ssh invocation for *target*. Caller owns ``cleanup()``."""
        s = self._settings
        return build_ssh_command(
            target,
            interactive=interactive,
            connect_timeout=s.ssh.connect_timeout,
            key_dir=s.key_dir,
            term=s.terminal.term,
            columns=s.terminal.remote_columns,
            rows=s.terminal.remote_rows,
        )

    async def run_interactive(
        self,
        target: ConnectionTarget,
        command: str,
        *,
        cwd: str | None = None,
        columns: int | None = None,
        rows: int | None = None,
        label: str = "",
    ) -> PtyProcess:
        """Spawn *command* attached to a pty.

        Local targets run ``bash -c <command>``; remote targets run the
        command as the ssh remote command with a forced tty.
        """
        term = self._settings.terminal
        match target:
            case LocalTarget():
                cols = columns or term.local_columns
                lines = rows or term.local_rows
                env = {**os.environ, **terminal_env(term.term, cols, lines)}
                return await spawn_pty(
                    ["bash", "-c", command],
                    env=env,
                    cwd=cwd,
                    columns=cols,
                    rows=lines,
                    label=label,
                )
            case RemoteTarget():
                cols = columns or term.remote_columns
                lines = rows or term.remote_rows
                ssh = self.ssh_command(target, interactive=True)
                env = {**os.environ, **terminal_env(term.term, cols, lines), **ssh.env}
                env["SHELL"] = "/bin/bash"
                try:
                    proc = await spawn_pty(
                        ssh.with_remote(command),
                        env=env,
                        cwd=cwd,
                        columns=cols,
                        rows=lines,
                        on_exit=ssh.cleanup,
                        label=label,
                    )
                except BaseException:
                    ssh.cleanup()
                    raise
                logger.info(
                    "Started remote session",
                    host=target.host,
                    port=target.port,
                    label=label,
                )
                return proc
            case _:
                raise TransportError(f"Unsupported target: {target!r}")

    async def run_once(
        self,
        target: ConnectionTarget,
        command: str,
        *,
        timeout: float | None = None,
        label: str | None = None,
    ) -> CommandResult:
        """Run *command* to completion with stdout+stderr captured.

        No tty is allocated. Non-zero exit codes are returned as data;
        a fired *timeout* raises CommandTimeoutError. *label* is what gets
        logged; commands embedding credentials must pass one.
        """
        label = label or describe_command(command)
        match target:
            case LocalTarget():
                return await capture(label=label, shell_command=command, timeout=timeout)
            case RemoteTarget():
                ssh = self.ssh_command(target, interactive=False)
                with key_file_cleanup(ssh.key_file):
                    return await capture(
                        label=label,
                        argv=ssh.with_remote(command),
                        env={**os.environ, **ssh.env},
                        timeout=timeout,
                    )
            case _:
                raise TransportError(f"Unsupported target: {target!r}")


def local_script_command(script_path: str) -> str:
    """Shell line that runs a local script file with bash."""
    return shlex.join(["bash", script_path])


def describe_command(command: str) -> str:
    """Short loggable name for a shell line: its first program word.

    Leading ``VAR=value`` assignments are skipped so inline secrets stay out
    of logs.
    """
    for word in command.split():
        if "=" not in word:
            return word
    return "command"
