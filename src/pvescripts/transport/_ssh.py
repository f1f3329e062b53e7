"""SSH command construction.

``build_ssh_command`` is the only place that looks inside a target's
``auth``. Everything downstream (one-shot commands, interactive sessions,
rsync's ``--rsh``) consumes the resulting :class:`SshCommand`.

Secrets never appear in argv: passwords and key passphrases are handed to
``sshpass -e`` through the ``SSHPASS`` environment variable.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import assert_never

from pvescripts.errors import AuthenticationError
from pvescripts.transport._keys import remove_key_file, write_key_file
from pvescripts.types import KeyAuth, PasswordAuth, RemoteTarget

_COMMON_OPTIONS = (
    "StrictHostKeyChecking=no",
    "UserKnownHostsFile=/dev/null",
    "LogLevel=ERROR",
)


def terminal_env(term: str, columns: int, rows: int) -> dict[str, str]:
    """Environment that makes remote and local tools emit color at a fixed size."""
    return {
        "TERM": term,
        "COLUMNS": str(columns),
        "LINES": str(rows),
        "COLORTERM": "truecolor",
        "FORCE_COLOR": "1",
        "NO_COLOR": "0",
        "CLICOLOR": "1",
        "CLICOLOR_FORCE": "1",
    }


@dataclass
class SshCommand:
    """An ssh invocation without destination and remote command.

    ``env`` must be merged into the spawning process environment.
    ``key_file`` (if any) is owned by the caller and must be removed with
    :meth:`cleanup` once the process is gone.
    """

    argv: list[str]
    destination: str
    env: dict[str, str] = field(default_factory=dict, repr=False)
    key_file: Path | None = None

    def with_remote(self, remote_command: str) -> list[str]:
        return [*self.argv, self.destination, remote_command]

    def as_rsh(self) -> str:
        """Single string suitable for ``rsync --rsh``."""
        return shlex.join(self.argv)

    def cleanup(self) -> None:
        remove_key_file(self.key_file)
        self.key_file = None


def check_auth(target: RemoteTarget) -> None:
    """Raise AuthenticationError if *target* carries no usable credential."""
    match target.auth:
        case PasswordAuth(secret=secret):
            if not secret:
                raise AuthenticationError(
                    f"No password configured for {target.destination}"
                )
        case KeyAuth(key_material=material):
            if not material or not material.strip():
                raise AuthenticationError(
                    f"No SSH key configured for {target.destination}"
                )
        case _:
            assert_never(target.auth)


def build_ssh_command(
    target: RemoteTarget,
    *,
    interactive: bool,
    connect_timeout: int,
    key_dir: Path,
    term: str = "xterm-256color",
    columns: int = 120,
    rows: int = 30,
) -> SshCommand:
    """Build the ssh argv for *target*.

    Interactive invocations force a tty and pass the terminal env via
    ``SetEnv``. Key material is written to a private file only after the
    credential checks pass, so a raising call never leaves a file behind.
    """
    check_auth(target)

    wrapper: list[str] = []
    env: dict[str, str] = {}
    key_file: Path | None = None

    match target.auth:
        case PasswordAuth(secret=secret):
            wrapper = ["sshpass", "-e"]
            env["SSHPASS"] = secret
            auth_options = ["PasswordAuthentication=yes", "PubkeyAuthentication=no"]
            identity: list[str] = []
        case KeyAuth(key_material=material, passphrase=passphrase):
            if passphrase:
                wrapper = ["sshpass", "-P", "assphrase", "-e"]
                env["SSHPASS"] = passphrase
            key_file = write_key_file(material, key_dir)
            auth_options = ["PasswordAuthentication=no", "PubkeyAuthentication=yes"]
            identity = ["-i", str(key_file)]
        case _:
            assert_never(target.auth)

    argv = [*wrapper, "ssh", *identity]
    if interactive:
        argv.append("-t")
    argv += ["-p", str(target.port)]
    for opt in (f"ConnectTimeout={connect_timeout}", *_COMMON_OPTIONS, *auth_options):
        argv += ["-o", opt]
    if interactive:
        argv += ["-o", "RequestTTY=yes"]
        for name, value in terminal_env(term, columns, rows).items():
            argv += ["-o", f"SetEnv={name}={value}"]

    return SshCommand(argv=argv, destination=target.destination, env=env, key_file=key_file)


def remote_script_command(
    script_path: str,
    *,
    remote_dir: str,
    term: str = "xterm-256color",
    columns: int = 120,
    rows: int = 30,
) -> str:
    """Remote shell line that runs a synced script with the color env exported.

    A leading ``scripts/`` is stripped since the local scripts directory is
    mirrored into *remote_dir*.
    """
    rel = script_path.removeprefix("scripts/")
    exports = " && ".join(
        f"export {name}={value}" for name, value in terminal_env(term, columns, rows).items()
    )
    quoted = shlex.quote(rel)
    return (
        f"cd {shlex.quote(remote_dir)} && chmod +x {quoted} && {exports} && bash {quoted}"
    )
