"""Pseudo-terminal processes.

A :class:`PtyProcess` owns one child attached to the slave side of a pty.
The parent reads the master side from the event loop (``add_reader``) and
feeds decoded text into an :class:`OutputStream`, which the session registry
consumes with ``async for``. Control sequences pass through untouched.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import fcntl
import os
import pty
import signal
import struct
import subprocess
import termios
from collections.abc import Callable

from pvescripts.errors import TransportError
from pvescripts.logger import logger
from pvescripts.utils import create_background_task

_READ_SIZE = 65536
# After the child exits, how long to keep draining the master before giving
# up on EOF (background grandchildren can hold the slave open).
_DRAIN_GRACE = 1.0


class OutputStream:
    """Single-consumer async iterator of output chunks, ended by :meth:`close`."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def feed(self, chunk: str) -> None:
        if chunk and not self._closed:
            self._queue.put_nowait(chunk)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    def __aiter__(self) -> OutputStream:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is None:
            # Re-arm the sentinel so a second iteration also ends immediately
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return item


def _set_winsize(fd: int, rows: int, columns: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, columns, 0, 0))


def _acquire_controlling_tty() -> None:
    """preexec_fn: make the pty slave (already on fd 0) the controlling tty."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PtyProcess:
    """A running child attached to a pseudo-terminal."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        *,
        on_exit: Callable[[], None] | None = None,
        label: str = "",
    ) -> None:
        self.proc = proc
        self.label = label
        self.output = OutputStream()
        self._master_fd: int | None = master_fd
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._eof = asyncio.Event()
        self._on_exit = on_exit
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._exit_task = create_background_task(
            self._watch_exit(), name=f"pty-exit-{label or proc.pid}"
        )

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> int | None:
        return self.proc.returncode

    def _on_readable(self) -> None:
        assert self._master_fd is not None
        try:
            data = os.read(self._master_fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO: every slave fd is closed
            data = b""
        if not data:
            self._close_master()
            return
        self.output.feed(self._decoder.decode(data))

    def _close_master(self) -> None:
        if self._master_fd is None:
            return
        fd, self._master_fd = self._master_fd, None
        self._loop.remove_reader(fd)
        with contextlib.suppress(OSError):
            os.close(fd)
        self.output.feed(self._decoder.decode(b"", final=True))
        self.output.close()
        self._eof.set()

    async def _watch_exit(self) -> int:
        returncode = await self.proc.wait()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._eof.wait(), timeout=_DRAIN_GRACE)
        self._close_master()
        self._run_exit_hook()
        logger.debug("PTY process exited", label=self.label, pid=self.proc.pid, code=returncode)
        return returncode

    def _run_exit_hook(self) -> None:
        hook, self._on_exit = self._on_exit, None
        if hook is not None:
            hook()

    def write(self, data: str) -> None:
        """Send keystrokes to the child."""
        if self._master_fd is None:
            raise TransportError("Process terminal is closed")
        try:
            os.write(self._master_fd, data.encode())
        except OSError as exc:
            raise TransportError(f"Failed to write to process: {exc}") from exc

    def terminate(self) -> None:
        """SIGTERM the child. Exit hooks (key cleanup) run right away."""
        if self.proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self.proc.send_signal(signal.SIGTERM)
        self._run_exit_hook()

    async def wait(self) -> int:
        """Wait for exit and for output to be drained. Returns the exit code."""
        return await asyncio.shield(self._exit_task)


async def spawn_pty(
    argv: list[str],
    *,
    env: dict[str, str],
    cwd: str | None = None,
    columns: int = 80,
    rows: int = 24,
    on_exit: Callable[[], None] | None = None,
    label: str = "",
) -> PtyProcess:
    """Spawn *argv* on a fresh pty of the given size.

    Raises TransportError if the process cannot be started. *on_exit* is
    not called in that case; the caller cleans up.
    """
    master_fd, slave_fd = pty.openpty()
    try:
        _set_winsize(slave_fd, rows, columns)
        os.set_blocking(master_fd, False)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=cwd,
            env=env,
            start_new_session=True,
            preexec_fn=_acquire_controlling_tty,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        os.close(master_fd)
        raise TransportError(f"Failed to start {argv[0]}: {exc}") from exc
    except asyncio.CancelledError:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)

    logger.debug("Spawned PTY process", label=label, pid=proc.pid, program=argv[0])
    return PtyProcess(proc, master_fd, on_exit=on_exit, label=label)
