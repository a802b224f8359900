"""
Process runner for build/test commands.

Spawns a shell command, captures stdout and stderr incrementally into one
buffer, and lets the caller cancel it from outside. The caller never blocks
on the command: it polls output() and awaits the result future when it
chooses to.
"""

import asyncio
import codecs
import contextlib
import os
import signal
import sys
from dataclasses import dataclass, field

from pollci.logger import get_logger

logger = get_logger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class CommandError(Exception):
    """The command exited with a non-zero status or could not be started."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class CommandTimeoutError(CommandError):
    """The command was killed before it finished."""

    pass


@dataclass
class RunningCommand:
    """Handle on a spawned command.

    Attributes:
        command: The shell command line
        cwd: Working directory
        result: Resolves to None on success or a CommandError
    """

    command: str
    cwd: str
    result: asyncio.Future[CommandError | None]
    _chunks: list[str] = field(default_factory=list)
    _process: asyncio.subprocess.Process | None = None
    _cancelled: bool = False
    _supervisor: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def running(self) -> bool:
        return not self.result.done()

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    def output(self) -> str:
        """All output captured so far, both streams in arrival order."""
        if len(self._chunks) > 1:
            self._chunks[:] = ["".join(self._chunks)]
        return self._chunks[0] if self._chunks else ""

    def cancel(self) -> None:
        """Kill the command and everything it spawned.

        The result future resolves to CommandTimeoutError once the process
        has been reaped; calling cancel on a finished command is a no-op.
        If the shell already exited and only its children still hold the
        output pipes, they are killed but the shell's exit code stands.
        """
        if self.result.done() or self._process is None or self._cancelled:
            return
        if self._process.returncode is None:
            self._cancelled = True
            logger.warning(f"Killing command (pid {self._process.pid}): {self.command}")
        else:
            logger.warning(f"Killing processes left behind by: {self.command}")
        _kill_process_tree(self._process)


def _kill_process_tree(process: asyncio.subprocess.Process) -> None:
    if sys.platform != "win32":
        # The shell runs in its own session; killing the group takes its children too
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
            return
    with contextlib.suppress(ProcessLookupError):
        process.kill()


async def _pump(stream: asyncio.StreamReader, chunks: list[str]) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                chunks.append(tail)
            return
        text = decoder.decode(data)
        if text:
            chunks.append(text)


async def start_command(command: str, cwd: str) -> RunningCommand:
    """Start a shell command without waiting for it.

    Spawn failures do not raise: the returned handle's result is already
    resolved to a CommandError.

    Args:
        command: Shell command line
        cwd: Working directory

    Returns:
        RunningCommand handle
    """
    loop = asyncio.get_running_loop()
    handle = RunningCommand(command=command, cwd=cwd, result=loop.create_future())
    logger.debug(f"Executing command: {command} (cwd: {cwd})")

    try:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=sys.platform != "win32",
        )
    except OSError as e:
        logger.error(f"Failed to start command '{command}': {e}")
        handle.result.set_result(CommandError(f"Failed to start command: {e}"))
        return handle

    handle._process = process
    assert process.stdout is not None and process.stderr is not None

    async def supervise() -> None:
        try:
            await asyncio.gather(
                _pump(process.stdout, handle._chunks),
                _pump(process.stderr, handle._chunks),
            )
            returncode = await process.wait()
        except asyncio.CancelledError:
            _kill_process_tree(process)
            raise

        if handle._cancelled:
            error: CommandError | None = CommandTimeoutError(
                "Command was killed before it finished", returncode=returncode
            )
        elif returncode != 0:
            error = CommandError(f"Command exited with code {returncode}", returncode=returncode)
        else:
            error = None
        if not handle.result.done():
            handle.result.set_result(error)

    handle._supervisor = asyncio.create_task(supervise())
    return handle
