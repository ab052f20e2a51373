# ABOUTME: Runs calibredb as a subprocess and streams its output line by line.
# ABOUTME: Builds `calibredb <cmd> --with-library <location> <args>` and logs stderr as warnings.

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "calibredb"
DEFAULT_CONTENT_SERVER_URL = "http://localhost:8080"

# calibredb lines can be long (whole JSON records on one line)
_STREAM_LIMIT = 1024 * 1024

LineCallback = Callable[[str], None]


def quote_if_required(value: str | None) -> str | None:
    """Quote a free-text value if it contains whitespace.

    Embedded double quotes are escaped by doubling them.
    """
    if value is None:
        return None
    if any(ch.isspace() for ch in value):
        return '"' + value.replace('"', '""') + '"'
    return value


def library_location(
    library_path: Path,
    *,
    use_content_server: bool = False,
    server_url: str = DEFAULT_CONTENT_SERVER_URL,
) -> str:
    """Return the ``--with-library`` value for a library.

    The content server addresses libraries by their folder name with spaces
    replaced by underscores, after a ``#``.
    """
    if use_content_server:
        library_id = library_path.name.replace(" ", "_")
        return f"{server_url.rstrip('/')}/#{library_id}"
    return str(library_path)


@dataclass(frozen=True)
class CommandLine:
    """A composed calibredb invocation."""

    executable: tuple[str, ...]
    subcommand: str
    location: str
    args: tuple[str, ...] = ()

    @property
    def argv(self) -> list[str]:
        """The argument vector handed to the operating system."""
        return [*self.executable, self.subcommand, "--with-library", self.location, *self.args]

    def render(self) -> str:
        """Human-readable command line, each value quoted if it contains a space."""
        return " ".join(quote_if_required(part) or "" for part in self.argv)


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


class ProcessChannel:
    """Line-oriented client for the calibredb executable.

    Each :meth:`execute` call is an independent, short-lived process; no
    state is shared between calls, so concurrent use needs no locking.
    """

    def __init__(
        self,
        location: str,
        *,
        executable: str | Path | Sequence[str] = DEFAULT_EXECUTABLE,
    ) -> None:
        self.location = location
        if isinstance(executable, (str, Path)):
            self._executable: tuple[str, ...] = (str(executable),)
        else:
            self._executable = tuple(str(part) for part in executable)

    def command(self, subcommand: str, args: Sequence[str] = ()) -> CommandLine:
        return CommandLine(self._executable, subcommand, self.location, tuple(args))

    async def execute(
        self,
        subcommand: str,
        args: Sequence[str] = (),
        on_line: LineCallback | None = None,
        on_complete: Callable[[], None] | None = None,
        cancel: asyncio.Event | None = None,
    ) -> int | None:
        """Run a calibredb subcommand to completion.

        Args:
            subcommand: The calibredb command, e.g. ``list``.
            args: Remaining arguments, unquoted.
            on_line: Receives each stdout line; stdout is logged when omitted.
            on_complete: Called once after output has been fully pumped,
                including after cancellation.
            cancel: Optional event; when set the process is terminated.

        Returns:
            The process exit code, or None if the run was cancelled.
        """
        command = self.command(subcommand, args)
        logger.debug("Executing %s", command.render())

        try:
            process = await asyncio.create_subprocess_exec(
                *command.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except (OSError, asyncio.CancelledError):
            if on_complete is not None:
                on_complete()
            raise

        stdout_task = asyncio.create_task(
            self._pump(process.stdout, on_line or self._log_output)
        )
        stderr_task = asyncio.create_task(self._pump(process.stderr, self._log_error))
        exit_task = asyncio.create_task(process.wait())
        cancel_task = asyncio.create_task(cancel.wait()) if cancel is not None else None

        cancelled = False
        try:
            waiters = {exit_task} if cancel_task is None else {exit_task, cancel_task}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if not exit_task.done():
                cancelled = True
                logger.debug("Cancelling %s", subcommand)
                await self._terminate(process)
            await asyncio.gather(stdout_task, stderr_task)
        except (Exception, asyncio.CancelledError):
            await self._terminate(process)
            raise
        finally:
            for task in (stdout_task, stderr_task, exit_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            if on_complete is not None:
                on_complete()

        if cancelled:
            return None

        returncode = process.returncode
        if returncode:
            logger.warning("calibredb %s exited with status %d", subcommand, returncode)
        return returncode

    @staticmethod
    async def _pump(stream: asyncio.StreamReader | None, callback: LineCallback) -> None:
        if stream is None:
            return
        async for raw in stream:
            callback(_decode(raw))

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        await process.wait()

    def _log_output(self, line: str) -> None:
        logger.info("%s", line)

    def _log_error(self, line: str) -> None:
        if line.strip():
            logger.warning("%s", line)
