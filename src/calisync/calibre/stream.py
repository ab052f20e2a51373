# ABOUTME: Lazy, cancelable async sequence of records parsed from a calibredb run.
# ABOUTME: The process starts eagerly; records are handed over as the consumer pulls them.

import asyncio
import logging
from collections import deque
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Generic, TypeVar

from calisync.calibre.channel import ProcessChannel
from calisync.calibre.parsers import LineParser
from calisync.calibre.signal import AsyncSignal

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class RecordStream(Generic[T]):
    """Bridges calibredb's pushed output lines to a pulling ``async for``.

    Must be created inside a running event loop. The stream can be iterated
    once; start a new query for a fresh stream.

    Args:
        channel: The calibredb channel to run on.
        subcommand: The calibredb command.
        args: Command arguments.
        parser: Turns output lines into records.
        cancel: Optional event; setting it kills the process and ends
            iteration quietly.
    """

    def __init__(
        self,
        channel: ProcessChannel,
        subcommand: str,
        args: Sequence[str],
        parser: LineParser[T],
        cancel: asyncio.Event | None = None,
    ) -> None:
        self._parser = parser
        self._queue: deque[T] = deque()
        self._signal = AsyncSignal()
        self._done = False
        self._error: BaseException | None = None
        self._iterated = False
        self._cancel = cancel if cancel is not None else asyncio.Event()
        self._task = asyncio.create_task(
            channel.execute(
                subcommand,
                args,
                on_line=self._on_line,
                on_complete=self._on_complete,
                cancel=self._cancel,
            )
        )

    def _on_line(self, line: str) -> None:
        if self._error is not None:
            return
        try:
            records = self._parser.feed(line)
        except Exception as exc:  # surfaced to the consumer in __aiter__
            self._error = exc
            self._signal.set()
            return
        if records:
            self._queue.extend(records)
            self._signal.set()

    def _on_complete(self) -> None:
        if self._error is None and not self._cancel.is_set():
            try:
                self._queue.extend(self._parser.finish())
            except Exception as exc:
                self._error = exc
        self._done = True
        self._signal.set()

    def cancel(self) -> None:
        """Stop the process; iteration ends after the current record."""
        self._cancel.set()

    def __aiter__(self) -> AsyncIterator[T]:
        if self._iterated:
            raise RuntimeError("RecordStream can only be iterated once")
        self._iterated = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[T]:
        try:
            while True:
                while self._queue:
                    if self._cancel.is_set():
                        return
                    yield self._queue.popleft()
                if self._error is not None:
                    raise self._error
                if self._done or self._cancel.is_set():
                    break
                self._signal.reset()
                if self._queue or self._done or self._error is not None:
                    continue
                try:
                    await self._signal.wait(cancel=self._cancel)
                except asyncio.CancelledError:
                    if self._cancel.is_set():
                        return
                    raise
            await self._task
        finally:
            if not self._task.done():
                self._cancel.set()
                await asyncio.shield(self._task)

    async def collect(self) -> list[T]:
        """Drain the stream into a list."""
        return [record async for record in self]

    def map(self, func: Callable[[T], R | None]) -> AsyncIterator[R]:
        """Iterate converted records, skipping those ``func`` maps to None."""

        async def _mapped() -> AsyncIterator[R]:
            async for record in self:
                converted = func(record)
                if converted is not None:
                    yield converted

        return _mapped()
