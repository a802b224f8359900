"""Incremental delivery of command output to the log sink.

A LogStreamer remembers how much of the output has already been appended and
sends only the new tail. Flushes never overlap: a periodic tick is skipped
while a previous flush is still in flight, and the final flush waits for the
in-flight one before sending the remainder. Appends are ordered and nothing
is sent twice.
"""

import asyncio
import html
from collections.abc import Callable

from pollci.interfaces import LogSink, LogSinkError
from pollci.logger import get_logger
from pollci.results import BestEffortResult

logger = get_logger(__name__)


class LogStreamer:
    """Streams a growing text buffer into one append-only log object.

    Append failures are reported as BestEffortResult warnings. A failed
    chunk is retried on the next flush, so a flaky sink delays output but
    does not lose it.
    """

    def __init__(
        self,
        sink: LogSink | None,
        container: str,
        name: str,
        source: Callable[[], str],
        escape: bool = True,
    ) -> None:
        """Initialize the streamer.

        Args:
            sink: Log sink, or None to discard output (no log object available)
            container: Container holding the log object
            name: Log object name
            source: Returns all output produced so far
            escape: HTML-escape output (the log object is an HTML page)
        """
        self.sink = sink
        self.container = container
        self.name = name
        self.source = source
        self.escape = escape
        self.flushed = 0
        self.warnings: list[str] = []
        self._in_flight: asyncio.Task[BestEffortResult] | None = None
        self._closed = False

    @property
    def flushing(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    def tick(self) -> bool:
        """Start a background flush unless one is already running.

        Returns:
            True if a flush was started, False if the tick was skipped
        """
        if self._closed:
            return False
        if self.flushing:
            logger.debug("Flush still in flight, skipping tick")
            return False
        self._in_flight = asyncio.create_task(self._flush())
        return True

    async def final_flush(self) -> BestEffortResult:
        """Wait for any in-flight flush, then send whatever is left.

        No further ticks are accepted once the final flush has started.
        """
        self._closed = True
        if self._in_flight is not None:
            await asyncio.wait({self._in_flight})
            self._in_flight = None
        return await self._flush()

    async def _flush(self) -> BestEffortResult:
        """Append the output produced since the last successful flush."""
        text = self.source()[self.flushed :]
        if not text or self.sink is None:
            self.flushed += len(text)
            return BestEffortResult.success()
        try:
            await self.sink.append_text(
                self.container, self.name, html.escape(text) if self.escape else text
            )
        except LogSinkError as e:
            warning = f"Failed to append {len(text)} characters to log {self.name}: {e}"
            logger.warning(warning)
            self.warnings.append(warning)
            return BestEffortResult.failed(warning)
        self.flushed += len(text)
        return BestEffortResult.success()

    async def append_marker(self, text: str) -> BestEffortResult:
        """Append a line of job metadata (not command output) to the log."""
        if self.sink is None:
            return BestEffortResult.success()
        try:
            await self.sink.append_text(self.container, self.name, text)
        except LogSinkError as e:
            warning = f"Failed to append marker to log {self.name}: {e}"
            logger.warning(warning)
            self.warnings.append(warning)
            return BestEffortResult.failed(warning)
        return BestEffortResult.success()
