"""Tests for incremental log streaming."""

import asyncio

import pytest

from pollci.log_stream import LogStreamer
from tests.fakes import FakeLogSink

CONTAINER = "pollci-logs"
NAME = "widgets/42.html"


class GrowingBuffer:
    def __init__(self) -> None:
        self.text = ""

    def write(self, text: str) -> None:
        self.text += text

    def __call__(self) -> str:
        return self.text


async def make_streamer(sink: FakeLogSink, buffer: GrowingBuffer, escape: bool = True):
    await sink.create_append_object(CONTAINER, NAME, "", "text/html")
    return LogStreamer(sink, CONTAINER, NAME, buffer, escape=escape)


@pytest.mark.unit
class TestLogStreamer:
    """Tests for LogStreamer."""

    @pytest.mark.asyncio
    async def test_only_new_output_is_sent(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)

        buffer.write("one\n")
        assert (await streamer._flush()).ok
        buffer.write("two\n")
        await streamer.final_flush()

        assert sink.objects[(CONTAINER, NAME)] == ["", "one\n", "two\n"]
        assert streamer.flushed == len(buffer.text)

    @pytest.mark.asyncio
    async def test_output_is_html_escaped(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        buffer.write("<b>&</b>")
        await streamer.final_flush()
        assert sink.content(CONTAINER, NAME) == "&lt;b&gt;&amp;&lt;/b&gt;"

    @pytest.mark.asyncio
    async def test_escape_can_be_disabled(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer, escape=False)
        buffer.write("<b>")
        await streamer.final_flush()
        assert sink.content(CONTAINER, NAME) == "<b>"

    @pytest.mark.asyncio
    async def test_empty_flush_sends_nothing(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        await streamer.final_flush()
        assert sink.objects[(CONTAINER, NAME)] == [""]

    @pytest.mark.asyncio
    async def test_tick_is_skipped_while_flush_in_flight(self):
        sink, buffer = FakeLogSink(append_delay=0.1), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        buffer.write("a")

        assert streamer.tick() is True
        await asyncio.sleep(0)
        assert streamer.flushing
        buffer.write("b")
        assert streamer.tick() is False

        await streamer.final_flush()
        assert sink.max_concurrent_appends == 1
        assert sink.content(CONTAINER, NAME) == "ab"

    @pytest.mark.asyncio
    async def test_final_flush_waits_for_in_flight_flush(self):
        """Ticks and the final flush never overlap, and nothing is lost or repeated."""
        sink, buffer = FakeLogSink(append_delay=0.01), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)

        for i in range(20):
            buffer.write(f"line {i}\n")
            streamer.tick()
            await asyncio.sleep(0.003)
        await streamer.final_flush()

        assert sink.max_concurrent_appends == 1
        assert sink.content(CONTAINER, NAME) == buffer.text

    @pytest.mark.asyncio
    async def test_no_ticks_after_final_flush(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        await streamer.final_flush()
        buffer.write("late")
        assert streamer.tick() is False

    @pytest.mark.asyncio
    async def test_failed_append_is_retried_on_next_flush(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        sink.failing_appends = 1

        buffer.write("kept")
        result = await streamer._flush()
        assert not result.ok
        assert "append refused" in result.warning
        assert streamer.flushed == 0

        buffer.write(" going")
        assert (await streamer.final_flush()).ok
        assert sink.content(CONTAINER, NAME) == "kept going"
        assert len(streamer.warnings) == 1

    @pytest.mark.asyncio
    async def test_without_sink_output_is_discarded(self):
        buffer = GrowingBuffer()
        streamer = LogStreamer(None, "", NAME, buffer)
        buffer.write("ignored")
        assert (await streamer.final_flush()).ok
        assert (await streamer.append_marker("done")).ok
        assert streamer.flushed == len("ignored")

    @pytest.mark.asyncio
    async def test_append_marker_failure_is_reported(self):
        sink, buffer = FakeLogSink(), GrowingBuffer()
        streamer = await make_streamer(sink, buffer)
        sink.failing_appends = 1
        result = await streamer.append_marker("<h3>PASSED</h3>")
        assert not result.ok
        assert streamer.warnings == [result.warning]
