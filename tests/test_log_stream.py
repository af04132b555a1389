import asyncio

import pytest

from run_control.errors import ConnectivityError
from run_control.log_stream import EventStream, LogStreamConsumer, StreamState
from run_control.models import LogEntryType, ProducerStatus
from run_control.schemas import (
    ExecutionCompleteEvent,
    ExecutionSummary,
    JobCompleteEvent,
    JobStartEvent,
    LayerCompleteEvent,
    LayerSkippedEvent,
    LayerStartEvent,
    StatusEvent,
)


class RecordingSink:
    def __init__(self, stopping=False):
        self.logs = []
        self.statuses = []
        self.stopping = stopping

    def append_log(self, entry):
        self.logs.append(entry)

    def set_producer_status(self, producer, status):
        self.statuses.append((producer, status))

    def is_stopping(self):
        return self.stopping


async def _iterate(items, fail_with=None):
    for item in items:
        yield item
    if fail_with is not None:
        raise fail_with


def _happy_events():
    return [
        LayerSkippedEvent(layer_index=0),
        LayerStartEvent(layer_index=1, job_count=2),
        JobStartEvent(job_id="Producer:A", producer="A", layer_index=1),
        JobStartEvent(job_id="Producer:B", producer="B", layer_index=1),
        JobCompleteEvent(job_id="Producer:A", producer="A", layer_index=1, status="succeeded"),
        JobCompleteEvent(job_id="Producer:B", producer="B", layer_index=1, status="failed", error_message="boom"),
        LayerCompleteEvent(layer_index=1, succeeded=1, failed=1),
        ExecutionCompleteEvent(status="partial", summary=ExecutionSummary(jobs_succeeded=1, jobs_failed=1)),
    ]


# ============================================================================
# EventStream
# ============================================================================

@pytest.mark.asyncio
async def test_event_stream_preserves_order_and_closes():
    stream = EventStream(maxsize=10)
    for i in range(5):
        await stream.publish(i)
    await stream.close()
    assert stream.state == StreamState.CLOSED
    got = [e async for e in stream]
    assert got == [0, 1, 2, 3, 4]
    # a drained stream stays ended
    assert [e async for e in stream] == []


@pytest.mark.asyncio
async def test_event_stream_backpressure_blocks_publisher():
    stream = EventStream(maxsize=1)
    await stream.publish("first")
    blocked = asyncio.create_task(stream.publish("second"))
    await asyncio.sleep(0.01)
    assert not blocked.done()
    assert await stream.__anext__() == "first"
    await asyncio.wait_for(blocked, timeout=1)
    assert await stream.__anext__() == "second"


@pytest.mark.asyncio
async def test_publish_after_close_raises():
    stream = EventStream(maxsize=2)
    await stream.close()
    with pytest.raises(ConnectivityError):
        await stream.publish("late")


@pytest.mark.asyncio
async def test_failed_stream_raises_after_buffered_events():
    stream = EventStream(maxsize=5)
    await stream.publish("a")
    await stream.fail(RuntimeError("socket reset"))
    assert stream.state == StreamState.FAILED
    assert await stream.__anext__() == "a"
    with pytest.raises(ConnectivityError):
        await stream.__anext__()


# ============================================================================
# LogStreamConsumer
# ============================================================================

@pytest.mark.asyncio
async def test_consumer_appends_every_event_in_order():
    sink = RecordingSink()
    outcome = await LogStreamConsumer(sink).consume(_iterate(_happy_events()))
    assert outcome.verdict == "partial"
    assert outcome.events == 8
    assert [e.type for e in sink.logs] == [
        LogEntryType.LAYER_SKIPPED,
        LogEntryType.LAYER_START,
        LogEntryType.JOB_START,
        LogEntryType.JOB_START,
        LogEntryType.JOB_COMPLETE,
        LogEntryType.JOB_COMPLETE,
        LogEntryType.LAYER_COMPLETE,
        LogEntryType.INFO,
    ]
    assert sink.logs[0].message == "Layer 0 skipped (using existing artifacts)"
    assert sink.logs[1].message == "--- Layer 1, will run 2 job(s) ---"
    assert sink.logs[2].message == "Starting A..."
    assert sink.logs[4].message == "A completed successfully ✓"
    assert sink.logs[5].message == "B failed ✗"
    assert sink.logs[5].error_details == "boom"
    assert sink.logs[6].message == "Layer 1 complete: 1 succeeded, 1 failed, 0 skipped"
    assert sink.logs[7].message == "Execution completed with some failures"


@pytest.mark.asyncio
async def test_consumer_maps_job_statuses():
    sink = RecordingSink()
    await LogStreamConsumer(sink).consume(_iterate(_happy_events()))
    assert sink.statuses == [
        ("A", ProducerStatus.RUNNING),
        ("B", ProducerStatus.RUNNING),
        ("A", ProducerStatus.SUCCESS),
        ("B", ProducerStatus.ERROR),
    ]


@pytest.mark.asyncio
async def test_consumer_parses_raw_json_and_ignores_status_snapshots():
    sink = RecordingSink()
    raw = [
        StatusEvent(job_id="job-1", status="running").model_dump_json(),
        {"type": "job-start", "job_id": "Producer:A", "producer": "A", "layer_index": 0},
        {"type": "job-complete", "job_id": "Producer:A", "producer": "A", "status": "skipped"},
        {"type": "execution-complete", "status": "succeeded"},
    ]
    outcome = await LogStreamConsumer(sink).consume(_iterate(raw))
    assert outcome.verdict == "succeeded"
    assert len(sink.logs) == 3
    assert sink.logs[1].message == "A skipped ○"
    assert sink.statuses[-1] == ("A", ProducerStatus.SKIPPED)


@pytest.mark.asyncio
async def test_unexpected_close_is_connectivity_error_and_keeps_logs():
    sink = RecordingSink()
    events = _happy_events()[:3]
    with pytest.raises(ConnectivityError):
        await LogStreamConsumer(sink).consume(_iterate(events))
    assert len(sink.logs) == 3


@pytest.mark.asyncio
async def test_stream_exception_is_connectivity_error():
    sink = RecordingSink()
    with pytest.raises(ConnectivityError) as ei:
        await LogStreamConsumer(sink).consume(_iterate(_happy_events()[:2], fail_with=OSError("reset by peer")))
    assert "reset by peer" in str(ei.value)
    assert len(sink.logs) == 2


@pytest.mark.asyncio
async def test_close_without_terminal_while_stopping_is_not_an_error():
    sink = RecordingSink(stopping=True)
    outcome = await LogStreamConsumer(sink).consume(_iterate(_happy_events()[:3]))
    assert not outcome.terminal
    assert len(sink.logs) == 3


@pytest.mark.asyncio
async def test_unrecognised_job_status_is_logged_not_fatal():
    sink = RecordingSink()
    raw = [
        {"type": "job-start", "job_id": "Producer:A", "producer": "A", "layer_index": 0},
        {"type": "job-complete", "job_id": "Producer:A", "producer": "A", "status": "cancelled"},
        {"type": "job-start", "job_id": "Producer:B", "producer": "B", "layer_index": 0},
        {"type": "job-complete", "job_id": "Producer:B", "producer": "B", "status": "not-run-yet"},
        {"type": "execution-complete", "status": "succeeded"},
    ]
    outcome = await LogStreamConsumer(sink).consume(_iterate(raw))
    assert outcome.verdict == "succeeded"
    assert sink.statuses == [
        ("A", ProducerStatus.RUNNING),
        ("B", ProducerStatus.RUNNING),
        ("B", ProducerStatus.NOT_RUN_YET),
    ]
    assert sink.logs[1].type == LogEntryType.JOB_COMPLETE
    assert sink.logs[1].message == "A cancelled"
    assert sink.logs[1].status == "cancelled"
