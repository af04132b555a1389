"""Ordered execution event stream and its consumer.

EventStream is the transport between an executor and a consumer: a bounded
queue (publishers wait when it is full) with an explicit terminal state.
LogStreamConsumer drains one stream into an append-only log and per-producer
statuses through a sink owned by the state machine.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional, Protocol

from pydantic import BaseModel

from . import metrics
from .config import get_settings
from .errors import ConnectivityError
from .models import ExecutionLogEntry, LogEntryType, ProducerStatus
from .schemas import parse_event

logger = logging.getLogger(__name__)


class StreamState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


_END = object()


class EventStream:
    def __init__(self, maxsize: Optional[int] = None):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or get_settings().STREAM_QUEUE_SIZE)
        self._state = StreamState.OPEN
        self._error: Optional[BaseException] = None
        self._drained = False

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state != StreamState.OPEN

    async def publish(self, event: Any) -> None:
        if self._state != StreamState.OPEN:
            raise ConnectivityError(f"cannot publish to a {self._state.value} stream")
        await self._queue.put(event)

    async def close(self) -> None:
        if self._state != StreamState.OPEN:
            return
        self._state = StreamState.CLOSED
        await self._queue.put(_END)

    async def fail(self, exc: BaseException) -> None:
        if self._state != StreamState.OPEN:
            return
        self._state = StreamState.FAILED
        self._error = exc
        await self._queue.put(_END)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Any:
        if self._drained:
            self._raise_end()
        item = await self._queue.get()
        if item is _END:
            self._drained = True
            self._raise_end()
        return item

    def _raise_end(self):
        if self._error is not None:
            raise ConnectivityError(f"Execution stream failed: {self._error}") from self._error
        raise StopAsyncIteration


# ==========================================================================
# Consumer
# ==========================================================================

class StreamSink(Protocol):
    def append_log(self, entry: ExecutionLogEntry) -> None:
        ...

    def set_producer_status(self, producer: str, status: ProducerStatus) -> None:
        ...

    def is_stopping(self) -> bool:
        ...


@dataclass
class StreamOutcome:
    # executor verdict from execution-complete: succeeded | failed | partial
    verdict: Optional[str] = None
    cancelled: bool = False
    error: Optional[str] = None
    events: int = 0

    @property
    def terminal(self) -> bool:
        return self.verdict is not None or self.cancelled or self.error is not None


_JOB_STATUS = {
    "succeeded": ProducerStatus.SUCCESS,
    "failed": ProducerStatus.ERROR,
    "skipped": ProducerStatus.SKIPPED,
}


def _job_status(value: str) -> Optional[ProducerStatus]:
    if value in _JOB_STATUS:
        return _JOB_STATUS[value]
    try:
        return ProducerStatus(value)
    except ValueError:
        return None


class LogStreamConsumer:
    def __init__(self, sink: StreamSink):
        self._sink = sink

    async def consume(self, events: AsyncIterator[Any]) -> StreamOutcome:
        """Drain ``events`` until the stream closes.

        Raises ConnectivityError when the stream breaks, or when it closes
        without a terminal event while no cancellation was requested. Entries
        appended before the failure are kept.
        """
        outcome = StreamOutcome()
        try:
            async for raw in events:
                event = raw if isinstance(raw, BaseModel) else parse_event(raw)
                outcome.events += 1
                self._handle(event, outcome)
        except ConnectivityError:
            raise
        except Exception as exc:
            logger.exception("execution stream broke after %d event(s)", outcome.events)
            raise ConnectivityError(f"Execution stream failed: {exc}") from exc
        if not outcome.terminal and not self._sink.is_stopping():
            raise ConnectivityError("Execution stream closed before a terminal event")
        return outcome

    def _append(self, type_: LogEntryType, message: str, event: Any, **kw) -> None:
        self._sink.append_log(ExecutionLogEntry(type=type_, message=message, timestamp=event.timestamp, **kw))

    def _handle(self, event: Any, outcome: StreamOutcome) -> None:
        kind = event.type
        metrics.stream_events_total.labels(kind).inc()
        if kind == "status":
            return
        if kind == "plan-ready":
            self._append(LogEntryType.INFO,
                         f"Plan ready: {event.total_layers} layer(s), {event.total_jobs} job(s)", event)
        elif kind == "layer-start":
            self._append(LogEntryType.LAYER_START,
                         f"--- Layer {event.layer_index}, will run {event.job_count} job(s) ---",
                         event, layer_index=event.layer_index)
        elif kind == "layer-skipped":
            self._append(LogEntryType.LAYER_SKIPPED,
                         f"Layer {event.layer_index} skipped (using existing artifacts)",
                         event, layer_index=event.layer_index)
        elif kind == "job-start":
            self._sink.set_producer_status(event.producer, ProducerStatus.RUNNING)
            self._append(LogEntryType.JOB_START, f"Starting {event.producer}...", event,
                         layer_index=event.layer_index, job_id=event.job_id, producer=event.producer)
        elif kind == "job-complete":
            status = _job_status(event.status)
            if status is not None:
                self._sink.set_producer_status(event.producer, status)
            else:
                logger.warning("job %s reported unknown status %r; producer status unchanged",
                               event.job_id, event.status)
            if event.status == "succeeded":
                message = f"{event.producer} completed successfully ✓"
            elif event.status == "failed":
                metrics.producer_failures_total.inc()
                message = f"{event.producer} failed ✗"
            elif event.status == "skipped":
                message = f"{event.producer} skipped ○"
            else:
                message = f"{event.producer} {event.status}"
            self._append(LogEntryType.JOB_COMPLETE, message, event, status=event.status,
                         error_details=event.error_message, layer_index=event.layer_index,
                         job_id=event.job_id, producer=event.producer)
        elif kind == "layer-complete":
            self._append(LogEntryType.LAYER_COMPLETE,
                         f"Layer {event.layer_index} complete: {event.succeeded} succeeded, "
                         f"{event.failed} failed, {event.skipped} skipped",
                         event, layer_index=event.layer_index)
        elif kind == "execution-complete":
            outcome.verdict = event.status
            s = event.summary
            if event.status == "succeeded":
                self._append(LogEntryType.INFO,
                             f"Execution completed successfully ({s.jobs_succeeded} job(s) succeeded)",
                             event, status=event.status)
            elif event.status == "partial":
                self._append(LogEntryType.INFO, "Execution completed with some failures", event,
                             status=event.status,
                             error_details=f"{s.jobs_failed} job(s) failed")
            else:
                self._append(LogEntryType.ERROR, "Execution failed", event, status=event.status)
        elif kind == "execution-cancelled":
            outcome.cancelled = True
            self._append(LogEntryType.INFO, event.message, event, status="cancelled")
        elif kind == "error":
            outcome.error = event.message
            self._append(LogEntryType.ERROR, event.message, event, error_details=event.code)
        elif kind == "info":
            self._append(LogEntryType.INFO, event.message, event)
        else:
            logger.warning("ignoring unknown execution event type %s", kind)
