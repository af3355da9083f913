"""Publisher for usage totals reported to an external metering sink.

The publisher is constructed and started explicitly by whoever owns the
process lifecycle.  Reports submitted before :meth:`MeterEventPublisher.start`
wait in a bounded queue; a single worker task drains it in order and resolves
the future handed back by :meth:`MeterEventPublisher.publish`.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel

from credit_engine.config import Settings
from credit_engine.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class PublisherState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


class MeterReport(BaseModel):
    """A period total for one customer.

    ``identifier`` is derived from the period, owner and value, so the sink
    can drop an exact repeat of the same report.
    """

    customer_id: str
    value: int
    identifier: str
    timestamp: int | None = None


class MeterSink(Protocol):
    async def report(self, customer_id: str, value: int, *, identifier: str, timestamp: int | None) -> None: ...


class StripeMeterSink:
    """Sends meter events to Stripe Billing Meters.

    The meter is expected to aggregate with "last" so that the reported
    total replaces, rather than adds to, earlier reports for the period.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _get_stripe(self) -> Any:
        """Lazily import and configure the Stripe library."""
        import stripe

        stripe.api_key = self._settings.stripe_secret_key.get_secret_value()
        return stripe

    async def report(self, customer_id: str, value: int, *, identifier: str, timestamp: int | None) -> None:
        stripe = self._get_stripe()
        params: dict[str, Any] = {
            "event_name": self._settings.meter_event_name,
            "payload": {"stripe_customer_id": customer_id, "value": str(int(value))},
            "identifier": identifier,
        }
        if timestamp is not None:
            params["timestamp"] = timestamp
        await asyncio.to_thread(stripe.billing.MeterEvent.create, **params)
        logger.debug("Sent meter event %s for customer %s value=%d", identifier, customer_id, value)


class MeterEventPublisher:
    """Queues meter reports and sends them to a :class:`MeterSink`.

    Parameters
    ----------
    sink:
        Destination for reports.
    max_queue_size:
        Reports allowed to wait; ``publish`` fails once the queue is full.
    timeout_seconds:
        Upper bound on a single sink call.
    """

    def __init__(
        self,
        sink: MeterSink,
        *,
        max_queue_size: int = 1000,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._sink = sink
        self._timeout = timeout_seconds
        self._queue: asyncio.Queue[tuple[MeterReport, asyncio.Future[None]]] = asyncio.Queue(maxsize=max_queue_size)
        self._state = PublisherState.CREATED
        self._task: asyncio.Task[None] | None = None

    @classmethod
    def from_settings(cls, sink: MeterSink, settings: Settings) -> MeterEventPublisher:
        return cls(
            sink,
            max_queue_size=settings.meter_queue_max_size,
            timeout_seconds=settings.external_call_timeout_seconds,
        )

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Start the worker; reports queued so far are sent in order."""
        if self._state is not PublisherState.CREATED:
            logger.warning("MeterEventPublisher in state %s; ignoring start()", self._state.value)
            return
        self._state = PublisherState.RUNNING
        self._task = asyncio.create_task(self._run())
        logger.info("MeterEventPublisher started with %d queued report(s)", self._queue.qsize())

    async def publish(self, report: MeterReport) -> asyncio.Future[None]:
        """Queue *report*.  Await the returned future for the send outcome.

        Raises
        ------
        ExternalServiceError
            If the publisher is closing/closed or the queue is full.
        """
        if self._state in (PublisherState.CLOSING, PublisherState.CLOSED):
            raise ExternalServiceError("meter_publisher", "publisher is closed")
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((report, future))
        except asyncio.QueueFull as exc:
            raise ExternalServiceError("meter_publisher", "report queue is full") from exc
        return future

    async def close(self) -> None:
        """Drain queued reports, then stop the worker.

        Reports still queued on a publisher that was never started are failed.
        """
        if self._state is PublisherState.CLOSED:
            return
        was_running = self._state is PublisherState.RUNNING
        self._state = PublisherState.CLOSING
        if was_running:
            await self._queue.join()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        while not self._queue.empty():
            _report, future = self._queue.get_nowait()
            if not future.done():
                future.set_exception(ExternalServiceError("meter_publisher", "publisher closed before sending"))
            self._queue.task_done()
        self._state = PublisherState.CLOSED
        logger.info("MeterEventPublisher closed")

    async def _run(self) -> None:
        while True:
            report, future = await self._queue.get()
            try:
                await self._send(report, future)
            finally:
                self._queue.task_done()

    async def _send(self, report: MeterReport, future: asyncio.Future[None]) -> None:
        if report.value <= 0:
            logger.debug("Skipping meter report %s with non-positive value", report.identifier)
            future.set_result(None)
            return
        try:
            await asyncio.wait_for(
                self._sink.report(
                    report.customer_id,
                    report.value,
                    identifier=report.identifier,
                    timestamp=report.timestamp,
                ),
                timeout=self._timeout,
            )
        except asyncio.CancelledError:
            if not future.done():
                future.set_exception(ExternalServiceError("meter_sink", "send cancelled"))
            raise
        except TimeoutError:
            logger.error("Meter report %s timed out after %.1fs", report.identifier, self._timeout)
            future.set_exception(ExternalServiceError("meter_sink", f"timed out after {self._timeout}s"))
        except Exception as exc:
            logger.error("Meter report %s failed: %s", report.identifier, exc, exc_info=True)
            future.set_exception(ExternalServiceError("meter_sink", str(exc)))
        else:
            future.set_result(None)
