"""Bounded-concurrency queue consumer shared by the scrape and score stages.

Each received message moves ``received -> leased -> completed | requeued |
dead-lettered``. The dispatcher never leases more messages than it has free
worker slots, so a slow stage stops pulling instead of piling up leases whose
visibility timeout would lapse while they wait.
"""

import logging
import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Optional

from leadpipe.core.errors import MalformedMessage
from leadpipe.models import PipelineMessage, decode_message
from leadpipe.queues.base import ReceivedMessage, RedeliveryQueue

logger = logging.getLogger(__name__)

Handler = Callable[[PipelineMessage], None]

RECEIVE_ERROR_BACKOFF_S = 5.0
IDLE_POLL_S = 1.0


def retry_delay_s(receive_count: int, base_s: float, max_s: float) -> float:
    """Exponential backoff with jitter for the next delivery of a failed message."""
    capped = min(base_s * (2 ** max(0, receive_count - 1)), max_s)
    return capped + random.uniform(0.0, min(base_s, capped))


class Dispatcher:
    def __init__(
        self,
        queue: RedeliveryQueue,
        handler: Handler,
        *,
        max_concurrency: int,
        batch_size: int = 10,
        max_batching_window_s: float = 0.0,
        retry_base_delay_s: float = 10.0,
        retry_max_delay_s: float = 300.0,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.queue = queue
        self.handler = handler
        self.max_concurrency = max_concurrency
        self.batch_size = batch_size
        self.max_batching_window_s = max_batching_window_s
        self.retry_base_delay_s = retry_base_delay_s
        self.retry_max_delay_s = retry_max_delay_s
        self._executor = ThreadPoolExecutor(max_workers=max_concurrency, thread_name_prefix=f"{queue.name}-worker")
        self._cond = threading.Condition()
        self._in_flight = 0
        self._stopping = threading.Event()
        self.stats: Dict[str, int] = {"completed": 0, "requeued": 0, "dead_lettered": 0, "malformed": 0, "settle_failed": 0}

    @property
    def in_flight(self) -> int:
        with self._cond:
            return self._in_flight

    def _free_slots(self) -> int:
        with self._cond:
            return self.max_concurrency - self._in_flight

    def poll_once(self, wait_seconds: Optional[float] = None) -> int:
        """Lease as many messages as there are free slots and start them.

        Returns the number of messages handed to workers.
        """
        free = self._free_slots()
        if free <= 0:
            return 0
        wait = self.max_batching_window_s if wait_seconds is None else wait_seconds
        messages = self.queue.receive(min(self.batch_size, free), wait_seconds=wait)
        for message in messages:
            with self._cond:
                self._in_flight += 1
            self._executor.submit(self._process, message)
        return len(messages)

    def _process(self, received: ReceivedMessage) -> None:
        outcome = "settle_failed"
        try:
            outcome = self._handle(received)
        except Exception as exc:  # noqa: BLE001
            # The lease lapses and the queue redelivers the message.
            logger.exception("Could not settle message %s on %s: %s", received.message_id, self.queue.name, exc)
        finally:
            with self._cond:
                self._in_flight -= 1
                self.stats[outcome] += 1
                self._cond.notify_all()

    def _handle(self, received: ReceivedMessage) -> str:
        try:
            message = decode_message(received.body)
            self.handler(message)
        except MalformedMessage as exc:
            # Redelivery cannot fix a bad payload.
            logger.error("Dropping malformed message %s on %s: %s", received.message_id, self.queue.name, exc)
            self.queue.ack(received)
            return "malformed"
        except Exception as exc:  # noqa: BLE001
            delay = retry_delay_s(received.receive_count, self.retry_base_delay_s, self.retry_max_delay_s)
            logger.warning(
                "Message %s on %s failed (delivery %d), next delivery in %.1fs: %s",
                received.message_id,
                self.queue.name,
                received.receive_count,
                delay,
                exc,
            )
            dead = self.queue.nack(received, error=f"{type(exc).__name__}: {exc}", delay_s=delay)
            return "dead_lettered" if dead else "requeued"

        if not self.queue.ack(received):
            logger.warning("Message %s on %s finished after its lease expired", received.message_id, self.queue.name)
        return "completed"

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until no message is in flight; False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
        return True

    def run_until_empty(self) -> None:
        """Process until the queue has nothing visible and nothing is running."""
        while True:
            started = self.poll_once(wait_seconds=0.0)
            if started == 0 and self.in_flight == 0:
                return
            if started == 0:
                with self._cond:
                    self._cond.wait(timeout=0.05)

    def run_forever(self) -> None:
        logger.info(
            "Dispatcher for %s started (max_concurrency=%d, batch_size=%d)",
            self.queue.name,
            self.max_concurrency,
            self.batch_size,
        )
        while not self._stopping.is_set():
            if self._free_slots() <= 0:
                with self._cond:
                    self._cond.wait(timeout=1.0)
                continue
            try:
                started = self.poll_once()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Receive from %s failed: %s", self.queue.name, exc)
                self._stopping.wait(RECEIVE_ERROR_BACKOFF_S)
                continue
            if started == 0 and self.max_batching_window_s < IDLE_POLL_S:
                self._stopping.wait(IDLE_POLL_S)
        logger.info("Dispatcher for %s stopping; waiting for %d in-flight message(s)", self.queue.name, self.in_flight)
        self._executor.shutdown(wait=True)

    def stop(self) -> None:
        self._stopping.set()
        with self._cond:
            self._cond.notify_all()

    def close(self) -> None:
        self.stop()
        self._executor.shutdown(wait=True)
