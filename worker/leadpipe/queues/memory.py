"""In-process queue with the same lease and dead-letter semantics as Postgres.

Used for single-process local runs (``QUEUE_BACKEND=memory``); it offers no
durability across restarts.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from leadpipe.queues.base import DeadLetter, ReceivedMessage, RedeliveryPolicy, RedeliveryQueue

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    message_id: str
    body: Dict[str, Any]
    receive_count: int = 0
    visible_at: float = 0.0
    receipt: Optional[str] = None
    dead_lettered_at: Optional[datetime] = None
    last_error: Optional[str] = None


class MemoryQueue(RedeliveryQueue):
    def __init__(
        self,
        name: str,
        policy: RedeliveryPolicy,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name, policy)
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._cond = threading.Condition()

    def send(self, body: Dict[str, Any], conn: Any = None) -> str:
        entry = _Entry(message_id=str(uuid.uuid4()), body=copy.deepcopy(body), visible_at=self._clock())
        with self._cond:
            self._entries[entry.message_id] = entry
            self._cond.notify_all()
        logger.debug("Enqueued %s on %s", entry.message_id, self.name)
        return entry.message_id

    def receive(self, max_messages: int, wait_seconds: float = 0.0) -> List[ReceivedMessage]:
        if max_messages <= 0:
            return []
        deadline = time.monotonic() + wait_seconds
        with self._cond:
            while True:
                leased = self._lease(max_messages)
                if leased:
                    return leased
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(timeout=min(remaining, 0.5))

    def _lease(self, max_messages: int) -> List[ReceivedMessage]:
        now = self._clock()
        leased: List[ReceivedMessage] = []
        for entry in sorted(self._entries.values(), key=lambda e: e.visible_at):
            if len(leased) >= max_messages:
                break
            if entry.dead_lettered_at is not None or entry.visible_at > now:
                continue
            if entry.receive_count >= self.policy.max_receive_count:
                # Lease expired after the final delivery without an ack.
                self._dead_letter(entry, entry.last_error or "visibility timeout expired")
                continue
            entry.receive_count += 1
            entry.receipt = str(uuid.uuid4())
            entry.visible_at = now + self.policy.visibility_timeout_s
            leased.append(
                ReceivedMessage(
                    message_id=entry.message_id,
                    receipt=entry.receipt,
                    body=copy.deepcopy(entry.body),
                    receive_count=entry.receive_count,
                )
            )
        return leased

    def _holds_lease(self, message: ReceivedMessage) -> Optional[_Entry]:
        entry = self._entries.get(message.message_id)
        if entry is None or entry.receipt != message.receipt or entry.dead_lettered_at is not None:
            return None
        return entry

    def ack(self, message: ReceivedMessage) -> bool:
        with self._cond:
            if self._holds_lease(message) is None:
                logger.warning("Ack for %s on %s ignored: lease lost", message.message_id, self.name)
                return False
            del self._entries[message.message_id]
            return True

    def nack(self, message: ReceivedMessage, error: Optional[str] = None, delay_s: float = 0.0) -> bool:
        with self._cond:
            entry = self._holds_lease(message)
            if entry is None:
                return False
            entry.last_error = error
            entry.receipt = None
            if entry.receive_count >= self.policy.max_receive_count:
                self._dead_letter(entry, error)
                return True
            entry.visible_at = self._clock() + max(delay_s, 0.0)
            self._cond.notify_all()
            return False

    def _dead_letter(self, entry: _Entry, error: Optional[str]) -> None:
        entry.dead_lettered_at = datetime.now(timezone.utc)
        entry.last_error = error
        entry.receipt = None
        logger.error(
            "Message %s on %s dead-lettered after %d deliveries: %s",
            entry.message_id,
            self.name,
            entry.receive_count,
            error,
        )

    def dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        with self._cond:
            dead = [e for e in self._entries.values() if e.dead_lettered_at is not None]
        dead.sort(key=lambda e: e.dead_lettered_at)
        return [
            DeadLetter(
                message_id=e.message_id,
                body=copy.deepcopy(e.body),
                receive_count=e.receive_count,
                dead_lettered_at=e.dead_lettered_at,
                last_error=e.last_error,
            )
            for e in dead[:limit]
        ]

    def replay_dead_letter(self, message_id: str) -> bool:
        with self._cond:
            entry = self._entries.get(message_id)
            if entry is None or entry.dead_lettered_at is None:
                return False
            entry.dead_lettered_at = None
            entry.receive_count = 0
            entry.visible_at = self._clock()
            self._cond.notify_all()
        logger.info("Replayed dead letter %s onto %s", message_id, self.name)
        return True

    def depth(self) -> Dict[str, int]:
        now = self._clock()
        counts = {"visible": 0, "in_flight": 0, "dead_lettered": 0}
        with self._cond:
            for entry in self._entries.values():
                if entry.dead_lettered_at is not None:
                    counts["dead_lettered"] += 1
                elif entry.visible_at > now and entry.receipt is not None:
                    counts["in_flight"] += 1
                else:
                    counts["visible"] += 1
        return counts
