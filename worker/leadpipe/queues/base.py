"""Bounded-redelivery queue contract shared by the scrape and score stages.

A message is leased on receive and stays invisible to other consumers until it
is acknowledged or its visibility timeout lapses. The delivery count kept by
the queue is the only retry signal: once a message has been received
``max_receive_count`` times without an ack it moves to the dead-letter state
and is never delivered again until an operator replays it.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

SCRAPE_QUEUE = "scrape-requests"
SCORE_QUEUE = "score-requests"


@dataclass(frozen=True)
class RedeliveryPolicy:
    visibility_timeout_s: float
    max_receive_count: int = 3

    def __post_init__(self) -> None:
        if self.visibility_timeout_s <= 0:
            raise ValueError("visibility_timeout_s must be positive")
        if self.max_receive_count < 1:
            raise ValueError("max_receive_count must be at least 1")


@dataclass(frozen=True)
class ReceivedMessage:
    message_id: str
    receipt: str
    body: Dict[str, Any]
    receive_count: int


@dataclass(frozen=True)
class DeadLetter:
    message_id: str
    body: Dict[str, Any]
    receive_count: int
    dead_lettered_at: datetime
    last_error: Optional[str] = None


class RedeliveryQueue(abc.ABC):
    """A named queue with a companion dead-letter state."""

    #: True when ``send`` can join the caller's database transaction.
    transactional = False

    def __init__(self, name: str, policy: RedeliveryPolicy) -> None:
        self.name = name
        self.policy = policy

    @abc.abstractmethod
    def send(self, body: Dict[str, Any], conn: Any = None) -> str:
        """Enqueue ``body``; returns the message id."""

    @abc.abstractmethod
    def receive(self, max_messages: int, wait_seconds: float = 0.0) -> List[ReceivedMessage]:
        """Lease up to ``max_messages`` visible messages."""

    @abc.abstractmethod
    def ack(self, message: ReceivedMessage) -> bool:
        """Delete a leased message. Returns False if the lease was lost."""

    @abc.abstractmethod
    def nack(self, message: ReceivedMessage, error: Optional[str] = None, delay_s: float = 0.0) -> bool:
        """Give a failed message back to the queue.

        Returns True when the message was dead-lettered because it reached the
        delivery limit.
        """

    @abc.abstractmethod
    def dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        ...

    @abc.abstractmethod
    def replay_dead_letter(self, message_id: str) -> bool:
        """Move a dead-lettered message back to the primary queue."""

    @abc.abstractmethod
    def depth(self) -> Dict[str, int]:
        """Counts of visible, in-flight and dead-lettered messages."""
