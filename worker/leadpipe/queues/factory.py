"""Build the scrape and score queues from settings."""

from typing import Dict, Optional

from leadpipe.core.config import Settings, get_settings
from leadpipe.queues.base import SCORE_QUEUE, SCRAPE_QUEUE, RedeliveryPolicy, RedeliveryQueue
from leadpipe.queues.memory import MemoryQueue
from leadpipe.queues.postgres import PostgresQueue

_memory_queues: Dict[str, MemoryQueue] = {}


def policy_for(name: str, settings: Settings) -> RedeliveryPolicy:
    if name == SCRAPE_QUEUE:
        timeout = settings.scrape_visibility_timeout_s
    elif name == SCORE_QUEUE:
        timeout = settings.score_visibility_timeout_s
    else:
        raise KeyError(f"unknown queue {name!r}")
    return RedeliveryPolicy(visibility_timeout_s=timeout, max_receive_count=settings.max_receive_count)


def get_queue(name: str, settings: Optional[Settings] = None) -> RedeliveryQueue:
    settings = settings or get_settings()
    policy = policy_for(name, settings)
    if settings.queue_backend == "memory":
        # One instance per process so producers and consumers share state.
        if name not in _memory_queues:
            _memory_queues[name] = MemoryQueue(name, policy)
        return _memory_queues[name]
    return PostgresQueue(name, policy)
