"""Operator tool: list or replay dead-lettered pipeline messages."""

import argparse
import json
import logging
from typing import List, Optional

from leadpipe.core.config import ConfigError, get_settings
from leadpipe.queues.base import SCORE_QUEUE, SCRAPE_QUEUE, RedeliveryQueue
from leadpipe.queues.factory import get_queue

logger = logging.getLogger(__name__)


def replay(queue: RedeliveryQueue, message_ids: Optional[List[str]] = None, limit: int = 100) -> int:
    """Replay the given messages, or every dead letter up to ``limit``."""
    if not message_ids:
        message_ids = [dead.message_id for dead in queue.dead_letters(limit)]

    replayed = 0
    for message_id in message_ids:
        if queue.replay_dead_letter(message_id):
            replayed += 1
        else:
            logger.warning("Message %s is not dead-lettered on %s", message_id, queue.name)
    logger.info("Replayed %d/%d message(s) on %s", replayed, len(message_ids), queue.name)
    return replayed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect or replay dead-lettered messages")
    parser.add_argument("queue", choices=[SCRAPE_QUEUE, SCORE_QUEUE])
    parser.add_argument("--list", dest="list_only", action="store_true", help="Print dead letters and exit")
    parser.add_argument("--id", dest="message_ids", action="append", help="Message id to replay (repeatable)")
    parser.add_argument("--limit", type=int, default=100, help="Maximum dead letters to list or replay")
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        queue = get_queue(args.queue, get_settings())
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc

    if args.list_only:
        for dead in queue.dead_letters(args.limit):
            print(
                json.dumps(
                    {
                        "messageId": dead.message_id,
                        "receiveCount": dead.receive_count,
                        "deadLetteredAt": dead.dead_lettered_at.isoformat(),
                        "lastError": dead.last_error,
                        "body": dead.body,
                    }
                )
            )
        return

    replay(queue, args.message_ids, args.limit)


if __name__ == "__main__":
    main()
