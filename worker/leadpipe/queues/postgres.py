"""Queue backed by the ``queue_messages`` table in the lead database.

Living in the same database as the leads lets producers enqueue inside the
transaction that writes the row, so a committed lead always has its message.
Leases use ``FOR UPDATE SKIP LOCKED`` so concurrent consumers never receive
the same visible message.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from psycopg2 import extras

from leadpipe.core import db
from leadpipe.queues.base import DeadLetter, ReceivedMessage, RedeliveryPolicy, RedeliveryQueue

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 1.0

_INSERT = """
INSERT INTO queue_messages (queue_name, body)
VALUES (%(queue)s, %(body)s)
RETURNING id
"""

# A lease that expired on its final delivery is dead-lettered before new
# leases are handed out.
_EXPIRE_TO_DEAD_LETTER = """
UPDATE queue_messages
   SET dead_lettered_at = NOW(),
       receipt = NULL,
       last_error = COALESCE(last_error, 'visibility timeout expired')
 WHERE queue_name = %(queue)s
   AND dead_lettered_at IS NULL
   AND visible_at <= NOW()
   AND receive_count >= %(max_receive_count)s
RETURNING id
"""

_LEASE = """
WITH ready AS (
    SELECT id
      FROM queue_messages
     WHERE queue_name = %(queue)s
       AND dead_lettered_at IS NULL
       AND visible_at <= NOW()
       AND receive_count < %(max_receive_count)s
     ORDER BY visible_at
     LIMIT %(limit)s
     FOR UPDATE SKIP LOCKED
)
UPDATE queue_messages AS m
   SET receive_count = m.receive_count + 1,
       receipt = gen_random_uuid(),
       visible_at = NOW() + make_interval(secs => %(visibility_timeout)s)
  FROM ready
 WHERE m.id = ready.id
RETURNING m.id, m.receipt, m.body, m.receive_count
"""

_ACK = """
DELETE FROM queue_messages
 WHERE id = %(id)s
   AND receipt = %(receipt)s
   AND dead_lettered_at IS NULL
"""

_NACK = """
UPDATE queue_messages
   SET receipt = NULL,
       last_error = %(error)s,
       dead_lettered_at = CASE WHEN receive_count >= %(max_receive_count)s THEN NOW() ELSE NULL END,
       visible_at = NOW() + make_interval(secs => %(delay)s)
 WHERE id = %(id)s
   AND receipt = %(receipt)s
   AND dead_lettered_at IS NULL
RETURNING dead_lettered_at IS NOT NULL AS dead_lettered
"""

_DEAD_LETTERS = """
SELECT id, body, receive_count, dead_lettered_at, last_error
  FROM queue_messages
 WHERE queue_name = %(queue)s
   AND dead_lettered_at IS NOT NULL
 ORDER BY dead_lettered_at
 LIMIT %(limit)s
"""

_REPLAY = """
UPDATE queue_messages
   SET dead_lettered_at = NULL,
       receive_count = 0,
       receipt = NULL,
       visible_at = NOW()
 WHERE id = %(id)s
   AND queue_name = %(queue)s
   AND dead_lettered_at IS NOT NULL
"""

_DEPTH = """
SELECT
    COUNT(*) FILTER (WHERE dead_lettered_at IS NULL AND visible_at <= NOW()) AS visible,
    COUNT(*) FILTER (WHERE dead_lettered_at IS NULL AND visible_at > NOW()) AS in_flight,
    COUNT(*) FILTER (WHERE dead_lettered_at IS NOT NULL) AS dead_lettered
  FROM queue_messages
 WHERE queue_name = %(queue)s
"""


class PostgresQueue(RedeliveryQueue):
    transactional = True

    def __init__(self, name: str, policy: RedeliveryPolicy, poll_interval_s: float = POLL_INTERVAL_S) -> None:
        super().__init__(name, policy)
        self.poll_interval_s = poll_interval_s

    def send(self, body: Dict[str, Any], conn: Any = None) -> str:
        params = {"queue": self.name, "body": extras.Json(body)}
        if conn is not None:
            # Joins the caller's transaction; the caller commits.
            with conn.cursor() as cur:
                cur.execute(_INSERT, params)
                message_id = cur.fetchone()[0]
        else:
            with db.transaction() as own:
                with own.cursor() as cur:
                    cur.execute(_INSERT, params)
                    message_id = cur.fetchone()[0]
        logger.debug("Enqueued %s on %s", message_id, self.name)
        return str(message_id)

    def receive(self, max_messages: int, wait_seconds: float = 0.0) -> List[ReceivedMessage]:
        if max_messages <= 0:
            return []
        deadline = time.monotonic() + wait_seconds
        while True:
            leased = self._lease(max_messages)
            if leased:
                return leased
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            time.sleep(min(self.poll_interval_s, remaining))

    def _lease(self, max_messages: int) -> List[ReceivedMessage]:
        params = {
            "queue": self.name,
            "limit": max_messages,
            "max_receive_count": self.policy.max_receive_count,
            "visibility_timeout": float(self.policy.visibility_timeout_s),
        }
        with db.transaction() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_EXPIRE_TO_DEAD_LETTER, params)
                for row in cur.fetchall():
                    logger.error("Message %s on %s dead-lettered: lease expired on final delivery", row["id"], self.name)
                cur.execute(_LEASE, params)
                rows = cur.fetchall()
        return [
            ReceivedMessage(
                message_id=str(row["id"]),
                receipt=str(row["receipt"]),
                body=row["body"],
                receive_count=row["receive_count"],
            )
            for row in rows
        ]

    def ack(self, message: ReceivedMessage) -> bool:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_ACK, {"id": message.message_id, "receipt": message.receipt})
                deleted = cur.rowcount == 1
        if not deleted:
            logger.warning("Ack for %s on %s ignored: lease lost", message.message_id, self.name)
        return deleted

    def nack(self, message: ReceivedMessage, error: Optional[str] = None, delay_s: float = 0.0) -> bool:
        params = {
            "id": message.message_id,
            "receipt": message.receipt,
            "error": (error or "")[:2000] or None,
            "max_receive_count": self.policy.max_receive_count,
            "delay": float(max(delay_s, 0.0)),
        }
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_NACK, params)
                row = cur.fetchone()
        dead_lettered = bool(row and row[0])
        if dead_lettered:
            logger.error(
                "Message %s on %s dead-lettered after %d deliveries: %s",
                message.message_id,
                self.name,
                message.receive_count,
                error,
            )
        return dead_lettered

    def dead_letters(self, limit: int = 100) -> List[DeadLetter]:
        with db.get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_DEAD_LETTERS, {"queue": self.name, "limit": limit})
                rows = cur.fetchall()
            conn.rollback()
        return [
            DeadLetter(
                message_id=str(row["id"]),
                body=row["body"],
                receive_count=row["receive_count"],
                dead_lettered_at=row["dead_lettered_at"],
                last_error=row["last_error"],
            )
            for row in rows
        ]

    def replay_dead_letter(self, message_id: str) -> bool:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_REPLAY, {"id": message_id, "queue": self.name})
                replayed = cur.rowcount == 1
        if replayed:
            logger.info("Replayed dead letter %s onto %s", message_id, self.name)
        return replayed

    def depth(self) -> Dict[str, int]:
        with db.get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_DEPTH, {"queue": self.name})
                row = cur.fetchone()
            conn.rollback()
        return {key: int(row[key] or 0) for key in ("visible", "in_flight", "dead_lettered")}
