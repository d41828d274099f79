"""Campaign and campaign-run persistence.

Run counters are only ever changed by a single ``UPDATE ... SET x = x + n``
so concurrent workers never lose increments; status changes are
compare-and-set on ``status = 'running'`` so exactly one writer terminates a
run.
"""

import logging
from typing import Any, Dict, Optional, Set, Tuple

from psycopg2 import extras

from leadpipe.core import db
from leadpipe.core.errors import RunAlreadyActive
from leadpipe.models import Campaign, CampaignRun, ProgressDelta, RunStatus, SearchQuery

logger = logging.getLogger(__name__)

_RUN_COLUMNS = """
    id, campaign_id, status, queries_total, queries_executed, leads_found,
    duplicates_skipped, error_count, error_messages, degraded, started_at, completed_at
"""

_SELECT_CAMPAIGN = """
SELECT id, name, queries_ref, queries_count, queries_confirmed_at, max_results_per_search,
       max_total_requests, enable_scraping, enable_scoring, skip_cached_searches
  FROM campaigns
 WHERE id = %(id)s
"""

_INSERT_RUN = f"""
INSERT INTO campaign_runs (campaign_id, status, queries_total)
VALUES (%(campaign_id)s, 'running', %(queries_total)s)
RETURNING {_RUN_COLUMNS}
"""

_SELECT_RUN = f"SELECT {_RUN_COLUMNS} FROM campaign_runs WHERE id = %(id)s"

# queries_executed is clamped so it can never pass queries_total.
_INCREMENT_RUN = f"""
UPDATE campaign_runs
   SET queries_executed = LEAST(queries_executed + %(queries_executed)s, queries_total),
       leads_found = leads_found + %(leads_found)s,
       duplicates_skipped = duplicates_skipped + %(duplicates_skipped)s,
       error_count = error_count + %(error_count)s,
       error_messages = (error_messages || %(error_messages)s::text[])[1:%(error_limit)s]
 WHERE id = %(id)s
RETURNING {_RUN_COLUMNS}
"""

_TERMINATE_RUN = f"""
UPDATE campaign_runs
   SET status = %(status)s,
       degraded = degraded OR %(degraded)s,
       error_messages = (error_messages || %(error_messages)s::text[])[1:%(error_limit)s],
       completed_at = NOW()
 WHERE id = %(id)s
   AND status = 'running'
RETURNING {_RUN_COLUMNS}
"""

_SELECT_EXECUTED_SEARCHES = """
SELECT text_query, included_type FROM searches_executed WHERE campaign_id = %(campaign_id)s
"""

_RECORD_SEARCH = """
INSERT INTO searches_executed (campaign_id, text_query, included_type)
VALUES (%(campaign_id)s, %(text_query)s, %(included_type)s)
ON CONFLICT (campaign_id, text_query, included_type) DO UPDATE SET executed_at = NOW()
"""


def row_to_campaign(row: Dict[str, Any]) -> Campaign:
    return Campaign(
        id=str(row["id"]),
        name=row["name"],
        queries_ref=row.get("queries_ref"),
        queries_count=row.get("queries_count") or 0,
        queries_confirmed_at=row.get("queries_confirmed_at"),
        max_results_per_search=row.get("max_results_per_search") or 60,
        max_total_requests=row.get("max_total_requests"),
        enable_scraping=bool(row.get("enable_scraping")),
        enable_scoring=bool(row.get("enable_scoring")),
        skip_cached_searches=bool(row.get("skip_cached_searches")),
    )


def row_to_run(row: Dict[str, Any]) -> CampaignRun:
    return CampaignRun(
        id=str(row["id"]),
        campaign_id=str(row["campaign_id"]),
        status=RunStatus(row["status"]),
        queries_total=row["queries_total"],
        queries_executed=row["queries_executed"],
        leads_found=row["leads_found"],
        duplicates_skipped=row["duplicates_skipped"],
        error_count=row["error_count"],
        error_messages=list(row.get("error_messages") or []),
        degraded=bool(row.get("degraded")),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
    )


class CampaignRepository:
    def __init__(self, error_messages_limit: int = 50) -> None:
        self.error_messages_limit = error_messages_limit

    def _fetch_one(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with db.get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.rollback()
        return row

    def _write_one(self, sql: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with db.transaction() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return cur.fetchone()

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        row = self._fetch_one(_SELECT_CAMPAIGN, {"id": campaign_id})
        return row_to_campaign(row) if row else None

    def create_run(self, campaign_id: str, queries_total: int) -> CampaignRun:
        try:
            row = self._write_one(_INSERT_RUN, {"campaign_id": campaign_id, "queries_total": queries_total})
        except Exception as exc:
            if db.is_unique_violation(exc):
                raise RunAlreadyActive(f"campaign {campaign_id} already has a running run") from exc
            raise
        run = row_to_run(row)
        logger.info("Created campaign run %s for campaign %s (queries_total=%d)", run.id, campaign_id, queries_total)
        return run

    def get_run(self, run_id: str) -> Optional[CampaignRun]:
        row = self._fetch_one(_SELECT_RUN, {"id": run_id})
        return row_to_run(row) if row else None

    def increment_run(self, run_id: str, delta: ProgressDelta) -> Optional[CampaignRun]:
        row = self._write_one(
            _INCREMENT_RUN,
            {
                "id": run_id,
                "queries_executed": delta.queries_executed,
                "leads_found": delta.leads_found,
                "duplicates_skipped": delta.duplicates_skipped,
                "error_count": delta.error_count,
                "error_messages": [m[:500] for m in delta.error_messages],
                "error_limit": self.error_messages_limit,
            },
        )
        return row_to_run(row) if row else None

    def terminate_run(
        self,
        run_id: str,
        status: RunStatus,
        degraded: bool = False,
        message: Optional[str] = None,
    ) -> Optional[CampaignRun]:
        """Move a running run to a terminal status; None if it already left running."""
        if status is RunStatus.RUNNING:
            raise ValueError("terminate_run needs a terminal status")
        row = self._write_one(
            _TERMINATE_RUN,
            {
                "id": run_id,
                "status": status.value,
                "degraded": degraded,
                "error_messages": [message[:500]] if message else [],
                "error_limit": self.error_messages_limit,
            },
        )
        return row_to_run(row) if row else None

    def executed_searches(self, campaign_id: str) -> Set[Tuple[str, str]]:
        with db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(_SELECT_EXECUTED_SEARCHES, {"campaign_id": campaign_id})
                rows = cur.fetchall()
            conn.rollback()
        return {(text, included or "") for text, included in rows}

    def record_search(self, campaign_id: str, query: SearchQuery) -> None:
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    _RECORD_SEARCH,
                    {
                        "campaign_id": campaign_id,
                        "text_query": query.text_query,
                        "included_type": query.included_type or "",
                    },
                )
