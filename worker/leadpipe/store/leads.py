"""Lead persistence: dedup-on-insert and whole-field stage writes."""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg2 import extras

from leadpipe.core import db
from leadpipe.models import Lead, ScoreResult

logger = logging.getLogger(__name__)

AfterInsert = Callable[[str, Any], None]


def _prepare_params(row: Dict[str, Any]) -> Dict[str, Any]:
    def _str_or_none(value: Any) -> Optional[str]:
        return str(value) if value is not None else None

    return {
        "place_id": row.get("place_id"),
        "campaign_id": _str_or_none(row.get("campaign_id")),
        "campaign_run_id": _str_or_none(row.get("campaign_run_id")),
        "name": row.get("name"),
        "address": row.get("address"),
        "city": row.get("city"),
        "state": row.get("state"),
        "phone": row.get("phone"),
        "website": row.get("website"),
        "rating": row.get("rating"),
        "review_count": row.get("review_count"),
        "business_type": row.get("business_type"),
        "raw": extras.Json(row.get("raw") or {}),
    }


# DO NOTHING rather than DO UPDATE: a conflicting place_id is a duplicate to be
# counted, and the existing row keeps its scrape/score state.
_INSERT_LEAD = """
INSERT INTO leads (
    place_id,
    campaign_id,
    campaign_run_id,
    name,
    address,
    city,
    state,
    phone,
    website,
    rating,
    review_count,
    business_type,
    raw
) VALUES (
    %(place_id)s,
    %(campaign_id)s,
    %(campaign_run_id)s,
    %(name)s,
    %(address)s,
    %(city)s,
    %(state)s,
    %(phone)s,
    %(website)s,
    %(rating)s,
    %(review_count)s,
    %(business_type)s,
    %(raw)s
)
ON CONFLICT (place_id) DO NOTHING
RETURNING id
"""

_SELECT_LEAD = """
SELECT id, place_id, name, campaign_id, campaign_run_id, address, city, state, phone,
       website, rating, review_count, business_type, scraped_content, scraped_at,
       scrape_error, qualification_score, qualification_notes, scored_at
  FROM leads
 WHERE id = %(id)s
"""

# Overwrite, never append; an older write arriving late must not clobber a
# newer one.
_WRITE_SCRAPED = """
UPDATE leads
   SET scraped_content = %(content)s,
       scraped_at = %(scraped_at)s,
       scrape_error = %(scrape_error)s,
       updated_at = NOW()
 WHERE id = %(id)s
   AND (scraped_at IS NULL OR scraped_at <= %(scraped_at)s)
"""

_WRITE_SCORE = """
UPDATE leads
   SET qualification_score = %(score)s,
       qualification_notes = %(notes)s,
       scored_at = NOW(),
       updated_at = NOW()
 WHERE id = %(id)s
"""

DEFAULT_BACKFILL_LIMIT = 1000

_LEAD_COLUMNS = """
l.id, l.place_id, l.name, l.campaign_id, l.campaign_run_id, l.address, l.city, l.state, l.phone,
l.website, l.rating, l.review_count, l.business_type, l.scraped_content, l.scraped_at,
l.scrape_error, l.qualification_score, l.qualification_notes, l.scored_at
"""

# Leads that have a website nobody has crawled yet.
_NEEDING_SCRAPE = f"""
SELECT {_LEAD_COLUMNS}
  FROM leads l
 WHERE l.campaign_id IS NOT NULL
   AND l.website IS NOT NULL
   AND l.website <> ''
   AND l.scraped_at IS NULL
"""

# Unscored leads whose scrape is done or will never happen.
_NEEDING_SCORE = f"""
SELECT {_LEAD_COLUMNS}
  FROM leads l
  JOIN campaigns c ON c.id = l.campaign_id
 WHERE l.qualification_score IS NULL
   AND (
        l.scraped_at IS NOT NULL
        OR NOT c.enable_scraping
        OR l.website IS NULL
        OR l.website = ''
   )
"""

_BACKFILL_TAIL = """
 ORDER BY l.created_at
 LIMIT %(limit)s
"""


def row_to_lead(row: Dict[str, Any]) -> Lead:
    rating = row.get("rating")
    return Lead(
        id=str(row["id"]),
        place_id=row["place_id"],
        name=row["name"],
        campaign_id=str(row["campaign_id"]) if row.get("campaign_id") else None,
        campaign_run_id=str(row["campaign_run_id"]) if row.get("campaign_run_id") else None,
        address=row.get("address"),
        city=row.get("city"),
        state=row.get("state"),
        phone=row.get("phone"),
        website=row.get("website"),
        rating=float(rating) if rating is not None else None,
        review_count=row.get("review_count"),
        business_type=row.get("business_type"),
        scraped_content=row.get("scraped_content"),
        scraped_at=row.get("scraped_at"),
        scrape_error=row.get("scrape_error"),
        qualification_score=row.get("qualification_score"),
        qualification_notes=row.get("qualification_notes"),
        scored_at=row.get("scored_at"),
    )


class LeadRepository:
    def insert_lead(self, row: Dict[str, Any], after_insert: Optional[AfterInsert] = None) -> Optional[str]:
        """Insert a lead unless its place_id already exists.

        Returns the new lead id, or None for a duplicate. ``after_insert`` runs
        inside the same transaction, so anything it writes commits with the row.
        """
        params = _prepare_params(row)
        if not params["place_id"] or not params["name"]:
            raise ValueError("place_id and name are required for insert")

        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_INSERT_LEAD, params)
                inserted = cur.fetchone()
            if inserted is None:
                logger.debug("Duplicate place_id %s skipped", params["place_id"])
                return None
            lead_id = str(inserted[0])
            if after_insert is not None:
                after_insert(lead_id, conn)
        logger.debug("Inserted lead %s (place_id=%s)", lead_id, params["place_id"])
        return lead_id

    def get_lead(self, lead_id: str) -> Optional[Lead]:
        with db.get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(_SELECT_LEAD, {"id": lead_id})
                row = cur.fetchone()
            conn.rollback()
        return row_to_lead(row) if row else None

    def write_scraped_content(
        self,
        lead_id: str,
        content: Optional[Dict[str, Any]],
        scraped_at: datetime,
        scrape_error: Optional[str] = None,
    ) -> bool:
        params = {
            "id": lead_id,
            "content": extras.Json(content) if content is not None else None,
            "scraped_at": scraped_at,
            "scrape_error": scrape_error,
        }
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_WRITE_SCRAPED, params)
                written = cur.rowcount == 1
        if not written:
            logger.info("Scrape write for lead %s skipped: newer content already stored", lead_id)
        return written

    def write_score(self, lead_id: str, result: ScoreResult) -> bool:
        """Write score and notes together in one statement."""
        result.validate()
        with db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(_WRITE_SCORE, {"id": lead_id, "score": result.score, "notes": result.notes})
                return cur.rowcount == 1

    def _select_leads(self, sql: str, campaign_id: Optional[str], limit: int) -> List[Lead]:
        params: Dict[str, Any] = {"limit": limit}
        if campaign_id:
            sql += "   AND l.campaign_id = %(campaign_id)s\n"
            params["campaign_id"] = campaign_id
        with db.get_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(sql + _BACKFILL_TAIL, params)
                rows = cur.fetchall()
            conn.rollback()
        return [row_to_lead(row) for row in rows]

    def leads_needing_scrape(self, campaign_id: Optional[str] = None, limit: int = DEFAULT_BACKFILL_LIMIT) -> List[Lead]:
        """Oldest-first leads with a website and no scrape attempt yet."""
        return self._select_leads(_NEEDING_SCRAPE, campaign_id, limit)

    def leads_needing_score(self, campaign_id: Optional[str] = None, limit: int = DEFAULT_BACKFILL_LIMIT) -> List[Lead]:
        """Oldest-first unscored leads that are not still waiting on a scrape."""
        return self._select_leads(_NEEDING_SCORE, campaign_id, limit)
