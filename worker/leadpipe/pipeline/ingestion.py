"""Places ingestion: run a campaign's search queries and write lead rows."""

import json
import logging
import random
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse

import requests

from leadpipe.core.config import Settings, get_settings
from leadpipe.core.errors import PermanentError, TransientError
from leadpipe.etl.transform import to_lead_row
from leadpipe.models import Campaign, ProgressDelta, SearchQuery
from leadpipe.pipeline.bridge import ChangeBridge
from leadpipe.pipeline.orchestrator import CampaignRunOrchestrator
from leadpipe.store.campaigns import CampaignRepository
from leadpipe.store.leads import LeadRepository
from leadpipe.vendors import google_places

logger = logging.getLogger(__name__)

BACKOFF_BASE_S = 1.0
BACKOFF_JITTER_S = 0.5
QUERIES_FETCH_TIMEOUT = 15

SearchFn = Callable[..., Dict[str, Any]]


class BudgetExhausted(Exception):
    """The campaign's max_total_requests has been spent."""


@dataclass
class QueryOutcome:
    leads_found: int = 0
    duplicates_skipped: int = 0
    insert_errors: int = 0


@dataclass
class IngestionSummary:
    queries_run: int = 0
    queries_skipped: int = 0
    requests_made: int = 0
    leads_found: int = 0
    duplicates_skipped: int = 0
    errors: int = 0
    budget_exhausted: bool = False


def _parse_queries(payload: Any) -> List[SearchQuery]:
    items = payload.get("searches", []) if isinstance(payload, dict) else payload
    if not isinstance(items, list):
        raise ValueError("queries document must be a list or an object with a 'searches' list")

    queries: List[SearchQuery] = []
    for item in items:
        if isinstance(item, str):
            text, included_type = item, None
        elif isinstance(item, dict):
            text, included_type = item.get("textQuery"), item.get("includedType")
        else:
            continue
        text = (text or "").strip()
        if text:
            queries.append(SearchQuery(text_query=text, included_type=(included_type or None)))
    return queries


def load_queries(queries_ref: str, session: Optional[requests.Session] = None) -> List[SearchQuery]:
    """Read the search list behind a campaign's ``queries_ref``.

    Accepts an http(s) URL, a ``file://`` URI or a plain filesystem path.
    """
    if not queries_ref:
        raise ValueError("campaign has no queries_ref")

    parsed = urlparse(queries_ref)
    if parsed.scheme in ("http", "https"):
        response = (session or requests).get(queries_ref, timeout=QUERIES_FETCH_TIMEOUT)
        response.raise_for_status()
        payload = response.json()
    else:
        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(queries_ref)
        payload = json.loads(path.read_text(encoding="utf-8"))
    return _parse_queries(payload)


class PlacesIngestionWorker:
    """Executes one campaign run end to end.

    Every Places call, retries included, is charged against the campaign's
    ``max_total_requests``. When the budget runs out the remaining queries
    are abandoned and the run is completed with ``degraded`` set.
    """

    def __init__(
        self,
        campaigns: CampaignRepository,
        leads: LeadRepository,
        orchestrator: CampaignRunOrchestrator,
        bridge: ChangeBridge,
        settings: Optional[Settings] = None,
        search: SearchFn = google_places.text_search,
        rate_limiter: Optional[google_places.RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.campaigns = campaigns
        self.leads = leads
        self.orchestrator = orchestrator
        self.bridge = bridge
        self.settings = settings or get_settings()
        self.search = search
        self.rate_limiter = rate_limiter or google_places.RateLimiter(self.settings.places_requests_per_second)
        self.sleep = sleep

    def run(self, campaign_id: str, run_id: str) -> IngestionSummary:
        campaign = self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise PermanentError(f"campaign {campaign_id} disappeared before ingestion")
        if not self.settings.google_api_key:
            raise PermanentError("GOOGLE_API_KEY is required")

        queries = load_queries(campaign.queries_ref)
        queries_total = self.orchestrator.get_run_status(run_id).queries_total
        if len(queries) > queries_total:
            # The run completes at queries_total; later queries would write into a finished run.
            logger.warning(
                "Run %s: query document has %d searches but the run covers %d; ignoring the rest",
                run_id,
                len(queries),
                queries_total,
            )
            queries = queries[:queries_total]
        already_run = self.campaigns.executed_searches(campaign_id) if campaign.skip_cached_searches else set()
        logger.info("Run %s: %d queries to execute for campaign %s", run_id, len(queries), campaign_id)

        summary = IngestionSummary()
        budget = _RequestBudget(campaign.max_total_requests)

        for query in queries:
            if (query.text_query, query.included_type or "") in already_run:
                logger.info("Skipping cached search %r", query.text_query)
                summary.queries_skipped += 1
                self.orchestrator.record_progress(run_id, ProgressDelta(queries_executed=1))
                continue
            if budget.exhausted:
                summary.budget_exhausted = True
                break

            delta = ProgressDelta(queries_executed=1)
            outcome = QueryOutcome()
            try:
                self._run_query(campaign, run_id, query, budget, outcome)
            except BudgetExhausted:
                summary.budget_exhausted = True
            except (TransientError, PermanentError) as exc:
                logger.warning("Query %r failed: %s", query.text_query, exc)
                delta.error_count += 1
                delta.error_messages.append(f"{query.text_query}: {exc}")
            else:
                self.campaigns.record_search(campaign_id, query)

            if outcome.insert_errors:
                delta.error_count += outcome.insert_errors
                delta.error_messages.append(f"{query.text_query}: {outcome.insert_errors} lead insert(s) failed")
            delta.leads_found = outcome.leads_found
            delta.duplicates_skipped = outcome.duplicates_skipped
            self.orchestrator.record_progress(run_id, delta)

            summary.queries_run += 1
            summary.leads_found += outcome.leads_found
            summary.duplicates_skipped += outcome.duplicates_skipped
            summary.errors += delta.error_count
            if summary.budget_exhausted:
                break

        summary.requests_made = budget.used
        if summary.budget_exhausted:
            message = f"request budget of {campaign.max_total_requests} exhausted; remaining queries skipped"
            logger.warning("Run %s: %s", run_id, message)
            self.orchestrator.finish_run(run_id, degraded=True, message=message)
        else:
            # Also covers a query file shorter than queries_count.
            self.orchestrator.finish_run(run_id)
        logger.info(
            "Run %s ingestion done: queries=%d skipped=%d requests=%d leads=%d duplicates=%d errors=%d",
            run_id,
            summary.queries_run,
            summary.queries_skipped,
            summary.requests_made,
            summary.leads_found,
            summary.duplicates_skipped,
            summary.errors,
        )
        return summary

    def _run_query(
        self,
        campaign: Campaign,
        run_id: str,
        query: SearchQuery,
        budget: "_RequestBudget",
        outcome: QueryOutcome,
    ) -> None:
        limit = campaign.max_results_per_search or self.settings.default_max_results_per_search
        collected = 0
        page_token: Optional[str] = None

        while collected < limit:
            page_size = min(google_places.MAX_PAGE_SIZE, limit - collected)
            payload = self._search_with_retry(query, page_size, page_token, budget)
            places = payload.get("places", [])[: limit - collected]
            logger.info("Query %r page returned %d places", query.text_query, len(places))

            for place in places:
                self._store_place(campaign, run_id, place, outcome)
            collected += len(places)

            page_token = payload.get("nextPageToken")
            if not page_token or not places:
                break

    def _search_with_retry(
        self,
        query: SearchQuery,
        page_size: int,
        page_token: Optional[str],
        budget: "_RequestBudget",
    ) -> Dict[str, Any]:
        attempts = max(1, self.settings.places_max_attempts)
        for attempt in range(1, attempts + 1):
            budget.charge()
            self.rate_limiter.wait()
            try:
                return self.search(
                    query.text_query,
                    self.settings.google_api_key,
                    included_type=query.included_type,
                    page_size=page_size,
                    page_token=page_token,
                )
            except TransientError as exc:
                if attempt == attempts:
                    raise
                delay = BACKOFF_BASE_S * (2 ** (attempt - 1)) + random.uniform(0, BACKOFF_JITTER_S)
                logger.info(
                    "Transient Places error for %r (attempt %d/%d), retrying in %.1fs: %s",
                    query.text_query,
                    attempt,
                    attempts,
                    delay,
                    exc,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")

    def _store_place(self, campaign: Campaign, run_id: str, place: Dict[str, Any], outcome: QueryOutcome) -> None:
        row = to_lead_row(place, campaign_id=campaign.id, campaign_run_id=run_id)
        if row is None:
            return
        place_id = row["place_id"]
        hook = self.bridge.after_insert_hook(campaign, place_id)
        try:
            lead_id = self.leads.insert_lead(row, after_insert=hook)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to insert lead for place %s: %s", place_id, exc)
            outcome.insert_errors += 1
            return

        if lead_id is None:
            outcome.duplicates_skipped += 1
            return
        outcome.leads_found += 1
        if hook is None:
            self.bridge.lead_created(lead_id, campaign, place_id=place_id)


class _RequestBudget:
    def __init__(self, limit: Optional[int]) -> None:
        self.limit = limit
        self.used = 0

    @property
    def exhausted(self) -> bool:
        return self.limit is not None and self.used >= self.limit

    def charge(self) -> None:
        if self.exhausted:
            raise BudgetExhausted(f"max_total_requests={self.limit} reached")
        self.used += 1

