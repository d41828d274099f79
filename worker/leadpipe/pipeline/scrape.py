"""Scrape stage handler: enrich a lead's website and chain scoring."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from leadpipe.core.config import Settings, get_settings
from leadpipe.core.errors import MalformedMessage, ScrapeFailed
from leadpipe.core.site_enricher import SiteEnricher
from leadpipe.models import Lead, PipelineMessage, ScrapeMessage
from leadpipe.pipeline.bridge import ChangeBridge
from leadpipe.store.leads import LeadRepository

logger = logging.getLogger(__name__)

EnricherFactory = Callable[..., Any]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScrapeHandler:
    """Handles one ScrapeMessage. Safe to run more than once for a lead."""

    def __init__(
        self,
        leads: LeadRepository,
        bridge: ChangeBridge,
        settings: Optional[Settings] = None,
        enricher_factory: EnricherFactory = SiteEnricher,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.leads = leads
        self.bridge = bridge
        self.settings = settings or get_settings()
        self.enricher_factory = enricher_factory
        self.clock = clock
        self.grace_window = timedelta(seconds=self.settings.scrape_grace_window_s)

    def __call__(self, message: PipelineMessage) -> None:
        if not isinstance(message, ScrapeMessage):
            raise MalformedMessage(f"scrape stage received a {message.kind!r} message")

        lead = self.leads.get_lead(message.lead_id)
        if lead is None:
            logger.warning("Lead %s not found; dropping scrape request", message.lead_id)
            return

        now = self.clock()
        if lead.scraped_at is not None and now - lead.scraped_at < self.grace_window:
            logger.info("Lead %s was scraped at %s; skipping", lead.id, lead.scraped_at.isoformat())
            self._chain(lead, message)
            return

        if not lead.website:
            self.leads.write_scraped_content(lead.id, None, now, scrape_error="lead has no website")
            self._chain(lead, message)
            return

        try:
            content = self._enrich(lead)
        except ValueError as exc:
            logger.info("Lead %s has an unusable website %r: %s", lead.id, lead.website, exc)
            self.leads.write_scraped_content(lead.id, None, now, scrape_error=f"invalid website: {exc}")
            self._chain(lead, message)
            return

        if content.get("blocked_by_robots"):
            self.leads.write_scraped_content(lead.id, content, now, scrape_error="blocked by robots.txt")
        elif not content.get("pages_crawled"):
            raise ScrapeFailed(f"no pages could be fetched from {lead.website}")
        else:
            self.leads.write_scraped_content(lead.id, content, now)
            logger.info(
                "Scraped lead %s: pages=%d emails=%d phones=%d",
                lead.id,
                content["pages_crawled"],
                len(content.get("emails", [])),
                len(content.get("phones", [])),
            )
        self._chain(lead, message)

    def _enrich(self, lead: Lead) -> Dict[str, Any]:
        try:
            with self.enricher_factory(lead.website, settings=self.settings) as enricher:
                return enricher.enrich()
        except ValueError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise ScrapeFailed(f"scraping {lead.website} failed: {exc}") from exc

    def _chain(self, lead: Lead, message: ScrapeMessage) -> None:
        self.bridge.lead_scraped(lead.id, message.campaign_id, place_id=lead.place_id)
