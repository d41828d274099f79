"""Turn committed lead-store changes into stage messages."""

import logging
from typing import Any, Callable, Optional

from leadpipe.models import Campaign, ScoreMessage, ScrapeMessage, encode_message
from leadpipe.queues.base import RedeliveryQueue
from leadpipe.store.campaigns import CampaignRepository

logger = logging.getLogger(__name__)


class ChangeBridge:
    """Publishes ScrapeMessage/ScoreMessage for lead inserts and scrape writes.

    With a transactional queue the message is written on the caller's
    connection, so it commits or rolls back together with the lead row.
    Otherwise callers publish only after their own commit; a crash between
    the two can lose a message, which is why ``transactional`` queues are the
    production default.
    """

    def __init__(
        self,
        scrape_queue: RedeliveryQueue,
        score_queue: RedeliveryQueue,
        campaigns: Optional[CampaignRepository] = None,
    ) -> None:
        self.scrape_queue = scrape_queue
        self.score_queue = score_queue
        self.campaigns = campaigns or CampaignRepository()

    def _send(self, queue: RedeliveryQueue, message, conn: Any) -> str:
        return queue.send(encode_message(message), conn=conn if queue.transactional else None)

    def lead_created(self, lead_id: str, campaign: Campaign, place_id: Optional[str] = None, conn: Any = None) -> Optional[str]:
        """Emit the first stage message for a new lead; returns the message id."""
        if campaign.enable_scraping:
            message = ScrapeMessage(lead_id=lead_id, campaign_id=campaign.id, place_id=place_id)
            return self._send(self.scrape_queue, message, conn)
        if campaign.enable_scoring:
            message = ScoreMessage(lead_id=lead_id, campaign_id=campaign.id, place_id=place_id)
            return self._send(self.score_queue, message, conn)
        logger.debug("Campaign %s has scraping and scoring disabled; lead %s not queued", campaign.id, lead_id)
        return None

    def after_insert_hook(self, campaign: Campaign, place_id: Optional[str] = None) -> Optional[Callable[[str, Any], None]]:
        """Callback for ``LeadRepository.insert_lead`` when publishing can join the insert.

        Returns None when the target queue is not transactional; the caller
        must then call ``lead_created`` after the insert commits.
        """
        if campaign.enable_scraping:
            target = self.scrape_queue
        elif campaign.enable_scoring:
            target = self.score_queue
        else:
            return None
        if not target.transactional:
            return None

        def _publish(lead_id: str, conn: Any) -> None:
            self.lead_created(lead_id, campaign, place_id=place_id, conn=conn)

        return _publish

    def lead_scraped(self, lead_id: str, campaign_id: str, place_id: Optional[str] = None) -> Optional[str]:
        """Chain scoring once the scraped-content write has committed."""
        campaign = self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            logger.warning("Lead %s references missing campaign %s; scoring not queued", lead_id, campaign_id)
            return None
        if not campaign.enable_scoring:
            return None
        return self.request_score(lead_id, campaign_id, place_id=place_id)

    def request_scrape(self, lead_id: str, campaign_id: str, place_id: Optional[str] = None) -> str:
        """Publish a ScrapeMessage regardless of campaign flags (operator backfill)."""
        message = ScrapeMessage(lead_id=lead_id, campaign_id=campaign_id, place_id=place_id)
        return self.scrape_queue.send(encode_message(message))

    def request_score(self, lead_id: str, campaign_id: str, place_id: Optional[str] = None) -> str:
        message = ScoreMessage(lead_id=lead_id, campaign_id=campaign_id, place_id=place_id)
        return self.score_queue.send(encode_message(message))
