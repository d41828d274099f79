"""Score stage handler."""

import logging

from leadpipe.core.errors import MalformedMessage
from leadpipe.models import PipelineMessage, ScoreMessage
from leadpipe.store.leads import LeadRepository
from leadpipe.vendors.scoring_model import ScoringModel

logger = logging.getLogger(__name__)


class ScoreHandler:
    def __init__(self, leads: LeadRepository, model: ScoringModel) -> None:
        self.leads = leads
        self.model = model

    def __call__(self, message: PipelineMessage) -> None:
        if not isinstance(message, ScoreMessage):
            raise MalformedMessage(f"score stage received a {message.kind!r} message")

        # Read at delivery time so the scrape write that triggered this
        # message is visible.
        lead = self.leads.get_lead(message.lead_id)
        if lead is None:
            logger.warning("Lead %s not found; dropping score request", message.lead_id)
            return
        if lead.qualification_score is not None:
            logger.info("Lead %s already scored (%d); skipping", lead.id, lead.qualification_score)
            return

        result = self.model.score(lead, lead.scraped_content)
        self.leads.write_score(lead.id, result)
