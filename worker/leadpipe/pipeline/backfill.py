"""Re-enqueue existing leads that never made it through a stage.

Covers leads ingested while a stage was disabled for their campaign and
messages lost to a dead-letter purge. Handlers are idempotent, so a lead that
is already queued and gets a second message is processed once.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from leadpipe.pipeline.bridge import ChangeBridge
from leadpipe.store.leads import DEFAULT_BACKFILL_LIMIT, LeadRepository

logger = logging.getLogger(__name__)

SCRAPE_STAGE = "scrape"
SCORE_STAGE = "score"
STAGES = (SCRAPE_STAGE, SCORE_STAGE)


@dataclass
class BackfillResult:
    stage: str
    campaign_id: Optional[str]
    selected: int = 0
    published: int = 0
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["campaignId"] = data.pop("campaign_id")
        data["dryRun"] = data.pop("dry_run")
        return data


class LeadBackfill:
    def __init__(self, leads: LeadRepository, bridge: ChangeBridge) -> None:
        self.leads = leads
        self.bridge = bridge

    def run(
        self,
        stage: str,
        campaign_id: Optional[str] = None,
        limit: int = DEFAULT_BACKFILL_LIMIT,
        dry_run: bool = False,
    ) -> BackfillResult:
        if stage not in STAGES:
            raise ValueError(f"stage must be one of {', '.join(STAGES)}, got {stage!r}")
        if limit <= 0:
            raise ValueError("limit must be positive")

        if stage == SCRAPE_STAGE:
            pending = self.leads.leads_needing_scrape(campaign_id, limit)
            publish = self.bridge.request_scrape
        else:
            pending = self.leads.leads_needing_score(campaign_id, limit)
            publish = self.bridge.request_score

        result = BackfillResult(stage=stage, campaign_id=campaign_id, selected=len(pending), dry_run=dry_run)
        if not dry_run:
            for lead in pending:
                publish(lead.id, lead.campaign_id, place_id=lead.place_id)
                result.published += 1
        logger.info(
            "Backfill %s (campaign=%s): selected=%d published=%d dry_run=%s",
            stage,
            campaign_id or "*",
            result.selected,
            result.published,
            dry_run,
        )
        return result
