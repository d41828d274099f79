"""Campaign run lifecycle: start, progress, terminal transitions."""

import logging
from concurrent.futures import Executor
from typing import Callable, Optional

from leadpipe.core.errors import CampaignNotFound, NotReady, RunNotFound
from leadpipe.models import CampaignRun, ProgressDelta, RunStatus
from leadpipe.store.campaigns import CampaignRepository

logger = logging.getLogger(__name__)

IngestFn = Callable[[str, str], None]


class CampaignRunOrchestrator:
    """Owns run status. Workers only ever report counter deltas."""

    def __init__(
        self,
        campaigns: CampaignRepository,
        executor: Optional[Executor] = None,
        ingest: Optional[IngestFn] = None,
    ) -> None:
        self.campaigns = campaigns
        self.executor = executor
        self.ingest = ingest

    def start_run(self, campaign_id: str) -> CampaignRun:
        campaign = self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFound(f"campaign {campaign_id} not found")
        if not campaign.is_ready:
            raise NotReady(f"campaign {campaign_id} has no confirmed queries")

        run = self.campaigns.create_run(campaign_id, campaign.queries_count)
        logger.info("Started run %s for campaign %s", run.id, campaign_id)

        if self.executor is not None and self.ingest is not None:
            try:
                self.executor.submit(self._ingest_safe, campaign_id, run.id)
            except Exception as exc:
                logger.exception("Could not launch ingestion for run %s", run.id)
                self.fail_run(run.id, f"ingestion launch failed: {exc}")
                raise
        return run

    def _ingest_safe(self, campaign_id: str, run_id: str) -> None:
        try:
            self.ingest(campaign_id, run_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Ingestion for run %s crashed: %s", run_id, exc)
            self.fail_run(run_id, f"ingestion crashed: {exc}")

    def get_run_status(self, run_id: str) -> CampaignRun:
        run = self.campaigns.get_run(run_id)
        if run is None:
            raise RunNotFound(f"campaign run {run_id} not found")
        return run

    def record_progress(self, run_id: str, delta: ProgressDelta) -> CampaignRun:
        """Apply ``delta`` atomically, then complete the run if every query ran."""
        delta.validate()
        run = self.campaigns.increment_run(run_id, delta)
        if run is None:
            raise RunNotFound(f"campaign run {run_id} not found")
        if run.status is RunStatus.RUNNING and run.queries_executed >= run.queries_total:
            finished = self.campaigns.terminate_run(run_id, RunStatus.COMPLETED)
            if finished is not None:
                logger.info(
                    "Run %s completed: leads=%d duplicates=%d errors=%d",
                    run_id,
                    finished.leads_found,
                    finished.duplicates_skipped,
                    finished.error_count,
                )
                return finished
            return self.get_run_status(run_id)
        return run

    def finish_run(self, run_id: str, degraded: bool = False, message: Optional[str] = None) -> CampaignRun:
        finished = self.campaigns.terminate_run(run_id, RunStatus.COMPLETED, degraded=degraded, message=message)
        if finished is None:
            # Another writer already moved it out of running.
            return self.get_run_status(run_id)
        logger.info("Run %s finished (degraded=%s)", run_id, degraded)
        return finished

    def fail_run(self, run_id: str, message: str) -> Optional[CampaignRun]:
        failed = self.campaigns.terminate_run(run_id, RunStatus.FAILED, message=message)
        if failed is None:
            logger.warning("Run %s was not running; failure not recorded: %s", run_id, message)
        else:
            logger.error("Run %s failed: %s", run_id, message)
        return failed
