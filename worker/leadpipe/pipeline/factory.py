"""Wire repositories, queues and stages together from settings."""

from concurrent.futures import Executor
from typing import Optional

from leadpipe.core.config import Settings, get_settings
from leadpipe.pipeline.backfill import LeadBackfill
from leadpipe.pipeline.bridge import ChangeBridge
from leadpipe.pipeline.dispatcher import Dispatcher
from leadpipe.pipeline.ingestion import PlacesIngestionWorker
from leadpipe.pipeline.orchestrator import CampaignRunOrchestrator
from leadpipe.pipeline.score import ScoreHandler
from leadpipe.pipeline.scrape import ScrapeHandler
from leadpipe.queues.base import SCORE_QUEUE, SCRAPE_QUEUE
from leadpipe.queues.factory import get_queue
from leadpipe.store.campaigns import CampaignRepository
from leadpipe.store.leads import LeadRepository
from leadpipe.vendors.scoring_model import ScoringModel


def build_bridge(settings: Settings, campaigns: Optional[CampaignRepository] = None) -> ChangeBridge:
    return ChangeBridge(
        get_queue(SCRAPE_QUEUE, settings),
        get_queue(SCORE_QUEUE, settings),
        campaigns or CampaignRepository(settings.run_error_messages_limit),
    )


def build_orchestrator(executor: Optional[Executor] = None, settings: Optional[Settings] = None) -> CampaignRunOrchestrator:
    """Orchestrator whose runs are ingested on ``executor``; without one it only manages run rows."""
    settings = settings or get_settings()
    campaigns = CampaignRepository(settings.run_error_messages_limit)
    orchestrator = CampaignRunOrchestrator(campaigns, executor=executor)
    worker = PlacesIngestionWorker(
        campaigns,
        LeadRepository(),
        orchestrator,
        build_bridge(settings, campaigns),
        settings=settings,
    )
    orchestrator.ingest = worker.run
    return orchestrator


def build_scrape_dispatcher(settings: Optional[Settings] = None) -> Dispatcher:
    settings = settings or get_settings()
    handler = ScrapeHandler(LeadRepository(), build_bridge(settings), settings=settings)
    return Dispatcher(
        get_queue(SCRAPE_QUEUE, settings),
        handler,
        max_concurrency=settings.scrape_max_concurrency,
        batch_size=settings.scrape_batch_size,
        max_batching_window_s=settings.scrape_max_batching_window_s,
        retry_base_delay_s=settings.retry_base_delay_s,
        retry_max_delay_s=settings.retry_max_delay_s,
    )


def build_score_dispatcher(settings: Optional[Settings] = None) -> Dispatcher:
    settings = settings or get_settings()
    handler = ScoreHandler(LeadRepository(), ScoringModel(settings))
    return Dispatcher(
        get_queue(SCORE_QUEUE, settings),
        handler,
        max_concurrency=settings.score_max_concurrency,
        batch_size=settings.score_batch_size,
        max_batching_window_s=settings.score_max_batching_window_s,
        retry_base_delay_s=settings.retry_base_delay_s,
        retry_max_delay_s=settings.retry_max_delay_s,
    )


def build_backfill(settings: Optional[Settings] = None) -> LeadBackfill:
    settings = settings or get_settings()
    return LeadBackfill(LeadRepository(), build_bridge(settings))
