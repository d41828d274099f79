"""CLI job: start a campaign run and ingest it in the foreground."""

import argparse
import logging

from leadpipe.core import db
from leadpipe.core.config import ConfigError, get_settings
from leadpipe.core.errors import PipelineError
from leadpipe.pipeline.factory import build_orchestrator

logger = logging.getLogger(__name__)


def run_campaign(campaign_id: str) -> dict:
    settings = get_settings()
    if not settings.google_api_key:
        raise ConfigError("GOOGLE_API_KEY is required")

    db.init_pool()
    # No executor: the run is created here and ingested synchronously below.
    orchestrator = build_orchestrator(settings=settings)
    run = orchestrator.start_run(campaign_id)
    try:
        orchestrator.ingest(campaign_id, run.id)
    except Exception as exc:
        orchestrator.fail_run(run.id, f"ingestion crashed: {exc}")
        raise
    return orchestrator.get_run_status(run.id).to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run Places ingestion for one campaign")
    parser.add_argument("--campaign", dest="campaign_id", required=True, help="Campaign id to run")
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        result = run_campaign(args.campaign_id)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except PipelineError as exc:
        logger.error("Run for campaign %s not completed: %s", args.campaign_id, exc)
        raise SystemExit(1) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Ingestion for campaign %s crashed: %s", args.campaign_id, exc)
        raise SystemExit(1) from exc

    logger.info(
        "Run %s %s: queries=%d/%d leads=%d duplicates=%d errors=%d degraded=%s",
        result["id"],
        result["status"],
        result["queriesExecuted"],
        result["queriesTotal"],
        result["leadsFound"],
        result["duplicatesSkipped"],
        result["errorCount"],
        result["degraded"],
    )


if __name__ == "__main__":
    main()
