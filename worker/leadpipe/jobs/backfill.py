"""Operator tool: re-enqueue existing leads for the scrape or score stage."""

import argparse
import json
import logging

from psycopg2 import Error as PsycopgError

from leadpipe.core import db
from leadpipe.core.config import ConfigError, get_settings
from leadpipe.pipeline.backfill import STAGES
from leadpipe.pipeline.factory import build_backfill
from leadpipe.store.leads import DEFAULT_BACKFILL_LIMIT

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Re-enqueue leads that never went through a stage")
    parser.add_argument("stage", choices=STAGES)
    parser.add_argument("--campaign", dest="campaign_id", help="Only leads of this campaign")
    parser.add_argument("--limit", type=int, default=DEFAULT_BACKFILL_LIMIT, help="Maximum leads to enqueue")
    parser.add_argument("--dry-run", action="store_true", help="Count matching leads without enqueueing")
    return parser


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)
    if args.limit <= 0:
        logger.error("--limit must be positive")
        raise SystemExit(2)

    try:
        settings = get_settings()
        if settings.queue_backend == "memory":
            logger.warning("QUEUE_BACKEND=memory: messages stay in this process and no dispatcher will see them")
        db.init_pool()
        backfill = build_backfill(settings)
        result = backfill.run(args.stage, args.campaign_id, args.limit, dry_run=args.dry_run)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except (RuntimeError, PsycopgError) as exc:
        logger.error("Backfill failed: %s", exc)
        raise SystemExit(1) from exc

    print(json.dumps(result.to_dict()))


if __name__ == "__main__":
    main()
