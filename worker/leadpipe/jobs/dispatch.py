"""CLI entrypoint for the scrape and score dispatchers."""

import argparse
import logging
import signal

from leadpipe.core import db
from leadpipe.core.config import ConfigError, get_settings
from leadpipe.pipeline.dispatcher import Dispatcher
from leadpipe.pipeline.factory import build_score_dispatcher, build_scrape_dispatcher

logger = logging.getLogger(__name__)

_BUILDERS = {
    "scrape": build_scrape_dispatcher,
    "score": build_score_dispatcher,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Consume a pipeline stage queue")
    parser.add_argument("stage", choices=sorted(_BUILDERS), help="Which stage to run")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process until the queue is empty, then exit",
    )
    return parser


def _install_signal_handlers(dispatcher: Dispatcher) -> None:
    def _handle(signum, _frame) -> None:
        logger.info("Received signal %d; shutting down", signum)
        dispatcher.stop()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT, _handle)


def main(argv=None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        stage_concurrency = settings.scrape_max_concurrency if args.stage == "scrape" else settings.score_max_concurrency
        # One connection per worker thread plus the poller.
        db.init_pool(maxconn=stage_concurrency + 2)
        dispatcher = _BUILDERS[args.stage](settings)
    except ConfigError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except RuntimeError as exc:
        logger.error("Startup failed: %s", exc)
        raise SystemExit(1) from exc

    try:
        if args.once:
            dispatcher.run_until_empty()
            dispatcher.close()
        else:
            _install_signal_handlers(dispatcher)
            dispatcher.run_forever()
    except Exception as exc:  # noqa: BLE001
        logger.exception("%s dispatcher crashed: %s", args.stage, exc)
        raise SystemExit(1) from exc
    logger.info("%s dispatcher exited: %s", args.stage, dispatcher.stats)


if __name__ == "__main__":
    main()
