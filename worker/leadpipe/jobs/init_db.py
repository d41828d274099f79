"""Create the pipeline tables and indexes."""

import logging

from psycopg2 import Error as PsycopgError

from leadpipe.core import db

logger = logging.getLogger(__name__)


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    try:
        db.apply_schema()
    except (RuntimeError, PsycopgError) as exc:
        logger.error("Schema setup failed: %s", exc)
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
