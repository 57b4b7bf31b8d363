"""Move failed jobs on one stage queue back to waiting so workers pick them up again."""

import argparse
import logging

from leadflow.core.config import get_settings
from leadflow.core.db import Database
from leadflow.core.queue import ENRICH_QUEUE, SCORE_QUEUE, SEARCH_QUEUE, PostgresJobQueue

logger = logging.getLogger("replay_failed")


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-queue failed pipeline jobs")
    parser.add_argument("queue", choices=(SEARCH_QUEUE, ENRICH_QUEUE, SCORE_QUEUE), help="Stage queue to replay")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")

    database = Database.from_settings(settings)
    try:
        count = PostgresJobQueue(database, args.queue).retry_failed()
    finally:
        database.close()
    logger.info("Re-queued %d failed jobs on %s", count, args.queue)


if __name__ == "__main__":
    main()
