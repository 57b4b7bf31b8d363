"""Long-running worker process: one bounded pool per stage on the Postgres queues."""

import logging
import signal
import threading
from typing import List

from leadflow.core.config import get_settings
from leadflow.core.context import PipelineContext, build_context
from leadflow.jobs.worker import StageWorker, build_workers

logger = logging.getLogger(__name__)


def _requeue_stale_loop(context: PipelineContext, stop: threading.Event) -> None:
    timeout = context.settings.stale_job_timeout
    queues = (context.search_queue, context.enrich_queue, context.score_queue)
    while not stop.wait(timeout):
        for queue in queues:
            try:
                queue.requeue_stale(timeout)
            except Exception as exc:  # noqa: BLE001
                logger.error("Failed to requeue stale jobs on %s: %s", queue.name, exc)


def run_workers(context: PipelineContext) -> None:
    workers: List[StageWorker] = build_workers(context)
    stop = threading.Event()

    def _shutdown(signum, frame) -> None:
        logger.info("Received signal %s; stopping workers", signum)
        stop.set()
        for worker in workers:
            worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    threads = [threading.Thread(target=worker.run_forever, name=f"{worker.name}-loop") for worker in workers]
    threads.append(threading.Thread(target=_requeue_stale_loop, args=(context, stop), name="requeue-stale", daemon=True))
    for thread in threads:
        thread.start()
    for thread in threads:
        if not thread.daemon:
            thread.join()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
    context = build_context(settings)
    try:
        run_workers(context)
    finally:
        context.close()


if __name__ == "__main__":
    main()
