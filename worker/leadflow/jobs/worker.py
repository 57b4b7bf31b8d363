"""Bounded worker pools pulling jobs from each stage's queue."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Set

from leadflow.core.context import PipelineContext
from leadflow.core.queue import QueuedJob
from leadflow.jobs.enrich import run_enrich_job
from leadflow.jobs.score import run_score_job
from leadflow.jobs.search import run_search_job

logger = logging.getLogger(__name__)

Handler = Callable[..., Dict[str, Any]]


class StageWorker:
    """Runs ``handler`` for queued jobs with at most ``concurrency`` in flight.

    A failing job is marked failed on its queue; the worker keeps going.
    """

    def __init__(
        self,
        name: str,
        context: PipelineContext,
        queue: Any,
        handler: Handler,
        concurrency: int,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.name = name
        self.context = context
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self._stop = threading.Event()

    def process(self, job: QueuedJob) -> Optional[Dict[str, Any]]:
        try:
            result = self.handler(self.context, job.payload, job_id=job.id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("%s job %s failed (attempt %s): %s", self.name, job.id, job.attempts, exc)
            self.queue.fail(job, f"{type(exc).__name__}: {exc}")
            return None
        self.queue.complete(job, result)
        return result

    def _fill(self, executor: ThreadPoolExecutor, in_flight: Set[Future]) -> None:
        while len(in_flight) < self.concurrency:
            job = self.queue.claim()
            if job is None:
                return
            in_flight.add(executor.submit(self.process, job))

    def drain(self) -> int:
        """Process jobs until the queue is empty and nothing is in flight."""
        processed = 0
        in_flight: Set[Future] = set()
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=self.name) as executor:
            self._fill(executor, in_flight)
            while in_flight:
                done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                processed += len(done)
                self._fill(executor, in_flight)
        logger.info("%s worker drained %d jobs", self.name, processed)
        return processed

    def run_forever(self) -> None:
        """Poll the queue until :meth:`stop` is called."""
        poll_interval = self.context.settings.queue_poll_interval
        in_flight: Set[Future] = set()
        logger.info("%s worker started (concurrency=%d)", self.name, self.concurrency)
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=self.name) as executor:
            while not self._stop.is_set():
                in_flight = {future for future in in_flight if not future.done()}
                try:
                    self._fill(executor, in_flight)
                except Exception as exc:  # noqa: BLE001
                    logger.error("%s worker failed to claim jobs: %s", self.name, exc)
                if len(in_flight) >= self.concurrency:
                    wait(in_flight, timeout=poll_interval, return_when=FIRST_COMPLETED)
                else:
                    self._stop.wait(poll_interval)
        logger.info("%s worker stopped", self.name)

    def stop(self) -> None:
        self._stop.set()


def build_workers(context: PipelineContext) -> List[StageWorker]:
    settings = context.settings
    return [
        StageWorker("search", context, context.search_queue, run_search_job, settings.search_concurrency),
        StageWorker("enrich", context, context.enrich_queue, run_enrich_job, settings.enrich_concurrency),
        StageWorker("score", context, context.score_queue, run_score_job, settings.score_concurrency),
    ]


def drain_pipeline(context: PipelineContext) -> Dict[str, int]:
    """Run every stage to completion in order; used for in-process runs."""
    counts: Dict[str, int] = {}
    for worker in build_workers(context):
        counts[worker.name] = worker.drain()
    return counts
