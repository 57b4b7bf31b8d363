"""HTTP entrypoint that queues search jobs and streams their progress over SSE."""

from __future__ import annotations

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Optional

import pydantic
from flask import Flask, Response, current_app, jsonify, request, stream_with_context

from leadflow.core.config import get_settings
from leadflow.core.context import PipelineContext, build_context
from leadflow.jobs.search import submit_search
from leadflow.models import SearchJobStatus

logger = logging.getLogger(__name__)

PING_INTERVAL_SECONDS = 15.0
_TERMINAL_STATUSES = {status.value for status in SearchJobStatus if status.is_terminal}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_sse(event: str, data: Dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def stream_events(
    context: PipelineContext,
    search_id: str,
    *,
    poll_interval: float,
    ping_interval: float = PING_INTERVAL_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Iterator[str]:
    """Translate stored progress events for one search job into SSE frames."""
    yield format_sse("connected", {"type": "connection", "job_id": search_id, "timestamp": _now()})

    job = context.store.get_search_job(search_id) or {}
    yield format_sse(
        "status",
        {
            "type": "job:status",
            "job_id": search_id,
            "status": job.get("status"),
            "progress": {"processed": job.get("processed", 0), "total": job.get("total_found", 0)},
            "timestamp": _now(),
        },
    )

    last_id = 0
    last_ping = clock()
    saw_terminal_status = False
    while True:
        records = context.events.read(search_id, after=last_id)
        for event_id, payload in records:
            last_id = event_id
            event_type = payload.get("type")
            if event_type == "job:complete":
                final = context.store.get_search_job(search_id) or {}
                yield format_sse(
                    "completed",
                    {
                        **payload,
                        "job_id": search_id,
                        "summary_stats": final.get("summary_stats") or {},
                        "timestamp": _now(),
                    },
                )
                return
            if event_type == "job:failed":
                yield format_sse(
                    "error",
                    {"type": "job:failed", "job_id": search_id, "error": payload.get("message"), "timestamp": _now()},
                )
                return

            yield format_sse("progress", {**payload, "job_id": search_id, "timestamp": _now()})
            for lead in payload.get("leads") or []:
                yield format_sse("lead", {"type": "lead:found", "job_id": search_id, "lead": lead, "timestamp": _now()})

        if not records:
            job = context.store.get_search_job(search_id) or {}
            if job.get("status") in _TERMINAL_STATUSES:
                # One more poll lets a terminal event published after the status update arrive.
                if saw_terminal_status:
                    event = "error" if job["status"] == SearchJobStatus.FAILED.value else "completed"
                    yield format_sse(
                        event,
                        {
                            "type": "job:failed" if event == "error" else "job:complete",
                            "job_id": search_id,
                            "status": job["status"],
                            "error": job.get("error_text"),
                            "summary_stats": job.get("summary_stats") or {},
                            "timestamp": _now(),
                        },
                    )
                    return
                saw_terminal_status = True

        if clock() - last_ping >= ping_interval:
            yield format_sse("ping", {"type": "keep-alive", "timestamp": _now()})
            last_ping = clock()
        sleep(poll_interval)


def _context() -> PipelineContext:
    return current_app.config["PIPELINE_CONTEXT"]


def create_app(context: PipelineContext) -> Flask:
    app = Flask(__name__)
    app.config["PIPELINE_CONTEXT"] = context

    @app.get("/healthz")
    def healthcheck() -> Any:
        settings = _context().settings
        return (
            jsonify(
                {
                    "status": "ok",
                    "worker_port_config": settings.worker_port,
                    "places_provider": "google_places" if _context().provider else "fallback",
                    "revision": os.getenv("K_REVISION", "unknown"),
                }
            ),
            200,
        )

    @app.post("/search_jobs")
    def enqueue_search() -> Any:
        """
        Queue a search job.
        Required JSON fields: dsl {vertical, geo {city, state}}
        Optional: dsl.result_size.target (1-500), metadata (object)
        """
        payload: Dict[str, Any] = request.get_json(silent=True) or {}
        dsl = payload.get("dsl")
        if not isinstance(dsl, dict):
            return jsonify({"error": "dsl object is required"}), 400
        metadata = payload.get("metadata")
        if metadata is not None and not isinstance(metadata, dict):
            return jsonify({"error": "metadata must be an object"}), 400

        try:
            search_id = submit_search(_context(), dsl, metadata)
        except pydantic.ValidationError as exc:
            return jsonify({"error": "invalid dsl", "details": exc.errors(include_url=False, include_context=False)}), 400

        return (
            jsonify(
                {
                    "data": {
                        "job_id": search_id,
                        "status": SearchJobStatus.QUEUED.value,
                        "stream_url": f"/search_jobs/{search_id}/stream",
                    }
                }
            ),
            202,
        )

    @app.get("/search_jobs/<search_id>")
    def get_search_job(search_id: str) -> Any:
        job = _context().store.get_search_job(search_id)
        if not job:
            return jsonify({"error": "Job not found"}), 404
        return jsonify({"data": job}), 200

    @app.get("/search_jobs/<search_id>/leads")
    def list_leads(search_id: str) -> Any:
        if not _context().store.get_search_job(search_id):
            return jsonify({"error": "Job not found"}), 404
        return jsonify({"data": _context().store.list_lead_rankings(search_id)}), 200

    @app.post("/search_jobs/<search_id>/cancel")
    def cancel_search_job(search_id: str) -> Any:
        store = _context().store
        if not store.get_search_job(search_id):
            return jsonify({"error": "Job not found"}), 404
        if not store.cancel_search_job(search_id):
            return jsonify({"error": "Job already finished"}), 409
        logger.info("Search job %s cancelled", search_id)
        return jsonify({"data": {"job_id": search_id, "status": SearchJobStatus.CANCELLED.value}}), 200

    @app.get("/search_jobs/<search_id>/stream")
    def stream_search_job(search_id: str) -> Any:
        context = _context()
        if not context.store.get_search_job(search_id):
            return jsonify({"error": "Job not found"}), 404
        logger.info("SSE stream requested for %s", search_id)
        frames = stream_events(context, search_id, poll_interval=context.settings.queue_poll_interval)
        return Response(
            stream_with_context(frames),
            mimetype="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


def main(port: Optional[int] = None) -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s")

    port = port or int(os.getenv("PORT") or settings.worker_port)
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app = create_app(build_context(settings))
    app.run(host="0.0.0.0", port=port, threaded=True)


if __name__ == "__main__":
    main()
