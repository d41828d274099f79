"""HTTP control plane: start campaign runs and inspect them."""

from __future__ import annotations

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from flask import Flask, jsonify, request

from leadpipe.core.config import get_settings
from leadpipe.core.errors import CampaignNotFound, NotReady, RunAlreadyActive, RunNotFound
from leadpipe.pipeline.backfill import STAGES, LeadBackfill
from leadpipe.pipeline.factory import build_backfill, build_orchestrator
from leadpipe.pipeline.orchestrator import CampaignRunOrchestrator
from leadpipe.queues.base import SCORE_QUEUE, SCRAPE_QUEUE
from leadpipe.queues.factory import get_queue
from leadpipe.store.leads import DEFAULT_BACKFILL_LIMIT

# ---------- Logging ----------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- App & executor ----------
app = Flask(__name__)
_executor = ThreadPoolExecutor(max_workers=4)
_orchestrator: Optional[CampaignRunOrchestrator] = None
_backfill: Optional[LeadBackfill] = None

_QUEUES = (SCRAPE_QUEUE, SCORE_QUEUE)


def get_orchestrator() -> CampaignRunOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(_executor)
    return _orchestrator


def get_backfill() -> LeadBackfill:
    global _backfill
    if _backfill is None:
        _backfill = build_backfill()
    return _backfill


def _error(message: str, status: int) -> Any:
    return jsonify({"error": message}), status


# ---------- Routes ----------


@app.get("/")
def root() -> Any:
    return "ok", 200


@app.get("/healthz")
def healthcheck() -> Any:
    """Reads settings only; does not open a database connection."""
    settings = get_settings()
    return (
        jsonify(
            {
                "status": "ok",
                "queue_backend": settings.queue_backend,
                "revision": os.getenv("K_REVISION", "unknown"),
            }
        ),
        200,
    )


@app.post("/campaigns/<campaign_id>/runs")
def start_run(campaign_id: str) -> Any:
    """Create a run and start ingestion in the background. Returns 202."""
    try:
        run = get_orchestrator().start_run(campaign_id)
    except CampaignNotFound as exc:
        return _error(str(exc), 404)
    except (NotReady, RunAlreadyActive) as exc:
        return _error(str(exc), 409)
    return jsonify({"data": run.to_dict()}), 202


@app.post("/campaigns/<campaign_id>/backfill")
def backfill_campaign(campaign_id: str) -> Any:
    """Re-enqueue this campaign's leads for one stage. Body: {"stage": "scrape"|"score", "limit": N}."""
    payload = request.get_json(silent=True) or {}
    stage = payload.get("stage")
    if stage not in STAGES:
        return _error(f"stage must be one of {', '.join(STAGES)}", 400)
    try:
        limit = int(payload.get("limit", DEFAULT_BACKFILL_LIMIT))
    except (TypeError, ValueError):
        return _error("limit must be numeric", 400)
    if limit <= 0:
        return _error("limit must be positive", 400)

    if get_orchestrator().campaigns.get_campaign(campaign_id) is None:
        return _error(f"campaign {campaign_id} not found", 404)
    result = get_backfill().run(stage, campaign_id, limit, dry_run=bool(payload.get("dryRun", False)))
    return jsonify({"data": result.to_dict()}), 200


@app.get("/campaign-runs/<run_id>")
def get_run(run_id: str) -> Any:
    try:
        run = get_orchestrator().get_run_status(run_id)
    except RunNotFound as exc:
        return _error(str(exc), 404)
    return jsonify({"data": run.to_dict()}), 200


@app.get("/queues/<name>/dead-letters")
def list_dead_letters(name: str) -> Any:
    if name not in _QUEUES:
        return _error(f"unknown queue {name}", 404)
    try:
        limit = int(request.args.get("limit", 100))
    except (TypeError, ValueError):
        return _error("limit must be numeric", 400)
    if limit <= 0:
        return _error("limit must be positive", 400)

    queue = get_queue(name)
    items = [
        {
            "messageId": dead.message_id,
            "body": dead.body,
            "receiveCount": dead.receive_count,
            "deadLetteredAt": dead.dead_lettered_at.isoformat(),
            "lastError": dead.last_error,
        }
        for dead in queue.dead_letters(limit)
    ]
    return jsonify({"data": items, "depth": queue.depth()}), 200


@app.post("/queues/<name>/dead-letters/<message_id>/replay")
def replay_dead_letter(name: str, message_id: str) -> Any:
    if name not in _QUEUES:
        return _error(f"unknown queue {name}", 404)
    if not get_queue(name).replay_dead_letter(message_id):
        return _error(f"no dead-lettered message {message_id} on {name}", 404)
    logger.info("Operator replayed %s on %s", message_id, name)
    return jsonify({"data": {"messageId": message_id, "status": "replayed"}}), 200


def main() -> None:
    port = get_settings().port
    logger.info("[BOOT] Binding on 0.0.0.0:%d", port)
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
