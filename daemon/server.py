"""
Control daemon HTTP surface (Flask).

Endpoints:
    GET  /health            liveness plus store reachability
    GET  /status            daemon status and every tracked job
    GET|POST /jobs/kill?id= cancel a job by id
    POST /commands          JSON command envelope {id, command, data}
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, jsonify, request

from backfill.service import BackfillService
from config import Config
from daemon.jobs import JobRegistry
from storage import migrations
from storage.candle_store import CandleStore
from utils.helpers import parse_time_input
from utils.market_data import is_supported_granularity, normalize_granularity

logger = logging.getLogger(__name__)

ServiceFactory = Callable[[], BackfillService]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _response(command_id: Optional[str], success: bool, message: str = "",
              data: Any = None, error: Optional[str] = None, status: int = 200):
    body: Dict[str, Any] = {"id": command_id, "success": success, "message": message}
    if data is not None:
        body["data"] = data
    if error:
        body["error"] = error
    return jsonify(body), status


def create_app(registry: JobRegistry, service_factory: ServiceFactory, db_path: Path) -> Flask:
    """Build the daemon app around a job registry and a per-job service factory."""
    app = Flask(__name__)

    def _run_with_service(action: Callable[[BackfillService, threading.Event], Any]):
        def target(cancel_event: threading.Event) -> Any:
            with service_factory() as service:
                return action(service, cancel_event)
        return target

    # ------------------------------------------------------------------
    # Command handlers
    # ------------------------------------------------------------------

    def _cmd_health(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        return True, "healthy", {"timestamp": _now_iso()}, 200

    def _cmd_status(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        jobs = [job.to_dict() for job in registry.list()]
        return True, f"{len(jobs)} job(s)", {"jobs": jobs, "active": registry.active_count()}, 200

    def _cmd_kill(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        job_id = str(data.get("id") or "")
        if not job_id:
            return False, "missing id", None, 400
        job = registry.cancel(job_id)
        if job is None:
            return False, "job not found", None, 404
        return True, "stopping", {"id": job_id, "status": job.status}, 200

    def _cmd_migrate_status(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        rows = [
            {"version": s.version, "name": s.name, "applied_at": s.applied_at}
            for s in migrations.status(db_path)
        ]
        return True, "migration status", {"migrations": rows}, 200

    def _cmd_fetch(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        product_id = str(data.get("product") or "").strip()
        granularity = str(data.get("granularity") or "1h")
        if not product_id:
            return False, "product is required", None, 400
        if not is_supported_granularity(granularity):
            return False, f"unsupported granularity '{granularity}'", None, 400
        try:
            start = parse_time_input(data.get("start"))
            end = parse_time_input(data.get("end"))
        except ValueError as exc:
            return False, str(exc), None, 400

        granularity = normalize_granularity(granularity)
        args = {"product": product_id, "granularity": granularity, "start": start, "end": end}
        job = registry.submit(
            "coinbase:fetch",
            _run_with_service(
                lambda service, cancel: service.fetch(product_id, granularity, start, end, cancel_event=cancel)
            ),
            args,
        )
        return True, "job started", {"job_id": job.id}, 202

    def _cmd_sync_products(data: Dict[str, Any]) -> Tuple[bool, str, Any, int]:
        job = registry.submit(
            "coinbase:sync-products",
            _run_with_service(lambda service, cancel: {"upserted": service.sync_products()}),
        )
        return True, "job started", {"job_id": job.id}, 202

    handlers: Dict[str, Callable[[Dict[str, Any]], Tuple[bool, str, Any, int]]] = {
        "health": _cmd_health,
        "server:status": _cmd_status,
        "jobs:kill": _cmd_kill,
        "migrate:status": _cmd_migrate_status,
        "coinbase:fetch": _cmd_fetch,
        "coinbase:sync-products": _cmd_sync_products,
    }

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    @app.route("/health", methods=["GET"])
    def health():
        store_ok = CandleStore(db_path, auto_migrate=False).ping()
        status = "healthy" if store_ok else "degraded"
        return jsonify({
            "status": status,
            "timestamp": _now_iso(),
            "checks": {"database": "ok" if store_ok else "unreachable"},
            "active_jobs": registry.active_count(),
        }), 200 if store_ok else 503

    @app.route("/status", methods=["GET"])
    def status():
        return jsonify({
            "status": "ok",
            "timestamp": _now_iso(),
            "jobs": [job.to_dict() for job in registry.list()],
        })

    @app.route("/jobs/kill", methods=["GET", "POST"])
    def jobs_kill():
        job_id = request.args.get("id", "")
        if not job_id:
            return jsonify({"error": "missing id"}), 400
        job = registry.cancel(job_id)
        if job is None:
            return jsonify({"error": "job not found"}), 404
        return jsonify({"status": "stopping", "id": job_id})

    @app.route("/commands", methods=["POST"])
    def commands():
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return _response(None, False, error="Invalid JSON", status=400)

        command_id = payload.get("id")
        command = str(payload.get("command") or "")
        data = payload.get("data") or {}
        if not isinstance(data, dict):
            return _response(command_id, False, error="data must be an object", status=400)

        handler = handlers.get(command)
        if handler is None:
            return _response(command_id, False, error=f"Unknown command: {command}", status=400)

        success, message, result, status_code = handler(data)
        if success:
            return _response(command_id, True, message, data=result, status=status_code)
        return _response(command_id, False, error=message, status=status_code)

    return app


def run_daemon(config: Config, port: Optional[int] = None, host: str = "127.0.0.1") -> None:
    """Serve the daemon until interrupted, then cancel and join running jobs."""
    registry = JobRegistry()
    migrations.upgrade(config.database_path)
    app = create_app(registry, lambda: BackfillService.from_config(config), config.database_path)
    port = port or config.daemon_port
    logger.info("Starting candlefill daemon on %s:%d", host, port)
    try:
        app.run(host=host, port=port, threaded=True, use_reloader=False)
    finally:
        cancelled = registry.cancel_all()
        if cancelled:
            logger.info("Waiting for %d job(s) to stop", cancelled)
        registry.join_all(timeout=30)
