"""Flask application factory and HTTP routes."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.middleware.proxy_fix import ProxyFix

from ..config import AppConfig
from ..exporter import CSVExporter
from ..measurements.catalog import TargetCatalog
from ..measurements.manager import MeasurementManager
from ..measurements.observable import StateHolder
from ..measurements.throughput import ThroughputOrchestrator
from ..measurements.trace_service import TraceService

LOGGER = logging.getLogger(__name__)

STREAM_POLL_SECONDS = 15.0
MAX_TRACE_HOPS = 64


def create_web_app(
    config: AppConfig,
    catalog: TargetCatalog,
    orchestrator: ThroughputOrchestrator,
    trace_service: TraceService,
    measurement_manager: MeasurementManager,
    exporter: CSVExporter,
) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.web.secret_key

    if config.web.reverse_proxy_headers:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)  # type: ignore

    @app.get("/")
    def index():
        return jsonify(
            {
                "service": "netdiag",
                "selected_target": catalog.selected.to_dict(),
                "throughput": orchestrator.state.value.to_dict(),
                "trace": trace_service.state.value.to_dict(),
            }
        )

    @app.get("/api/targets")
    def api_targets():
        return jsonify(
            {
                "selected": catalog.selected.name,
                "targets": [target.to_dict() for target in catalog.targets],
            }
        )

    @app.post("/api/targets/select")
    def api_select_target():
        data = request.get_json(silent=True) or {}
        name = data.get("name")
        if not name:
            return jsonify({"error": "No target name provided"}), 400
        try:
            target = catalog.select(name)
        except KeyError:
            return jsonify({"error": f"Unknown target {name!r}"}), 404
        return jsonify({"status": "success", "selected": target.to_dict()})

    @app.post("/api/throughput/start")
    def api_throughput_start():
        data = request.get_json(silent=True) or {}
        target = None
        if data.get("target"):
            target = catalog.find(data["target"])
            if target is None:
                return jsonify({"error": f"Unknown target {data['target']!r}"}), 404
        if not orchestrator.start_run(target):
            return jsonify({"status": "ignored", "reason": "A throughput run is already in progress"}), 409
        return jsonify({"status": "started", "state": orchestrator.state.value.to_dict()}), 202

    @app.post("/api/throughput/cancel")
    def api_throughput_cancel():
        orchestrator.cancel_run()
        return jsonify({"status": "cancelled", "state": orchestrator.state.value.to_dict()})

    @app.get("/api/throughput/state")
    def api_throughput_state():
        return jsonify(orchestrator.state.value.to_dict())

    @app.get("/api/throughput/stream")
    def api_throughput_stream():
        return _sse_response(orchestrator.state, "state")

    @app.post("/api/trace")
    def api_trace_start():
        data = request.get_json(silent=True) or {}
        host = (data.get("host") or "").strip()
        if not host:
            return jsonify({"error": "No host provided"}), 400
        max_hops = data.get("max_hops")
        if max_hops is not None:
            if not isinstance(max_hops, int) or not 1 <= max_hops <= MAX_TRACE_HOPS:
                return jsonify({"error": f"max_hops must be an integer between 1 and {MAX_TRACE_HOPS}"}), 400
        generation = trace_service.start_trace(host, max_hops)
        return jsonify({"status": "started", "run": generation, "host": host}), 202

    @app.post("/api/trace/cancel")
    def api_trace_cancel():
        trace_service.cancel_trace()
        return jsonify({"status": "cancelled", "state": trace_service.state.value.to_dict()})

    @app.get("/api/trace/state")
    def api_trace_state():
        return jsonify(trace_service.state.value.to_dict())

    @app.get("/api/trace/stream")
    def api_trace_stream():
        return _sse_response(trace_service.state, "trace")

    @app.get("/api/measurements")
    def api_measurements():
        start = _parse_datetime(request.args.get("start"))
        end = _parse_datetime(request.args.get("end"))
        limit = request.args.get("limit", type=int)
        target_name = request.args.get("target")
        rows = measurement_manager.get_measurements(limit=limit, start=start, end=end, target_name=target_name)
        return jsonify([measurement_manager.to_dict(row) for row in rows])

    @app.get("/api/traces")
    def api_traces():
        limit = request.args.get("limit", type=int)
        host = request.args.get("host")
        rows = measurement_manager.get_traces(limit=limit, host=host)
        return jsonify([measurement_manager.trace_to_dict(row) for row in rows])

    @app.get("/api/export/csv")
    def api_export_csv():
        scope = request.args.get("scope", "filtered")
        start = _parse_datetime(request.args.get("start")) if scope == "filtered" else None
        end = _parse_datetime(request.args.get("end")) if scope == "filtered" else None
        buffer = exporter.build_csv(start=start, end=end)
        filename = f"results-{datetime.utcnow().strftime('%Y%m%dT%H%M%S')}.csv"
        return Response(
            buffer.getvalue(),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    return app


def _sse_response(holder: StateHolder, event_name: str) -> Response:
    """Stream snapshots of ``holder`` until the run reaches a terminal status."""

    def generate():
        subscription = holder.subscribe()
        try:
            while True:
                snapshot = subscription.get(timeout=STREAM_POLL_SECONDS)
                if snapshot is None:
                    yield ": keep-alive\n\n"
                    continue
                yield f"event: {event_name}\ndata: {json.dumps(snapshot.to_dict())}\n\n"
                if snapshot.is_terminal:
                    return
        finally:
            subscription.close()

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # For nginx
        },
    )


def _parse_datetime(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    candidate = raw.replace("Z", "+00:00") if raw.endswith("Z") else raw
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        LOGGER.warning("Invalid datetime filter: %s", raw)
        return None
