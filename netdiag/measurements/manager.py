"""Persistence of finished runs and history queries."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import sessionmaker

from ..db import Measurement, TraceRecord, get_session
from .models import MeasurementState, RunStatus, TraceState

LOGGER = logging.getLogger(__name__)


class MeasurementManager:
    def __init__(self, session_factory: sessionmaker):
        self.Session = session_factory

    def record_run(self, state: MeasurementState) -> Measurement:
        """Completion listener for throughput runs."""
        target = state.target
        with get_session(self.Session) as session:
            record = Measurement(
                timestamp=datetime.utcnow(),
                status=state.status.value,
                target_name=target.name if target else None,
                target_country=target.country if target else None,
                target_city=target.city if target else None,
                download_url=target.download_url if target else None,
                latency_ms=state.latency_ms,
                jitter_ms=state.jitter_ms,
                latency_synthetic=state.latency_synthetic,
                download_mbps=state.download_mbps,
                upload_mbps=state.upload_mbps if state.status is RunStatus.DONE else None,
                upload_simulated=state.upload_simulated,
                error=state.error,
            )
            session.add(record)
            session.flush()
            LOGGER.info(
                "Stored %s throughput run for %s (down %.2f Mbps / up %.2f Mbps)",
                record.status,
                record.target_name,
                record.download_mbps or 0,
                record.upload_mbps or 0,
            )
            return record

    def record_trace(self, state: TraceState) -> TraceRecord:
        """Completion listener for trace runs."""
        with get_session(self.Session) as session:
            record = TraceRecord(
                timestamp=datetime.utcnow(),
                host=state.host or "",
                status=state.status.value,
                method=state.method.value if state.method else None,
                lines="\n".join(state.lines),
                error=state.error,
            )
            session.add(record)
            session.flush()
            LOGGER.info("Stored %s trace to %s (%d lines)", record.status, record.host, len(state.lines))
            return record

    def get_measurements(
        self,
        limit: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        target_name: Optional[str] = None,
    ) -> List[Measurement]:
        with get_session(self.Session) as session:
            query = session.query(Measurement).order_by(desc(Measurement.timestamp))
            if target_name:
                query = query.filter(Measurement.target_name == target_name)
            if start:
                query = query.filter(Measurement.timestamp >= start)
            if end:
                query = query.filter(Measurement.timestamp <= end)
            if limit:
                query = query.limit(limit)
            rows = query.all()
            return list(reversed(rows))

    def get_traces(self, limit: Optional[int] = None, host: Optional[str] = None) -> List[TraceRecord]:
        with get_session(self.Session) as session:
            query = session.query(TraceRecord).order_by(desc(TraceRecord.timestamp))
            if host:
                query = query.filter(TraceRecord.host == host)
            if limit:
                query = query.limit(limit)
            return query.all()

    def to_dict(self, measurement: Measurement) -> dict:
        return {
            "id": measurement.id,
            "timestamp": measurement.timestamp.isoformat(),
            "status": measurement.status,
            "target": measurement.target_name,
            "country": measurement.target_country,
            "city": measurement.target_city,
            "latency": measurement.latency_ms,
            "jitter": measurement.jitter_ms,
            "latency_synthetic": measurement.latency_synthetic,
            "download": measurement.download_mbps,
            "upload": measurement.upload_mbps,
            "upload_simulated": measurement.upload_simulated,
            "error": measurement.error,
        }

    @staticmethod
    def trace_to_dict(record: TraceRecord) -> dict:
        return {
            "id": record.id,
            "timestamp": record.timestamp.isoformat(),
            "host": record.host,
            "status": record.status,
            "method": record.method,
            "lines": record.lines.splitlines() if record.lines else [],
            "error": record.error,
        }
