"""CSV export helpers for throughput history."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import AppConfig
from .db import Measurement, get_session


class CSVExporter:
    def __init__(self, config: AppConfig, session_factory):
        self.config = config
        self.Session = session_factory

    def build_csv(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> io.StringIO:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self._header())

        for row in self._iter_rows(start, end):
            writer.writerow(row)

        buffer.seek(0)
        return buffer

    def _header(self) -> list:
        return [
            "timestamp",
            "status",
            "target",
            "country",
            "city",
            "latency_ms",
            "jitter_ms",
            "latency_synthetic",
            "download_mbps",
            "upload_mbps",
            "upload_simulated",
            "error",
        ]

    def _iter_rows(self, start: Optional[datetime], end: Optional[datetime]):
        with get_session(self.Session) as session:
            query = session.query(Measurement).order_by(Measurement.timestamp)
            if start:
                query = query.filter(Measurement.timestamp >= start)
            if end:
                query = query.filter(Measurement.timestamp <= end)
            for measurement in query.all():
                yield self._row_for_measurement(measurement)

    @staticmethod
    def _row_for_measurement(measurement: Measurement) -> list:
        cells = [
            measurement.target_name,
            measurement.target_country,
            measurement.target_city,
            measurement.latency_ms,
            measurement.jitter_ms,
            measurement.latency_synthetic,
            measurement.download_mbps,
            measurement.upload_mbps,
            measurement.upload_simulated,
            measurement.error,
        ]
        normalized = [CSVExporter._blank_if_none(value) for value in cells]
        return [
            measurement.timestamp.isoformat(),
            measurement.status,
            *normalized,
        ]

    @staticmethod
    def _blank_if_none(value):
        return "" if value is None else value

    def write_snapshot(self) -> Path:
        buffer = self.build_csv()
        target = self.config.paths.data_dir / self.config.export.csv_name
        target.write_text(buffer.getvalue(), encoding="utf-8")
        return target
