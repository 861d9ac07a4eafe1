"""Tests for run persistence, history queries and CSV export."""

import csv
import io
from datetime import datetime, timedelta

import pytest

from netdiag.config import load_config
from netdiag.db import Measurement, get_session, init_db
from netdiag.exporter import CSVExporter
from netdiag.measurements.manager import MeasurementManager
from netdiag.measurements.models import HopMethod, MeasurementState, RunStatus, TraceState
from netdiag.measurements.models import TestPhase as Phase


@pytest.fixture
def config(config_file):
    return load_config(str(config_file))


@pytest.fixture
def session_factory(config):
    return init_db(config.paths.data_dir)


@pytest.fixture
def manager(session_factory):
    return MeasurementManager(session_factory)


def finished_state(target, **changes):
    values = dict(
        status=RunStatus.DONE,
        phase=Phase.COMPLETED,
        download_mbps=92.5,
        upload_mbps=61.0,
        latency_ms=14,
        jitter_ms=3,
        progress_pct=100.0,
        target=target,
    )
    values.update(changes)
    return MeasurementState(**values)


class TestMeasurementManager:
    """Recording and querying throughput runs and traces."""

    def test_record_completed_run(self, manager, target):
        manager.record_run(finished_state(target))

        rows = manager.get_measurements()
        assert len(rows) == 1
        row = manager.to_dict(rows[0])
        assert row["status"] == "done"
        assert row["target"] == "Local"
        assert row["download"] == 92.5
        assert row["upload"] == 61.0
        assert row["upload_simulated"] is True
        assert row["latency"] == 14

    def test_failed_run_has_no_upload(self, manager, target):
        manager.record_run(
            finished_state(target, status=RunStatus.ERROR, upload_mbps=3.0, error="Could not connect")
        )

        row = manager.to_dict(manager.get_measurements()[0])
        assert row["status"] == "error"
        assert row["upload"] is None
        assert row["error"] == "Could not connect"

    def test_filters_and_limit(self, manager, session_factory, target):
        now = datetime.utcnow()
        with get_session(session_factory) as session:
            for days, name in [(3, "Local"), (2, "Backup"), (1, "Local")]:
                session.add(Measurement(timestamp=now - timedelta(days=days), status="done", target_name=name))

        assert len(manager.get_measurements()) == 3
        assert [r.target_name for r in manager.get_measurements(target_name="Local")] == ["Local", "Local"]
        recent = manager.get_measurements(limit=2)
        assert [r.target_name for r in recent] == ["Backup", "Local"]
        assert len(manager.get_measurements(start=now - timedelta(days=2, hours=1))) == 2
        assert len(manager.get_measurements(end=now - timedelta(days=2, hours=12))) == 1

    def test_record_trace(self, manager):
        state = TraceState(
            status=RunStatus.DONE,
            host="example.net",
            lines=(" 1  10.0.0.1  1.2 ms", " 2  192.0.2.10  9.8 ms"),
            method=HopMethod.TTL_PROBE,
        )
        manager.record_trace(state)

        traces = manager.get_traces(host="example.net")
        assert len(traces) == 1
        record = manager.trace_to_dict(traces[0])
        assert record["method"] == "ttl-probe"
        assert record["lines"] == list(state.lines)
        assert manager.get_traces(host="other.net") == []


class TestCSVExporter:
    def test_csv_contains_header_and_rows(self, config, session_factory, manager, target):
        manager.record_run(finished_state(target))
        exporter = CSVExporter(config, session_factory)

        rows = list(csv.reader(io.StringIO(exporter.build_csv().getvalue())))

        assert rows[0][:3] == ["timestamp", "status", "target"]
        assert len(rows) == 2
        assert rows[1][1] == "done"
        assert rows[1][2] == "Local"

    def test_write_snapshot(self, config, session_factory, manager, target):
        manager.record_run(finished_state(target))
        exporter = CSVExporter(config, session_factory)

        path = exporter.write_snapshot()

        assert path == config.paths.data_dir / "results.csv"
        assert "Local" in path.read_text(encoding="utf-8")
