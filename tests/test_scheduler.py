"""Unit tests for the periodic throughput scheduler."""

from netdiag.config import load_config
from netdiag.scheduler import SchedulerService


class StubOrchestrator:
    def __init__(self, accept=True):
        self.accept = accept
        self.starts = 0
        self.joins = 0

    def start_run(self):
        self.starts += 1
        return self.accept

    def join(self, timeout=None):
        self.joins += 1


class StubExporter:
    def __init__(self):
        self.snapshots = 0

    def write_snapshot(self):
        self.snapshots += 1


class TestSchedulerService:
    def test_disabled_scheduler_does_not_start(self, config_file):
        config = load_config(str(config_file))
        service = SchedulerService(config, StubOrchestrator(), StubExporter())

        service.start()

        assert not service.started

    def test_enabled_scheduler_registers_job(self, config_file):
        config = load_config(str(config_file))
        config.scheduler.enabled = True
        config.scheduler.interval_minutes = 30
        service = SchedulerService(config, StubOrchestrator(), StubExporter())
        try:
            service.start()
            assert service.started
            assert service.scheduler.get_job("scheduled-throughput") is not None
        finally:
            service.shutdown()
        assert not service.started

    def test_cycle_runs_and_exports(self, config_file):
        orchestrator = StubOrchestrator()
        exporter = StubExporter()
        service = SchedulerService(load_config(str(config_file)), orchestrator, exporter)

        service._run_cycle()

        assert (orchestrator.starts, orchestrator.joins, exporter.snapshots) == (1, 1, 1)

    def test_cycle_skipped_while_run_active(self, config_file):
        orchestrator = StubOrchestrator(accept=False)
        exporter = StubExporter()
        service = SchedulerService(load_config(str(config_file)), orchestrator, exporter)

        service._run_cycle()

        assert orchestrator.joins == 0
        assert exporter.snapshots == 0
