"""Background scheduler for periodic throughput runs."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AppConfig
from .exporter import CSVExporter
from .measurements.throughput import ThroughputOrchestrator

LOGGER = logging.getLogger(__name__)


class SchedulerService:
    def __init__(
        self,
        config: AppConfig,
        orchestrator: ThroughputOrchestrator,
        exporter: CSVExporter,
    ) -> None:
        self.config = config
        self.orchestrator = orchestrator
        self.exporter = exporter
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.started = False

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return

        if not self.config.scheduler.enabled:
            LOGGER.info("Scheduled throughput runs are disabled in configuration")
            return

        try:
            interval = self.config.scheduler.interval_minutes
            trigger = IntervalTrigger(minutes=interval)
            self.scheduler.add_job(self._run_cycle, trigger=trigger, id="scheduled-throughput", max_instances=1)
            self.scheduler.start()
            self.started = True
            LOGGER.info("Scheduler started with interval %s minutes", interval)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to start scheduler: %s", exc, exc_info=True)
            LOGGER.error("Throughput runs can still be triggered manually")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False

    def _run_cycle(self) -> None:
        LOGGER.info("Starting scheduled throughput run")
        try:
            if not self.orchestrator.start_run():
                LOGGER.info("Skipping scheduled run - a throughput run is already active")
                return
            self.orchestrator.join()
            self.exporter.write_snapshot()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Scheduled throughput run failed: %s", exc)
