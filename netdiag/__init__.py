"""Application bootstrap helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import init_db
from .exporter import CSVExporter
from .logging_setup import configure_logging
from .measurements.catalog import TargetCatalog
from .measurements.download import DownloadRunner
from .measurements.latency import ChainedReachability, LatencyProber, PingReachability, TcpReachability
from .measurements.manager import MeasurementManager
from .measurements.sampler import TransferSampler
from .measurements.sources import build_sources
from .measurements.throughput import ThroughputOrchestrator
from .measurements.trace_service import TraceService
from .measurements.traceroute import RouteTracer, build_default_strategies
from .scheduler import SchedulerService
from .web.app import create_web_app


class ApplicationContext:
    """Holds shared singletons for the service."""

    def __init__(self, config: AppConfig):
        self.config = config
        configure_logging(config)
        self.Session = init_db(config.paths.data_dir)
        self.measurements = MeasurementManager(self.Session)
        self.exporter = CSVExporter(config, self.Session)
        self.catalog = TargetCatalog(config.targets, config.selected_target)

        throughput = config.throughput
        self.latency_prober = LatencyProber(
            ChainedReachability([PingReachability(), TcpReachability(config.latency.tcp_ports)])
        )
        sampler = TransferSampler(
            chunk_size=throughput.chunk_size,
            report_interval_ms=throughput.report_interval_ms,
            max_duration_ms=throughput.max_duration_ms,
        )
        self.downloads = DownloadRunner(lambda: build_sources(throughput), sampler, throughput.watchdog_ms)
        self.orchestrator = ThroughputOrchestrator(
            self.latency_prober,
            self.downloads,
            throughput_config=throughput,
            latency_config=config.latency,
            target_provider=lambda: self.catalog.selected,
        )
        self.orchestrator.add_completion_listener(self.measurements.record_run)

        trace = config.traceroute
        self.tracer = RouteTracer(
            build_default_strategies(
                probe_timeout_ms=trace.probe_timeout_ms,
                ttl_hop_delay_ms=trace.ttl_hop_delay_ms,
                tcp_ports=trace.tcp_ports,
                tcp_max_hops=trace.tcp_max_hops,
                tcp_hop_delay_ms=trace.tcp_hop_delay_ms,
                simulated_hops=trace.simulated_hops,
                simulated_delay_ms=trace.simulated_delay_ms,
            ),
            probe_timeout_ms=trace.probe_timeout_ms,
        )
        self.traces = TraceService(self.tracer, default_max_hops=trace.max_hops)
        self.traces.add_completion_listener(self.measurements.record_trace)

        self.scheduler = SchedulerService(config, self.orchestrator, self.exporter)
        self.web_app = create_web_app(
            config=config,
            catalog=self.catalog,
            orchestrator=self.orchestrator,
            trace_service=self.traces,
            measurement_manager=self.measurements,
            exporter=self.exporter,
        )

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.orchestrator.cancel_run()
        self.traces.cancel_trace()


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config)
