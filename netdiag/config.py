"""Configuration loading helpers for the network diagnostics service."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional
import yaml

from .measurements.models import TestTarget


DEFAULT_TARGETS = [
    {
        "name": "Google CDN",
        "country": "BR",
        "city": "São Paulo",
        "download_url": "https://dl.google.com/android/repository/android-ndk-r25c-linux.zip",
    },
    {
        "name": "Cloudflare",
        "country": "BR",
        "city": "Rio de Janeiro",
        "download_url": "https://speed.cloudflare.com/__down?bytes=200000000",
        "upload_url": "https://speed.cloudflare.com/__up",
    },
    {
        "name": "OVH",
        "country": "FR",
        "city": "Paris",
        "download_url": "https://proof.ovh.net/files/100Mb.dat",
    },
]


@dataclass
class PathsConfig:
    data_dir: Path
    logs_dir: Path


@dataclass
class ThroughputConfig:
    chunk_size: int = 64 * 1024
    report_interval_ms: int = 250
    max_duration_ms: int = 10000
    download_timeout_ms: int = 15000
    watchdog_ms: int = 4000
    connect_timeout_s: float = 10.0
    read_timeout_s: float = 4.0
    strategies: List[str] = field(default_factory=lambda: ["session", "direct"])
    upload_steps: int = 20
    upload_step_delay_ms: int = 250
    upload_ratio_min: float = 0.5
    upload_ratio_max: float = 0.9


@dataclass
class LatencyConfig:
    attempts: int = 10
    timeout_ms: int = 1000
    spacing_ms: int = 100
    fallback_host: str = "8.8.8.8"
    tcp_ports: List[int] = field(default_factory=lambda: [443, 80])


@dataclass
class TracerouteConfig:
    max_hops: int = 30
    probe_timeout_ms: int = 1000
    ttl_hop_delay_ms: int = 50
    tcp_max_hops: int = 10
    tcp_ports: List[int] = field(default_factory=lambda: [80, 443, 22, 21, 25, 110, 143])
    tcp_hop_delay_ms: int = 100
    simulated_hops: int = 5
    simulated_delay_ms: int = 200


@dataclass
class WebConfig:
    host: str = "0.0.0.0"
    port: int = 8000
    secret_key: str = "change-me"
    reverse_proxy_headers: bool = False


@dataclass
class SchedulerConfig:
    enabled: bool = False
    interval_minutes: int = 60


@dataclass
class ExportConfig:
    csv_name: str = "results.csv"


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_name: str = "netdiag.log"
    max_bytes: int = 5 * 1024 * 1024
    backup_count: int = 5
    console: bool = True
    subsystems: Dict[str, str] = field(default_factory=dict)


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    throughput: ThroughputConfig
    latency: LatencyConfig
    traceroute: TracerouteConfig
    targets: List[TestTarget]
    selected_target: Optional[str]
    web: WebConfig
    scheduler: SchedulerConfig
    export: ExportConfig
    logging: LoggingConfig

    def find_target(self, name: Optional[str]) -> Optional[TestTarget]:
        if not name:
            return None
        lowered = name.strip().lower()
        return next((t for t in self.targets if t.name.lower() == lowered), None)


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    path = (base / maybe_path).resolve()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _parse_targets(raw: Optional[list]) -> List[TestTarget]:
    entries = raw if raw else DEFAULT_TARGETS
    targets = []
    for entry in entries:
        if not entry.get("name") or not entry.get("download_url"):
            raise ValueError(f"Target entries need a name and a download_url: {entry!r}")
        targets.append(
            TestTarget(
                name=entry["name"],
                country=entry.get("country", ""),
                city=entry.get("city", ""),
                download_url=entry["download_url"],
                upload_url=entry.get("upload_url", ""),
            )
        )
    return targets


def load_config(path: Optional[str] = None) -> AppConfig:
    """Load application configuration from YAML file."""

    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / "config.yaml"
    if not source_path.exists():
        raise FileNotFoundError(f"Missing configuration file at {source_path}")

    with source_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}

    paths_data = data.get("paths", {})
    paths = PathsConfig(
        data_dir=_as_path(root_dir, paths_data.get("data_dir", "data")),
        logs_dir=_as_path(root_dir, paths_data.get("logs_dir", "logs")),
    )

    config = AppConfig(
        root_dir=root_dir,
        paths=paths,
        throughput=ThroughputConfig(**data.get("throughput", {})),
        latency=LatencyConfig(**data.get("latency", {})),
        traceroute=TracerouteConfig(**data.get("traceroute", {})),
        targets=_parse_targets(data.get("targets")),
        selected_target=data.get("selected_target"),
        web=WebConfig(**data.get("web", {})),
        scheduler=SchedulerConfig(**data.get("scheduler", {})),
        export=ExportConfig(**data.get("export", {})),
        logging=LoggingConfig(**data.get("logging", {})),
    )

    if config.selected_target and not config.find_target(config.selected_target):
        raise ValueError(f"selected_target {config.selected_target!r} is not in the target catalog")

    return config
