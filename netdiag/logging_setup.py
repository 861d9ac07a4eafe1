"""Logging for the diagnostics service: one rotating file, optional console, per-subsystem levels."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import Dict

from .config import AppConfig

# short names accepted under logging.subsystems in config.yaml
SUBSYSTEM_LOGGERS: Dict[str, str] = {
    "sampler": "netdiag.measurements.sampler",
    "download": "netdiag.measurements.download",
    "sources": "netdiag.measurements.sources",
    "throughput": "netdiag.measurements.throughput",
    "latency": "netdiag.measurements.latency",
    "traceroute": "netdiag.measurements.traceroute",
    "traces": "netdiag.measurements.trace_service",
    "storage": "netdiag.measurements.manager",
    "scheduler": "netdiag.scheduler",
    "web": "netdiag.web",
}

# third-party loggers chatty at DEBUG/INFO: pooled connections, every job execution
QUIET_LOGGERS: Dict[str, int] = {
    "urllib3": logging.INFO,
    "apscheduler": logging.WARNING,
}


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level {name!r}")
    return level


def configure_logging(config: AppConfig) -> None:
    settings = config.logging
    log_dir = config.paths.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / settings.file_name

    formatter = logging.Formatter(
        fmt="%(asctime)s [%(levelname)s] %(name)s (%(threadName)s) - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(_level(settings.level))

    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    file_handler = RotatingFileHandler(
        log_path, maxBytes=settings.max_bytes, backupCount=settings.backup_count, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    if settings.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    for name, level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(max(root_logger.level, level))

    for subsystem, level_name in settings.subsystems.items():
        logger_name = SUBSYSTEM_LOGGERS.get(subsystem)
        if logger_name is None:
            raise ValueError(f"Unknown logging subsystem {subsystem!r}")
        logging.getLogger(logger_name).setLevel(_level(level_name))
