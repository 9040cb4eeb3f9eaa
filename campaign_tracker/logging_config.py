from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog
from structlog.typing import EventDict, Processor

from campaign_tracker.config import AppSettings

LOGGER_NAME = "campaign_tracker"
TELEMETRY_LOGGER_NAME = "campaign_tracker.telemetry"
LOG_FILE_NAME = "campaign-tracker.log"
TELEMETRY_LOG_FILE_NAME = "campaign-tracker-telemetry.log"
# APScheduler reports every job submission at INFO.
_THIRD_PARTY_LOG_LEVELS: dict[str, int] = {
    "apscheduler": logging.WARNING,
    "googleapiclient.discovery_cache": logging.ERROR,
}

LOGGER = logging.getLogger(LOGGER_NAME)


def configure_application_logging(settings: AppSettings) -> Path:
    """
    Route `campaign_tracker.*` records to the console and to rotating JSON files.

    Telemetry events get a file of their own and never reach the console. The
    `sync_run_id` and `sync_trigger` bound during a run show up on every record
    emitted inside it. Returns the path of the main log file.
    """
    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_file = settings.log_dir / LOG_FILE_NAME
    telemetry_log_file = settings.log_dir / TELEMETRY_LOG_FILE_NAME
    console_level = _resolve_log_level(settings.log_level)

    _configure_structlog()

    console = logging.StreamHandler(stream=sys.stdout)
    console.setLevel(console_level)
    console.setFormatter(_console_formatter(colors=_stream_supports_color(sys.stdout)))

    _install_handlers(
        logging.getLogger(LOGGER_NAME),
        [console, _json_file_handler(log_file, settings=settings, level=logging.DEBUG)],
        level=logging.DEBUG,
    )
    _install_handlers(
        logging.getLogger(TELEMETRY_LOGGER_NAME),
        [_json_file_handler(telemetry_log_file, settings=settings, level=logging.INFO)],
        level=logging.INFO,
    )
    for name, level in _THIRD_PARTY_LOG_LEVELS.items():
        _install_handlers(logging.getLogger(name), [console], level=level)

    LOGGER.info(
        "logging configured console_level=%s path=%s telemetry_path=%s max_bytes=%s",
        logging.getLevelName(console_level),
        log_file,
        telemetry_log_file,
        settings.log_file_max_bytes,
    )
    return log_file


def _resolve_log_level(raw_level: str) -> int:
    level = logging.getLevelName(raw_level.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _install_handlers(
    logger: logging.Logger,
    handlers: Sequence[logging.Handler],
    *,
    level: int,
) -> None:
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
        existing.close()
    logger.setLevel(level)
    logger.propagate = False
    for handler in handlers:
        logger.addHandler(handler)


def _json_file_handler(path: Path, *, settings: AppSettings, level: int) -> logging.Handler:
    # maxBytes=0 disables rotation.
    handler = RotatingFileHandler(
        path,
        maxBytes=settings.log_file_max_bytes,
        backupCount=settings.log_file_backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_pre_chain(),
            processors=[
                _add_source_location,
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(sort_keys=True),
            ],
        )
    )
    return handler


def _console_formatter(*, colors: bool) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.dev.ConsoleRenderer(colors=colors),
        ],
    )


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _add_component,
            structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _pre_chain() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        _add_component,
        structlog.processors.TimeStamper(fmt="iso", utc=True, key="timestamp"),
    ]


def _add_component(
    _logger: logging.Logger | None,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # campaign_tracker.view_sync -> view_sync; third-party loggers keep their root name.
    logger_name = str(event_dict.get("logger", ""))
    prefix = f"{LOGGER_NAME}."
    if logger_name.startswith(prefix):
        event_dict.setdefault("component", logger_name[len(prefix):])
    elif logger_name:
        event_dict.setdefault("component", logger_name.split(".", 1)[0])
    return event_dict


def _add_source_location(
    _logger: logging.Logger | None,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    record = event_dict.get("_record")
    if isinstance(record, logging.LogRecord):
        event_dict["module"] = record.module
        event_dict["lineno"] = record.lineno
        event_dict["thread_name"] = record.threadName
    return event_dict


def _stream_supports_color(stream: object) -> bool:
    isatty = getattr(stream, "isatty", None)
    if not callable(isatty):
        return False
    try:
        return bool(isatty())
    except (OSError, ValueError):
        return False
