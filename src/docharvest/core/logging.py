"""
Logging for DocHarvest.

Records emitted while a job runs carry a small job context (target,
extraction request id, attempt number). The console shows it as a short
prefix; the JSON-lines file nests it under ``job`` so log lines of one run
can be grepped by request id.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

import orjson

if TYPE_CHECKING:
    from rich.console import Console

ROOT_LOGGER = "docharvest"

JOB_FIELDS = ("target", "request_id", "attempt")

LEVEL_STYLES = {
    logging.DEBUG: "dim",
    logging.WARNING: "yellow",
    logging.ERROR: "red",
    logging.CRITICAL: "bold red",
}

PLAIN_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def job_context(record: logging.LogRecord) -> dict[str, Any]:
    """Job fields present on ``record``."""
    return {
        key: getattr(record, key)
        for key in JOB_FIELDS
        if getattr(record, key, None) is not None
    }


# =============================================================================
# Formatting / handlers
# =============================================================================


class JSONFormatter(logging.Formatter):
    """One JSON object per line; job fields nested under ``job``."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        context = job_context(record)
        if context:
            entry["job"] = context
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode("utf-8")


class JobConsoleHandler(logging.Handler):
    """Rich console output prefixed with the job a record belongs to."""

    def __init__(self, console: "Console | None" = None, level: int = logging.INFO):
        super().__init__(level)
        if console is None:
            from rich.console import Console
            console = Console(stderr=True)
        self.console = console

    def prefix(self, record: logging.LogRecord) -> str:
        context = job_context(record)
        if "target" not in context:
            return ""
        tag = f"[cyan]{context['target']}[/cyan]"
        if "attempt" in context:
            tag += f" [dim]#{context['attempt']}[/dim]"
        return f"{tag} "

    def emit(self, record: logging.LogRecord) -> None:
        try:
            style = LEVEL_STYLES.get(record.levelno)
            message = self.format(record)
            if style:
                message = f"[{style}]{message}[/{style}]"
            self.console.print(self.prefix(record) + message, markup=True, highlight=False)
            if record.exc_info:
                self.console.print_exception()
        except Exception:
            self.handleError(record)


def _console_handler(rich_console: bool) -> logging.Handler:
    if rich_console:
        handler: logging.Handler = JobConsoleHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))
    return handler


def _file_handler(log_file: Path | str, json_format: bool) -> logging.Handler:
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Path | str | None = None,
    json_format: bool = True,
    rich_console: bool = True,
) -> logging.Logger:
    """Configure the ``docharvest`` logger tree.

    Calling it again replaces (and closes) the handlers of a previous call.
    The file handler always records DEBUG and up.
    """
    numeric_level = getattr(logging, level.upper())
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(numeric_level)

    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()

    console = _console_handler(rich_console)
    console.setLevel(numeric_level)
    logger.addHandler(console)

    if log_file:
        logger.addHandler(_file_handler(log_file, json_format))

    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """Logger under the ``docharvest`` namespace."""
    return logging.getLogger(f"{ROOT_LOGGER}.{name}" if name else ROOT_LOGGER)


# =============================================================================
# Job-bound logger
# =============================================================================


class JobLogger(logging.LoggerAdapter):
    """Adapter stamping every record with a fixed job context."""

    def __init__(self, logger: logging.Logger, context: Mapping[str, Any]):
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs

    def bind(self, **context: Any) -> "JobLogger":
        """Same logger with ``context`` added (or overriding) the job fields."""
        return JobLogger(self.logger, {**self.extra, **context})


def job_logger(
    target: str,
    request_id: str | None = None,
    name: str = "runner",
) -> JobLogger:
    return JobLogger(get_logger(name), {"target": target, "request_id": request_id})
