"""Observability utilities for the note vault.

Provides rotating file logging for the notevault logger hierarchy and
per-tool outcome metrics. Every tool call ends in exactly one outcome:
``ok``, or one of the failure kinds below, derived from the error the
call ran into.
"""
import logging
import os
import time
import uuid
from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Union

from notevault.exceptions import (
    ConcurrencyConflictError,
    NoteNotFoundError,
    NoteVaultError,
    ValidationError,
    VersionNotFoundError,
)

logger = logging.getLogger(__name__)

DEFAULT_LOG_DIR = Path.home() / ".notevault" / "logs"

# Logging format with ISO 8601 timestamps
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

OUTCOME_OK = "ok"
OUTCOME_CONFLICT = "conflict"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_INVALID = "invalid"
OUTCOME_UNAVAILABLE = "unavailable"
OUTCOME_FAILED = "failed"


def configure_logging(
    log_dir: Optional[Union[str, Path]] = None,
    level: int = logging.INFO,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB per file
    backup_count: int = 5,
    console: bool = True,
) -> Path:
    """Configure persistent file logging with rotation.

    Handlers are attached to the "notevault" logger, so every module logger
    in the package (notevault.storage.*, notevault.services.*, ...) writes
    to the same rotating file.

    Args:
        log_dir: Directory for log files. Defaults to ~/.notevault/logs/
        level: Logging level (default: INFO)
        max_bytes: Maximum size per log file before rotation (default: 10 MB)
        backup_count: Number of rotated files to keep (default: 5)
        console: Also log to stderr (default: True)

    Returns:
        Path to the log directory
    """
    log_path = Path(log_dir) if log_dir else DEFAULT_LOG_DIR
    log_path.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger("notevault")
    root_logger.setLevel(level)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = log_path / "notevault.log"
    if not any(
        isinstance(h, RotatingFileHandler) and h.baseFilename == os.path.abspath(log_file)
        for h in root_logger.handlers
    ):
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # stdout carries the MCP stdio transport, so console logs go to stderr
    if console and not any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
        for h in root_logger.handlers
    ):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        root_logger.addHandler(console_handler)

    root_logger.info(f"Logging configured: {log_file} (max {max_bytes} bytes, {backup_count} backups)")

    return log_path


def classify_error(error: BaseException) -> str:
    """Map an error to the outcome it represents for a tool call."""
    if isinstance(error, ConcurrencyConflictError):
        return OUTCOME_CONFLICT
    if isinstance(error, (NoteNotFoundError, VersionNotFoundError)):
        return OUTCOME_NOT_FOUND
    if isinstance(error, (ValidationError, ValueError)):
        return OUTCOME_INVALID
    if isinstance(error, NoteVaultError) and error.retryable:
        return OUTCOME_UNAVAILABLE
    return OUTCOME_FAILED


@dataclass
class ToolMetrics:
    """Outcome counts and timings for one tool."""
    calls: int = 0
    total_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    outcomes: Counter = field(default_factory=Counter)
    last_error: Optional[str] = None

    @property
    def failures(self) -> int:
        return self.calls - self.outcomes[OUTCOME_OK]


class MetricsCollector:
    """Thread-safe in-memory outcome counters, keyed by tool name.

    Conflicts and not-found results are counted as failures of the call,
    but kept apart from real faults so a busy owner retrying stale writes
    does not look like a broken store.
    """

    def __init__(self) -> None:
        self._tools: Dict[str, ToolMetrics] = {}
        self._lock = Lock()
        self._start_time = datetime.now(timezone.utc)

    def record(
        self,
        tool: str,
        duration_ms: float,
        outcome: str = OUTCOME_OK,
        error: Optional[str] = None,
    ) -> None:
        with self._lock:
            m = self._tools.setdefault(tool, ToolMetrics())
            m.calls += 1
            m.total_duration_ms += duration_ms
            m.max_duration_ms = max(m.max_duration_ms, duration_ms)
            m.outcomes[outcome] += 1
            if outcome != OUTCOME_OK:
                m.last_error = error

    def by_tool(self) -> Dict[str, Dict[str, Any]]:
        """Per-tool snapshot: calls, failures, outcome counts, latency."""
        with self._lock:
            return {
                tool: {
                    "calls": m.calls,
                    "failures": m.failures,
                    "outcomes": dict(m.outcomes),
                    "avg_duration_ms": round(m.total_duration_ms / m.calls, 2),
                    "max_duration_ms": round(m.max_duration_ms, 2),
                    "last_error": m.last_error,
                }
                for tool, m in self._tools.items()
            }

    def summary(self) -> Dict[str, Any]:
        """Totals across all tools, with failures broken down by outcome."""
        with self._lock:
            outcomes: Counter = Counter()
            for m in self._tools.values():
                outcomes.update(m.outcomes)
            calls = sum(outcomes.values())
            failures = calls - outcomes[OUTCOME_OK]
            return {
                "uptime_seconds": (datetime.now(timezone.utc) - self._start_time).total_seconds(),
                "calls": calls,
                "failures": failures,
                "success_rate": (calls - failures) / calls if calls else 1.0,
                "outcomes": dict(outcomes),
            }

    def reset(self) -> None:
        with self._lock:
            self._tools.clear()
            self._start_time = datetime.now(timezone.utc)


metrics = MetricsCollector()


@contextmanager
def timed_operation(operation: str, **context):
    """Time one tool call and record its outcome.

    Tools turn errors into response text instead of raising, so the body
    reports a handled error by storing it under ``op["error"]``. An error
    that escapes the block is classified and re-raised.

    Example:
        with timed_operation("nv_get_note", note_id=note_id) as op:
            try:
                ...
            except Exception as e:
                op["error"] = e
                return format_error(e)
    """
    correlation_id = str(uuid.uuid4())[:8]
    start_time = time.perf_counter()
    op: Dict[str, Any] = {}

    context_str = ", ".join(f"{k}={v}" for k, v in context.items())
    logger.debug(f"[{correlation_id}] START {operation} ({context_str})")

    try:
        yield op
    except Exception as e:
        op["error"] = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        error = op.pop("error", None)
        outcome = classify_error(error) if error is not None else OUTCOME_OK
        metrics.record(operation, duration_ms, outcome, str(error) if error is not None else None)

        result_str = ", ".join(f"{k}={v}" for k, v in op.items())
        logger.debug(
            f"[{correlation_id}] END {operation} ({duration_ms:.2f}ms) [{outcome}] {result_str}"
        )
