"""Tests for logging configuration and tool outcome metrics."""
import logging
from logging.handlers import RotatingFileHandler

import pytest

from notevault.exceptions import (
    ConcurrencyConflictError,
    NoteNotFoundError,
    StorageUnavailableError,
    ValidationError,
)
from notevault.observability import (
    OUTCOME_CONFLICT,
    OUTCOME_FAILED,
    OUTCOME_INVALID,
    OUTCOME_NOT_FOUND,
    OUTCOME_OK,
    OUTCOME_UNAVAILABLE,
    MetricsCollector,
    classify_error,
    configure_logging,
    metrics,
    timed_operation,
)


class TestClassifyError:
    @pytest.mark.parametrize(
        "error, outcome",
        [
            (ConcurrencyConflictError(1, expected_version=1, current_version=2),
             OUTCOME_CONFLICT),
            (NoteNotFoundError(7), OUTCOME_NOT_FOUND),
            (ValidationError("bad title"), OUTCOME_INVALID),
            (StorageUnavailableError("disk gone"), OUTCOME_UNAVAILABLE),
            (RuntimeError("boom"), OUTCOME_FAILED),
        ],
    )
    def test_outcomes(self, error, outcome):
        assert classify_error(error) == outcome


class TestMetricsCollector:
    def test_counts_outcomes_per_tool(self):
        collector = MetricsCollector()
        collector.record("nv_update_note", 10.0)
        collector.record("nv_update_note", 30.0, OUTCOME_CONFLICT, error="stale")

        m = collector.by_tool()["nv_update_note"]
        assert m["calls"] == 2
        assert m["failures"] == 1
        assert m["outcomes"] == {OUTCOME_OK: 1, OUTCOME_CONFLICT: 1}
        assert m["avg_duration_ms"] == 20.0
        assert m["max_duration_ms"] == 30.0
        assert m["last_error"] == "stale"

        summary = collector.summary()
        assert summary["calls"] == 2
        assert summary["failures"] == 1
        assert summary["success_rate"] == 0.5

    def test_reset(self):
        collector = MetricsCollector()
        collector.record("nv_get_note", 1.0)
        collector.reset()
        assert collector.by_tool() == {}
        assert collector.summary()["success_rate"] == 1.0


class TestTimedOperation:
    def test_success_recorded(self):
        with timed_operation("nv_get_note", note_id="1") as op:
            op["found"] = True
        assert metrics.by_tool()["nv_get_note"]["outcomes"] == {OUTCOME_OK: 1}

    def test_handled_error_recorded(self):
        with timed_operation("nv_get_note") as op:
            op["error"] = NoteNotFoundError(999)
        m = metrics.by_tool()["nv_get_note"]
        assert m["failures"] == 1
        assert m["outcomes"] == {OUTCOME_NOT_FOUND: 1}

    def test_escaping_error_recorded_and_reraised(self):
        with pytest.raises(KeyError):
            with timed_operation("nv_get_note"):
                raise KeyError("missing")
        m = metrics.by_tool()["nv_get_note"]
        assert m["outcomes"] == {OUTCOME_FAILED: 1}
        assert "missing" in m["last_error"]

class TestConfigureLogging:
    def test_rotating_file_handler_installed_once(self, tmp_path):
        root_logger = logging.getLogger("notevault")
        before = list(root_logger.handlers)
        try:
            configure_logging(log_dir=tmp_path, console=False)
            configure_logging(log_dir=tmp_path, console=False)
            added = [h for h in root_logger.handlers if h not in before]
            assert len(added) == 1
            assert isinstance(added[0], RotatingFileHandler)

            logging.getLogger("notevault.storage.note_repository").info("hello from storage")
            added[0].flush()
            assert "hello from storage" in (tmp_path / "notevault.log").read_text()
        finally:
            for handler in root_logger.handlers:
                if handler not in before:
                    root_logger.removeHandler(handler)
                    handler.close()
