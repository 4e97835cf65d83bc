"""
Tests for in-process operation statistics
"""

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from monitoring import get_metrics, operation_timer, reset_metrics


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


class TestOperationTimer:

    def test_records_successful_operation(self):
        with operation_timer("discovery.run"):
            pass
        stats = get_metrics()["operations"]["discovery.run"]
        assert stats["count"] == 1
        assert stats["errors"] == 0
        assert stats["last_executed"] is not None

    def test_errors_recorded_and_propagated(self):
        with pytest.raises(RuntimeError):
            with operation_timer("screening.scan"):
                raise RuntimeError("boom")
        assert get_metrics()["operations"]["screening.scan"]["errors"] == 1

    def test_reset(self):
        with operation_timer("screening.scan"):
            pass
        reset_metrics()
        assert get_metrics()["operations"] == {}
