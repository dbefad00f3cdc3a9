"""
Tests for the daily sweep entry point
"""

import json
import pytest

import run
from microloan.config import reload_config


@pytest.fixture
def environment(monkeypatch):
    """Set MICROLOAN_ variables for one test and restore the global config afterwards"""
    def apply(**values):
        for key, value in values.items():
            monkeypatch.setenv(f"MICROLOAN_{key.upper()}", value)
        reload_config()

    yield apply
    monkeypatch.undo()
    reload_config()


class TestRun:
    """Test run.main"""

    def test_sweep_without_penalty_config(self, environment, capsys):
        """Test a fresh store has no penalty configuration, so the sweep is skipped"""
        environment(database_url="memory://", log_format="text")

        assert run.main(["--date", "2024-01-04"]) == 0

        result = json.loads(capsys.readouterr().out)
        assert result["as_of"] == "2024-01-04"
        assert result["skipped"] is True

    def test_unsupported_storage_url(self, environment):
        """Test an unusable storage URL fails before the sweep"""
        environment(database_url="postgresql://localhost/microloan")

        with pytest.raises(ValueError):
            run.main([])
