"""Tests for the ``botm`` command line."""

import json
import logging
from datetime import date

import pytest
from click.testing import CliRunner

import botm.worker.monthly_run
from botm.__main__ import cli
from botm.services.orchestrator import RunOutcome, RunStartError, RunState


@pytest.fixture(autouse=True)
def restore_root_handlers():
    # the CLI points logging at CliRunner's stdout, which is closed afterwards
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runs(monkeypatch):
    calls = []
    results = []

    async def fake_run_monthly(run_date, spotify_id=None, session_factory=None):
        calls.append((run_date, spotify_id))
        result = results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(botm.worker.monthly_run, "run_monthly", fake_run_monthly)
    return calls, results


def test_run_prints_outcome(runs):
    calls, results = runs
    results.append(
        RunOutcome(7, date(2024, 6, 1), RunState.FINALIZED, committed=["u1", "u2"])
    )

    result = CliRunner().invoke(cli, ["--console-logs", "run", "--date", "2024-06-01"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.output)["committed"] == 2
    assert calls == [(date(2024, 6, 1), None)]


def test_run_with_failures_exits_1(runs):
    calls, results = runs
    results.append(
        RunOutcome(7, date(2024, 6, 1), RunState.FINALIZED, failed={"u1": "transient"})
    )

    result = CliRunner().invoke(
        cli, ["--console-logs", "run", "--date", "2024-06-01", "--spotify-id", "u1"]
    )

    assert result.exit_code == 1
    assert calls == [(date(2024, 6, 1), "u1")]


def test_run_that_cannot_start_exits_2(runs):
    _, results = runs
    results.append(RunStartError("database unreachable"))

    result = CliRunner().invoke(cli, ["--console-logs", "run", "--date", "2024-06-01"])

    assert result.exit_code == 2


def test_run_rejects_malformed_date():
    result = CliRunner().invoke(cli, ["run", "--date", "June"])

    assert result.exit_code == 2
    assert "Invalid value" in result.output
