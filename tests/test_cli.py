from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from deferq.main import deferq

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("CLI"),
]

TASK_ID_RE = re.compile(r"task_id=([0-9a-f-]+)")


@pytest.fixture()
def runner(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> CliRunner:
    monkeypatch.setenv("DEFERQ_DB_PATH", str(tmp_path / "cli.db"))
    monkeypatch.setenv("DEFERQ_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setenv("DEFERQ_POLL_JITTER_SECONDS", "0")
    monkeypatch.setenv("DEFERQ_RETRY_POLICY", "fixed")
    monkeypatch.setenv("DEFERQ_RETRY_BASE_SECONDS", "0")
    monkeypatch.setenv("DEFERQ_RETRY_MAX_SECONDS", "0")
    monkeypatch.setenv("DEFERQ_WORKER_ID", "cli-worker")
    monkeypatch.delenv("DEFERQ_HANDLERS", raising=False)
    return CliRunner()


def _create(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(deferq, ["tasks", "create", *args])
    assert result.exit_code == 0, result.output
    match = TASK_ID_RE.search(result.output)
    assert match is not None, result.output
    return match.group(1)


def test_create_work_and_inspect_round_trip(runner: CliRunner) -> None:
    task_id = _create(runner, "--type", "noop", "--max-attempts", "2")

    shown = runner.invoke(deferq, ["tasks", "show", task_id])
    assert shown.exit_code == 0, shown.output
    assert "Status: ready" in shown.output
    assert "Attempt: 0/2" in shown.output

    worked = runner.invoke(deferq, ["worker", "--once"])
    assert worked.exit_code == 0, worked.output
    assert (
        "Worker summary: worker_id=cli-worker processed=1 succeeded=1 failed=0 retried=0"
        in worked.output
    )

    shown = runner.invoke(deferq, ["tasks", "show", task_id])
    assert "Status: completed" in shown.output
    assert "Attempt: 1/2" in shown.output
    assert "claimed attempt=1 claimant=cli-worker" in shown.output

    listed = runner.invoke(deferq, ["tasks", "list", "--status", "completed"])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output


def test_delayed_task_is_scheduled(runner: CliRunner) -> None:
    task_id = _create(runner, "--type", "noop", "--delay-seconds", "3600")

    listed = runner.invoke(deferq, ["tasks", "list", "--status", "scheduled"])
    assert task_id in listed.output

    worked = runner.invoke(deferq, ["worker", "--max-idle-polls", "1"])
    assert "processed=0" in worked.output
    assert "idle_polls=1" in worked.output


def test_explicit_start_time_is_accepted(runner: CliRunner) -> None:
    task_id = _create(runner, "--type", "noop", "--start-at", "2030-01-01T09:00:00+02:00")

    shown = runner.invoke(deferq, ["tasks", "show", task_id])
    assert "Start at: 2030-01-01T07:00:00+00:00" in shown.output
    assert "Status: scheduled" in shown.output


@pytest.mark.parametrize(
    ("args", "message"),
    [
        (["--start-at", "2030-01-01T09:00:00"], "offset"),
        (["--start-at", "tomorrow"], "ISO-8601"),
        (
            ["--start-at", "2030-01-01T09:00:00+00:00", "--delay-seconds", "5"],
            "either",
        ),
        (["--max-attempts", "0"], "--max-attempts"),
    ],
)
def test_create_rejects_invalid_input(
    runner: CliRunner,
    args: list[str],
    message: str,
) -> None:
    result = runner.invoke(deferq, ["tasks", "create", "--type", "noop", *args])

    assert result.exit_code != 0
    assert message in result.output


def test_show_unknown_task_exits_non_zero(runner: CliRunner) -> None:
    result = runner.invoke(deferq, ["tasks", "show", "no-such-task"])

    assert result.exit_code == 1
    assert "Task not found: no-such-task" in result.output


def test_unknown_task_type_is_retried_by_worker(runner: CliRunner) -> None:
    task_id = _create(runner, "--type", "not-registered", "--max-attempts", "1")

    worked = runner.invoke(deferq, ["worker", "--max-idle-polls", "1"])

    assert "processed=1 succeeded=0 failed=1 retried=0" in worked.output
    shown = runner.invoke(deferq, ["tasks", "show", task_id])
    assert "Status: failed" in shown.output
    assert "no handler for task type 'not-registered'" in shown.output


def test_worker_loads_handler_registry_from_import_path(runner: CliRunner) -> None:
    _create(runner, "--type", "noop")

    worked = runner.invoke(
        deferq,
        [
            "worker",
            "--once",
            "--with-sweeper",
            "--worker-id",
            "custom",
            "--handlers",
            "deferq.tasks.handlers:builtin_registry",
        ],
    )

    assert worked.exit_code == 0, worked.output
    assert "worker_id=custom processed=1 succeeded=1" in worked.output


def test_worker_rejects_bad_handler_path(runner: CliRunner) -> None:
    result = runner.invoke(deferq, ["worker", "--once", "--handlers", "no_such_module_xyz:r"])

    assert result.exit_code != 0
    assert "no_such_module_xyz" in result.output


def test_sweep_reports_summary(runner: CliRunner) -> None:
    once = runner.invoke(deferq, ["sweep"])
    looped = runner.invoke(deferq, ["sweep", "--loop", "--max-sweeps", "1"])

    assert once.exit_code == 0, once.output
    assert "Sweep summary: sweeps=1 reclaimed=0 failed=0 errors=0" in once.output
    assert looped.exit_code == 0, looped.output
    assert "sweeps=1" in looped.output


def test_unreachable_storage_is_reported(runner: CliRunner, tmp_path: Path) -> None:
    db_path = tmp_path / "missing-dir" / "queue.db"

    result = runner.invoke(deferq, ["tasks", "list", "--db-path", str(db_path)])

    assert result.exit_code != 0
    assert "unavailable" in result.output


def test_invalid_configuration_is_reported(
    runner: CliRunner,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("DEFERQ_LEASE_SECONDS", "0")

    result = runner.invoke(deferq, ["worker", "--once"])

    assert result.exit_code != 0
    assert "DEFERQ_LEASE_SECONDS" in result.output
