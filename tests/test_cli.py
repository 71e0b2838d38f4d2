from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from queueworks import __version__
from queueworks.main import queueworks

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("CLI"),
]

DEMO = "queueworks.engine.demo:DEFINITIONS"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "QUEUEWORKS_DEFINITIONS",
        "QUEUEWORKS_QUEUE_ORDER",
        "QUEUEWORKS_QUEUE_LIMITS",
        "QUEUEWORKS_SEQUENTIAL",
        "QUEUEWORKS_JOB_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("QUEUEWORKS_POLL_INTERVAL_SECONDS", "0")


def _enqueue(runner: CliRunner, db_path: Path, *args: str) -> str:
    result = runner.invoke(
        queueworks,
        ["enqueue", "--db-path", str(db_path), "--definitions", DEMO, *args],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=([a-f0-9-]+)", result.output)
    assert match is not None
    return match.group(1)


def test_enqueue_run_and_inspect_task_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _enqueue(runner, db_path, "--task", "echo", "--input", '{"msg": "hi"}')

    run = runner.invoke(
        queueworks,
        [
            "run",
            "--db-path",
            str(db_path),
            "--definitions",
            DEMO,
            "--queue",
            "default",
            "--limit",
            "5",
            "--sequential",
        ],
    )
    assert run.exit_code == 0, run.output
    assert "claimed=1" in run.output
    assert "succeeded=1" in run.output
    assert f"job_id={job_id} outcome=completed" in run.output

    jobs = runner.invoke(
        queueworks,
        ["jobs", "--db-path", str(db_path), "--status", "completed"],
    )
    assert jobs.exit_code == 0
    assert "Jobs: 1" in jobs.output
    assert job_id in jobs.output

    inspect = runner.invoke(queueworks, ["inspect", "--db-path", str(db_path), "--job-id", job_id])
    assert inspect.exit_code == 0
    assert "Status: completed" in inspect.output
    assert "Steps: 1" in inspect.output
    assert "step=echo task=echo complete=yes attempts=1" in inspect.output
    assert "Events: 3" in inspect.output


def test_workflow_job_runs_all_steps(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _enqueue(
        runner,
        db_path,
        "--workflow",
        "echo-then-shout",
        "--input",
        '{"msg": "hey"}',
    )

    run = runner.invoke(
        queueworks,
        ["run", "--db-path", str(db_path), "--definitions", DEMO, "--queue", "all"],
    )
    assert run.exit_code == 0, run.output
    assert "succeeded=1" in run.output

    inspect = runner.invoke(queueworks, ["inspect", "--db-path", str(db_path), "--job-id", job_id])
    assert "Definition: workflow=echo-then-shout" in inspect.output
    assert "Steps: 2" in inspect.output
    assert "step=second task=shout complete=yes" in inspect.output


def test_failing_job_is_retried_later_and_can_be_canceled(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _enqueue(runner, db_path, "--task", "fail", "--input", '{"reason": "nope"}')

    run = runner.invoke(
        queueworks,
        ["run", "--db-path", str(db_path), "--definitions", DEMO],
    )
    assert run.exit_code == 0, run.output
    assert "retried=1" in run.output
    assert "outcome=retried wait_until=" in run.output
    assert "error=nope" in run.output

    cancel = runner.invoke(queueworks, ["cancel", "--db-path", str(db_path), "--job-id", job_id])
    assert cancel.exit_code == 0
    assert f"Job canceled: {job_id}" in cancel.output

    retry = runner.invoke(queueworks, ["retry", "--db-path", str(db_path), "--job-id", job_id])
    assert retry.exit_code == 0
    assert f"Job re-queued: {job_id}" in retry.output

    jobs = runner.invoke(queueworks, ["jobs", "--db-path", str(db_path), "--status", "queued"])
    assert job_id in jobs.output


def test_wait_until_delays_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _enqueue(runner, db_path, "--task", "echo", "--wait-until", "+3600")

    run = runner.invoke(queueworks, ["run", "--db-path", str(db_path), "--definitions", DEMO])

    assert run.exit_code == 0, run.output
    assert "claimed=0" in run.output


def test_schedule_tick_worker_stats_and_prune(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    tick = runner.invoke(
        queueworks,
        ["schedule-tick", "--db-path", str(db_path), "--definitions", DEMO],
    )
    assert tick.exit_code == 0, tick.output
    assert "Schedule tick: evaluated=1" in tick.output
    assert "echo#0 slot=" in tick.output

    _enqueue(runner, db_path, "--task", "shout", "--input", '{"msg": "x"}')
    worker = runner.invoke(
        queueworks,
        ["worker", "--db-path", str(db_path), "--definitions", DEMO, "--max-idle-polls", "1"],
    )
    assert worker.exit_code == 0, worker.output
    assert "Worker summary:" in worker.output
    assert "stop_signal=-" in worker.output

    stats = runner.invoke(queueworks, ["stats", "--db-path", str(db_path)])
    assert stats.exit_code == 0
    assert "Job queue health (window=24h)" in stats.output
    assert "succeeded=" in stats.output

    prune = runner.invoke(queueworks, ["prune", "--db-path", str(db_path), "--hours", "1"])
    assert prune.exit_code == 0
    assert "Pruned jobs older than 1h: total=0" in prune.output


def test_definitions_lists_tasks_and_workflows() -> None:
    result = CliRunner().invoke(queueworks, ["definitions", "--definitions", DEMO])

    assert result.exit_code == 0
    assert "Tasks: 3" in result.output
    assert "echo queue=- attempts=1 cron=0 * * * *" in result.output
    assert "Workflows: 2" in result.output
    assert "echo-then-shout queue=- steps=first,second" in result.output
    assert "greet queue=- handler" in result.output


def test_version_option() -> None:
    result = CliRunner().invoke(queueworks, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


@pytest.mark.parametrize(
    "args",
    [
        ["--task", "ghost"],
        ["--task", "echo", "--input", "[1, 2]"],
        ["--task", "echo", "--input", "{not json"],
        ["--task", "echo", "--wait-until", "tomorrow"],
    ],
)
def test_enqueue_errors_exit_with_code_one(tmp_path: Path, args: list[str]) -> None:
    result = CliRunner().invoke(
        queueworks,
        ["enqueue", "--db-path", str(tmp_path / "cli.db"), "--definitions", DEMO, *args],
    )

    assert result.exit_code == 1


def test_enqueue_requires_exactly_one_target(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        queueworks,
        [
            "enqueue",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--definitions",
            DEMO,
            "--task",
            "echo",
            "--workflow",
            "greet",
        ],
    )

    assert result.exit_code == 2


def test_missing_definitions_exit_with_code_one(tmp_path: Path) -> None:
    result = CliRunner().invoke(queueworks, ["run", "--db-path", str(tmp_path / "cli.db")])

    assert result.exit_code == 1


def test_unreachable_store_exits_with_code_one(tmp_path: Path) -> None:
    db_path = tmp_path / "missing-dir" / "cli.db"

    result = CliRunner().invoke(
        queueworks,
        ["run", "--db-path", str(db_path), "--definitions", DEMO],
    )

    assert result.exit_code == 1


def test_unknown_job_operations_exit_with_code_one(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    for command in ("inspect", "cancel", "retry"):
        result = runner.invoke(queueworks, [command, "--db-path", str(db_path), "--job-id", "nope"])
        assert result.exit_code == 1
