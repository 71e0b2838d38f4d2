"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from queueworks.engine.repository import JobRepository

START = datetime(2026, 1, 5, 10, 0, 30, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock shared by repository, runner and scheduler."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "queueworks.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock) -> Iterator[JobRepository]:
    repo = JobRepository(db_path, clock=clock)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()
