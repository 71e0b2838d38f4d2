"""Runtime configuration for the job engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from queueworks.engine.models import FIFO, QueueOrder


@dataclass(slots=True)
class RunnerSettings:
    """Runner and worker-loop settings."""

    worker_id: str = field(default_factory=lambda: f"worker-{uuid4().hex[:8]}")
    default_queue: str = "default"
    run_limit: int = 10
    max_parallel: int = 4
    sequential: bool = False
    stale_after_seconds: int = 1_800
    job_timeout_seconds: float | None = None
    delete_on_complete: bool = False
    poll_interval_seconds: float = 2.0


@dataclass(slots=True)
class QueueSettings:
    """Per-queue processing order and job limits."""

    orders: dict[str, QueueOrder] = field(default_factory=dict)
    limits: dict[str, int] = field(default_factory=dict)

    def order_for(self, queue: str) -> QueueOrder:
        return self.orders.get(queue, FIFO)

    def limit_for(self, queue: str, default: int) -> int:
        return min(self.limits.get(queue, default), default)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".queueworks.db")
    busy_timeout_ms: int = 5_000
    definitions: str | None = None
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    queues: QueueSettings = field(default_factory=QueueSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        timeout_raw = os.getenv("QUEUEWORKS_JOB_TIMEOUT_SECONDS", "").strip()
        worker_id = os.getenv("QUEUEWORKS_WORKER_ID", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("QUEUEWORKS_DB_PATH", ".queueworks.db")),
            busy_timeout_ms=int(os.getenv("QUEUEWORKS_BUSY_TIMEOUT_MS", "5000")),
            definitions=os.getenv("QUEUEWORKS_DEFINITIONS", "").strip() or None,
            runner=RunnerSettings(
                worker_id=worker_id or f"worker-{uuid4().hex[:8]}",
                default_queue=os.getenv("QUEUEWORKS_DEFAULT_QUEUE", "default").strip()
                or "default",
                run_limit=int(os.getenv("QUEUEWORKS_RUN_LIMIT", "10")),
                max_parallel=int(os.getenv("QUEUEWORKS_MAX_PARALLEL", "4")),
                sequential=_env_bool("QUEUEWORKS_SEQUENTIAL", default=False),
                stale_after_seconds=int(os.getenv("QUEUEWORKS_STALE_AFTER_SECONDS", "1800")),
                job_timeout_seconds=float(timeout_raw) if timeout_raw else None,
                delete_on_complete=_env_bool("QUEUEWORKS_DELETE_ON_COMPLETE", default=False),
                poll_interval_seconds=float(
                    os.getenv("QUEUEWORKS_POLL_INTERVAL_SECONDS", "2.0"),
                ),
            ),
            queues=QueueSettings(
                orders=_collect_queue_orders(),
                limits=_collect_queue_limits(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the runner cannot work with."""

        if self.busy_timeout_ms <= 0:
            raise ValueError("QUEUEWORKS_BUSY_TIMEOUT_MS must be > 0.")
        if self.runner.run_limit <= 0:
            raise ValueError("QUEUEWORKS_RUN_LIMIT must be a positive integer.")
        if self.runner.max_parallel <= 0:
            raise ValueError("QUEUEWORKS_MAX_PARALLEL must be a positive integer.")
        if self.runner.stale_after_seconds < 0:
            raise ValueError("QUEUEWORKS_STALE_AFTER_SECONDS must be >= 0.")
        if self.runner.job_timeout_seconds is not None and self.runner.job_timeout_seconds <= 0:
            raise ValueError("QUEUEWORKS_JOB_TIMEOUT_SECONDS must be > 0 when set.")
        if self.runner.poll_interval_seconds < 0:
            raise ValueError("QUEUEWORKS_POLL_INTERVAL_SECONDS must be >= 0.")
        for queue, limit in self.queues.limits.items():
            if limit <= 0:
                raise ValueError(f"Queue limit must be positive: {queue!r} -> {limit}")


def _collect_queue_orders() -> dict[str, QueueOrder]:
    orders: dict[str, QueueOrder] = {}
    for queue, raw in _parse_pairs("QUEUEWORKS_QUEUE_ORDER", "<queue>:<field|-field>"):
        orders[queue] = QueueOrder.parse(raw)
    return orders


def _collect_queue_limits() -> dict[str, int]:
    limits: dict[str, int] = {}
    for queue, raw in _parse_pairs("QUEUEWORKS_QUEUE_LIMITS", "<queue>:<limit>"):
        try:
            limits[queue] = int(raw)
        except ValueError as error:
            raise ValueError(
                f"Invalid QUEUEWORKS_QUEUE_LIMITS value for {queue!r}: {raw!r}",
            ) from error
    return limits


def _parse_pairs(name: str, expected: str) -> list[tuple[str, str]]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return []

    pairs: list[tuple[str, str]] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(f"Invalid {name} entry: {token!r}. Expected format '{expected}'.")
        queue, value = token.split(":", 1)
        if not queue.strip() or not value.strip():
            raise ValueError(f"Invalid {name} entry: {token!r}. Expected format '{expected}'.")
        pairs.append((queue.strip(), value.strip()))
    return pairs


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
