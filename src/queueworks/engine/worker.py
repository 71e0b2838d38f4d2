"""Long-running worker: schedule ticks plus run batches until idle or stopped."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from queueworks.engine.queues import QueueCoordinator, RunRequest
from queueworks.engine.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerLoopSummary:
    """Aggregate worker counters for CLI reporting."""

    batches: int = 0
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    canceled: int = 0
    scheduled: int = 0
    idle_polls: int = 0
    stop_signal: str | None = None


class QueueWorker:
    """Alternates scheduler ticks and coordinator batches."""

    def __init__(
        self,
        *,
        coordinator: QueueCoordinator,
        scheduler: Scheduler | None = None,
        poll_interval_seconds: float = 2.0,
    ) -> None:
        self.coordinator = coordinator
        self.scheduler = scheduler
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_loop(
        self,
        request: RunRequest,
        *,
        max_batches: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerLoopSummary:
        """Run batches until the queue is idle, ``max_batches`` is reached or a stop signal.

        Args:
            request: Queue selection and per-batch limit.
            max_batches: Stop after this many batches (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
                Set to 0 to keep polling until stopped.
        """

        aggregate = WorkerLoopSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop_requested:
                if max_batches is not None and aggregate.batches >= max_batches:
                    break

                if self.scheduler is not None:
                    aggregate.scheduled += self.scheduler.tick().scheduled
                summary = self.coordinator.run(request)
                aggregate.batches += 1
                aggregate.processed += summary.processed
                aggregate.succeeded += summary.succeeded
                aggregate.retried += summary.retried
                aggregate.failed += summary.failed
                aggregate.canceled += summary.canceled

                if summary.claimed == 0:
                    aggregate.idle_polls += 1
                    consecutive_idle += 1
                    if max_idle_polls > 0 and consecutive_idle >= max_idle_polls:
                        break
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

        aggregate.stop_signal = self._stop_signal_name
        return aggregate

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.info("Stop requested (%s); finishing current batch", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
