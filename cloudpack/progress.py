"""Progress reporting for long bounded waits.

A background thread ticks every PROGRESS_INTERVAL seconds and renders a rich
progress bar of elapsed time against the wait's budget. The controller owns
the reporter and always finishes it, including on exceptional exits.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from loguru import logger
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    TaskID,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from cloudpack.constants import PROGRESS_INTERVAL
from cloudpack.core.exceptions import TimeoutExceeded

type Clock = Callable[[], float]


@dataclass
class ProgressState:
    """Shared between the reporter thread and its owner. Guard with the lock."""

    started_at: float
    deadline: float
    fraction: float = 0.0


@dataclass
class ProgressHandle:
    """A running reporter, returned by ProgressReporter.start."""

    label: str
    total: float
    state: ProgressState
    progress: Progress
    task_id: TaskID
    lock: threading.Lock = field(default_factory=threading.Lock)
    stop: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None
    finished: bool = False
    renders: int = 0

    @property
    def fraction(self) -> float:
        with self.lock:
            return self.state.fraction


class ProgressReporter:
    """Starts and finishes background progress tickers."""

    def __init__(
        self,
        console: Console | None = None,
        interval: float = PROGRESS_INTERVAL,
        clock: Clock = time.monotonic,
    ) -> None:
        self._console = console or Console(stderr=True)
        self._interval = interval
        self._clock = clock

    def start(self, label: str, total: float) -> ProgressHandle:
        now = self._clock()
        progress = Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TextColumn("{task.fields[left]}"),
            console=self._console,
            auto_refresh=False,
        )
        task_id = progress.add_task(label, total=total, left="")
        handle = ProgressHandle(
            label=label,
            total=total,
            state=ProgressState(started_at=now, deadline=now + total),
            progress=progress,
            task_id=task_id,
        )
        progress.start()
        handle.thread = threading.Thread(
            target=self._run,
            args=(handle,),
            daemon=True,
            name=f"cloudpack-progress-{label}",
        )
        handle.thread.start()
        return handle

    def finish(self, handle: ProgressHandle) -> None:
        """Stop the ticker. No render happens after this returns."""
        handle.stop.set()
        if handle.thread is not None and handle.thread is not threading.current_thread():
            handle.thread.join(timeout=max(1.0, self._interval * 4))
        with handle.lock:
            if handle.finished:
                return
            handle.finished = True
            handle.progress.stop()

    @contextmanager
    def reporting(self, label: str, total: float) -> Iterator[ProgressHandle]:
        handle = self.start(label, total)
        try:
            yield handle
        finally:
            self.finish(handle)

    def _run(self, handle: ProgressHandle) -> None:
        while not handle.stop.is_set():
            self._render(handle)
            handle.stop.wait(self._interval)

    def _render(self, handle: ProgressHandle) -> None:
        with handle.lock:
            if handle.finished:
                return
            state = handle.state
            elapsed = self._clock() - state.started_at
            total = max(handle.total, 1e-9)
            state.fraction = min(1.0, elapsed / total)
            left = max(0.0, state.deadline - self._clock())
            handle.progress.update(
                handle.task_id,
                completed=min(elapsed, handle.total),
                left=f"{left:.0f}s left",
            )
            handle.progress.refresh()
            handle.renders += 1


# =============================================================================
# Bounded waits
# =============================================================================


@dataclass(frozen=True, slots=True)
class Deadline:
    """Cooperative time budget for a block of work."""

    label: str
    budget: float
    started_at: float
    clock: Clock = time.monotonic

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started_at

    @property
    def remaining(self) -> float:
        return max(0.0, self.budget - self.elapsed)

    @property
    def expired(self) -> bool:
        return self.elapsed >= self.budget

    def check(self) -> None:
        """Raise TimeoutExceeded once the budget is spent."""
        if self.expired:
            raise TimeoutExceeded(self.label, self.budget, self.elapsed)


def eta_message(timeout: float, now: datetime) -> str:
    abort_at = now + timedelta(seconds=timeout)
    if timeout <= 120:
        return f"{timeout:g} seconds at {abort_at.strftime('%I:%M:%S %p')}"
    return f"{int(timeout // 60)} minutes at {abort_at.strftime('%I:%M %p')}"


@contextmanager
def bounded(
    label: str,
    timeout: float,
    reporter: ProgressReporter | None = None,
    clock: Clock = time.monotonic,
) -> Iterator[Deadline]:
    """Run a block under a time budget with a progress bar.

    The block checks the yielded Deadline; the reporter is finished on
    every exit path.
    """
    reporter = reporter or ProgressReporter(clock=clock)
    now = datetime.now()
    logger.info("{label} (Started at {at})", label=label, at=now.strftime("%I:%M:%S %p"))
    logger.info(
        "Control will be returned to you in {eta} if {what} is unfinished.",
        eta=eta_message(timeout, now),
        what=label.lower(),
    )

    deadline = Deadline(label=label, budget=timeout, started_at=clock(), clock=clock)
    with reporter.reporting(label, timeout):
        yield deadline
