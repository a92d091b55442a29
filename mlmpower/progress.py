"""
Progress reporting for long power simulations.

Repetitions report through a plain ``(current, total)`` callback so that
scripts, notebooks and GUIs can all listen. ``ProgressReporter`` does the
counting and throttling; ``PrintReporter`` and ``TqdmReporter`` are
ready-made callbacks.
"""

import sys
import time
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """A ``cancel_check`` asked the simulation to stop between repetitions."""


class ProgressReporter:
    """Counts finished repetitions and forwards them to *callback*.

    The callback fires once on ``start``, then at most once per
    *update_every* repetitions, and always on the last one. Non-convergent
    repetitions are tallied in ``failed`` so front ends can show them next
    to the count.

    Args:
        total: Number of repetitions in the run.
        callback: Called as ``callback(current, total)``.
        update_every: Throttle step. Defaults to ``max(1, total // 200)``.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
    ):
        self.total = total
        self.callback = callback
        self.update_every = update_every if update_every is not None else max(1, total // 200)
        self.completed = 0
        self.failed = 0
        self._started_at: Optional[float] = None

    @property
    def current(self) -> int:
        return self.completed

    @property
    def elapsed(self) -> float:
        """Seconds since ``start`` (0 before it)."""
        if self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    def start(self):
        self.completed = 0
        self.failed = 0
        self._started_at = time.monotonic()
        self.callback(0, self.total)

    def advance(self, n: int = 1, failed: bool = False):
        """Record *n* finished repetitions (*failed* marks them non-convergent)."""
        self.completed += n
        if failed:
            self.failed += n
        if self.completed >= self.total or self.completed % self.update_every == 0:
            self.callback(self.completed, self.total)

    def finish(self):
        # Cancelled or short-circuited runs still end on total/total.
        if self.completed < self.total:
            self.completed = self.total
            self.callback(self.total, self.total)


def _clock(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    return f"{minutes}:{secs:02d}"


class PrintReporter:
    """One-line console progress with an ETA, written to stderr.

    ``Repetitions 90/200 ( 45.0%) | 0:12 elapsed, ~0:15 left``
    """

    def __init__(self):
        self._t0: Optional[float] = None

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        now = time.monotonic()
        if current == 0 or self._t0 is None:
            self._t0 = now
        elapsed = now - self._t0

        line = f"Repetitions {current}/{total} ({100.0 * current / total:5.1f}%) | {_clock(elapsed)} elapsed"
        if 0 < current < total:
            line += f", ~{_clock(elapsed * (total - current) / current)} left"
        sys.stderr.write(f"\r{line:<72}")
        if current >= total:
            sys.stderr.write("\n")
        sys.stderr.flush()


class TqdmReporter:
    """tqdm progress bar, imported on first use.

    Needs the ``progress`` extra (``pip install MLMPower[progress]``)::

        run_power_simulation(500, params, progress_callback=TqdmReporter(leave=False))
    """

    def __init__(self, **tqdm_kwargs):
        tqdm_kwargs.setdefault("desc", "Repetitions")
        tqdm_kwargs.setdefault("unit", "rep")
        self.tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        if self._bar is None:
            from tqdm import tqdm

            self._bar = tqdm(total=total, **self.tqdm_kwargs)

        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self._bar.close()
            self._bar = None


def resolve_progress(progress_callback, total: int, print_results: bool = False) -> Optional[ProgressReporter]:
    """Map the ``progress_callback`` argument of the entry points to a reporter.

    ``False`` disables progress, ``None`` means ``PrintReporter`` when
    *print_results* is set and nothing otherwise, and any callable is
    wrapped as is.
    """
    if progress_callback is False:
        return None
    if progress_callback is None:
        if not print_results:
            return None
        progress_callback = PrintReporter()
    return ProgressReporter(total, progress_callback)
