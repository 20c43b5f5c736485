"""
Progress reporting for CRTPower simulations.

Progress is reported through a plain ``(current, total)`` callback so the
engine works the same from scripts, notebooks and GUI front-ends. The
engine never writes progress itself; it only advances a reporter.
"""

import sys
from typing import Callable, Optional


class SimulationCancelled(Exception):
    """Raised when a simulation is cancelled through ``cancel_check``."""

    pass


class ProgressReporter:
    """Counts completed iterations and forwards throttled progress events.

    The callback receives ``(current, total)`` at most once every
    *update_every* iterations, on the final iteration, and once more from
    ``finish()`` if the last completed count has not been reported yet.
    A run stopped early therefore ends on ``(n_evaluated, total)``, never
    on a count it did not reach. Callbacks with a ``close()`` method are
    closed by ``finish()``.

    Args:
        total: Planned number of iterations.
        callback: Function called as ``callback(current, total)``.
        update_every: Minimum number of iterations between events.
            Defaults to ``max(1, total // 200)``.
    """

    def __init__(
        self,
        total: int,
        callback: Callable[[int, int], None],
        update_every: Optional[int] = None,
    ):
        self.total = total
        self._callback = callback
        self._current = 0
        self._reported: Optional[int] = None
        self.update_every = update_every if update_every is not None else max(1, total // 200)

    @property
    def current(self) -> int:
        return self._current

    def _emit(self):
        self._reported = self._current
        self._callback(self._current, self.total)

    def start(self):
        self._current = 0
        self._emit()

    def advance(self, n: int = 1):
        self._current += n
        if self._current >= self.total or self._current % self.update_every == 0:
            self._emit()

    def finish(self):
        """Report the final completed count and close the callback."""
        if self._reported != self._current:
            self._emit()
        close = getattr(self._callback, "close", None)
        if callable(close):
            close()


class PrintReporter:
    """Console progress on stderr: ``\\rProgress:  45.0% (45/100 simulations)``.

    The line is terminated on completion or when the run closes it early.
    """

    def __init__(self):
        self._open = False

    def __call__(self, current: int, total: int):
        if total <= 0:
            return
        sys.stderr.write(f"\rProgress: {100.0 * current / total:5.1f}% ({current}/{total} simulations)")
        sys.stderr.flush()
        self._open = True
        if current >= total:
            self.close()

    def close(self):
        if self._open:
            sys.stderr.write("\n")
            sys.stderr.flush()
            self._open = False


class TqdmReporter:
    """tqdm progress bar (optional dependency, imported on first event).

    Usage::

        from crtpower.progress import TqdmReporter
        run_power_simulation(config, progress_callback=TqdmReporter())
    """

    def __init__(self, **tqdm_kwargs):
        self._tqdm_kwargs = tqdm_kwargs
        self._bar = None

    def __call__(self, current: int, total: int):
        from tqdm import tqdm

        if self._bar is None:
            self._bar = tqdm(total=total, unit="sim", **self._tqdm_kwargs)
        if current > self._bar.n:
            self._bar.update(current - self._bar.n)
        if current >= total:
            self.close()

    def close(self):
        """Close the bar where it stands (an early-stopped run stays short of total)."""
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def make_reporter(total: int, callback: Optional[Callable[[int, int], None]]) -> Optional[ProgressReporter]:
    """Wrap *callback* in a ``ProgressReporter``; ``None`` disables reporting."""
    if callback is None or total <= 0:
        return None
    return ProgressReporter(total, callback)
