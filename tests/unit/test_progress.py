"""
Tests for the repetition progress reporters.
"""

import io
import sys
from unittest.mock import MagicMock, patch

import pytest

from mlmpower.progress import (
    PrintReporter,
    ProgressReporter,
    SimulationCancelled,
    TqdmReporter,
    resolve_progress,
)


def _capture_stderr(reporter, *updates):
    buf = io.StringIO()
    with patch.object(sys, "stderr", buf):
        for current, total in updates:
            reporter(current, total)
    return buf.getvalue()


class TestProgressReporter:
    """Counting, failure tally and throttling."""

    def test_start_resets_and_fires_zero(self):
        cb = MagicMock()
        reporter = ProgressReporter(20, cb)
        reporter.advance(3, failed=True)
        reporter.start()
        cb.assert_called_with(0, 20)
        assert (reporter.completed, reporter.failed) == (0, 0)

    def test_throttle(self):
        seen = []
        reporter = ProgressReporter(30, lambda c, t: seen.append(c), update_every=10)
        reporter.start()
        for _ in range(30):
            reporter.advance()
        assert seen == [0, 10, 20, 30]

    def test_last_repetition_always_reported(self):
        seen = []
        reporter = ProgressReporter(7, lambda c, t: seen.append(c), update_every=5)
        reporter.start()
        for _ in range(7):
            reporter.advance()
        assert seen == [0, 5, 7]

    def test_failed_tally(self):
        reporter = ProgressReporter(4, MagicMock())
        reporter.start()
        reporter.advance(failed=False)
        reporter.advance(failed=True)
        reporter.advance(failed=True)
        assert reporter.current == 3
        assert reporter.failed == 2

    def test_finish_tops_up_once(self):
        cb = MagicMock()
        reporter = ProgressReporter(50, cb)
        reporter.start()
        reporter.advance(20)
        cb.reset_mock()
        reporter.finish()
        reporter.finish()
        cb.assert_called_once_with(50, 50)

    def test_default_update_every(self):
        assert ProgressReporter(1000, MagicMock()).update_every == 5
        assert ProgressReporter(40, MagicMock()).update_every == 1

    def test_elapsed(self):
        reporter = ProgressReporter(3, MagicMock())
        assert reporter.elapsed == 0.0
        reporter.start()
        assert reporter.elapsed >= 0.0


class TestPrintReporter:
    """stderr output of the console reporter."""

    def test_line(self):
        out = _capture_stderr(PrintReporter(), (0, 200), (90, 200))
        assert "Repetitions 90/200" in out
        assert "45.0%" in out
        assert "elapsed" in out
        assert "left" in out

    def test_no_eta_at_start_or_end(self):
        reporter = PrintReporter()
        assert "left" not in _capture_stderr(reporter, (0, 10))
        assert "left" not in _capture_stderr(reporter, (10, 10))

    def test_zero_total_is_silent(self):
        assert _capture_stderr(PrintReporter(), (0, 0)) == ""

    def test_newline_on_completion(self):
        assert _capture_stderr(PrintReporter(), (0, 5), (5, 5)).endswith("\n")


class TestTqdmReporter:
    """tqdm bar driven by a mocked module."""

    def test_missing_tqdm(self):
        with patch.dict("sys.modules", {"tqdm": None}):
            with pytest.raises(ImportError, match="tqdm"):
                TqdmReporter()(0, 10)

    def test_bar_follows_updates(self):
        bar = MagicMock()
        bar.n = 0
        tqdm_module = MagicMock()
        tqdm_module.tqdm = MagicMock(return_value=bar)

        reporter = TqdmReporter(leave=False)
        with patch.dict("sys.modules", {"tqdm": tqdm_module}):
            reporter(0, 40)
            kwargs = tqdm_module.tqdm.call_args.kwargs
            assert kwargs["total"] == 40
            assert kwargs["unit"] == "rep"
            assert kwargs["desc"] == "Repetitions"
            assert kwargs["leave"] is False
            bar.update.assert_not_called()

            reporter(25, 40)
            bar.update.assert_called_with(25)

            bar.n = 25
            reporter(40, 40)
            bar.update.assert_called_with(15)
            bar.close.assert_called_once()


class TestResolveProgress:
    """The ``progress_callback`` argument convention."""

    def test_false_disables(self):
        assert resolve_progress(False, 100, print_results=True) is None

    def test_none_is_silent_without_printing(self):
        assert resolve_progress(None, 100) is None

    def test_none_prints_when_results_print(self):
        reporter = resolve_progress(None, 100, print_results=True)
        assert isinstance(reporter.callback, PrintReporter)

    def test_callable_is_wrapped(self):
        cb = MagicMock()
        reporter = resolve_progress(cb, 40)
        reporter.start()
        cb.assert_called_with(0, 40)
        assert reporter.total == 40


def test_cancelled_is_plain_exception():
    assert str(SimulationCancelled("stop")) == "stop"
    assert not issubclass(SimulationCancelled, ValueError)
