"""
Tests for power aggregation (ResultsProcessor).
"""

import warnings

import numpy as np
import pytest

from mlmpower import DesignParameters, UnreliablePowerEstimate
from mlmpower.core.results import ResultsProcessor, binomial_wilson_ci, status_counts
from mlmpower.core.simulation import REPETITION_COLUMNS


def _row(repetition, p_value, estimate=0.1, status="ok"):
    row = dict.fromkeys(REPETITION_COLUMNS, np.nan)
    row.update(
        repetition=repetition,
        status=status,
        estimate=estimate,
        std_error=0.05,
        df=48.0,
        p_value=p_value,
        failure_reason=None,
    )
    if status == "nonconvergence":
        row.update(estimate=np.nan, p_value=np.nan, failure_reason="did not converge")
    return row


def _rows(p_values, statuses=None):
    statuses = statuses or ["ok"] * len(p_values)
    return [_row(i, p, estimate=0.1 + 0.01 * i, status=s) for i, (p, s) in enumerate(zip(p_values, statuses))]


class TestWilsonInterval:
    """Monte Carlo interval for the power estimate."""

    def test_contains_estimate(self):
        low, high = binomial_wilson_ci(40, 100)
        assert low < 0.4 < high

    def test_bounds(self):
        low, high = binomial_wilson_ci(0, 50)
        assert low == 0.0
        assert 0.0 < high < 0.1
        low, high = binomial_wilson_ci(50, 50)
        assert high == 1.0

    def test_empty(self):
        low, high = binomial_wilson_ci(0, 0)
        assert np.isnan(low) and np.isnan(high)


class TestPower:
    """Empirical power and its complement."""

    def test_power_is_fraction_below_alpha(self):
        rows = _rows([0.001, 0.01, 0.04, 0.2, 0.5, 0.049, 0.051, 0.9])
        summary = ResultsProcessor(alpha=0.05).summarize(rows, DesignParameters())
        assert summary.power == pytest.approx(4 / 8)
        assert summary.type_ii_error == pytest.approx(1 - summary.power)

    def test_p_equal_to_alpha_not_significant(self):
        rows = _rows([0.05, 0.05, 0.01])
        summary = ResultsProcessor(alpha=0.05).summarize(rows, DesignParameters())
        assert summary.power == pytest.approx(1 / 3)

    def test_estimate_statistics(self):
        rows = _rows([0.01, 0.2, 0.3, 0.04])
        summary = ResultsProcessor().summarize(rows, DesignParameters())
        estimates = np.array([0.10, 0.11, 0.12, 0.13])
        assert summary.mean_estimate == pytest.approx(estimates.mean())
        assert summary.sd_estimate == pytest.approx(estimates.std(ddof=1))
        assert summary.mean_std_error == pytest.approx(0.05)
        low, high = summary.estimate_interval
        assert 0.10 <= low < high <= 0.13

    def test_density_partition(self):
        p_values = np.random.default_rng(0).uniform(0, 1, 100) ** 2
        summary = ResultsProcessor(alpha=0.05).summarize(_rows(list(p_values)), DesignParameters())
        density = summary.density
        assert density.threshold == pytest.approx(-np.log10(0.05))
        assert density.mass_not_significant + density.mass_significant == pytest.approx(density.total_mass)

    def test_to_dict(self):
        summary = ResultsProcessor().summarize(_rows([0.01, 0.3, 0.02]), DesignParameters())
        d = summary.to_dict()
        assert d["power"] == summary.power
        assert d["n_repetitions"] == 3
        assert d["params"]["subject_count"] == 50

    def test_repetition_table(self):
        summary = ResultsProcessor().summarize(_rows([0.01, 0.3, 0.02]), DesignParameters())
        assert list(summary.repetitions.columns) == list(REPETITION_COLUMNS)
        assert len(summary.repetitions) == 3


class TestExclusions:
    """Failure policy and the exclusion ceiling."""

    def test_nonconverged_excluded_and_counted(self):
        rows = _rows([0.01] * 9 + [np.nan], ["ok"] * 9 + ["nonconvergence"])
        with pytest.warns(UserWarning, match="1/10 repetitions"):
            summary = ResultsProcessor(max_excluded_fraction=0.2).summarize(rows, DesignParameters())
        assert summary.n_used == 9
        assert summary.n_excluded == 1
        assert summary.n_nonconverged == 1
        assert summary.exclusion_rate == pytest.approx(0.1)
        assert summary.power == 1.0

    def test_above_ceiling_raises(self):
        rows = _rows([0.01] * 7 + [np.nan] * 3, ["ok"] * 7 + ["nonconvergence"] * 3)
        with pytest.raises(UnreliablePowerEstimate) as exc_info:
            ResultsProcessor(max_excluded_fraction=0.2).summarize(rows, DesignParameters())
        err = exc_info.value
        assert err.n_excluded == 3
        assert err.n_repetitions == 10
        assert err.exclusion_rate == pytest.approx(0.3)
        assert err.ceiling == 0.2
        assert "3/10" in str(err)

    def test_at_ceiling_allowed(self):
        rows = _rows([0.01] * 8 + [np.nan] * 2, ["ok"] * 8 + ["nonconvergence"] * 2)
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            summary = ResultsProcessor(max_excluded_fraction=0.2).summarize(rows, DesignParameters())
        assert summary.n_used == 8

    def test_all_excluded_raises_even_with_full_ceiling(self):
        rows = _rows([np.nan] * 4, ["nonconvergence"] * 4)
        with pytest.raises(UnreliablePowerEstimate):
            ResultsProcessor(max_excluded_fraction=1.0).summarize(rows, DesignParameters())

    def test_singular_included_by_default(self):
        rows = _rows([0.01, 0.2, 0.3], ["ok", "singular", "singular"])
        summary = ResultsProcessor().summarize(rows, DesignParameters())
        assert summary.n_singular == 2
        assert summary.n_used == 3
        assert summary.n_excluded == 0

    def test_singular_excluded_by_policy(self):
        rows = _rows([0.01] * 9 + [0.2], ["ok"] * 9 + ["singular"])
        with pytest.warns(UserWarning):
            summary = ResultsProcessor(singular_policy="exclude").summarize(rows, DesignParameters())
        assert summary.n_used == 9
        assert summary.n_excluded == 1
        assert summary.n_singular == 1
        assert summary.power == 1.0

    def test_status_counts(self):
        summary = ResultsProcessor().summarize(_rows([0.01, 0.2], ["ok", "singular"]), DesignParameters())
        assert status_counts(summary.repetitions) == {"ok": 1, "singular": 1, "nonconvergence": 0}
