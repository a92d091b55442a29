"""
Tests for the MLMPower configuration object.
"""

import contextlib
import io
import multiprocessing as mp

import pytest

from tests.config import SEED, SMALL_DESIGN


@pytest.fixture
def model():
    from mlmpower import MLMPower

    return MLMPower(SMALL_DESIGN)


class TestDefaults:
    def test_defaults(self):
        from mlmpower import MLMPower

        m = MLMPower()
        assert m.seed == 2137
        assert m.alpha == 0.05
        assert m.n_repetitions == 200
        assert m.parallel is True
        assert m.n_cores == max(1, mp.cpu_count() // 2)
        assert m.max_excluded_fraction == 0.20
        assert m.backend == "custom"
        assert m.singular_policy == "include"
        assert m.params.subject_count == 50

    def test_repr(self, model):
        assert repr(model) == "MLMPower(subject_count=20, trial_count=10, fixed_group_effect=0.5)"


class TestSetters:
    """Fluent configuration with immediate validation."""

    def test_chaining(self, model, suppress_output):
        result = model.set_seed(1).set_alpha(0.01).set_repetitions(30).set_max_excluded(0.1)
        assert result is model
        assert (model.seed, model.alpha, model.n_repetitions, model.max_excluded_fraction) == (1, 0.01, 30, 0.1)

    def test_set_seed_prints(self, model):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            model.set_seed(42)
            model.set_seed(None)
        assert "Seed set to: 42" in buf.getvalue()
        assert "Random seeding enabled" in buf.getvalue()
        assert model.seed is None

    def test_set_design_fields(self, model):
        model.set_design(subject_count=40, fixed_group_effect=0.2)
        assert model.params.subject_count == 40
        assert model.params.fixed_group_effect == 0.2
        assert model.params.trial_count == 10

    def test_set_design_replace(self, model):
        model.set_design({"subject_count": 30})
        assert model.params.subject_count == 30
        assert model.params.trial_count == 25

    @pytest.mark.parametrize(
        "setter, value",
        [
            ("set_alpha", 0.0),
            ("set_alpha", 2),
            ("set_repetitions", 0),
            ("set_max_excluded", 1.5),
            ("set_fit_timeout", -1),
            ("set_backend", "lme4"),
            ("set_singular_policy", "drop"),
            ("set_seed", -3),
        ],
    )
    def test_invalid_values(self, model, setter, value):
        from mlmpower import InvalidConfiguration

        with pytest.raises(InvalidConfiguration):
            getattr(model, setter)(value)

    def test_invalid_design_field(self, model):
        from mlmpower import InvalidConfiguration

        with pytest.raises(InvalidConfiguration):
            model.set_design(subject_sd=-0.1)

    def test_parallel_toggle(self, model):
        pytest.importorskip("joblib")
        model.set_parallel(True, n_cores=2)
        assert model.parallel is True
        assert model.n_cores == min(2, mp.cpu_count())
        model.set_parallel(False)
        assert model.parallel is False
        assert model.n_cores == 1

    def test_fit_timeout_none(self, model):
        model.set_fit_timeout(None)
        assert model.fit_timeout is None

    def test_singular_policy(self, model):
        model.set_singular_policy("exclude")
        assert model.singular_policy == "exclude"


class TestAnalysis:
    """simulate_once and find_power."""

    def test_simulate_once_prints_comparison(self, model):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            result = model.simulate_once()
        out = buf.getvalue()
        assert "SINGLE DATASET FIT" in out
        assert "Model Comparison" in out
        assert "Group effect" in out
        assert result.fit.n_subjects == 20

    def test_find_power_returns_results(self, model):
        buf = io.StringIO()
        with contextlib.redirect_stdout(buf):
            model.set_repetitions(10)
            summary = model.find_power(return_results=True, summary="long")
        out = buf.getvalue()
        assert "MONTE CARLO POWER ANALYSIS RESULTS" in out
        assert "Estimate Distribution" in out
        assert "-log10(p) Density" in out
        assert summary.n_repetitions == 10

    def test_find_power_silent(self, model, capsys):
        model.n_repetitions = 5
        assert model.find_power(print_results=False) is None
        out = capsys.readouterr().out
        assert "MONTE CARLO POWER ANALYSIS RESULTS" not in out

    def test_find_power_uses_seed(self, model):
        model.n_repetitions = 5
        a = model.find_power(print_results=False, return_results=True)
        b = model.find_power(print_results=False, return_results=True)
        assert a.power == b.power
        assert list(a.repetitions["estimate"]) == list(b.repetitions["estimate"])

    def test_settings_reach_simulation(self, model):
        model.n_repetitions = 5
        model.alpha = 0.2
        model.seed = SEED
        summary = model.find_power(print_results=False, return_results=True)
        assert summary.alpha == 0.2
        assert summary.params.subject_count == 20
