"""
Tests for response synthesis.
"""

import numpy as np
import pytest

from mlmpower import DesignParameters, InvalidConfiguration, generate_design, synthesize
from mlmpower.stats.data_generation import draw_random_effects


class TestDrawRandomEffects:
    """Random deviates and their layout."""

    def test_shapes(self, small_skeleton, small_params, rng):
        effects = draw_random_effects(small_skeleton, small_params, rng=rng)
        assert effects.subject.shape == (small_params.subject_count,)
        assert effects.trial.shape == (small_params.trial_count,)
        assert effects.residual.shape == (len(small_skeleton),)

    def test_draw_order(self, small_skeleton, small_params):
        """Subjects are drawn first, then trials, then residuals."""
        effects = draw_random_effects(small_skeleton, small_params, seed=5)
        gen = np.random.default_rng(5)
        np.testing.assert_array_equal(effects.subject, gen.normal(0.0, small_params.subject_sd, small_params.subject_count))
        np.testing.assert_array_equal(effects.trial, gen.normal(0.0, small_params.trial_sd, small_params.trial_count))
        np.testing.assert_array_equal(effects.residual, gen.normal(0.0, small_params.residual_sd, len(small_skeleton)))

    def test_per_observation_shares_subject_and_trial(self, small_skeleton, small_params, rng):
        effects = draw_random_effects(small_skeleton, small_params.replace(residual_sd=0.0), rng=rng)
        total = effects.per_observation()
        s0 = small_skeleton["subject"] == 1
        t0 = small_skeleton["trial"] == 1
        # With no residual, subject 1 rows differ only through the trial deviates
        np.testing.assert_allclose(total[s0.to_numpy()] - effects.subject[0], effects.trial)
        np.testing.assert_allclose(total[t0.to_numpy()] - effects.trial[0], effects.subject)

    def test_missing_columns(self, small_params):
        import pandas as pd

        with pytest.raises(InvalidConfiguration, match="missing columns"):
            draw_random_effects(pd.DataFrame({"subject": [1, 2]}), small_params, seed=1)


class TestSynthesize:
    """Response composition."""

    def test_adds_response_without_touching_skeleton(self, small_skeleton, small_params, rng):
        before = small_skeleton.copy()
        data = synthesize(small_skeleton, small_params, rng=rng)
        assert "response" in data.columns
        assert "response" not in small_skeleton.columns
        assert small_skeleton.equals(before)

    def test_same_seed_same_data(self, small_skeleton, small_params):
        a = synthesize(small_skeleton, small_params, seed=11)
        b = synthesize(small_skeleton, small_params, seed=11)
        np.testing.assert_array_equal(a["response"], b["response"])

    def test_different_seed_different_data(self, small_skeleton, small_params):
        a = synthesize(small_skeleton, small_params, seed=11)
        b = synthesize(small_skeleton, small_params, seed=12)
        assert not np.allclose(a["response"], b["response"])

    def test_zero_variance_is_deterministic(self):
        params = DesignParameters(
            subject_count=4,
            trial_count=3,
            fixed_intercept=2.0,
            fixed_group_effect=1.0,
            subject_sd=0.0,
            trial_sd=0.0,
            residual_sd=0.0,
            truncate_negative=False,
        )
        skel = generate_design(4, 3)
        data = synthesize(skel, params, seed=0)
        expected = 2.0 + 1.0 * skel["group_code"]
        np.testing.assert_allclose(data["response"], expected)

    def test_truncation_floors_at_zero(self):
        params = DesignParameters(subject_count=20, trial_count=10, fixed_intercept=0.0, residual_sd=1.0, truncate_negative=True)
        data = synthesize(generate_design(20, 10), params, seed=3)
        assert data["response"].min() == 0.0
        assert (data["response"] == 0.0).sum() > 0

    def test_truncate_argument_overrides_params(self):
        params = DesignParameters(subject_count=20, trial_count=10, fixed_intercept=0.0, residual_sd=1.0, truncate_negative=True)
        data = synthesize(generate_design(20, 10), params, truncate=False, seed=3)
        assert data["response"].min() < 0.0

    def test_group_means_track_effect(self):
        """With many subjects the group difference approaches the effect."""
        params = DesignParameters(
            subject_count=2000,
            trial_count=5,
            fixed_intercept=0.0,
            fixed_group_effect=1.0,
            subject_sd=0.3,
            trial_sd=0.0,
            residual_sd=0.3,
            truncate_negative=False,
        )
        data = synthesize(generate_design(2000, 5), params, seed=21)
        means = data.groupby("group", observed=True)["response"].mean()
        assert means["treatment"] - means["control"] == pytest.approx(1.0, abs=0.1)
