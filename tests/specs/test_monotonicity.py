"""
Power should grow with the group effect and with the number of subjects.
"""

import pytest

from tests.config import DEFAULT_ALPHA, EFFECT_LADDER, N_REPS_ORDERING, SEED, SMALL_DESIGN
from tests.helpers.mc_margins import mc_margin

pytestmark = pytest.mark.slow


def _power(design):
    from mlmpower import run_power_simulation

    return run_power_simulation(N_REPS_ORDERING, design, DEFAULT_ALPHA, seed=SEED, progress_callback=False).power


class TestMonotonicity:
    """Ordering of power across designs."""

    def test_power_increases_with_effect(self):
        powers = [_power({**SMALL_DESIGN, "fixed_group_effect": effect}) for effect in EFFECT_LADDER]
        slack = mc_margin(0.5, N_REPS_ORDERING) / 100
        for lower, higher in zip(powers, powers[1:]):
            assert higher >= lower - slack, f"Power not monotone in effect size: {powers}"
        assert powers[-1] > powers[0]

    def test_power_increases_with_subjects(self):
        small = _power({**SMALL_DESIGN, "subject_count": 12})
        large = _power({**SMALL_DESIGN, "subject_count": 40})
        assert large > small

    def test_negative_effect_symmetric(self):
        positive = _power({**SMALL_DESIGN, "fixed_group_effect": 0.5})
        negative = _power({**SMALL_DESIGN, "fixed_group_effect": -0.5})
        assert abs(positive - negative) * 100 <= 2 * mc_margin(positive, N_REPS_ORDERING)
