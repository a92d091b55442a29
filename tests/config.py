"""
Shared test configuration constants.

All test files should import from this module to ensure consistency
across the test suite.
"""

# Monte Carlo repetition counts: 4-tier ladder
N_REPS_CHECK = 20
"""Smoke tests: just verify no crash, structure, API contract."""

N_REPS_SCENARIO = 200
"""Scenario tests: the documented 50 x 25 design at its stated repetition count."""

N_REPS_ORDERING = 300
"""Ordering tests: monotonicity of power in the effect size."""

N_REPS_STANDARD = 600
"""Standard tests: null calibration, Type I error."""

SEED = 2137
"""Default random seed for reproducibility."""

# Statistical test parameters
DEFAULT_ALPHA = 0.05
"""Default significance level for hypothesis tests."""

MC_Z = 3.5
"""Z-score for Monte Carlo margin of error calculations."""

ALLOWED_BIAS = 1
"""Maximum allowed bias (in percentage points) for MC power estimates."""

# =============================================================================
# Design configurations
# =============================================================================

SCENARIO_DESIGN = {
    "subject_count": 50,
    "trial_count": 25,
    "group_proportions": (0.5, 0.5),
    "fixed_intercept": 3.5,
    "fixed_group_effect": 0.10,
    "subject_sd": 0.5,
    "trial_sd": 0.5,
    "residual_sd": 0.10,
    "truncate_negative": True,
}
"""The reference design: 50 subjects crossed with 25 trials."""

SMALL_DESIGN = {
    "subject_count": 20,
    "trial_count": 10,
    "group_proportions": (0.5, 0.5),
    "fixed_intercept": 0.0,
    "fixed_group_effect": 0.5,
    "subject_sd": 0.5,
    "trial_sd": 0.2,
    "residual_sd": 1.0,
    "truncate_negative": False,
}
"""Fast design for unit and ordering tests (no truncation)."""

EFFECT_LADDER = (0.0, 0.5, 1.0)
"""Group effects for monotonicity checks on SMALL_DESIGN."""

# Recovery tolerances (large design, single fit)
FIXED_EFFECT_TOLERANCE = 0.05
"""Tolerance for the mean group-effect estimate over repetitions."""

SD_RECOVERY_TOLERANCE = 0.25
"""Relative tolerance for recovering random-effect SDs from one large dataset."""

# Type I error control range for validation tests
TYPE1_ERROR_RANGE = 3.0
"""Half-width (pp) around alpha*100 for Type I error validation.
E.g., for alpha=0.05: expect power in [2.0, 8.0]."""
