"""
Design skeleton generation for crossed subjects-by-trials experiments.

The skeleton holds identifiers, group membership and the numeric group
contrast, but no response. It is deterministic in its inputs, so a power
simulation builds it once and shares it across repetitions.
"""

import math
from typing import Sequence, Tuple

import numpy as np
import pandas as pd

from ..utils.validators import (
    _merge_results,
    _validate_choice,
    _validate_count,
    _validate_group_proportions,
)

GROUP_LEVELS = ("control", "treatment")

# Codes for (control, treatment) under each contrast scheme.
CONTRAST_CODES = {
    "anova": (-0.5, 0.5),
    "sum": (-1.0, 1.0),
}

SKELETON_COLUMNS = ("subject", "trial", "group", "group_code")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def group_sizes(subject_count: int, group_proportions: Sequence[float]) -> Tuple[int, int]:
    """Split *subject_count* into (control, treatment) sizes.

    The control size is ``proportion * subject_count`` rounded half up; the
    treatment group takes the remainder so every subject is assigned once.
    """
    n_control = _round_half_up(group_proportions[0] * subject_count)
    n_control = min(max(n_control, 0), subject_count)
    return n_control, subject_count - n_control


def generate_design(
    subject_count: int,
    trial_count: int,
    group_proportions: Sequence[float] = (0.5, 0.5),
    contrast: str = "anova",
) -> pd.DataFrame:
    """Build the crossed design skeleton.

    Subjects ``1..n_control`` form the control group and the rest the
    treatment group (fixed order, no shuffling). Every subject is crossed
    with trials ``1..trial_count``; rows are ordered subject-major.

    Args:
        subject_count: Number of subjects (positive integer).
        trial_count: Number of trials per subject (positive integer).
        group_proportions: (control, treatment) shares summing to 1.
        contrast: ``"anova"`` codes the groups -0.5/+0.5 so the group
            coefficient is the full between-group difference; ``"sum"``
            codes them -1/+1 so it is half the difference.

    Returns:
        DataFrame with ``subject``, ``trial``, ``group`` (categorical) and
        ``group_code`` columns and ``subject_count * trial_count`` rows.

    Raises:
        InvalidConfiguration: On non-positive counts, bad proportions, or an
            unknown contrast.
    """
    _merge_results(
        [
            _validate_count(subject_count, "subject_count"),
            _validate_count(trial_count, "trial_count"),
            _validate_group_proportions(group_proportions),
            _validate_choice(contrast, tuple(CONTRAST_CODES), "contrast"),
        ]
    ).raise_if_invalid()

    subject_count = int(subject_count)
    trial_count = int(trial_count)
    n_control, _ = group_sizes(subject_count, group_proportions)

    subjects = np.arange(1, subject_count + 1)
    is_treatment = subjects > n_control
    codes = np.where(is_treatment, CONTRAST_CODES[contrast][1], CONTRAST_CODES[contrast][0])

    subject_col = np.repeat(subjects, trial_count)
    trial_col = np.tile(np.arange(1, trial_count + 1), subject_count)
    group_idx = np.repeat(is_treatment.astype(np.int8), trial_count)

    return pd.DataFrame(
        {
            "subject": subject_col,
            "trial": trial_col,
            "group": pd.Categorical.from_codes(group_idx, categories=list(GROUP_LEVELS)),
            "group_code": np.repeat(codes, trial_count).astype(float),
        }
    )
