"""
Response synthesis for crossed random-intercept designs.

Given a design skeleton and a ``DesignParameters`` record, draws one
intercept deviate per subject, one per trial and one residual per
observation, then composes

    response = fixed_intercept + subject_dev + trial_dev
               + fixed_group_effect * group_code + residual

All draws come from an explicit ``numpy.random.Generator`` so that
repetitions running in parallel use independent streams.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from ..exceptions import InvalidConfiguration


@dataclass
class RandomEffects:
    """Random deviates drawn for one synthetic dataset."""

    subject: np.ndarray
    """(n_subjects,) intercept deviates, ordered by sorted subject id."""

    trial: np.ndarray
    """(n_trials,) intercept deviates, ordered by sorted trial id."""

    residual: np.ndarray
    """(n_observations,) observation-level errors, in row order."""

    subject_index: np.ndarray
    """(n_observations,) position of each row's subject in ``subject``."""

    trial_index: np.ndarray
    """(n_observations,) position of each row's trial in ``trial``."""

    def per_observation(self) -> np.ndarray:
        """Total random contribution for every row."""
        return self.subject[self.subject_index] + self.trial[self.trial_index] + self.residual


def _resolve_rng(rng: Optional[np.random.Generator], seed) -> np.random.Generator:
    if rng is not None:
        return rng
    return np.random.default_rng(seed)


def draw_random_effects(skeleton: pd.DataFrame, params, rng: Optional[np.random.Generator] = None, seed=None) -> RandomEffects:
    """Draw subject, trial and residual deviates for *skeleton*.

    Draw order is fixed (subjects, then trials, then residuals) so a given
    generator state always yields the same dataset.
    """
    missing = [c for c in ("subject", "trial", "group_code") if c not in skeleton.columns]
    if missing:
        raise InvalidConfiguration(f"Design skeleton is missing columns: {', '.join(missing)}")

    gen = _resolve_rng(rng, seed)

    subject_index, subject_levels = pd.factorize(skeleton["subject"], sort=True)
    trial_index, trial_levels = pd.factorize(skeleton["trial"], sort=True)

    subject_dev = gen.normal(0.0, params.subject_sd, size=len(subject_levels))
    trial_dev = gen.normal(0.0, params.trial_sd, size=len(trial_levels))
    residual = gen.normal(0.0, params.residual_sd, size=len(skeleton))

    return RandomEffects(
        subject=subject_dev,
        trial=trial_dev,
        residual=residual,
        subject_index=subject_index,
        trial_index=trial_index,
    )


def synthesize(
    skeleton: pd.DataFrame,
    params,
    truncate: Optional[bool] = None,
    rng: Optional[np.random.Generator] = None,
    seed=None,
) -> pd.DataFrame:
    """Synthesize the response column for one dataset.

    Args:
        skeleton: Output of ``generate_design`` (left unmodified).
        params: ``DesignParameters`` supplying fixed effects and SDs.
        truncate: Clamp negative responses to 0. Defaults to
            ``params.truncate_negative``. The floor distorts the response
            distribution and biases any linear mixed model fitted to it;
            this is accepted behavior, not corrected downstream.
        rng: Generator to draw from. Takes precedence over *seed*.
        seed: Seed for a fresh generator when *rng* is not given.

    Returns:
        A copy of *skeleton* with a ``response`` column appended.
    """
    if truncate is None:
        truncate = params.truncate_negative

    effects = draw_random_effects(skeleton, params, rng=rng, seed=seed)
    codes = skeleton["group_code"].to_numpy(dtype=float)

    response = params.fixed_intercept + params.fixed_group_effect * codes + effects.per_observation()
    if truncate:
        response = np.maximum(response, 0.0)

    dataset = skeleton.copy()
    dataset["response"] = response
    return dataset
