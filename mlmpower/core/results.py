"""
Results processing for MLMPower.

This module turns the per-repetition rows of a power simulation into a
``PowerSummary``: exclusion accounting, empirical power with a Monte Carlo
interval, estimate spread and the -log10(p) density.
"""

import math
import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from ..exceptions import UnreliablePowerEstimate
from ..stats.density import PValueDensity, estimate_pvalue_density
from ..stats.mixed_models import FitResult, ParameterKind
from .simulation import REPETITION_COLUMNS, STATUS_NONCONVERGED, STATUS_OK, STATUS_SINGULAR

SINGULAR_POLICIES = ("include", "exclude")


def binomial_wilson_ci(k: int, n: int, alpha: float = 0.05) -> Tuple[float, float]:
    """Wilson score interval for binomial proportion k/n (two-sided alpha)."""
    if n <= 0:
        return (float("nan"), float("nan"))
    z = float(norm.ppf(1.0 - alpha / 2.0))
    phat = k / n
    denom = 1.0 + (z * z) / n
    center = (phat + (z * z) / (2.0 * n)) / denom
    half = (z / denom) * math.sqrt(max(0.0, phat * (1.0 - phat) / n + (z * z) / (4.0 * n * n)))
    return max(0.0, center - half), min(1.0, center + half)


@dataclass(frozen=True)
class PowerSummary:
    """Aggregate outcome of a power simulation for the group effect."""

    n_repetitions: int
    n_used: int
    n_excluded: int
    n_nonconverged: int
    n_singular: int
    exclusion_rate: float
    alpha: float
    mean_estimate: float
    sd_estimate: float
    estimate_interval: Tuple[float, float]
    mean_std_error: float
    power: float
    power_interval: Tuple[float, float]
    type_ii_error: float
    density: PValueDensity
    repetitions: pd.DataFrame
    params: Any

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict view without the repetition table or density arrays."""
        return {
            "n_repetitions": self.n_repetitions,
            "n_used": self.n_used,
            "n_excluded": self.n_excluded,
            "n_nonconverged": self.n_nonconverged,
            "n_singular": self.n_singular,
            "exclusion_rate": self.exclusion_rate,
            "alpha": self.alpha,
            "mean_estimate": self.mean_estimate,
            "sd_estimate": self.sd_estimate,
            "estimate_interval": self.estimate_interval,
            "mean_std_error": self.mean_std_error,
            "power": self.power,
            "power_interval": self.power_interval,
            "type_ii_error": self.type_ii_error,
            "density_threshold": self.density.threshold,
            "density_transition_x": self.density.transition_x,
            "params": self.params.to_dict() if hasattr(self.params, "to_dict") else self.params,
        }


class ResultsProcessor:
    """Converts raw repetition rows into a ``PowerSummary``.

    Non-convergent repetitions are always excluded. Singular fits are kept
    or excluded according to *singular_policy*. When the exclusion rate
    exceeds *max_excluded_fraction*, or nothing is left to aggregate, the
    batch fails with ``UnreliablePowerEstimate``.
    """

    def __init__(self, alpha: float = 0.05, max_excluded_fraction: float = 0.20, singular_policy: str = "include"):
        self.alpha = alpha
        self.max_excluded_fraction = max_excluded_fraction
        self.singular_policy = singular_policy

    def _excluded_mask(self, table: pd.DataFrame) -> pd.Series:
        excluded = table["status"] == STATUS_NONCONVERGED
        if self.singular_policy == "exclude":
            excluded |= table["status"] == STATUS_SINGULAR
        return excluded

    def summarize(self, rows: List[Dict[str, Any]], params) -> PowerSummary:
        """Aggregate repetition rows.

        Args:
            rows: Output of ``SimulationRunner.run``.
            params: DesignParameters the rows were simulated from.

        Raises:
            UnreliablePowerEstimate: Too many repetitions were excluded.
        """
        table = pd.DataFrame(rows, columns=list(REPETITION_COLUMNS))
        n_repetitions = len(table)

        excluded = self._excluded_mask(table)
        n_excluded = int(excluded.sum())
        n_used = n_repetitions - n_excluded
        n_nonconverged = int((table["status"] == STATUS_NONCONVERGED).sum())
        n_singular = int((table["status"] == STATUS_SINGULAR).sum())
        exclusion_rate = n_excluded / n_repetitions if n_repetitions else 1.0

        if n_used == 0 or exclusion_rate > self.max_excluded_fraction:
            raise UnreliablePowerEstimate(n_excluded, n_repetitions, self.max_excluded_fraction)

        if n_excluded:
            warnings.warn(
                f"{n_excluded}/{n_repetitions} repetitions ({exclusion_rate:.1%}) were excluded from the power estimate "
                f"({n_nonconverged} non-convergent, {n_singular} singular)",
                UserWarning,
                stacklevel=3,
            )

        used = table.loc[~excluded]
        estimates = used["estimate"].to_numpy(dtype=float)
        p_values = used["p_value"].to_numpy(dtype=float)

        n_significant = int(np.sum(p_values < self.alpha))
        power = n_significant / n_used

        return PowerSummary(
            n_repetitions=n_repetitions,
            n_used=n_used,
            n_excluded=n_excluded,
            n_nonconverged=n_nonconverged,
            n_singular=n_singular,
            exclusion_rate=exclusion_rate,
            alpha=self.alpha,
            mean_estimate=float(np.mean(estimates)),
            sd_estimate=float(np.std(estimates, ddof=1)) if n_used > 1 else float("nan"),
            estimate_interval=(float(np.percentile(estimates, 2.5)), float(np.percentile(estimates, 97.5))),
            mean_std_error=float(np.mean(used["std_error"].to_numpy(dtype=float))),
            power=power,
            power_interval=binomial_wilson_ci(n_significant, n_used),
            type_ii_error=1.0 - power,
            density=estimate_pvalue_density(p_values, self.alpha),
            repetitions=table,
            params=params,
        )


def _simulated_values(params) -> Dict[ParameterKind, float]:
    return {
        ParameterKind.FIXED_INTERCEPT: params.fixed_intercept,
        ParameterKind.FIXED_GROUP_EFFECT: params.fixed_group_effect,
        ParameterKind.SUBJECT_INTERCEPT_SD: params.subject_sd,
        ParameterKind.TRIAL_INTERCEPT_SD: params.trial_sd,
        ParameterKind.RESIDUAL_SD: params.residual_sd,
    }


def build_model_comparison(fit_result: FitResult, params) -> pd.DataFrame:
    """Pair each simulated parameter value with its fitted estimate.

    Returns:
        DataFrame indexed by parameter label with columns ``simulated``,
        ``estimate``, ``std_error``, ``p_value``.
    """
    simulated = _simulated_values(params)
    records = []
    for kind in ParameterKind:
        row = fit_result[kind]
        records.append(
            {
                "parameter": kind.label,
                "simulated": simulated[kind],
                "estimate": row.estimate,
                "std_error": row.std_error,
                "p_value": row.p_value,
            }
        )
    return pd.DataFrame.from_records(records).set_index("parameter")


def status_counts(table: pd.DataFrame) -> Dict[str, int]:
    """Number of repetitions per status, including zero counts."""
    counts = table["status"].value_counts()
    return {status: int(counts.get(status, 0)) for status in (STATUS_OK, STATUS_SINGULAR, STATUS_NONCONVERGED)}
