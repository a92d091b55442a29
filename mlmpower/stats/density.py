"""
Kernel density of -log10(p) across power-simulation repetitions.

The density support is split at -log10(alpha) into a "not significant"
region (left) and a "significant" region (right). The threshold itself is
inserted into the evaluation grid so the two regions meet exactly and
their integrals add up to the integral over the whole grid.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.stats import gaussian_kde

GRID_POINTS = 512
CUT = 3.0
MIN_SPREAD = 1e-12


@dataclass(frozen=True)
class PValueDensity:
    """Smoothed density of -log10(p) with a significance partition."""

    x: np.ndarray
    y: np.ndarray
    threshold: float
    not_significant: np.ndarray  # bool mask over x, x <= threshold
    significant: np.ndarray  # bool mask over x, x >= threshold
    mass_not_significant: float
    mass_significant: float
    total_mass: float
    transition_x: Optional[float]
    bandwidth: float
    degenerate: bool = False


def neg_log10_pvalues(p_values) -> np.ndarray:
    """Transform p-values to -log10(p), clipping zeros to the smallest double."""
    p = np.clip(np.asarray(p_values, dtype=np.float64), np.finfo(np.float64).tiny, 1.0)
    return -np.log10(p)


def _trapezoid(y, x) -> float:
    if len(x) < 2:
        return 0.0
    return float(np.sum((y[1:] + y[:-1]) * np.diff(x)) / 2.0)


def _degenerate_density(values: np.ndarray, threshold: float) -> PValueDensity:
    """Point mass at a single repeated value; no kernel can be fitted."""
    value = float(values[0])
    x = np.array([value])
    significant_side = value >= threshold
    return PValueDensity(
        x=x,
        y=np.array([np.inf]),
        threshold=threshold,
        not_significant=np.array([value <= threshold]),
        significant=np.array([significant_side]),
        mass_not_significant=0.0 if significant_side else 1.0,
        mass_significant=1.0 if significant_side else 0.0,
        total_mass=1.0,
        transition_x=None,
        bandwidth=0.0,
        degenerate=True,
    )


def estimate_pvalue_density(p_values, alpha: float, n_points: int = GRID_POINTS) -> PValueDensity:
    """Gaussian KDE of -log10(p) partitioned at -log10(alpha).

    Uses Silverman's bandwidth and a grid extending three bandwidths past
    the data on each side.

    Args:
        p_values: Group-effect p-values of the usable repetitions.
        alpha: Significance level defining the partition.
        n_points: Number of grid points before the threshold is inserted.

    Returns:
        PValueDensity.

    Raises:
        ValueError: If *p_values* is empty.
    """
    values = neg_log10_pvalues(p_values)
    values = values[np.isfinite(values)]
    if values.size == 0:
        raise ValueError("Cannot estimate a density from zero p-values")

    threshold = float(-np.log10(alpha))

    if values.size < 2 or np.std(values) < MIN_SPREAD:
        return _degenerate_density(values, threshold)

    kde = gaussian_kde(values, bw_method="silverman")
    bandwidth = float(np.sqrt(kde.covariance[0, 0]))

    grid = np.linspace(values.min() - CUT * bandwidth, values.max() + CUT * bandwidth, n_points)
    x = np.union1d(grid, [threshold]) if grid[0] < threshold < grid[-1] else grid
    y = kde(x)

    not_significant = x <= threshold
    significant = x >= threshold
    mass_ns = _trapezoid(y[not_significant], x[not_significant])
    mass_s = _trapezoid(y[significant], x[significant])

    below = x[x < threshold]
    transition_x = float(below[-1]) if below.size else None

    return PValueDensity(
        x=x,
        y=y,
        threshold=threshold,
        not_significant=not_significant,
        significant=significant,
        mass_not_significant=mass_ns,
        mass_significant=mass_s,
        total_mass=_trapezoid(y, x),
        transition_x=transition_x,
        bandwidth=bandwidth,
    )
