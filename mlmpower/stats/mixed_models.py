"""Linear mixed-effects fitting for crossed subjects-by-trials datasets.

Fits ``response ~ group_code + (1|subject) + (1|trial)`` by REML and
returns a ``FitResult`` keyed by ``ParameterKind``. Routes to the custom
profiled-deviance solver (default, Satterthwaite t-tests) or to
statsmodels MixedLM with crossed variance components (Wald z-tests).
"""

import math
import time
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd
from scipy import stats as sps

from ..exceptions import InvalidConfiguration, NonConvergence, SingularFit
from ..utils.validators import _validate_choice, _validate_timeout
from .lme_solver import FitTimeout, lme_fit_crossed

BACKENDS = ("custom", "statsmodels")
SINGULAR_ACTIONS = ("flag", "raise")
REQUIRED_COLUMNS = ("subject", "trial", "group_code", "response")


class ParameterKind(Enum):
    """Parameters estimated by the crossed random-intercept model."""

    FIXED_INTERCEPT = "fixed_intercept"
    FIXED_GROUP_EFFECT = "fixed_group_effect"
    SUBJECT_INTERCEPT_SD = "subject_sd"
    TRIAL_INTERCEPT_SD = "trial_sd"
    RESIDUAL_SD = "residual_sd"

    @property
    def is_fixed(self) -> bool:
        return self in (ParameterKind.FIXED_INTERCEPT, ParameterKind.FIXED_GROUP_EFFECT)

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS = {
    ParameterKind.FIXED_INTERCEPT: "Intercept",
    ParameterKind.FIXED_GROUP_EFFECT: "Group effect",
    ParameterKind.SUBJECT_INTERCEPT_SD: "Subject intercept SD",
    ParameterKind.TRIAL_INTERCEPT_SD: "Trial intercept SD",
    ParameterKind.RESIDUAL_SD: "Residual SD",
}


@dataclass(frozen=True)
class ParameterEstimate:
    """One row of a fit result.

    Fixed effects carry ``statistic`` (t or z), ``df`` and a two-sided
    ``p_value``; variance components leave them as ``None`` and report the
    SD with a delta-method standard error.
    """

    kind: ParameterKind
    estimate: float
    std_error: float
    statistic: Optional[float] = None
    df: Optional[float] = None
    p_value: Optional[float] = None


@dataclass(frozen=True)
class FitResult:
    """Immutable result of fitting one dataset."""

    estimates: Tuple[ParameterEstimate, ...]
    converged: bool
    singular: bool
    singular_components: Tuple[ParameterKind, ...]
    reml_criterion: float
    n_obs: int
    n_subjects: int
    n_trials: int
    backend: str
    n_evaluations: int = 0

    def __getitem__(self, kind: ParameterKind) -> ParameterEstimate:
        for row in self.estimates:
            if row.kind is kind:
                return row
        raise KeyError(kind)

    @property
    def group_effect(self) -> ParameterEstimate:
        return self[ParameterKind.FIXED_GROUP_EFFECT]

    def as_dict(self) -> Dict[ParameterKind, ParameterEstimate]:
        return {row.kind: row for row in self.estimates}

    def to_frame(self) -> pd.DataFrame:
        """Tabulate the estimates, one row per parameter (index = label)."""
        frame = pd.DataFrame(
            [
                {
                    "parameter": row.kind.label,
                    "kind": row.kind.value,
                    "estimate": row.estimate,
                    "std_error": row.std_error,
                    "statistic": row.statistic,
                    "df": row.df,
                    "p_value": row.p_value,
                }
                for row in self.estimates
            ]
        )
        return frame.set_index("parameter")


def _prepare_arrays(dataset: pd.DataFrame):
    """Validate *dataset* and extract the arrays the solvers need."""
    if not isinstance(dataset, pd.DataFrame):
        raise InvalidConfiguration(f"dataset must be a pandas DataFrame, got {type(dataset).__name__}")

    missing = [c for c in REQUIRED_COLUMNS if c not in dataset.columns]
    if missing:
        raise InvalidConfiguration(f"Dataset is missing columns: {', '.join(missing)}")
    if dataset.empty:
        raise InvalidConfiguration("Dataset has no rows")

    y = dataset["response"].to_numpy(dtype=np.float64)
    codes = dataset["group_code"].to_numpy(dtype=np.float64)
    if not (np.all(np.isfinite(y)) and np.all(np.isfinite(codes))):
        raise InvalidConfiguration("Dataset contains non-finite response or group_code values")
    if np.ptp(codes) == 0:
        raise InvalidConfiguration("group_code is constant; both groups must be present to estimate the group effect")

    subject_ids, subject_levels = pd.factorize(dataset["subject"], sort=True)
    trial_ids, trial_levels = pd.factorize(dataset["trial"], sort=True)
    if len(subject_levels) < 2 or len(trial_levels) < 2:
        raise InvalidConfiguration(
            f"Need at least 2 subjects and 2 trials, got {len(subject_levels)} and {len(trial_levels)}"
        )

    X = np.column_stack([np.ones(len(y)), codes])
    return X, y, subject_ids, trial_ids, len(subject_levels), len(trial_levels)


def _sd_row(kind, variance, variance_se):
    """SD estimate with a delta-method SE: se(sd) = se(var) / (2 sd)."""
    sd = math.sqrt(max(variance, 0.0))
    if sd > 0 and np.isfinite(variance_se):
        sd_se = variance_se / (2.0 * sd)
    else:
        sd_se = float("nan")
    return ParameterEstimate(kind=kind, estimate=sd, std_error=float(sd_se))


def _fixed_row(kind, estimate, se, df, distribution="t"):
    if se > 0 and np.isfinite(se):
        statistic = estimate / se
        if distribution == "t":
            p_value = 2.0 * sps.t.sf(abs(statistic), df)
        else:
            p_value = 2.0 * sps.norm.sf(abs(statistic))
    else:
        statistic = float("nan")
        p_value = float("nan")
    return ParameterEstimate(
        kind=kind,
        estimate=float(estimate),
        std_error=float(se),
        statistic=float(statistic),
        df=float(df),
        p_value=float(p_value),
    )


def _fit_custom(X, y, subject_ids, trial_ids, n_subjects, n_trials, timeout):
    """Fit with the custom crossed REML solver."""
    try:
        result = lme_fit_crossed(X, y, subject_ids, trial_ids, n_subjects, n_trials, timeout=timeout)
    except FitTimeout as e:
        raise NonConvergence(f"Model fit timed out after {timeout} s", reason="timeout") from e
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NonConvergence(f"REML solver failed: {type(e).__name__}: {e}") from e

    if not result.converged:
        raise NonConvergence(f"REML optimizer did not converge after {result.n_evaluations} evaluations ({result.method})")
    if not np.isfinite(result.reml_criterion) or not np.all(np.isfinite(result.beta)):
        raise NonConvergence("REML criterion is not finite at the optimum")
    if not np.isfinite(result.df_beta[1]):
        raise NonConvergence("Satterthwaite degrees of freedom are undefined for the group effect", reason="satterthwaite")

    var_diag = np.diag(result.varpar_cov)
    var_se = np.sqrt(np.where(var_diag >= 0, var_diag, np.nan))
    estimates = (
        _fixed_row(ParameterKind.FIXED_INTERCEPT, result.beta[0], result.se_beta[0], result.df_beta[0]),
        _fixed_row(ParameterKind.FIXED_GROUP_EFFECT, result.beta[1], result.se_beta[1], result.df_beta[1]),
        _sd_row(ParameterKind.SUBJECT_INTERCEPT_SD, result.tau2_subject, var_se[0]),
        _sd_row(ParameterKind.TRIAL_INTERCEPT_SD, result.tau2_trial, var_se[1]),
        _sd_row(ParameterKind.RESIDUAL_SD, result.sigma2, var_se[2]),
    )

    singular_components = tuple(
        kind
        for kind, flag in zip(
            (ParameterKind.SUBJECT_INTERCEPT_SD, ParameterKind.TRIAL_INTERCEPT_SD),
            result.singular,
        )
        if flag
    )

    return FitResult(
        estimates=estimates,
        converged=True,
        singular=bool(singular_components),
        singular_components=singular_components,
        reml_criterion=result.reml_criterion,
        n_obs=len(y),
        n_subjects=n_subjects,
        n_trials=n_trials,
        backend="custom",
        n_evaluations=result.n_evaluations,
    )


def _statsmodels_vc_se(result, k_fe, vc_names):
    """Variance-component standard errors read from ``cov_params``.

    ``bse_re`` is unusable without a group-level random effect. The
    variance-component block of ``cov_params`` is in units of the residual
    variance, so it is rescaled by ``scale``.
    """
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        diag = np.diag(np.asarray(result.cov_params(), dtype=np.float64))
    tail = diag[k_fe:]
    if len(tail) < len(vc_names):
        return {name: float("nan") for name in vc_names}
    block = tail[len(tail) - len(vc_names):]
    se = np.sqrt(float(result.scale) * np.where(block >= 0, block, np.nan))
    return dict(zip(vc_names, se))


def _fit_statsmodels(X, y, subject_ids, trial_ids, n_subjects, n_trials, timeout):
    """Fit with statsmodels MixedLM, crossed effects as variance components.

    All observations sit in a single group; subject and trial intercepts
    enter as independent variance components (no group-level random
    intercept). Fixed-effect p-values are Wald z-tests.
    """
    try:
        from statsmodels.regression.mixed_linear_model import MixedLM
    except ImportError as e:
        raise ImportError("statsmodels required for this backend: pip install mlmpower[lme]") from e

    n = len(y)
    data = pd.DataFrame(
        {
            "response": y,
            "group_code": X[:, 1],
            "subject": subject_ids,
            "trial": trial_ids,
            "all": np.ones(n, dtype=int),
        }
    )
    model = MixedLM.from_formula(
        "response ~ group_code",
        groups="all",
        re_formula="0",
        vc_formula={"subject": "0 + C(subject)", "trial": "0 + C(trial)"},
        data=data,
    )

    deadline = time.monotonic() + timeout if timeout is not None else None

    def _check_deadline(_params):
        if deadline is not None and time.monotonic() > deadline:
            raise FitTimeout("MixedLM exceeded its time budget")

    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            result = model.fit(reml=True, method="lbfgs", callback=_check_deadline)
    except FitTimeout as e:
        raise NonConvergence(f"Model fit timed out after {timeout} s", reason="timeout") from e
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NonConvergence(f"MixedLM failed: {type(e).__name__}: {e}") from e

    if not getattr(result, "converged", True):
        raise NonConvergence("MixedLM did not converge")

    try:
        fe = np.asarray(result.fe_params)
        bse_fe = np.asarray(result.bse_fe)
        vc_names = list(model.exog_vc.names)
        vcomp = dict(zip(vc_names, np.asarray(result.vcomp)))
        vc_se = _statsmodels_vc_se(result, len(fe), vc_names)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise NonConvergence(f"MixedLM results unavailable: {type(e).__name__}: {e}") from e

    estimates = (
        _fixed_row(ParameterKind.FIXED_INTERCEPT, fe[0], bse_fe[0], math.inf, distribution="z"),
        _fixed_row(ParameterKind.FIXED_GROUP_EFFECT, fe[1], bse_fe[1], math.inf, distribution="z"),
        _sd_row(ParameterKind.SUBJECT_INTERCEPT_SD, float(vcomp["subject"]), float(vc_se["subject"])),
        _sd_row(ParameterKind.TRIAL_INTERCEPT_SD, float(vcomp["trial"]), float(vc_se["trial"])),
        _sd_row(ParameterKind.RESIDUAL_SD, float(result.scale), float("nan")),
    )

    sigma2 = float(result.scale)
    singular_components = tuple(
        kind
        for kind, name in (
            (ParameterKind.SUBJECT_INTERCEPT_SD, "subject"),
            (ParameterKind.TRIAL_INTERCEPT_SD, "trial"),
        )
        if vcomp[name] < (1e-4) ** 2 * sigma2
    )

    return FitResult(
        estimates=estimates,
        converged=True,
        singular=bool(singular_components),
        singular_components=singular_components,
        reml_criterion=float(-2.0 * result.llf),
        n_obs=n,
        n_subjects=n_subjects,
        n_trials=n_trials,
        backend="statsmodels",
    )


def fit(
    dataset: pd.DataFrame,
    backend: str = "custom",
    timeout: Optional[float] = None,
    on_singular: str = "flag",
) -> FitResult:
    """Fit ``response ~ group_code + (1|subject) + (1|trial)`` by REML.

    Args:
        dataset: DataFrame with ``subject``, ``trial``, ``group_code`` and
            ``response`` columns (e.g. from ``synthesize``).
        backend: ``"custom"`` (profiled REML, Satterthwaite t-tests) or
            ``"statsmodels"`` (MixedLM, Wald z-tests).
        timeout: Wall-clock budget in seconds; expiry is reported as
            non-convergence. ``None`` disables the limit.
        on_singular: ``"flag"`` returns singular fits with
            ``singular=True``; ``"raise"`` raises ``SingularFit``.

    Returns:
        FitResult with one row per ``ParameterKind``.

    Raises:
        InvalidConfiguration: Malformed dataset or options.
        NonConvergence: Optimizer failure or timeout.
        SingularFit: A random-effect variance is at zero and
            ``on_singular="raise"``.
    """
    _validate_choice(backend, BACKENDS, "backend").raise_if_invalid()
    _validate_choice(on_singular, SINGULAR_ACTIONS, "on_singular").raise_if_invalid()
    _validate_timeout(timeout).raise_if_invalid()

    arrays = _prepare_arrays(dataset)
    if backend == "custom":
        result = _fit_custom(*arrays, timeout)
    else:
        result = _fit_statsmodels(*arrays, timeout)

    if result.singular and on_singular == "raise":
        names = ", ".join(kind.label for kind in result.singular_components)
        raise SingularFit(f"Singular fit: {names} estimated at zero", result=result, components=result.singular_components)

    return result
