"""Custom LME solver for two crossed random intercepts.

Implements REML estimation of

    y = X beta + Z_s b_s + Z_t b_t + e,
    b_s ~ N(0, tau_s^2 I), b_t ~ N(0, tau_t^2 I), e ~ N(0, sigma^2 I)

via profiled deviance optimization, following Bates et al. (2015)
"Fitting Linear Mixed-Effects Models Using lme4" (JSS 67(1),
arXiv:1406.5823). The relative covariance factor is
Lambda = diag(theta_s I_S, theta_t I_T) with theta = tau / sigma, so the
REML criterion is profiled down to a 2D bounded optimization over theta.

All cross-products are precomputed once per dataset from integer level
codes (no dense Z is formed), and every deviance evaluation needs only a
(S+T) x (S+T) Cholesky factorization plus a p x p one.

Denominator degrees of freedom for the fixed-effect t-tests use the
Satterthwaite approximation computed as in lmerTest (Kuznetsova et al.
2017): the gradient of Var(beta_k) and the asymptotic covariance of the
variance parameters are both obtained by finite differences of the
unprofiled REML deviance.
"""

import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from scipy.linalg import cho_solve, solve_triangular

FLOAT_NEAR_ZERO = 1e-15
DEVIANCE_FAIL = 1e30
SINGULAR_TOLERANCE = 1e-4
THETA_UPPER = 1e3
HESSIAN_STEP = 1e-3
THETA_START_FLOOR = 1e-2
LOG_THETA_LOWER = np.log(1e-6)
START_GRID = (0.1, 1.0, 10.0)
N_LOCAL_STARTS = 3


class FitTimeout(Exception):
    """Raised from inside the optimizer when the wall-clock budget expires."""

    pass


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class CrossedSufficientStats:
    """Precomputed cross-products for a crossed random-intercept model.

    The random-effects columns are ordered subjects first, then trials,
    so ``q = n_subjects + n_trials``.
    """

    N: int  # total observations
    p: int  # fixed effects (including intercept)
    n_subjects: int
    n_trials: int
    XtX: np.ndarray  # (p, p)
    Xty: np.ndarray  # (p,)
    yty: float
    ZtZ: np.ndarray  # (q, q)
    ZtX: np.ndarray  # (q, p)
    Zty: np.ndarray  # (q,)

    @property
    def q(self) -> int:
        return self.n_subjects + self.n_trials


@dataclass
class _ProfiledPieces:
    """Intermediate quantities of one profiled-deviance evaluation."""

    beta: np.ndarray
    r_sq: float
    log_det_L: float
    log_det_RX: float
    R_X: np.ndarray  # lower Cholesky factor of A = X' V0^{-1} X


@dataclass
class CrossedLMEResult:
    """Result of a crossed random-intercept REML fit."""

    beta: np.ndarray  # (p,) fixed effects incl. intercept
    se_beta: np.ndarray  # (p,)
    df_beta: np.ndarray  # (p,) Satterthwaite denominator df
    cov_beta: np.ndarray  # (p, p)
    sigma2: float  # residual variance
    tau2_subject: float
    tau2_trial: float
    theta: np.ndarray  # (2,) relative SDs [subject, trial]
    varpar_cov: np.ndarray  # (3, 3) asymptotic covariance of [tau2_s, tau2_t, sigma2]
    reml_criterion: float  # -2 * REML log-likelihood at the optimum
    singular: Tuple[bool, bool]  # (subject, trial) variance at the boundary
    converged: bool
    n_evaluations: int
    method: str


# ---------------------------------------------------------------------------
# Sufficient statistics
# ---------------------------------------------------------------------------


def compute_crossed_statistics(X, y, subject_ids, trial_ids, n_subjects, n_trials):
    """Precompute cross-products for the crossed model.

    With one-hot random-effect design matrices Z = [Z_s | Z_t]:
        Z_s'Z_s = diag(obs per subject), Z_t'Z_t = diag(obs per trial),
        Z_s'Z_t = subject-by-trial count table,
        Z'X, Z'y = per-level column sums of X and y.

    Args:
        X: (N, p) fixed-effects design matrix (with intercept column).
        y: (N,) response vector.
        subject_ids: (N,) integer subject codes in ``[0, n_subjects)``.
        trial_ids: (N,) integer trial codes in ``[0, n_trials)``.
        n_subjects: Number of subject levels.
        n_trials: Number of trial levels.

    Returns:
        CrossedSufficientStats instance.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    N, p = X.shape
    S, T = n_subjects, n_trials

    subject_counts = np.bincount(subject_ids, minlength=S).astype(np.float64)
    trial_counts = np.bincount(trial_ids, minlength=T).astype(np.float64)
    cross = np.zeros((S, T))
    np.add.at(cross, (subject_ids, trial_ids), 1.0)

    ZtZ = np.zeros((S + T, S + T))
    ZtZ[:S, :S] = np.diag(subject_counts)
    ZtZ[S:, S:] = np.diag(trial_counts)
    ZtZ[:S, S:] = cross
    ZtZ[S:, :S] = cross.T

    ZtX = np.zeros((S + T, p))
    np.add.at(ZtX, subject_ids, X)
    np.add.at(ZtX, S + np.asarray(trial_ids), X)

    Zty = np.concatenate(
        [
            np.bincount(subject_ids, weights=y, minlength=S),
            np.bincount(trial_ids, weights=y, minlength=T),
        ]
    )

    return CrossedSufficientStats(
        N=N,
        p=p,
        n_subjects=S,
        n_trials=T,
        XtX=X.T @ X,
        Xty=X.T @ y,
        yty=float(y @ y),
        ZtZ=ZtZ,
        ZtX=ZtX,
        Zty=Zty,
    )


# ---------------------------------------------------------------------------
# Profiled deviance
# ---------------------------------------------------------------------------


def _lambda_diag(theta, stats):
    return np.concatenate([np.full(stats.n_subjects, theta[0]), np.full(stats.n_trials, theta[1])])


def _profiled_pieces(theta, stats) -> _ProfiledPieces:
    """Evaluate the penalized least-squares decomposition at *theta*.

    M = Lambda' Z'Z Lambda + I = L L'
    A = X'X - CX'CX with CX = L^{-1} Lambda' Z'X  (= X' V0^{-1} X)
    beta solves A beta = X'y - CX'cu with cu = L^{-1} Lambda' Z'y
    r^2 = y'y - cu'cu - beta' b   (penalized residual sum of squares)

    Raises:
        np.linalg.LinAlgError: If A is not positive definite.
    """
    lam = _lambda_diag(theta, stats)
    M = stats.ZtZ * np.outer(lam, lam)
    M[np.diag_indices_from(M)] += 1.0
    L = np.linalg.cholesky(M)

    cu = solve_triangular(L, lam * stats.Zty, lower=True)
    CX = solve_triangular(L, lam[:, None] * stats.ZtX, lower=True)

    A = stats.XtX - CX.T @ CX
    b = stats.Xty - CX.T @ cu
    c = stats.yty - cu @ cu

    R_X = np.linalg.cholesky(A)
    beta = cho_solve((R_X, True), b)
    r_sq = float(c - beta @ b)

    return _ProfiledPieces(
        beta=beta,
        r_sq=r_sq,
        log_det_L=2.0 * float(np.sum(np.log(np.diag(L)))),
        log_det_RX=2.0 * float(np.sum(np.log(np.diag(R_X)))),
        R_X=R_X,
    )


def profiled_reml_deviance(theta, stats) -> float:
    """Profiled REML deviance (up to a constant) at relative SDs *theta*.

    f_R(theta) = log|L|^2 + log|R_X|^2 + (N - p) * log(r^2)
    """
    try:
        pieces = _profiled_pieces(theta, stats)
    except np.linalg.LinAlgError:
        return DEVIANCE_FAIL
    if not pieces.r_sq > 0:
        return DEVIANCE_FAIL
    return pieces.log_det_L + pieces.log_det_RX + (stats.N - stats.p) * np.log(pieces.r_sq)


def reml_deviance_varpar(varpar, stats) -> float:
    """Unprofiled REML deviance at variance parameters ``[tau2_s, tau2_t, sigma2]``.

    -2 l_R = log|L|^2 + log|R_X|^2 + (N - p) log(sigma2) + r^2 / sigma2
             + (N - p) log(2 pi)
    """
    tau2_s, tau2_t, sigma2 = varpar
    if sigma2 <= 0 or tau2_s < 0 or tau2_t < 0:
        return np.inf
    theta = np.sqrt([tau2_s / sigma2, tau2_t / sigma2])
    try:
        pieces = _profiled_pieces(theta, stats)
    except np.linalg.LinAlgError:
        return np.inf
    n_resid = stats.N - stats.p
    return (
        pieces.log_det_L
        + pieces.log_det_RX
        + n_resid * np.log(sigma2)
        + pieces.r_sq / sigma2
        + n_resid * np.log(2.0 * np.pi)
    )


def _cov_beta_varpar(varpar, stats) -> np.ndarray:
    """Covariance of the GLS fixed effects at variance parameters *varpar*."""
    tau2_s, tau2_t, sigma2 = varpar
    theta = np.sqrt([tau2_s / sigma2, tau2_t / sigma2])
    pieces = _profiled_pieces(theta, stats)
    return sigma2 * cho_solve((pieces.R_X, True), np.eye(stats.p))


# ---------------------------------------------------------------------------
# Satterthwaite degrees of freedom
# ---------------------------------------------------------------------------


def _finite_difference_hessian(func, x, steps):
    """Central-difference Hessian of *func* at *x* with per-coordinate *steps*."""
    k = len(x)
    H = np.zeros((k, k))
    f0 = func(x)
    for i in range(k):
        e_i = np.zeros(k)
        e_i[i] = steps[i]
        H[i, i] = (func(x + e_i) - 2.0 * f0 + func(x - e_i)) / steps[i] ** 2
        for j in range(i + 1, k):
            e_j = np.zeros(k)
            e_j[j] = steps[j]
            val = (func(x + e_i + e_j) - func(x + e_i - e_j) - func(x - e_i + e_j) + func(x - e_i - e_j)) / (4.0 * steps[i] * steps[j])
            H[i, j] = H[j, i] = val
    return H


def satterthwaite(varpar, stats, active):
    """Satterthwaite df for every fixed effect and the variance-parameter covariance.

    Variance parameters at the boundary (``active`` False) are held fixed,
    as a boundary estimate has no curvature to measure.

    Args:
        varpar: ``[tau2_s, tau2_t, sigma2]`` at the REML optimum.
        stats: CrossedSufficientStats.
        active: Boolean mask over *varpar*.

    Returns:
        (df, varpar_cov): (p,) df array (NaN where the approximation fails)
        and the (3, 3) asymptotic covariance of *varpar* (NaN for inactive
        parameters).
    """
    varpar = np.asarray(varpar, dtype=np.float64)
    active = np.asarray(active, dtype=bool)
    idx = np.flatnonzero(active)
    steps = HESSIAN_STEP * varpar[idx]

    def deviance_active(sub):
        full = varpar.copy()
        full[idx] = sub
        return reml_deviance_varpar(full, stats)

    varpar_cov = np.full((3, 3), np.nan)
    df = np.full(stats.p, np.nan)

    H = _finite_difference_hessian(deviance_active, varpar[idx], steps)
    if not np.all(np.isfinite(H)):
        return df, varpar_cov
    try:
        # Information is H / 2 because the deviance is -2 log-likelihood.
        cov_active = 2.0 * np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return df, varpar_cov
    varpar_cov[np.ix_(idx, idx)] = cov_active

    grads = np.zeros((stats.p, len(idx)))
    try:
        cov_beta = _cov_beta_varpar(varpar, stats)
        for pos, i in enumerate(idx):
            up = varpar.copy()
            down = varpar.copy()
            up[i] += steps[pos]
            down[i] -= steps[pos]
            grads[:, pos] = (np.diag(_cov_beta_varpar(up, stats)) - np.diag(_cov_beta_varpar(down, stats))) / (2.0 * steps[pos])
    except (np.linalg.LinAlgError, FloatingPointError, ValueError):
        return df, varpar_cov

    for k in range(stats.p):
        g = grads[k]
        denom = float(g @ cov_active @ g)
        var_k = cov_beta[k, k]
        if denom > FLOAT_NEAR_ZERO:
            df[k] = 2.0 * var_k**2 / denom

    return df, varpar_cov


# ---------------------------------------------------------------------------
# Main fitting function
# ---------------------------------------------------------------------------


def moment_theta(stats) -> np.ndarray:
    """Method-of-moments starting values for theta.

    Level means of the OLS residuals estimate tau^2 + sigma^2 / n_level;
    the residual variance left after both factors estimates sigma^2.
    """
    S = stats.n_subjects
    counts = np.diag(stats.ZtZ)
    beta_ols = np.linalg.lstsq(stats.XtX, stats.Xty, rcond=None)[0]
    rss = stats.yty - 2.0 * beta_ols @ stats.Xty + beta_ols @ stats.XtX @ beta_ols
    total = max(float(rss) / (stats.N - stats.p), FLOAT_NEAR_ZERO)

    level_means = (stats.Zty - stats.ZtX @ beta_ols) / counts
    var_s = float(np.mean(level_means[:S] ** 2))
    var_t = float(np.mean(level_means[S:] ** 2))

    sigma2 = max(total - var_s - var_t, 0.05 * total)
    tau2_s = max(var_s - sigma2 / float(np.mean(counts[:S])), 0.0)
    tau2_t = max(var_t - sigma2 / float(np.mean(counts[S:])), 0.0)
    theta = np.sqrt(np.array([tau2_s, tau2_t]) / sigma2)
    return np.clip(theta, THETA_START_FLOOR, THETA_UPPER / 10.0)


def _fit_theta(stats, deadline: Optional[float] = None):
    """Minimize the profiled REML deviance over theta.

    Search: deviance at a method-of-moments start and a fixed grid; bounded
    L-BFGS-B on log(theta) from the best few starts; 1D searches along each
    zero-variance edge; a bounded Nelder-Mead polish on theta itself. The
    lowest deviance seen wins, so the result is never worse than any start.

    Returns:
        (theta, converged, n_evaluations, method)

    Raises:
        FitTimeout: If *deadline* (``time.monotonic()`` value) passes.
    """
    from scipy.optimize import minimize

    n_evaluations = 0

    def deviance(theta):
        nonlocal n_evaluations
        if deadline is not None and time.monotonic() > deadline:
            raise FitTimeout("REML optimization exceeded its time budget")
        n_evaluations += 1
        return profiled_reml_deviance(np.asarray(theta, dtype=np.float64), stats)

    moments = moment_theta(stats)
    starts = [moments, moments * 0.2, moments * 5.0] + [np.array([a, b]) for a in START_GRID for b in START_GRID]
    starts = [np.clip(s, THETA_START_FLOOR, THETA_UPPER) for s in starts]
    start_devs = [deviance(s) for s in starts]

    best = {"theta": starts[int(np.argmin(start_devs))], "dev": float(min(start_devs)), "success": False, "method": "grid"}

    def consider(theta, dev, success, method):
        if np.isfinite(dev) and dev < best["dev"]:
            best.update(theta=np.clip(np.asarray(theta, dtype=np.float64), 0.0, THETA_UPPER), dev=float(dev), success=bool(success), method=method)
        elif success and np.isfinite(dev) and dev <= best["dev"] + 1e-8:
            best["success"] = True

    log_bounds = [(LOG_THETA_LOWER, np.log(THETA_UPPER))] * 2
    lbfgs_options = {"maxiter": 500, "ftol": 1e-12, "gtol": 1e-7}
    for i in np.argsort(start_devs)[:N_LOCAL_STARTS]:
        result = minimize(
            lambda phi: deviance(np.exp(phi)),
            np.log(starts[i]),
            method="L-BFGS-B",
            bounds=log_bounds,
            options=lbfgs_options,
        )
        consider(np.exp(result.x), result.fun, result.success, "L-BFGS-B")

    # Edges where one variance is exactly zero, plus the origin.
    consider(np.zeros(2), deviance(np.zeros(2)), False, "boundary")
    for axis in (0, 1):
        other = 1 - axis

        def edge(phi, other=other):
            theta = np.zeros(2)
            theta[other] = np.exp(phi[0])
            return deviance(theta)

        x0 = np.log(max(best["theta"][other], THETA_START_FLOOR))
        result = minimize(edge, np.array([x0]), method="L-BFGS-B", bounds=[log_bounds[0]], options=lbfgs_options)
        theta = np.zeros(2)
        theta[other] = float(np.exp(np.asarray(result.x).ravel()[0]))
        consider(theta, result.fun, result.success, "L-BFGS-B (boundary)")

    result = minimize(
        deviance,
        best["theta"],
        method="Nelder-Mead",
        bounds=[(0.0, THETA_UPPER)] * 2,
        options={"maxiter": 400, "xatol": 1e-8, "fatol": 1e-10},
    )
    consider(result.x, result.fun, result.success, "Nelder-Mead")

    converged = best["success"] and best["dev"] < DEVIANCE_FAIL and best["dev"] <= min(start_devs)
    return best["theta"], converged, n_evaluations, best["method"]


def lme_fit_crossed(X, y, subject_ids, trial_ids, n_subjects, n_trials, timeout: Optional[float] = None):
    """Fit ``y ~ X + (1|subject) + (1|trial)`` by REML.

    Args:
        X: (N, p) fixed-effects design matrix (WITH intercept column).
        y: (N,) response vector.
        subject_ids: (N,) integer subject codes.
        trial_ids: (N,) integer trial codes.
        n_subjects: Number of subject levels.
        n_trials: Number of trial levels.
        timeout: Wall-clock budget for the optimizer in seconds.

    Returns:
        CrossedLMEResult. ``converged`` is False when every optimizer
        attempt failed; callers decide how to report that.

    Raises:
        FitTimeout: If *timeout* expires during optimization.
    """
    stats = compute_crossed_statistics(X, y, subject_ids, trial_ids, n_subjects, n_trials)
    deadline = time.monotonic() + timeout if timeout is not None else None

    theta, converged, n_evaluations, method = _fit_theta(stats, deadline)
    return _extract_results(theta, stats, converged, n_evaluations, method)


def _extract_results(theta, stats, converged, n_evaluations, method):
    """Compute estimates, SEs and Satterthwaite df at the optimal *theta*."""
    N, p = stats.N, stats.p
    nan_result = CrossedLMEResult(
        beta=np.full(p, np.nan),
        se_beta=np.full(p, np.nan),
        df_beta=np.full(p, np.nan),
        cov_beta=np.full((p, p), np.nan),
        sigma2=np.nan,
        tau2_subject=np.nan,
        tau2_trial=np.nan,
        theta=np.asarray(theta, dtype=np.float64),
        varpar_cov=np.full((3, 3), np.nan),
        reml_criterion=np.nan,
        singular=(False, False),
        converged=False,
        n_evaluations=n_evaluations,
        method=method,
    )

    try:
        pieces = _profiled_pieces(theta, stats)
    except np.linalg.LinAlgError:
        return nan_result
    if not pieces.r_sq > 0:
        return nan_result

    sigma2 = pieces.r_sq / (N - p)
    tau2_s = float(sigma2 * theta[0] ** 2)
    tau2_t = float(sigma2 * theta[1] ** 2)
    cov_beta = sigma2 * cho_solve((pieces.R_X, True), np.eye(p))
    se_beta = np.sqrt(np.maximum(np.diag(cov_beta), 0.0))

    singular = (bool(theta[0] < SINGULAR_TOLERANCE), bool(theta[1] < SINGULAR_TOLERANCE))
    varpar = np.array([tau2_s, tau2_t, sigma2])
    active = np.array([not singular[0], not singular[1], True])
    df_beta, varpar_cov = satterthwaite(varpar, stats, active)

    # NaN where the approximation is undefined; callers treat that as a failed fit.
    df_beta = np.where(np.isfinite(df_beta) & (df_beta > 0), df_beta, np.nan)

    return CrossedLMEResult(
        beta=pieces.beta,
        se_beta=se_beta,
        df_beta=df_beta,
        cov_beta=cov_beta,
        sigma2=float(sigma2),
        tau2_subject=tau2_s,
        tau2_trial=tau2_t,
        theta=np.asarray(theta, dtype=np.float64),
        varpar_cov=varpar_cov,
        reml_criterion=float(reml_deviance_varpar(varpar, stats)),
        singular=singular,
        converged=bool(converged),
        n_evaluations=n_evaluations,
        method=method,
    )
