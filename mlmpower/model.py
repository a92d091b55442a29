"""
MLMPower - Monte Carlo power analysis for crossed mixed designs.

This module provides the two entry points, ``synthesize_and_fit`` and
``run_power_simulation``, and the ``MLMPower`` configuration object that
wraps them in the fluent ``set_*`` style.
"""

import multiprocessing as mp
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import numpy as np
import pandas as pd

from .core.parameters import DesignParameters, coerce_design_parameters
from .core.results import SINGULAR_POLICIES, PowerSummary, ResultsProcessor, build_model_comparison
from .core.simulation import SimulationRunner
from .progress import resolve_progress
from .stats.data_generation import synthesize
from .stats.design import generate_design, group_sizes
from .stats.mixed_models import BACKENDS, FitResult
from .stats.mixed_models import fit as fit_model
from .utils.formatters import _format_results
from .utils.validators import (
    _merge_results,
    _validate_alpha,
    _validate_choice,
    _validate_design_size,
    _validate_fraction,
    _validate_parallel_settings,
    _validate_repetitions,
    _validate_seed,
    _validate_timeout,
)

DEFAULT_ALPHA = 0.05
DEFAULT_REPETITIONS = 200


def _build_skeleton(params: DesignParameters) -> pd.DataFrame:
    """Check that *params* supports the model and build the shared skeleton."""
    n_control, n_treatment = group_sizes(params.subject_count, params.group_proportions)
    size_check = _validate_design_size(params.subject_count, params.trial_count, n_control, n_treatment)
    size_check.raise_if_invalid()
    size_check.print_warnings()
    return generate_design(params.subject_count, params.trial_count, params.group_proportions)


@dataclass(frozen=True)
class SingleRunResult:
    """One synthesized dataset together with its model fit."""

    dataset: pd.DataFrame
    fit: FitResult
    params: DesignParameters

    def comparison(self) -> pd.DataFrame:
        """Simulated parameter values next to their estimates."""
        return build_model_comparison(self.fit, self.params)


def synthesize_and_fit(
    design_params=None,
    *,
    seed: Optional[int] = None,
    backend: str = "custom",
    timeout: Optional[float] = None,
    on_singular: str = "flag",
) -> SingleRunResult:
    """Generate one dataset and fit the crossed mixed model to it.

    Fitting errors are not caught: a single run has nothing to aggregate,
    so ``NonConvergence`` and ``SingularFit`` reach the caller unchanged.

    Args:
        design_params: ``DesignParameters``, a mapping of design options,
            or ``None`` for the defaults.
        seed: Seed for the random-effect draws.
        backend: Fitter backend, ``"custom"`` or ``"statsmodels"``.
        timeout: Fit budget in seconds (``None`` for no limit).
        on_singular: ``"flag"`` or ``"raise"``.

    Returns:
        SingleRunResult.

    Raises:
        InvalidConfiguration: Invalid parameters or options.
    """
    params = coerce_design_parameters(design_params)
    _merge_results(
        [
            _validate_seed(seed),
            _validate_choice(backend, BACKENDS, "backend"),
            _validate_timeout(timeout),
        ]
    ).raise_if_invalid()

    skeleton = _build_skeleton(params)
    dataset = synthesize(skeleton, params, rng=np.random.default_rng(seed))
    fit_result = fit_model(dataset, backend=backend, timeout=timeout, on_singular=on_singular)
    return SingleRunResult(dataset=dataset, fit=fit_result, params=params)


def run_power_simulation(
    n_repetitions: Optional[int],
    design_params=None,
    alpha: Optional[float] = None,
    *,
    seed: Optional[int] = None,
    parallel: bool = True,
    n_cores: Optional[int] = None,
    max_excluded_fraction: float = 0.20,
    fit_timeout: Optional[float] = 60.0,
    backend: str = "custom",
    singular_policy: str = "include",
    progress_callback=None,
    cancel_check: Optional[Callable[[], bool]] = None,
) -> PowerSummary:
    """Estimate power for the group effect by Monte Carlo simulation.

    Args:
        n_repetitions: Number of repetitions. ``None`` takes the value
            from a *design_params* mapping, or 200.
        design_params: ``DesignParameters``, a mapping of design options
            (which may also carry ``alpha`` and ``n_repetitions``), or
            ``None`` for the defaults.
        alpha: Significance level. ``None`` takes the value from a
            *design_params* mapping, or 0.05.
        seed: Base seed; every repetition gets its own child stream.
        parallel: Run repetitions in ``joblib`` worker processes. Runs
            sequentially when *n_cores* resolves to 1.
        n_cores: Worker count (default ``cpu_count // 2``).
        max_excluded_fraction: Highest acceptable share of excluded
            repetitions.
        fit_timeout: Per-fit budget in seconds; expiry counts as
            non-convergence.
        backend: Fitter backend, ``"custom"`` or ``"statsmodels"``.
        singular_policy: ``"include"`` keeps singular fits, ``"exclude"``
            drops them like non-convergent ones.
        progress_callback: ``None``/``False`` (no progress) or a
            ``(current, total)`` callable.
        cancel_check: Callable polled between repetitions; returning
            ``True`` raises ``SimulationCancelled``.

    Returns:
        PowerSummary.

    Raises:
        InvalidConfiguration: Invalid parameters or options.
        UnreliablePowerEstimate: Too many repetitions were excluded.
        SimulationCancelled: *cancel_check* requested cancellation.
    """
    if isinstance(design_params, Mapping):
        if n_repetitions is None:
            n_repetitions = design_params.get("n_repetitions")
        if alpha is None:
            alpha = design_params.get("alpha")
    if n_repetitions is None:
        n_repetitions = DEFAULT_REPETITIONS
    if alpha is None:
        alpha = DEFAULT_ALPHA

    params = coerce_design_parameters(design_params)

    n_reps, repetitions_check = _validate_repetitions(n_repetitions)
    (parallel, n_cores), parallel_check = _validate_parallel_settings(parallel, n_cores)
    options_check = _merge_results(
        [
            repetitions_check,
            _validate_alpha(alpha),
            _validate_seed(seed),
            _validate_fraction(max_excluded_fraction, "max_excluded_fraction"),
            _validate_timeout(fit_timeout),
            _validate_choice(backend, BACKENDS, "backend"),
            _validate_choice(singular_policy, SINGULAR_POLICIES, "singular_policy"),
            parallel_check,
        ]
    )
    options_check.raise_if_invalid()
    options_check.print_warnings()

    skeleton = _build_skeleton(params)

    runner = SimulationRunner(
        n_repetitions=n_reps,
        seed=seed,
        parallel=parallel,
        n_cores=n_cores,
        backend=backend,
        fit_timeout=fit_timeout,
    )
    rows = runner.run(
        skeleton,
        params,
        progress=resolve_progress(progress_callback, n_reps),
        cancel_check=cancel_check,
    )

    processor = ResultsProcessor(
        alpha=float(alpha),
        max_excluded_fraction=float(max_excluded_fraction),
        singular_policy=singular_policy,
    )
    return processor.summarize(rows, params)


class MLMPower:
    """Monte Carlo power analysis for a two-group crossed design.

    Holds the design parameters and simulation settings. ``set_*`` methods
    validate immediately and return ``self`` for chaining; ``find_power``
    and ``simulate_once`` take a snapshot of the settings at call time.

    Attributes:
        params: Current ``DesignParameters``.
        seed: Random seed for reproducibility (default: 2137).
        alpha: Significance level (default: 0.05).
        n_repetitions: Number of Monte Carlo repetitions (default: 200).
        parallel: Run repetitions in worker processes (default: ``True``;
            sequential when ``n_cores`` is 1).
        n_cores: Number of worker processes.
        max_excluded_fraction: Maximum acceptable exclusion rate
            (default: 0.20).
        fit_timeout: Per-fit budget in seconds (default: 60).
        backend: Fitter backend (default: ``"custom"``).
        singular_policy: Treatment of singular fits (default: ``"include"``).

    Example:
        >>> model = MLMPower({"subject_count": 40, "fixed_group_effect": 0.3})
        >>> model.set_repetitions(500).set_alpha(0.01)
        >>> model.find_power()
    """

    def __init__(self, design_params=None):
        self.params = coerce_design_parameters(design_params)
        self.seed: Optional[int] = 2137
        self.alpha = DEFAULT_ALPHA
        self.n_repetitions = DEFAULT_REPETITIONS
        self.parallel = True
        self.n_cores = max(1, (mp.cpu_count() or 1) // 2)
        self.max_excluded_fraction = 0.20
        self.fit_timeout: Optional[float] = 60.0
        self.backend = "custom"
        self.singular_policy = "include"

    # =========================================================================
    # Configuration methods
    # =========================================================================

    def set_design(self, design_params=None, **changes):
        """Replace the design, or update individual fields.

        Args:
            design_params: New ``DesignParameters`` or mapping. When
                omitted, the current design is kept.
            **changes: Field updates applied on top, e.g.
                ``set_design(subject_count=80)``.

        Returns:
            self: For method chaining.
        """
        params = self.params if design_params is None else coerce_design_parameters(design_params)
        self.params = params.replace(**changes) if changes else params
        return self

    def set_seed(self, seed: Optional[int] = None):
        """Set random seed for reproducibility.

        Args:
            seed: Non-negative integer up to 3,000,000,000.
                Pass ``None`` to enable fully random seeding.

        Returns:
            self: For method chaining.
        """
        _validate_seed(seed).raise_if_invalid()
        self.seed = seed
        if seed is not None:
            print(f"Seed set to: {seed}")
        else:
            print("Random seeding enabled")
        return self

    def set_alpha(self, alpha: float):
        """Set the significance level, in (0, 1].

        Returns:
            self: For method chaining.
        """
        _validate_alpha(alpha).raise_if_invalid()
        self.alpha = float(alpha)
        return self

    def set_repetitions(self, n_repetitions: int):
        """Set the number of Monte Carlo repetitions.

        More repetitions yield a more precise power estimate at the cost of
        longer runtime. Each repetition fits one mixed model.

        Returns:
            self: For method chaining.
        """
        n_reps, result = _validate_repetitions(n_repetitions)
        result.print_warnings()
        result.raise_if_invalid()
        self.n_repetitions = n_reps
        return self

    def set_parallel(self, enable: bool = True, n_cores: Optional[int] = None):
        """Enable or disable parallel processing.

        Requires ``joblib``. Falls back to sequential processing with a
        warning if it is unavailable.

        Args:
            enable: ``True`` for parallel repetitions, ``False`` for
                sequential processing.
            n_cores: Number of CPU cores to use. Defaults to
                ``cpu_count // 2``.

        Returns:
            self: For method chaining.
        """
        if enable is False:
            self.parallel, self.n_cores = False, 1
            return self

        try:
            import joblib  # noqa: F401
        except ImportError:
            print("Warning: joblib not available. Install with: pip install joblib")
            print("Warning: Continuing with sequential processing.")
            self.parallel = False
            return self

        settings, result = _validate_parallel_settings(enable, n_cores)
        result.raise_if_invalid()
        self.parallel, self.n_cores = settings
        return self

    def set_max_excluded(self, fraction: float):
        """Set the maximum acceptable share of excluded repetitions.

        Non-convergent fits (and singular ones under the ``"exclude"``
        policy) are dropped from the power estimate. If their share exceeds
        this threshold, ``find_power`` raises ``UnreliablePowerEstimate``
        rather than report a biased number.

        Args:
            fraction: Proportion between 0 and 1. Default is 0.20.

        Returns:
            self: For method chaining.
        """
        _validate_fraction(fraction, "max_excluded_fraction").raise_if_invalid()
        self.max_excluded_fraction = float(fraction)
        return self

    def set_fit_timeout(self, seconds: Optional[float]):
        """Set the per-fit time budget (``None`` disables it).

        Returns:
            self: For method chaining.
        """
        _validate_timeout(seconds).raise_if_invalid()
        self.fit_timeout = seconds
        return self

    def set_backend(self, backend: str):
        """Choose the fitter: ``"custom"`` or ``"statsmodels"``.

        Returns:
            self: For method chaining.
        """
        _validate_choice(backend, BACKENDS, "backend").raise_if_invalid()
        if backend == "statsmodels":
            try:
                import statsmodels  # noqa: F401
            except ImportError:
                print("Warning: statsmodels not available. Install with: pip install MLMPower[lme]")
                print("Warning: Keeping the custom backend.")
                return self
        self.backend = backend
        return self

    def set_singular_policy(self, policy: str):
        """Keep (``"include"``) or drop (``"exclude"``) singular fits.

        Returns:
            self: For method chaining.
        """
        _validate_choice(policy, SINGULAR_POLICIES, "singular_policy").raise_if_invalid()
        self.singular_policy = policy
        return self

    # =========================================================================
    # Analysis methods
    # =========================================================================

    def simulate_once(self, print_results: bool = True, on_singular: str = "flag") -> SingleRunResult:
        """Synthesize one dataset and fit the model to it.

        Args:
            print_results: Print the simulated-versus-estimated table.
            on_singular: ``"flag"`` or ``"raise"``.

        Returns:
            SingleRunResult.
        """
        result = synthesize_and_fit(
            self.params,
            seed=self.seed,
            backend=self.backend,
            timeout=self.fit_timeout,
            on_singular=on_singular,
        )
        if print_results:
            print(f"\n{'=' * 80}")
            print("SINGLE DATASET FIT")
            print(f"{'=' * 80}")
            print(_format_results("comparison", result.comparison()))
        return result

    def find_power(
        self,
        print_results: bool = True,
        summary: str = "short",
        return_results: bool = False,
        progress_callback=None,
        cancel_check=None,
    ) -> Optional[PowerSummary]:
        """
        Estimate power for the group effect.

        Args:
            print_results: Whether to print results
            summary: Output detail level ("short" or "long")
            return_results: Return the PowerSummary
            progress_callback: Progress reporting control:
                - ``None`` (default): auto-use ``PrintReporter`` when
                  *print_results* is ``True``.
                - ``False``: explicitly disable progress.
                - callable ``(current, total)``: custom callback.
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            PowerSummary or None: The summary if *return_results* is
            ``True``, otherwise ``None``.
        """
        if progress_callback is None and print_results:
            from .progress import PrintReporter

            progress_callback = PrintReporter()

        result = run_power_simulation(
            self.n_repetitions,
            self.params,
            self.alpha,
            seed=self.seed,
            parallel=self.parallel,
            n_cores=self.n_cores if self.parallel else None,
            max_excluded_fraction=self.max_excluded_fraction,
            fit_timeout=self.fit_timeout,
            backend=self.backend,
            singular_policy=self.singular_policy,
            progress_callback=progress_callback,
            cancel_check=cancel_check,
        )

        if print_results:
            print(f"\n{'=' * 80}")
            print("MONTE CARLO POWER ANALYSIS RESULTS")
            print(f"{'=' * 80}")
            print(_format_results("power", result, summary))

        return result if return_results else None

    def __repr__(self):
        p = self.params
        return (
            f"MLMPower(subject_count={p.subject_count}, trial_count={p.trial_count}, "
            f"fixed_group_effect={p.fixed_group_effect})"
        )
