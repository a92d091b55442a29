"""
Simulation execution for MLMPower.

This module contains the Monte Carlo repetition loop: every repetition
synthesizes a fresh dataset on the shared design skeleton, fits the
crossed mixed model, and reports one result row for the group effect.
Failed fits are recorded, not raised, so the aggregation step can apply
the exclusion ceiling.
"""

from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..exceptions import FittingError
from ..progress import SimulationCancelled
from ..stats.data_generation import synthesize
from ..stats.mixed_models import ParameterKind
from ..stats.mixed_models import fit as fit_model

STATUS_OK = "ok"
STATUS_SINGULAR = "singular"
STATUS_NONCONVERGED = "nonconvergence"

REPETITION_COLUMNS = (
    "repetition",
    "status",
    "estimate",
    "std_error",
    "df",
    "p_value",
    "intercept",
    "subject_sd",
    "trial_sd",
    "residual_sd",
    "failure_reason",
)


def spawn_seeds(seed: Optional[int], n_repetitions: int) -> List[np.random.SeedSequence]:
    """One independent ``SeedSequence`` per repetition.

    Args:
        seed: Base seed, or ``None`` for fresh OS entropy.
        n_repetitions: Number of child streams to create.
    """
    return np.random.SeedSequence(seed).spawn(n_repetitions)


def _failed_row(repetition: int, reason: str) -> Dict[str, Any]:
    row: Dict[str, Any] = {c: np.nan for c in REPETITION_COLUMNS}
    row.update(repetition=repetition, status=STATUS_NONCONVERGED, failure_reason=reason)
    return row


def run_repetition(
    repetition: int,
    skeleton,
    params,
    seed_sequence: np.random.SeedSequence,
    backend: str = "custom",
    fit_timeout: Optional[float] = None,
    synthesize_func: Callable = synthesize,
    fit_func: Callable = fit_model,
) -> Dict[str, Any]:
    """Execute a single repetition: synthesize, fit, extract the group row.

    Args:
        repetition: Repetition index (0-based).
        skeleton: Shared design skeleton.
        params: DesignParameters.
        seed_sequence: This repetition's own random stream.
        backend: Fitter backend.
        fit_timeout: Per-fit wall-clock budget in seconds.
        synthesize_func: Dataset synthesizer ``(skeleton, params, rng=...)``.
        fit_func: Model fitter ``(dataset, backend=..., timeout=...)``.

    Returns:
        Dict with the keys in ``REPETITION_COLUMNS``. Non-convergent fits
        produce a row with status ``"nonconvergence"`` and NaN estimates.
    """
    rng = np.random.default_rng(seed_sequence)
    dataset = synthesize_func(skeleton, params, rng=rng)

    try:
        result = fit_func(dataset, backend=backend, timeout=fit_timeout)
    except FittingError as e:
        return _failed_row(repetition, str(e))
    except np.linalg.LinAlgError as e:
        return _failed_row(repetition, f"linear algebra failure: {e}")

    group = result[ParameterKind.FIXED_GROUP_EFFECT]
    if group.p_value is None or not np.isfinite(group.p_value) or not np.isfinite(group.estimate):
        return _failed_row(repetition, "non-finite group-effect estimate or p-value")

    return {
        "repetition": repetition,
        "status": STATUS_SINGULAR if result.singular else STATUS_OK,
        "estimate": group.estimate,
        "std_error": group.std_error,
        "df": group.df,
        "p_value": group.p_value,
        "intercept": result[ParameterKind.FIXED_INTERCEPT].estimate,
        "subject_sd": result[ParameterKind.SUBJECT_INTERCEPT_SD].estimate,
        "trial_sd": result[ParameterKind.TRIAL_INTERCEPT_SD].estimate,
        "residual_sd": result[ParameterKind.RESIDUAL_SD].estimate,
        "failure_reason": None,
    }


class SimulationRunner:
    """Executes Monte Carlo repetitions for power analysis.

    Each repetition draws its random effects from its own child of a
    ``SeedSequence``, so results are identical whether repetitions run
    sequentially or across worker processes, and regardless of order.
    """

    def __init__(
        self,
        n_repetitions: int,
        seed: Optional[int] = None,
        parallel: bool = False,
        n_cores: int = 1,
        backend: str = "custom",
        fit_timeout: Optional[float] = 60.0,
    ):
        """Initialise the simulation runner.

        Args:
            n_repetitions: Number of Monte Carlo repetitions.
            seed: Base random seed (``None`` for non-reproducible runs).
            parallel: Distribute repetitions over ``joblib`` workers.
            n_cores: Number of worker processes when *parallel* is set.
            backend: Fitter backend passed to every fit.
            fit_timeout: Per-fit budget in seconds; expiry counts as
                non-convergence.
        """
        self.n_repetitions = n_repetitions
        self.seed = seed
        self.parallel = parallel
        self.n_cores = n_cores
        self.backend = backend
        self.fit_timeout = fit_timeout

    def run(
        self,
        skeleton,
        params,
        synthesize_func: Callable = synthesize,
        fit_func: Callable = fit_model,
        progress=None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> List[Dict[str, Any]]:
        """Run every repetition and return the result rows.

        Args:
            skeleton: Design skeleton shared by all repetitions.
            params: DesignParameters.
            synthesize_func: Dataset synthesizer callback.
            fit_func: Model fitter callback.
            progress: Optional ``ProgressReporter`` (advanced by 1 per
                repetition).
            cancel_check: Optional callable returning ``True`` to abort.

        Returns:
            List of repetition rows ordered by repetition index.

        Raises:
            SimulationCancelled: If *cancel_check* requests cancellation.
        """
        seeds = spawn_seeds(self.seed, self.n_repetitions)
        if progress is not None:
            progress.start()

        if self.parallel and self.n_cores > 1:
            rows = self._run_parallel(skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check)
        else:
            rows = self._run_sequential(skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check)

        if progress is not None:
            progress.finish()
        return sorted(rows, key=lambda row: row["repetition"])

    def _run_sequential(self, skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check):
        rows = []
        for repetition, seed_sequence in enumerate(seeds):
            if cancel_check is not None and cancel_check():
                raise SimulationCancelled("Simulation cancelled by user")
            rows.append(
                run_repetition(
                    repetition,
                    skeleton,
                    params,
                    seed_sequence,
                    backend=self.backend,
                    fit_timeout=self.fit_timeout,
                    synthesize_func=synthesize_func,
                    fit_func=fit_func,
                )
            )
            if progress is not None:
                progress.advance(1, failed=rows[-1]["status"] == STATUS_NONCONVERGED)
        return rows

    def _run_parallel(self, skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check):
        try:
            from joblib import Parallel, delayed
        except ImportError:
            print("Warning: joblib not available. Install with: pip install joblib")
            print("Warning: Continuing with sequential processing.")
            return self._run_sequential(skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check)

        try:
            outcomes = Parallel(
                n_jobs=self.n_cores,
                backend="loky",
                verbose=0,
                return_as="generator",
            )(
                delayed(run_repetition)(
                    repetition,
                    skeleton,
                    params,
                    seed_sequence,
                    backend=self.backend,
                    fit_timeout=self.fit_timeout,
                    synthesize_func=synthesize_func,
                    fit_func=fit_func,
                )
                for repetition, seed_sequence in enumerate(seeds)
            )
            rows = []
            for row in outcomes:
                if cancel_check is not None and cancel_check():
                    raise SimulationCancelled("Simulation cancelled by user")
                rows.append(row)
                if progress is not None:
                    progress.advance(1, failed=row["status"] == STATUS_NONCONVERGED)
            return rows
        except SimulationCancelled:
            raise
        except Exception as e:
            print(f"Warning: Parallel execution failed ({e}). Falling back to sequential.")
            if progress is not None:
                progress.start()
            return self._run_sequential(skeleton, params, seeds, synthesize_func, fit_func, progress, cancel_check)
