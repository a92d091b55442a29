"""
Validation utilities for MLMPower.

This module provides validation functions for design parameters,
simulation settings, and model-fitting options. Every check returns a
``_ValidationResult`` so that several problems can be collected and
reported together before any simulation work starts.
"""

import math
import numbers
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple, Union

from ..exceptions import InvalidConfiguration

__all__ = []

MAX_SEED = 3000000000
PROPORTION_TOLERANCE = 1e-9


@dataclass
class _ValidationResult:
    """Outcome of a validation check, carrying errors and warnings.

    Attributes:
        is_valid: ``True`` if no errors were found.
        errors: List of error messages (empty when valid).
        warnings: List of non-fatal warning messages.
    """

    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def raise_if_invalid(self):
        """Raise ``InvalidConfiguration`` if the validation failed."""
        if not self.is_valid:
            error_msg = "Validation failed:\n" + "\n".join(f"• {err}" for err in self.errors)
            raise InvalidConfiguration(error_msg, self.errors)

    def print_warnings(self):
        for warning in self.warnings:
            print(f"Warning: {warning}")


def _merge_results(results: Iterable[_ValidationResult]) -> _ValidationResult:
    """Combine several validation results into one."""
    errors: List[str] = []
    warnings: List[str] = []
    for result in results:
        errors.extend(result.errors)
        warnings.extend(result.warnings)
    return _ValidationResult(len(errors) == 0, errors, warnings)


class _Validator:
    """Static helpers for type and range checks used by all validators."""

    @staticmethod
    def _check_type(value: Any, expected_types: tuple, name: str) -> Optional[str]:
        """Check if value has expected type (booleans are never numbers here)."""
        if isinstance(value, bool) or not isinstance(value, expected_types):
            actual_type = type(value).__name__
            expected = expected_types[0].__name__ if len(expected_types) == 1 else f"one of {[t.__name__ for t in expected_types]}"
            return f"{name} must be {expected}, got {actual_type}"
        return None

    @staticmethod
    def _check_range(
        value: Union[int, float],
        min_val: Optional[float],
        max_val: Optional[float],
        name: str,
        min_inclusive: bool = True,
    ) -> Optional[str]:
        """Check if value is within range."""
        if min_val is not None:
            if min_inclusive and value < min_val:
                return f"{name} must be >= {min_val}, got {value}"
            if not min_inclusive and value <= min_val:
                return f"{name} must be > {min_val}, got {value}"
        if max_val is not None and value > max_val:
            return f"{name} must be <= {max_val}, got {value}"
        return None


_validator = _Validator()


def _validate_numeric_parameter(
    value: Any,
    name: str,
    expected_types: tuple = (numbers.Real,),
    min_val: Optional[float] = None,
    max_val: Optional[float] = None,
    min_inclusive: bool = True,
) -> _ValidationResult:
    """Generic validation for finite numeric parameters."""
    errors: List[str] = []

    type_error = _validator._check_type(value, expected_types, name)
    if type_error:
        errors.append(type_error)
        return _ValidationResult(False, errors, [])

    if not math.isfinite(value):
        errors.append(f"{name} must be finite, got {value}")
        return _ValidationResult(False, errors, [])

    range_error = _validator._check_range(value, min_val, max_val, name, min_inclusive)
    if range_error:
        errors.append(range_error)

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_count(value: Any, name: str) -> _ValidationResult:
    """Validate a positive integer count (subjects, trials, repetitions)."""
    return _validate_numeric_parameter(value, name, expected_types=(numbers.Integral,), min_val=1)


def _validate_real(value: Any, name: str) -> _ValidationResult:
    """Validate a finite real number (fixed effects)."""
    return _validate_numeric_parameter(value, name)


def _validate_sd(value: Any, name: str) -> _ValidationResult:
    """Validate a standard deviation (finite, non-negative)."""
    return _validate_numeric_parameter(value, name, min_val=0)


def _validate_group_proportions(proportions: Any) -> _ValidationResult:
    """Validate the two-group split: two positive reals summing to 1."""
    errors: List[str] = []

    try:
        values = tuple(proportions)
    except TypeError:
        errors.append(f"group_proportions must be a pair of numbers, got {type(proportions).__name__}")
        return _ValidationResult(False, errors, [])

    if len(values) != 2:
        errors.append(f"group_proportions must have exactly 2 entries, got {len(values)}")
        return _ValidationResult(False, errors, [])

    for i, value in enumerate(values):
        result = _validate_numeric_parameter(value, f"group_proportions[{i}]", min_val=0, min_inclusive=False)
        errors.extend(result.errors)

    if not errors and not math.isclose(sum(values), 1.0, rel_tol=0.0, abs_tol=PROPORTION_TOLERANCE):
        errors.append(f"group_proportions must sum to 1, got {sum(values)}")

    return _ValidationResult(len(errors) == 0, errors, [])


def _validate_bool(value: Any, name: str) -> _ValidationResult:
    if not isinstance(value, bool):
        return _ValidationResult(False, [f"{name} must be bool, got {type(value).__name__}"], [])
    return _ValidationResult(True, [], [])


def _validate_alpha(alpha: Any) -> _ValidationResult:
    """Validate significance level, in (0, 1]."""
    return _validate_numeric_parameter(alpha, "alpha", min_val=0, max_val=1, min_inclusive=False)


def _validate_repetitions(n_repetitions: Any) -> Tuple[int, _ValidationResult]:
    """Validate and process the number of Monte Carlo repetitions."""
    result = _validate_count(n_repetitions, "n_repetitions")

    if result.is_valid:
        n = int(n_repetitions)
        if n < 100:
            result.warnings.append(f"Low repetition count ({n}). Consider using at least 100 for a stable power estimate.")
        return n, result

    return 0, result


def _validate_seed(seed: Any) -> _ValidationResult:
    """Validate a random seed (non-negative integer or ``None``)."""
    if seed is None:
        return _ValidationResult(True, [], [])
    result = _validate_numeric_parameter(seed, "seed", expected_types=(numbers.Integral,), min_val=0, max_val=MAX_SEED)
    return result


def _validate_fraction(value: Any, name: str) -> _ValidationResult:
    """Validate a proportion in [0, 1]."""
    return _validate_numeric_parameter(value, name, min_val=0, max_val=1)


def _validate_timeout(timeout: Any) -> _ValidationResult:
    """Validate a fit timeout in seconds (positive, or ``None`` for no limit)."""
    if timeout is None:
        return _ValidationResult(True, [], [])
    return _validate_numeric_parameter(timeout, "fit_timeout", min_val=0, min_inclusive=False)


def _validate_choice(value: Any, choices: Tuple[str, ...], name: str) -> _ValidationResult:
    """Validate that *value* is one of the allowed string options."""
    if value not in choices:
        options = ", ".join(repr(c) for c in choices)
        return _ValidationResult(False, [f"{name} must be one of {options}, got {value!r}"], [])
    return _ValidationResult(True, [], [])


def _validate_parallel_settings(enable: Any, n_cores: Optional[int]) -> Tuple[Tuple[bool, int], _ValidationResult]:
    """Validate parallel processing settings.

    Args:
        enable: True or False
        n_cores: Number of CPU cores (positive int or None for auto)

    Returns:
        ((enable, n_cores), ValidationResult)
    """
    import multiprocessing as mp

    errors = []

    if not isinstance(enable, bool):
        errors.append(f"enable must be True or False, got {enable!r}")
        return (False, 1), _ValidationResult(False, errors, [])

    max_cores = mp.cpu_count() or 1
    validated_n_cores = max(1, max_cores // 2)

    if n_cores is not None:
        if isinstance(n_cores, bool) or not isinstance(n_cores, numbers.Integral) or n_cores <= 0:
            errors.append(f"n_cores must be a positive integer, got {n_cores}")
        else:
            validated_n_cores = min(int(n_cores), max_cores)

    return (enable, validated_n_cores), _ValidationResult(len(errors) == 0, errors, [])


def _validate_design_size(subject_count: int, trial_count: int, n_control: int, n_treatment: int) -> _ValidationResult:
    """Check that a design can support the crossed mixed model.

    Both groups need at least one subject, and each random factor needs at
    least two levels for its variance to be estimable.
    """
    errors = []
    warnings = []

    if n_control == 0 or n_treatment == 0:
        errors.append(
            f"Both groups need at least one subject, got {n_control} control and {n_treatment} treatment "
            f"(subject_count={subject_count})"
        )
    if subject_count < 2:
        errors.append(f"subject_count must be at least 2 to estimate the subject variance, got {subject_count}")
    if trial_count < 2:
        errors.append(f"trial_count must be at least 2 to estimate the trial variance, got {trial_count}")

    if not errors and min(n_control, n_treatment) < 5:
        warnings.append(
            f"Very small group ({min(n_control, n_treatment)} subjects). "
            f"The group effect will be poorly estimated and singular fits are likely."
        )

    return _ValidationResult(len(errors) == 0, errors, warnings)
