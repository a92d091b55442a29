"""
Exception hierarchy for MLMPower.

Configuration problems are raised before any simulation work starts.
Fitting problems are raised per dataset and recovered inside the power
simulator; an estimate built from too few usable fits is a hard failure.
"""

from typing import Optional, Tuple


class MLMPowerError(Exception):
    """Base class for all MLMPower errors."""

    pass


class InvalidConfiguration(MLMPowerError, ValueError):
    """Raised when design or simulation parameters are invalid."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = list(errors) if errors else [message]


class FittingError(MLMPowerError, RuntimeError):
    """Raised when a mixed model cannot be fitted to a dataset."""

    pass


class NonConvergence(FittingError):
    """The optimizer did not reach a stable REML solution (or timed out)."""

    def __init__(self, message: str, reason: str = "nonconvergence"):
        super().__init__(message)
        self.reason = reason


class SingularFit(FittingError):
    """A random-effect variance collapsed to zero.

    This is a valid statistical outcome. The fitted result is attached so
    callers can still inspect the estimates.
    """

    def __init__(self, message: str, result=None, components: Tuple = ()):
        super().__init__(message)
        self.result = result
        self.components = tuple(components)


class UnreliablePowerEstimate(MLMPowerError, RuntimeError):
    """Too many repetitions were excluded to report a power estimate."""

    def __init__(self, n_excluded: int, n_repetitions: int, ceiling: float):
        self.n_excluded = n_excluded
        self.n_repetitions = n_repetitions
        self.exclusion_rate = n_excluded / n_repetitions if n_repetitions else 1.0
        self.ceiling = ceiling
        super().__init__(
            f"Too many excluded repetitions: {n_excluded}/{n_repetitions} "
            f"({self.exclusion_rate:.1%}), threshold: {ceiling:.1%}. "
            f"Increase the number of repetitions or adjust the design parameters."
        )
