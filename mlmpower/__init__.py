"""MLMPower - Monte Carlo power analysis for crossed mixed designs.

Estimates the power to detect a between-subject group effect in a design
where every subject sees every trial, by repeatedly simulating data and
fitting ``response ~ group_code + (1|subject) + (1|trial)``.

Example:
    >>> from mlmpower import MLMPower, run_power_simulation
    >>>
    >>> model = MLMPower({"subject_count": 40, "fixed_group_effect": 0.3})
    >>> model.set_repetitions(500)
    >>> model.find_power()
    >>>
    >>> summary = run_power_simulation(200, {"subject_count": 40}, alpha=0.05, seed=1)
    >>> summary.power
"""

from importlib.metadata import version as _get_version

from .core.parameters import DesignParameters
from .core.results import PowerSummary
from .exceptions import (
    FittingError,
    InvalidConfiguration,
    MLMPowerError,
    NonConvergence,
    SingularFit,
    UnreliablePowerEstimate,
)
from .model import MLMPower, SingleRunResult, run_power_simulation, synthesize_and_fit
from .progress import PrintReporter, ProgressReporter, SimulationCancelled, TqdmReporter
from .stats.data_generation import synthesize
from .stats.design import generate_design
from .stats.mixed_models import FitResult, ParameterKind, fit

__version__ = _get_version("MLMPower")

__all__ = [
    "MLMPower",
    "synthesize_and_fit",
    "run_power_simulation",
    "DesignParameters",
    "SingleRunResult",
    "PowerSummary",
    "FitResult",
    "ParameterKind",
    "generate_design",
    "synthesize",
    "fit",
    "MLMPowerError",
    "InvalidConfiguration",
    "FittingError",
    "NonConvergence",
    "SingularFit",
    "UnreliablePowerEstimate",
    "SimulationCancelled",
    "ProgressReporter",
    "PrintReporter",
    "TqdmReporter",
]
