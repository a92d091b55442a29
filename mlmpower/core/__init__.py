"""Core components for the MLMPower framework.

Re-exports the foundational building blocks:

- ``DesignParameters``, ``coerce_design_parameters``: the immutable design
  record and its construction from mappings.
- ``SimulationRunner``, ``run_repetition``, ``spawn_seeds``: Monte Carlo
  repetition execution.
- ``ResultsProcessor``, ``PowerSummary``, ``build_model_comparison``: power
  aggregation and the simulated-versus-estimated table.
"""

from .parameters import DesignParameters, coerce_design_parameters
from .results import PowerSummary, ResultsProcessor, binomial_wilson_ci, build_model_comparison
from .simulation import SimulationRunner, run_repetition, spawn_seeds

__all__ = [
    # Parameters
    "DesignParameters",
    "coerce_design_parameters",
    # Simulation
    "SimulationRunner",
    "run_repetition",
    "spawn_seeds",
    # Results
    "ResultsProcessor",
    "PowerSummary",
    "binomial_wilson_ci",
    "build_model_comparison",
]
