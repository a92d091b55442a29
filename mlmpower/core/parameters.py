"""
Design parameters for MLMPower simulations.

A ``DesignParameters`` record is an immutable snapshot of everything that
defines one simulated experiment: the crossed subjects-by-trials layout,
the fixed effects, the random-effect SDs, and the truncation flag.
"""

from dataclasses import asdict, dataclass, fields, replace
from typing import Any, Dict, Mapping, Tuple

from ..exceptions import InvalidConfiguration
from ..utils.validators import (
    _merge_results,
    _validate_bool,
    _validate_count,
    _validate_group_proportions,
    _validate_real,
    _validate_sd,
    _ValidationResult,
)

POWER_ONLY_OPTIONS = ("alpha", "n_repetitions")


@dataclass(frozen=True)
class DesignParameters:
    """Parameters of one crossed subjects-by-trials design.

    Attributes:
        subject_count: Number of subjects (each belongs to one group).
        trial_count: Number of trials (every subject sees every trial).
        group_proportions: Share of subjects in the control and treatment
            groups, in that order.
        fixed_intercept: Grand mean of the response.
        fixed_group_effect: Coefficient on the group contrast code.
        subject_sd: SD of the by-subject random intercepts.
        trial_sd: SD of the by-trial random intercepts.
        residual_sd: SD of the observation-level error.
        truncate_negative: Floor negative responses at zero.
    """

    subject_count: int = 50
    trial_count: int = 25
    group_proportions: Tuple[float, float] = (0.5, 0.5)
    fixed_intercept: float = 3.5
    fixed_group_effect: float = 0.10
    subject_sd: float = 0.5
    trial_sd: float = 0.5
    residual_sd: float = 0.10
    truncate_negative: bool = True

    def __post_init__(self):
        # Accept lists for the proportions but store a hashable tuple.
        try:
            proportions = tuple(self.group_proportions)
        except TypeError:
            return
        object.__setattr__(self, "group_proportions", proportions)

    def check(self) -> _ValidationResult:
        """Run every parameter check and collect the outcome."""
        return _merge_results(
            [
                _validate_count(self.subject_count, "subject_count"),
                _validate_count(self.trial_count, "trial_count"),
                _validate_group_proportions(self.group_proportions),
                _validate_real(self.fixed_intercept, "fixed_intercept"),
                _validate_real(self.fixed_group_effect, "fixed_group_effect"),
                _validate_sd(self.subject_sd, "subject_sd"),
                _validate_sd(self.trial_sd, "trial_sd"),
                _validate_sd(self.residual_sd, "residual_sd"),
                _validate_bool(self.truncate_negative, "truncate_negative"),
            ]
        )

    def validate(self) -> "DesignParameters":
        """Raise ``InvalidConfiguration`` listing every invalid field.

        Returns:
            self: For method chaining.
        """
        self.check().raise_if_invalid()
        return self

    @classmethod
    def option_names(cls) -> Tuple[str, ...]:
        return tuple(f.name for f in fields(cls))

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "DesignParameters":
        """Build validated parameters from a flat configuration mapping.

        Keys not listed in ``option_names()`` are rejected; the power-only
        options ``alpha`` and ``n_repetitions`` must be removed by the caller.

        Raises:
            InvalidConfiguration: On unknown keys or invalid values.
        """
        known = set(cls.option_names())
        unknown = sorted(k for k in mapping if k not in known)
        if unknown:
            _ValidationResult(
                False,
                [f"Unknown design option '{k}'. Recognised options: {', '.join(sorted(known))}" for k in unknown],
                [],
            ).raise_if_invalid()
        return cls(**dict(mapping)).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def replace(self, **changes) -> "DesignParameters":
        """Return a validated copy with *changes* applied."""
        return replace(self, **changes).validate()

    @property
    def n_observations(self) -> int:
        return self.subject_count * self.trial_count


def coerce_design_parameters(design_params: Any) -> DesignParameters:
    """Accept a ``DesignParameters`` record, a mapping, or ``None`` (defaults)."""
    if design_params is None:
        return DesignParameters().validate()
    if isinstance(design_params, DesignParameters):
        return design_params.validate()
    if isinstance(design_params, Mapping):
        options = {k: v for k, v in design_params.items() if k not in POWER_ONLY_OPTIONS}
        return DesignParameters.from_mapping(options)
    raise InvalidConfiguration(
        f"design_params must be DesignParameters or a mapping, got {type(design_params).__name__}"
    )
