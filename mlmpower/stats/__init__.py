"""Design generation, data synthesis and model fitting modules."""

from . import data_generation as data_generation
from . import density as density
from . import design as design
from . import lme_solver as lme_solver
from . import mixed_models as mixed_models
