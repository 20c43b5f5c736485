"""Statistical analysis and data generation modules."""

from . import data_generation as data_generation
from . import fitting as fitting
from . import gee as gee
from . import mixed_models as mixed_models
