from .absorption import CarbAbsorptionModel, LinearAbsorption, ParabolicAbsorption, PiecewiseLinearAbsorption
from .math import CarbEntry, CarbStatus, map_carbs
