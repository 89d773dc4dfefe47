"""Token estimation, cost calculation and pricing sync."""

from .cost_calculator import CostCalculator
from .models_dev import ModelsDevParser
from .token_estimator import EstimatorConstants, TokenEstimator

__all__ = ["CostCalculator", "EstimatorConstants", "ModelsDevParser", "TokenEstimator"]
