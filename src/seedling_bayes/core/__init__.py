"""コアモジュール"""

from seedling_bayes.core.exceptions import (
    DataValidationError,
    EstimationError,
    ModelConfigurationError,
    PriorConfigurationError,
    SeedlingBayesError,
    ValidationError,
)

__all__ = [
    "DataValidationError",
    "EstimationError",
    "ModelConfigurationError",
    "PriorConfigurationError",
    "SeedlingBayesError",
    "ValidationError",
]
