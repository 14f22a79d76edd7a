"""苗木密度データ向けモデル定義"""

from seedling_bayes.models.seedling import (
    MODEL_BUILDERS,
    build_model,
    errors_in_variables,
    poisson_regression,
    poisson_regression_missing,
)

__all__ = [
    "MODEL_BUILDERS",
    "build_model",
    "errors_in_variables",
    "poisson_regression",
    "poisson_regression_missing",
]
