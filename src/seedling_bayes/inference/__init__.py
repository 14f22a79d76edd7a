"""ベイズ推定モジュール

宣言的モデル記述子、Random Walk Metropolis-Hastings サンプラー、
収束診断、事後分布の要約を提供する。
"""

from seedling_bayes.inference.data_loader import DataLoader, ModelData
from seedling_bayes.inference.diagnostics import (
    BurnInSelection,
    BurnInStatus,
    DiagnosticsConfig,
    DiagnosticSummary,
    ESSMethod,
    run_diagnostics,
    select_burnin,
)
from seedling_bayes.inference.mcmc import (
    Chain,
    MCMCConfig,
    MCMCResult,
    MetropolisHastings,
    make_log_posterior,
    sample_posterior,
)
from seedling_bayes.inference.model import (
    Family,
    LatentArray,
    Likelihood,
    LinearPredictor,
    Link,
    MissingDataPrior,
    ModelDescriptor,
    ParameterLayout,
)
from seedling_bayes.inference.priors import (
    DistributionType,
    MultivariateNormalPrior,
    ParameterPrior,
    PriorConfig,
)
from seedling_bayes.inference.results import (
    EstimationResult,
    IntervalTable,
    build_estimation_result,
    predict_intervals,
)
from seedling_bayes.inference.simulate import SyntheticDataGenerator

__all__ = [
    "BurnInSelection",
    "BurnInStatus",
    "Chain",
    "DataLoader",
    "DiagnosticSummary",
    "DiagnosticsConfig",
    "DistributionType",
    "ESSMethod",
    "EstimationResult",
    "Family",
    "IntervalTable",
    "LatentArray",
    "Likelihood",
    "LinearPredictor",
    "Link",
    "MCMCConfig",
    "MCMCResult",
    "MetropolisHastings",
    "MissingDataPrior",
    "ModelData",
    "ModelDescriptor",
    "MultivariateNormalPrior",
    "ParameterLayout",
    "ParameterPrior",
    "PriorConfig",
    "SyntheticDataGenerator",
    "build_estimation_result",
    "make_log_posterior",
    "predict_intervals",
    "run_diagnostics",
    "sample_posterior",
    "select_burnin",
]
