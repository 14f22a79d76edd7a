"""苗木密度と土壌水分のベイズモデル

1. ポアソン回帰: y ~ Poisson(exp(b0 + b1 * x))
2. 欠測データ版: 欠測した土壌水分を Uniform(0, 1) の未知数として補完
3. 誤差付き変数モデル: TDR読み値の検量線と回帰を同時推定
"""

from collections.abc import Callable

import numpy as np

from seedling_bayes.core.exceptions import ModelConfigurationError
from seedling_bayes.inference.data_loader import ModelData
from seedling_bayes.inference.model import (
    Family,
    LatentArray,
    Likelihood,
    LinearPredictor,
    Link,
    MissingDataPrior,
    ModelDescriptor,
)
from seedling_bayes.inference.priors import MultivariateNormalPrior, ParameterPrior

# 回帰係数の既定の事前精度（分散 1000 の散漫な事前分布）
VAGUE_PRECISION = 0.001

# 予測で用いる決定論的ノードと共変量
PREDICTION_NODE = "lambda"
PREDICTION_COVARIATE = "x"


def _vague_coefficients(name: str, precision: float) -> MultivariateNormalPrior:
    return MultivariateNormalPrior(name=name, mean=np.zeros(2), precision=precision * np.eye(2))


def poisson_regression(
    data: ModelData,
    beta_precision: float = VAGUE_PRECISION,
) -> ModelDescriptor:
    """ポアソン回帰モデル

    データ配列: x（土壌水分）, y（苗木数）
    パラメータ: beta[0]（切片）, beta[1]（傾き）
    """
    return ModelDescriptor(
        priors=[_vague_coefficients("beta", beta_precision)],
        data=data,
        deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
        likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
        name="poisson",
    )


def poisson_regression_missing(
    data: ModelData,
    beta_precision: float = VAGUE_PRECISION,
    x_lower: float = 0.0,
    x_upper: float = 1.0,
) -> ModelDescriptor:
    """欠測データを含むポアソン回帰モデル

    欠測した x は Uniform(x_lower, x_upper) の未知パラメータ x[i] としてθに加わる。
    欠測した y は尤度から除外され、事後予測分布から補完される。
    """
    return ModelDescriptor(
        priors=[_vague_coefficients("beta", beta_precision)],
        data=data,
        deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
        likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
        missing=[MissingDataPrior("x", ParameterPrior.uniform("x_missing", x_lower, x_upper))],
        name="missing",
    )


def errors_in_variables(
    data: ModelData,
    coefficient_precision: float = VAGUE_PRECISION,
    tau_shape: float = 0.1,
    tau_rate: float = 0.1,
) -> ModelDescriptor:
    """誤差付き変数モデル

    検量線:   moisture_cal ~ N(alpha[0] + alpha[1] * tdr_cal, 1/tau)
    潜在変数: x ~ N(alpha[0] + alpha[1] * tdr, 1/tau)（圃場の真の土壌水分）
    回帰:     y ~ Poisson(exp(beta[0] + beta[1] * x))

    データ配列: グループ field（tdr, y）、calibration（tdr_cal, moisture_cal）
    """
    return ModelDescriptor(
        priors=[
            _vague_coefficients("alpha", coefficient_precision),
            _vague_coefficients("beta", coefficient_precision),
            ParameterPrior.gamma("tau", tau_shape, tau_rate),
        ],
        data=data,
        latents=[LatentArray("x", group="field")],
        deterministics=[
            LinearPredictor("mu_cal", "alpha", ("tdr_cal",)),
            LinearPredictor("mu_field", "alpha", ("tdr",)),
            LinearPredictor("lambda", "beta", ("x",), Link.LOG),
        ],
        likelihoods=[
            Likelihood("moisture_cal", Family.NORMAL, "mu_cal", "tau"),
            Likelihood("x", Family.NORMAL, "mu_field", "tau"),
            Likelihood("y", Family.POISSON, "lambda"),
        ],
        name="calibration",
    )


MODEL_BUILDERS: dict[str, Callable[[ModelData], ModelDescriptor]] = {
    "poisson": poisson_regression,
    "missing": poisson_regression_missing,
    "calibration": errors_in_variables,
}


def build_model(name: str, data: ModelData) -> ModelDescriptor:
    """名前でモデルを構築する

    Raises:
        ModelConfigurationError: 未知のモデル名
    """
    try:
        builder = MODEL_BUILDERS[name]
    except KeyError:
        msg = f"未知のモデル '{name}'（{', '.join(MODEL_BUILDERS)} のいずれか）"
        raise ModelConfigurationError(msg) from None
    return builder(data)
