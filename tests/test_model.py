"""モデル記述子と対数事後密度のテスト"""

import numpy as np
import pytest
import scipy.stats

from seedling_bayes.core.exceptions import DataValidationError, ModelConfigurationError
from seedling_bayes.inference.data_loader import ModelData
from seedling_bayes.inference.model import (
    Family,
    LatentArray,
    Likelihood,
    LinearPredictor,
    Link,
    MissingDataPrior,
    ModelDescriptor,
    ParameterBlock,
    ParameterLayout,
)
from seedling_bayes.inference.priors import MultivariateNormalPrior, ParameterPrior


def _beta_prior(precision: float = 0.001) -> MultivariateNormalPrior:
    return MultivariateNormalPrior("beta", mean=np.zeros(2), precision=precision * np.eye(2))


def _poisson_model(data: ModelData, missing: list[MissingDataPrior] | None = None) -> ModelDescriptor:
    return ModelDescriptor(
        priors=[_beta_prior()],
        data=data,
        deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
        likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
        missing=missing or [],
    )


@pytest.fixture
def small_data() -> ModelData:
    return ModelData(
        arrays={"x": [0.1, 0.4, 0.7, 0.9], "y": [1, 3, 4, 9]},
        groups={"field": ["x", "y"]},
    )


class TestParameterLayout:
    """ParameterLayout のテスト"""

    def test_pack_unpack(self) -> None:
        layout = ParameterLayout(
            [
                ParameterBlock("beta", 2, 0, "prior"),
                ParameterBlock("tau", 1, 2, "prior", scalar=True),
            ]
        )
        assert layout.names == ["beta[0]", "beta[1]", "tau"]
        theta = layout.pack({"beta": np.array([0.5, 2.0]), "tau": 3.0})
        np.testing.assert_allclose(theta, [0.5, 2.0, 3.0])
        values = layout.unpack(theta)
        np.testing.assert_allclose(values["beta"], [0.5, 2.0])
        assert float(values["tau"]) == pytest.approx(3.0)

    def test_indices_of_block_and_element(self) -> None:
        layout = ParameterLayout(
            [
                ParameterBlock("beta", 2, 0, "prior"),
                ParameterBlock("tau", 1, 2, "prior", scalar=True),
            ]
        )
        assert layout.indices_of(["beta"]) == [0, 1]
        assert layout.indices_of(["tau", "beta[1]"]) == [2, 1]
        with pytest.raises(ModelConfigurationError):
            layout.index_of("gamma[0]")


class TestLogDensity:
    """対数事後密度のテスト"""

    def test_matches_manual_computation(self, small_data: ModelData) -> None:
        """対数密度が scipy による手計算と一致する"""
        model = _poisson_model(small_data)
        theta = np.array([0.3, 1.5])

        x = np.array([0.1, 0.4, 0.7, 0.9])
        y = np.array([1, 3, 4, 9])
        lam = np.exp(0.3 + 1.5 * x)
        expected = scipy.stats.multivariate_normal(np.zeros(2), 1000.0 * np.eye(2)).logpdf(theta)
        expected += float(np.sum(scipy.stats.poisson.logpmf(y, lam)))

        assert model.log_density(theta) == pytest.approx(expected)

    def test_identity_link_negative_rate_is_minus_inf(self, small_data: ModelData) -> None:
        """恒等リンクで負のポアソン率になる候補は例外ではなく -inf"""
        model = ModelDescriptor(
            priors=[_beta_prior()],
            data=small_data,
            deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.IDENTITY)],
            likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
        )
        assert model.log_density(np.array([-5.0, 0.0])) == -np.inf
        assert np.isfinite(model.log_density(np.array([2.0, 1.0])))

    def test_non_positive_precision_is_minus_inf(self) -> None:
        data = ModelData(arrays={"t": [0.1, 0.2], "m": [0.2, 0.25]})
        model = ModelDescriptor(
            priors=[_beta_prior(), ParameterPrior.gamma("tau", 0.1, 0.1)],
            data=data,
            deterministics=[LinearPredictor("mu", "beta", ("t",))],
            likelihoods=[Likelihood("m", Family.NORMAL, "mu", "tau")],
        )
        assert model.log_density(np.array([0.0, 1.0, -1.0])) == -np.inf
        assert model.log_density(np.array([0.0, 1.0, np.nan])) == -np.inf

    def test_normal_likelihood(self) -> None:
        data = ModelData(arrays={"t": [0.1, 0.2, 0.5], "m": [0.2, 0.25, 0.5]})
        model = ModelDescriptor(
            priors=[_beta_prior(), ParameterPrior.gamma("tau", 0.1, 0.1)],
            data=data,
            deterministics=[LinearPredictor("mu", "beta", ("t",))],
            likelihoods=[Likelihood("m", Family.NORMAL, "mu", "tau")],
        )
        theta = np.array([0.05, 0.9, 400.0])
        mu = 0.05 + 0.9 * np.array([0.1, 0.2, 0.5])
        expected = scipy.stats.multivariate_normal(np.zeros(2), 1000.0 * np.eye(2)).logpdf(
            theta[:2]
        )
        expected += scipy.stats.gamma(0.1, scale=10.0).logpdf(400.0)
        expected += float(
            np.sum(scipy.stats.norm.logpdf([0.2, 0.25, 0.5], loc=mu, scale=1.0 / np.sqrt(400.0)))
        )
        assert model.log_density(theta) == pytest.approx(expected)
        assert model.parameter_names == ["beta[0]", "beta[1]", "tau"]


class TestMissingData:
    """欠測データの扱いのテスト"""

    def test_missing_covariate_promoted(self) -> None:
        """欠測した共変量はθの末尾に要素名 x[i] で加わる"""
        data = ModelData(
            arrays={"x": [0.1, None, 0.7, None], "y": [1, 3, 4, 9]},
            groups={"field": ["x", "y"]},
        )
        model = _poisson_model(
            data, missing=[MissingDataPrior("x", ParameterPrior.uniform("x_missing", 0.0, 1.0))]
        )
        assert model.n_params == 4
        assert model.parameter_names == ["beta[0]", "beta[1]", "x[1]", "x[3]"]

        theta = np.array([0.3, 1.5, 0.4, 0.9])
        ns = model.evaluate(theta)
        np.testing.assert_allclose(ns["x"], [0.1, 0.4, 0.7, 0.9])
        # 元データは書き換えない
        assert np.isnan(data["x"][1])

        full = _poisson_model(
            ModelData(arrays={"x": [0.1, 0.4, 0.7, 0.9], "y": [1, 3, 4, 9]})
        )
        assert model.log_density(theta) == pytest.approx(full.log_density(theta[:2]))

    def test_missing_covariate_out_of_prior_support(self) -> None:
        data = ModelData(arrays={"x": [0.1, None], "y": [1, 3]})
        model = _poisson_model(
            data, missing=[MissingDataPrior("x", ParameterPrior.uniform("x_missing", 0.0, 1.0))]
        )
        assert model.log_density(np.array([0.0, 1.0, 1.5])) == -np.inf

    def test_missing_covariate_without_prior(self) -> None:
        """MissingDataPrior のない欠測共変量は構成エラー"""
        data = ModelData(arrays={"x": [0.1, None], "y": [1, 3]})
        with pytest.raises(ModelConfigurationError, match="MissingDataPrior"):
            _poisson_model(data)

    def test_missing_response_excluded(self) -> None:
        """欠測応答は尤度から除外される"""
        data = ModelData(arrays={"x": [0.1, 0.4, 0.7], "y": [1, None, 4]})
        model = _poisson_model(data)
        observed = _poisson_model(ModelData(arrays={"x": [0.1, 0.7], "y": [1, 4]}))
        theta = np.array([0.2, 1.0])
        assert model.log_density(theta) == pytest.approx(observed.log_density(theta))
        missing = model.missing_responses()
        np.testing.assert_array_equal(missing["y"], [1])


class TestLatentArray:
    """潜在配列のテスト"""

    def test_latent_sized_by_group(self) -> None:
        data = ModelData.from_groups({"field": {"tdr": [0.1, 0.2, 0.3], "y": [1, 2, 3]}})
        model = ModelDescriptor(
            priors=[
                MultivariateNormalPrior("alpha", np.zeros(2), np.eye(2)),
                _beta_prior(),
                ParameterPrior.gamma("tau", 1.0, 1.0),
            ],
            data=data,
            latents=[LatentArray("x", group="field")],
            deterministics=[
                LinearPredictor("mu", "alpha", ("tdr",)),
                LinearPredictor("lambda", "beta", ("x",), Link.LOG),
            ],
            likelihoods=[
                Likelihood("x", Family.NORMAL, "mu", "tau"),
                Likelihood("y", Family.POISSON, "lambda"),
            ],
        )
        assert model.n_params == 2 + 2 + 1 + 3
        assert model.parameter_names[-3:] == ["x[0]", "x[1]", "x[2]"]
        theta0 = model.initial_point()
        assert np.isfinite(model.log_density(theta0))

    def test_latent_without_likelihood(self) -> None:
        data = ModelData.from_groups({"field": {"y": [1, 2]}})
        with pytest.raises(ModelConfigurationError, match="潜在配列"):
            ModelDescriptor(
                priors=[_beta_prior()],
                data=data,
                latents=[LatentArray("x", group="field")],
                deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
                likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
            )


class TestConfigurationErrors:
    """構築時検証のテスト"""

    def test_coefficient_length_mismatch(self, small_data: ModelData) -> None:
        with pytest.raises(ModelConfigurationError, match="係数の長さ"):
            ModelDescriptor(
                priors=[MultivariateNormalPrior("beta", np.zeros(3), np.eye(3))],
                data=small_data,
                deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
                likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
            )

    def test_unknown_covariate(self, small_data: ModelData) -> None:
        with pytest.raises(ModelConfigurationError, match="未定義"):
            ModelDescriptor(
                priors=[_beta_prior()],
                data=small_data,
                deterministics=[LinearPredictor("lambda", "beta", ("z",), Link.LOG)],
                likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
            )

    def test_name_clash(self, small_data: ModelData) -> None:
        with pytest.raises(ModelConfigurationError, match="重複"):
            ModelDescriptor(
                priors=[_beta_prior()],
                data=small_data,
                deterministics=[LinearPredictor("x", "beta", ("x",), Link.LOG)],
            )

    def test_normal_without_precision(self, small_data: ModelData) -> None:
        with pytest.raises(ModelConfigurationError, match="精度"):
            ModelDescriptor(
                priors=[_beta_prior()],
                data=small_data,
                deterministics=[LinearPredictor("mu", "beta", ("x",))],
                likelihoods=[Likelihood("y", Family.NORMAL, "mu")],
            )

    def test_group_length_mismatch(self) -> None:
        """異なるグループの配列を同じノードで使うと長さ不一致エラー"""
        data = ModelData.from_groups(
            {"field": {"x": [0.1, 0.2, 0.3]}, "other": {"y": [1, 2]}}
        )
        with pytest.raises(ModelConfigurationError, match="一致しません"):
            ModelDescriptor(
                priors=[_beta_prior()],
                data=data,
                deterministics=[LinearPredictor("lambda", "beta", ("x",), Link.LOG)],
                likelihoods=[Likelihood("y", Family.POISSON, "lambda")],
            )

    def test_poisson_non_integer_observation(self) -> None:
        data = ModelData(arrays={"x": [0.1, 0.2], "y": [1.5, 2.0]})
        with pytest.raises(DataValidationError, match="非負整数"):
            _poisson_model(data)
