"""事前分布のテスト"""

import numpy as np
import pytest
import scipy.stats

from seedling_bayes.core.exceptions import PriorConfigurationError, ValidationError
from seedling_bayes.inference.priors import (
    DistributionType,
    MultivariateNormalPrior,
    ParameterPrior,
    PriorConfig,
)


class TestParameterPrior:
    """ParameterPrior のテスト"""

    def test_normal_from_precision(self) -> None:
        """精度から標準偏差に変換される"""
        prior = ParameterPrior.normal("b", mean=1.0, precision=0.25)
        assert prior.dist_type == DistributionType.NORMAL
        assert prior.std == pytest.approx(2.0)
        expected = scipy.stats.norm(1.0, 2.0).logpdf(0.3)
        assert prior.log_pdf(0.3) == pytest.approx(expected)

    def test_gamma_from_shape_rate(self) -> None:
        """shape/rate 指定のガンマ分布の対数密度が scipy と一致する"""
        prior = ParameterPrior.gamma("tau", shape=2.0, rate=0.5)
        assert prior.mean == pytest.approx(4.0)
        expected = scipy.stats.gamma(2.0, scale=2.0).logpdf(3.0)
        assert prior.log_pdf(3.0) == pytest.approx(expected)

    def test_uniform_support(self) -> None:
        """一様分布のサポート外は -inf"""
        prior = ParameterPrior.uniform("x", 0.0, 1.0)
        assert prior.log_pdf(0.5) == pytest.approx(0.0)
        assert prior.log_pdf(1.5) == -np.inf
        assert prior.log_pdf(-0.1) == -np.inf

    def test_gamma_negative_value_is_minus_inf(self) -> None:
        """ガンマ分布の負値は例外ではなく -inf"""
        prior = ParameterPrior.gamma("tau", shape=0.1, rate=0.1)
        assert prior.log_pdf(-1.0) == -np.inf

    def test_non_finite_value_is_minus_inf(self) -> None:
        prior = ParameterPrior.normal("b", mean=0.0, precision=1.0)
        assert prior.log_pdf(np.nan) == -np.inf
        assert prior.log_pdf(np.inf) == -np.inf

    def test_vector_prior_sums_elements(self) -> None:
        """size>1 の事前分布は要素ごとの対数密度の和"""
        prior = ParameterPrior.normal("b", mean=0.0, precision=1.0, size=3)
        value = np.array([0.1, -0.2, 0.3])
        expected = float(np.sum(scipy.stats.norm(0.0, 1.0).logpdf(value)))
        assert prior.log_pdf(value) == pytest.approx(expected)

    def test_sample_within_support(self) -> None:
        rng = np.random.default_rng(42)
        prior = ParameterPrior.uniform("x", 0.0, 1.0, size=50)
        samples = prior.sample(rng)
        assert samples.shape == (50,)
        assert np.all((samples > 0.0) & (samples < 1.0))

    def test_center_and_spread(self) -> None:
        prior = ParameterPrior.uniform("x", 0.0, 1.0)
        np.testing.assert_allclose(prior.center(), [0.5])
        np.testing.assert_allclose(prior.spread(), [1.0 / np.sqrt(12.0)])


class TestPriorValidation:
    """ハイパーパラメータ検証のテスト"""

    def test_non_positive_precision(self) -> None:
        with pytest.raises(PriorConfigurationError, match="精度"):
            ParameterPrior.normal("b", mean=0.0, precision=0.0)

    def test_non_positive_gamma_parameters(self) -> None:
        with pytest.raises(PriorConfigurationError):
            ParameterPrior.gamma("tau", shape=-1.0, rate=1.0)

    def test_uniform_inverted_bounds(self) -> None:
        with pytest.raises(PriorConfigurationError, match="下限"):
            ParameterPrior.uniform("x", 1.0, 0.0)

    def test_mv_normal_type_rejected_for_scalar_prior(self) -> None:
        with pytest.raises(PriorConfigurationError, match="MultivariateNormalPrior"):
            ParameterPrior(name="b", dist_type=DistributionType.MV_NORMAL)

    def test_prior_error_is_validation_error(self) -> None:
        """PriorConfigurationError は ValidationError の一種"""
        with pytest.raises(ValidationError):
            ParameterPrior.normal("b", mean=0.0, precision=-1.0)


class TestMultivariateNormalPrior:
    """MultivariateNormalPrior のテスト"""

    def test_log_pdf_matches_covariance_form(self) -> None:
        """精度行列指定の対数密度が共分散指定の scipy と一致する"""
        precision = np.array([[2.0, 0.5], [0.5, 1.0]])
        prior = MultivariateNormalPrior("beta", mean=np.array([0.5, -1.0]), precision=precision)
        value = np.array([0.2, 0.1])
        expected = scipy.stats.multivariate_normal(
            mean=[0.5, -1.0], cov=np.linalg.inv(precision)
        ).logpdf(value)
        assert prior.log_pdf(value) == pytest.approx(expected)
        assert prior.size == 2
        assert prior.dist_type == DistributionType.MV_NORMAL

    def test_not_positive_definite(self) -> None:
        """正定値でない精度行列は構築時に拒否される"""
        with pytest.raises(PriorConfigurationError, match="正定値"):
            MultivariateNormalPrior(
                "beta", mean=np.zeros(2), precision=np.array([[1.0, 2.0], [2.0, 1.0]])
            )

    def test_not_symmetric(self) -> None:
        with pytest.raises(PriorConfigurationError, match="対称"):
            MultivariateNormalPrior(
                "beta", mean=np.zeros(2), precision=np.array([[1.0, 0.5], [0.0, 1.0]])
            )

    def test_shape_mismatch(self) -> None:
        with pytest.raises(PriorConfigurationError, match="形状"):
            MultivariateNormalPrior("beta", mean=np.zeros(3), precision=np.eye(2))

    def test_spread_from_precision(self) -> None:
        prior = MultivariateNormalPrior("beta", mean=np.zeros(2), precision=0.001 * np.eye(2))
        np.testing.assert_allclose(prior.spread(), np.sqrt([1000.0, 1000.0]))


class TestPriorConfig:
    """PriorConfig のテスト"""

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(PriorConfigurationError, match="重複"):
            PriorConfig(
                [
                    ParameterPrior.normal("b", 0.0, 1.0),
                    ParameterPrior.normal("b", 0.0, 1.0),
                ]
            )

    def test_log_prior_sum(self) -> None:
        cfg = PriorConfig(
            [
                ParameterPrior.normal("a", 0.0, 1.0),
                ParameterPrior.gamma("tau", 2.0, 1.0),
            ]
        )
        assert cfg.n_params == 2
        assert cfg.names == ["a", "tau"]
        expected = scipy.stats.norm.logpdf(0.5) + scipy.stats.gamma(2.0).logpdf(1.5)
        assert cfg.log_prior({"a": np.float64(0.5), "tau": np.float64(1.5)}) == pytest.approx(
            expected
        )

    def test_log_prior_out_of_support(self) -> None:
        cfg = PriorConfig([ParameterPrior.gamma("tau", 2.0, 1.0)])
        assert cfg.log_prior({"tau": np.float64(-0.5)}) == -np.inf

    def test_contains_and_get(self) -> None:
        cfg = PriorConfig([ParameterPrior.normal("a", 0.0, 1.0)])
        assert "a" in cfg
        assert "b" not in cfg
        assert cfg.get_prior("a").name == "a"
