"""苗木モデルのテスト"""

import numpy as np
import pytest

from seedling_bayes.core.exceptions import ModelConfigurationError
from seedling_bayes.inference.data_loader import ModelData
from seedling_bayes.inference.diagnostics import DiagnosticsConfig
from seedling_bayes.inference.mcmc import MCMCConfig, sample_posterior
from seedling_bayes.inference.results import build_estimation_result
from seedling_bayes.inference.simulate import SyntheticDataGenerator
from seedling_bayes.models import (
    MODEL_BUILDERS,
    build_model,
    errors_in_variables,
    poisson_regression,
    poisson_regression_missing,
)
from seedling_bayes.models.calibration_check import CoverageReport, slope_coverage


class TestBuildModel:
    """モデル構築のテスト"""

    def test_registry(self) -> None:
        assert set(MODEL_BUILDERS) == {"poisson", "missing", "calibration"}

    def test_unknown_model(self) -> None:
        data = SyntheticDataGenerator().generate(n=10, rng=np.random.default_rng(0))
        with pytest.raises(ModelConfigurationError, match="未知のモデル"):
            build_model("negbin", data)

    def test_poisson_layout(self) -> None:
        data = SyntheticDataGenerator().generate(n=10, rng=np.random.default_rng(0))
        model = poisson_regression(data)
        assert model.parameter_names == ["beta[0]", "beta[1]"]
        assert np.isfinite(model.log_density(model.initial_point()))

    def test_missing_layout(self) -> None:
        """欠測 x の要素は元データ上の位置で命名される"""
        data = SyntheticDataGenerator().generate(
            n=50, rng=np.random.default_rng(1), missing_fraction=0.1
        )
        model = poisson_regression_missing(data)
        missing_idx = np.flatnonzero(data.missing_mask("x"))
        assert model.n_params == 2 + missing_idx.size
        assert model.parameter_names[2:] == [f"x[{i}]" for i in missing_idx]
        assert set(model.missing_responses()) == {"y"}

    def test_calibration_layout(self) -> None:
        data = SyntheticDataGenerator().generate_calibration(
            n_calibration=6, n_field=12, rng=np.random.default_rng(2)
        )
        model = errors_in_variables(data)
        assert model.parameter_names[:5] == ["alpha[0]", "alpha[1]", "beta[0]", "beta[1]", "tau"]
        assert model.n_params == 5 + 12
        assert np.isfinite(model.log_density(model.initial_point()))


class TestShortRuns:
    """3モデルの短いチェーンでの実行テスト"""

    def test_poisson(self) -> None:
        data = SyntheticDataGenerator().generate(n=150, rng=np.random.default_rng(3))
        result = sample_posterior(
            poisson_regression(data), MCMCConfig(n_chains=2, n_draws=1_500, seed=3)
        )
        est = build_estimation_result(result)
        assert est.converged
        slope = est.get_summary("beta[1]")
        assert slope.mean == pytest.approx(2.0, abs=0.6)
        assert slope.quantiles[0.025] < slope.mean < slope.quantiles[0.975]

    def test_missing(self) -> None:
        data = SyntheticDataGenerator().generate(
            n=100, rng=np.random.default_rng(4), missing_fraction=0.1
        )
        model = poisson_regression_missing(data)
        result = sample_posterior(model, MCMCConfig(n_chains=2, n_draws=800, seed=4))
        samples = result.stacked()
        missing_cols = [model.layout.index_of(n) for n in model.parameter_names[2:]]
        # 欠測 x は Uniform(0, 1) のサポート内に留まる
        assert np.all((samples[:, :, missing_cols] >= 0) & (samples[:, :, missing_cols] <= 1))

        est = build_estimation_result(
            result, retain=["beta"], diagnostics_config=DiagnosticsConfig(min_retained=100)
        )
        assert est.parameter_names == ["beta[0]", "beta[1]"]
        assert np.all(np.isfinite(est.posterior_samples))

    def test_errors_in_variables(self) -> None:
        data = SyntheticDataGenerator().generate_calibration(
            n_calibration=10, n_field=20, rng=np.random.default_rng(5)
        )
        model = errors_in_variables(data)
        result = sample_posterior(model, MCMCConfig(n_chains=2, n_draws=600, seed=5))
        assert result.n_params == 5 + 20
        samples = result.stacked()
        tau_col = model.layout.index_of("tau")
        assert np.all(samples[:, :, tau_col] > 0)
        assert np.all(np.isfinite(result.log_posteriors()))

        est = build_estimation_result(
            result,
            prior_config=model.prior_config,
            retain=["alpha", "beta", "tau"],
            diagnostics_config=DiagnosticsConfig(min_retained=100),
        )
        assert len(est.summaries) == 5


class TestCalibrationCheck:
    """較正チェックのテスト"""

    def test_small_run(self) -> None:
        report = slope_coverage(
            n_datasets=3,
            n=100,
            mcmc_config=MCMCConfig(n_chains=2, n_draws=600),
            diagnostics_config=DiagnosticsConfig(min_retained=100),
            seed=1,
        )
        assert isinstance(report, CoverageReport)
        assert report.n_datasets == 3
        assert 0 <= report.n_covered <= 3
        assert 0.0 <= report.coverage <= 1.0
        assert report.true_slope == pytest.approx(2.0)

    def test_empty_report(self) -> None:
        report = CoverageReport(n_datasets=0, n_covered=0, n_converged=0, level=0.95, true_slope=2.0)
        assert report.coverage == 0.0

    @pytest.mark.slow
    def test_slope_coverage(self) -> None:
        """100個の合成データセットで傾きの95%信用区間の被覆率が名目水準に達する"""
        report = slope_coverage(n_datasets=100, seed=2024)
        assert report.coverage >= 0.95


class TestMissingCovariateAtBound:
    """事後モードが事前分布の境界上にある欠測共変量のテスト"""

    @staticmethod
    def _data() -> ModelData:
        base = SyntheticDataGenerator().generate(n=100, rng=np.random.default_rng(11))
        x = np.array(base["x"])
        y = np.array(base["y"])
        x[0] = np.nan
        y[0] = 0.0
        return ModelData(arrays={"x": x, "y": y}, groups={"field": ["x", "y"]})

    @staticmethod
    def _reference_moments(data: ModelData) -> tuple[float, float]:
        """(beta[0], beta[1], x[0]) の格子上の数値積分による x[0] の事後平均・標準偏差"""
        x_obs = data["x"][1:]
        y_obs = data["y"][1:]
        b0 = np.linspace(-0.5, 1.5, 121)
        b1 = np.linspace(0.8, 3.2, 121)
        grid = np.linspace(0.0, 1.0, 301)
        B0, B1 = np.meshgrid(b0, b1, indexing="ij")

        eta = B0[..., np.newaxis] + B1[..., np.newaxis] * x_obs
        log_lik = np.sum(y_obs * eta - np.exp(eta), axis=-1)
        log_prior = -0.5 * 0.001 * (B0**2 + B1**2)
        # y[0] = 0 の Poisson 対数尤度は -λ、x[0] の事前分布は Uniform(0, 1)
        log_missing = -np.exp(B0[..., np.newaxis] + B1[..., np.newaxis] * grid)

        log_joint = (log_lik + log_prior)[..., np.newaxis] + log_missing
        weights = np.exp(log_joint - log_joint.max())
        marginal = weights.sum(axis=(0, 1))
        marginal /= marginal.sum()
        mean = float(np.sum(marginal * grid))
        sd = float(np.sqrt(np.sum(marginal * (grid - mean) ** 2)))
        return mean, sd

    def test_hessian_uses_curvature_inside_support(self) -> None:
        data = self._data()
        model = poisson_regression_missing(data)
        result = sample_posterior(model, MCMCConfig(n_chains=2, n_draws=50, seed=1))
        col = model.layout.index_of("x[0]")
        assert result.mode[col] == pytest.approx(0.0, abs=1e-3)
        assert result.mode_hessian_inv[col, col] > 1e-3

    def test_posterior_matches_numerical_integration(self) -> None:
        """y[0]=0 の欠測 x[0] の事後平均・標準偏差が数値積分と一致する"""
        data = self._data()
        ref_mean, ref_sd = self._reference_moments(data)

        model = poisson_regression_missing(data)
        result = sample_posterior(model, MCMCConfig(n_chains=4, n_draws=4_000, seed=1))
        x0 = result.stacked(burn_in=1_000)[:, :, model.layout.index_of("x[0]")].ravel()

        assert np.all((x0 >= 0) & (x0 <= 1))
        assert x0.mean() == pytest.approx(ref_mean, abs=0.03)
        assert x0.std() == pytest.approx(ref_sd, abs=0.03)
