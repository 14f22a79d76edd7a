"""事後区間の較正チェック

真値既知の合成データセットを繰り返し生成・推定し、
傾きの信用区間が真値を含む割合（被覆率）を測定する。
"""

import logging
from dataclasses import dataclass, replace

import numpy as np

from seedling_bayes.inference.diagnostics import DiagnosticsConfig
from seedling_bayes.inference.mcmc import MCMCConfig, sample_posterior
from seedling_bayes.inference.results import build_estimation_result
from seedling_bayes.inference.simulate import SyntheticDataGenerator
from seedling_bayes.models.seedling import poisson_regression

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoverageReport:
    """較正チェックの結果

    Attributes:
        n_datasets: 合成データセット数
        n_covered: 区間が真値を含んだ数
        n_converged: 収束判定が OK だった数
        level: 信用区間の水準
        true_slope: 真の傾き
    """

    n_datasets: int
    n_covered: int
    n_converged: int
    level: float
    true_slope: float

    @property
    def coverage(self) -> float:
        return self.n_covered / self.n_datasets if self.n_datasets else 0.0


def slope_coverage(
    n_datasets: int = 100,
    n: int = 200,
    intercept: float = 0.5,
    slope: float = 2.0,
    level: float = 0.95,
    mcmc_config: MCMCConfig | None = None,
    diagnostics_config: DiagnosticsConfig | None = None,
    seed: int = 0,
) -> CoverageReport:
    """傾き beta[1] の信用区間の被覆率を測定する

    Args:
        n_datasets: 合成データセット数
        n: データセットあたりの標本サイズ
        intercept: 真の切片
        slope: 真の傾き
        level: 信用区間の水準
        mcmc_config: MCMC設定（seed はデータセットごとに上書きする）
        diagnostics_config: 収束診断設定
        seed: データ生成とサンプラーのシード

    Returns:
        CoverageReport
    """
    base = mcmc_config or MCMCConfig(n_chains=2, n_draws=2_000)
    tail = (1.0 - level) / 2.0
    probs = (tail, 0.5, 1.0 - tail)
    gen = SyntheticDataGenerator()
    seeds = np.random.SeedSequence(seed).spawn(n_datasets)

    n_covered = 0
    n_converged = 0
    for i, ss in enumerate(seeds):
        data_seed, sampler_seed = ss.generate_state(2)
        data = gen.generate(n, intercept, slope, rng=np.random.default_rng(data_seed))
        cfg = replace(base, seed=int(sampler_seed))
        mcmc_result = sample_posterior(poisson_regression(data), cfg)
        est = build_estimation_result(
            mcmc_result,
            diagnostics_config=diagnostics_config,
            retain=("beta",),
            probs=probs,
        )
        s = est.get_summary("beta[1]")
        covered = s.quantiles[probs[0]] <= slope <= s.quantiles[probs[2]]
        n_covered += int(covered)
        n_converged += int(est.converged)
        logger.debug(
            "データセット %d: 区間 [%.3f, %.3f] 被覆=%s",
            i,
            s.quantiles[probs[0]],
            s.quantiles[probs[2]],
            covered,
        )

    logger.info("較正チェック: 被覆率 %d/%d", n_covered, n_datasets)
    return CoverageReport(
        n_datasets=n_datasets,
        n_covered=n_covered,
        n_converged=n_converged,
        level=level,
        true_slope=slope,
    )
