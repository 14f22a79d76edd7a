"""ベイズ推定結果

MCMCサンプリング結果の集約、事後分布のサマリー、
新しい共変量グリッドでの信用区間・予測区間の計算、結果テーブルの出力を提供する。
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from seedling_bayes.core.exceptions import EstimationError, ModelConfigurationError
from seedling_bayes.inference.diagnostics import (
    DiagnosticsConfig,
    DiagnosticSummary,
    run_diagnostics,
)
from seedling_bayes.inference.mcmc import MCMCResult
from seedling_bayes.inference.model import ModelDescriptor, draw_observation
from seedling_bayes.inference.priors import PriorConfig

logger = logging.getLogger(__name__)

DEFAULT_PROBS: tuple[float, ...] = (0.025, 0.5, 0.975)


@dataclass
class PosteriorSummary:
    """単一パラメータの事後分布サマリー

    Attributes:
        name: パラメータ名
        mean: 事後平均
        median: 事後中央値
        std: 事後標準偏差
        hpd_lower: 95% HPD下限
        hpd_upper: 95% HPD上限
        quantiles: 確率→分位点
        r_hat: Gelman-Rubin R-hat
        ess: 有効サンプルサイズ
        prior_mean: 事前平均（事前分布を持たない要素は NaN）
        prior_std: 事前標準偏差（同上）
    """

    name: str
    mean: float
    median: float
    std: float
    hpd_lower: float
    hpd_upper: float
    quantiles: dict[float, float]
    r_hat: float
    ess: float
    prior_mean: float = float("nan")
    prior_std: float = float("nan")


@dataclass
class IntervalTable:
    """共変量グリッド × 分位点の区間テーブル

    Attributes:
        covariate: グリッドを与える共変量名
        grid: 共変量グリッド (n_grid,)
        probs: 分位点の確率 (n_probs,)
        credible: 潜在平均（ノイズなし予測値）の分位点 (n_probs, n_grid)
        predictive: 観測値の事後予測分位点 (n_probs, n_grid)
    """

    covariate: str
    grid: np.ndarray
    probs: np.ndarray
    credible: np.ndarray
    predictive: np.ndarray

    def width(self, lower: float, upper: float, kind: str = "credible") -> np.ndarray:
        """分位点 lower〜upper の区間幅（グリッドごと）"""
        table = self.credible if kind == "credible" else self.predictive
        i_lo = int(np.flatnonzero(np.isclose(self.probs, lower))[0])
        i_hi = int(np.flatnonzero(np.isclose(self.probs, upper))[0])
        return table[i_hi] - table[i_lo]

    def to_csv(self, path: str | Path) -> None:
        """グリッド行 × (credible_q, predictive_q) 列のCSVを書き出す"""
        header = [self.covariate]
        header += [f"credible_{p:g}" for p in self.probs]
        header += [f"predictive_{p:g}" for p in self.probs]
        table = np.column_stack([self.grid, self.credible.T, self.predictive.T])
        np.savetxt(path, table, delimiter=",", header=",".join(header), comments="", fmt="%.6g")


@dataclass
class EstimationResult:
    """推定結果

    Attributes:
        posterior_samples: バーンイン後の全チェーン結合サンプル (n_total, n_retained_params)
        parameter_names: 出力対象パラメータ名のリスト
        diagnostics: 収束診断結果
        summaries: パラメータごとの事後分布サマリー
        chain_tables: チェーンごとの全ドロー (n_draws, n_retained_params)
        mode: 事後分布のモード（出力対象パラメータのみ）
        mode_log_posterior: モードでの対数事後確率
        n_chains: チェーン数
        n_draws: チェーンあたりのドロー数
        burn_in: 使用したバーンイン位置
        probs: サマリーの分位点確率
    """

    posterior_samples: np.ndarray
    parameter_names: list[str]
    diagnostics: DiagnosticSummary
    summaries: list[PosteriorSummary]
    chain_tables: list[np.ndarray]
    mode: np.ndarray
    mode_log_posterior: float
    n_chains: int
    n_draws: int
    burn_in: int
    probs: tuple[float, ...] = DEFAULT_PROBS
    intervals: dict[str, IntervalTable] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.diagnostics.converged

    def get_summary(self, name: str) -> PosteriorSummary:
        """名前でパラメータサマリーを取得する

        Raises:
            KeyError: パラメータが見つからない場合
        """
        for s in self.summaries:
            if s.name == name:
                return s
        msg = f"パラメータ '{name}' が見つかりません"
        raise KeyError(msg)

    def summary_table(self) -> str:
        """マークダウン形式のサマリーテーブルを生成する"""
        q_headers = " | ".join(f"q{p:g}" for p in self.probs)
        header = f"| Parameter | Mean | Std | {q_headers} | 95% HPD | R-hat | ESS |"
        separator = "|" + "---|" * (7 + len(self.probs) - 1)

        rows = [header, separator]
        for s in self.summaries:
            qs = " | ".join(f"{s.quantiles[p]:.4f}" for p in self.probs)
            rows.append(
                f"| {s.name} | {s.mean:.4f} | {s.std:.4f} | {qs} "
                f"| [{s.hpd_lower:.4f}, {s.hpd_upper:.4f}] | {s.r_hat:.3f} | {s.ess:.0f} |"
            )
        return "\n".join(rows)

    def save(self, output_dir: str | Path) -> None:
        """チェーン別サンプル表・診断表・サマリー・区間表を書き出す"""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        header = ",".join(["iteration", *self.parameter_names])

        for i, table in enumerate(self.chain_tables):
            iterations = np.arange(table.shape[0])[:, np.newaxis]
            np.savetxt(
                out / f"chain_{i}.csv",
                np.hstack([iterations, table]),
                delimiter=",",
                header=header,
                comments="",
                fmt="%.10g",
            )

        diag = self.diagnostics
        diag_rows = np.column_stack([diag.r_hat, diag.ess, diag.geweke_z, diag.geweke_p])
        lines = ["parameter,r_hat,ess,geweke_z,geweke_p"]
        for name, row in zip(diag.parameter_names, diag_rows, strict=True):
            lines.append(name + "," + ",".join(f"{v:.6g}" for v in row))
        (out / "diagnostics.csv").write_text("\n".join(lines) + "\n", encoding="utf-8")

        status = diag.burn_in.status.value
        text = [
            f"# Posterior summary ({status}, burn-in={self.burn_in})",
            "",
            self.summary_table(),
        ]
        if diag.burn_in.recommendation:
            text += ["", diag.burn_in.recommendation]
        (out / "summary.md").write_text("\n".join(text) + "\n", encoding="utf-8")

        for node, table in self.intervals.items():
            table.to_csv(out / f"intervals_{node}.csv")
        logger.info("結果を保存: %s", out)


def compute_hpd(samples: np.ndarray, alpha: float = 0.05) -> tuple[float, float]:
    """Highest Posterior Density (HPD) 区間を計算する

    (1-alpha)*100% の確率質量を含む最短の区間を求める。

    Args:
        samples: 1次元の事後サンプル配列
        alpha: 有意水準 (0.05 で 95% HPD)

    Returns:
        (lower, upper) HPD区間の下限と上限
    """
    sorted_samples = np.sort(samples)
    n = len(sorted_samples)
    interval_size = min(max(int(np.ceil((1.0 - alpha) * n)), 2), n)

    widths = sorted_samples[interval_size - 1 :] - sorted_samples[: n - interval_size + 1]
    best_idx = int(np.argmin(widths))

    return float(sorted_samples[best_idx]), float(sorted_samples[best_idx + interval_size - 1])


def posterior_quantiles(samples: np.ndarray, probs: Sequence[float] = DEFAULT_PROBS) -> np.ndarray:
    """パラメータごとの分位点

    Args:
        samples: (n_samples, n_params)
        probs: 確率のリスト

    Returns:
        (n_probs, n_params)
    """
    return np.quantile(samples, np.asarray(probs), axis=0)


def pool_samples(result: MCMCResult, burn_in: int) -> np.ndarray:
    """バーンイン以降の全チェーンのサンプルを1つのサンプル集合に結合する"""
    stacked = result.stacked(burn_in)
    n_chains, n_draws, n_params = stacked.shape
    return stacked.reshape(n_chains * n_draws, n_params)


def resolve_retained(parameter_names: Sequence[str], retain: Sequence[str] | None) -> list[int]:
    """出力対象の名前（ブロック名 'beta' または要素名 'beta[0]'）を位置に解決する

    Raises:
        ModelConfigurationError: 該当するパラメータがない名前を含む場合
    """
    if retain is None:
        return list(range(len(parameter_names)))
    indices: list[int] = []
    for name in retain:
        matched = [
            i
            for i, p in enumerate(parameter_names)
            if p == name or p.startswith(name + "[")
        ]
        if not matched:
            msg = f"出力対象パラメータ '{name}' が見つかりません"
            raise ModelConfigurationError(msg)
        indices.extend(i for i in matched if i not in indices)
    return indices


def predict_intervals(
    descriptor: ModelDescriptor,
    samples: np.ndarray,
    node: str,
    grid: Mapping[str, np.ndarray],
    rng: np.random.Generator,
    probs: Sequence[float] = DEFAULT_PROBS,
    target: str | None = None,
) -> IntervalTable:
    """新しい共変量グリッドでの信用区間と予測区間を計算する

    各事後サンプルをモデルの決定論的構造に通して潜在平均を求め（信用区間）、
    さらに観測モデルから1回ずつ観測値を生成する（予測区間）。
    予測区間の各分位点は、中央値より下側では信用区間の分位点以下、
    上側では以上となるよう広げるため、中央値を挟む全ての分位点の組で
    予測区間幅 ≥ 信用区間幅 が成り立つ。

    Args:
        descriptor: モデル記述子
        samples: 事後サンプル (n_samples, n_params)
        node: 予測する決定論的ノード名
        grid: 共変量名→グリッド値（1つ）
        rng: 観測値生成用の乱数生成器
        probs: 分位点の確率
        target: 観測モデルを与える尤度の対象名。Noneなら node を平均とする尤度

    Returns:
        IntervalTable
    """
    if len(grid) != 1:
        msg = f"グリッドは共変量1つで指定してください: {list(grid)}"
        raise ModelConfigurationError(msg)
    covariate, values = next(iter(grid.items()))
    values = np.asarray(values, dtype=np.float64)

    if target is None:
        candidates = [lik for lik in descriptor.likelihoods if lik.mean == node]
        if not candidates:
            msg = f"ノード '{node}' を平均とする尤度がありません"
            raise ModelConfigurationError(msg)
        lik = candidates[0]
    else:
        lik = descriptor.likelihood_for(target)

    n_samples = samples.shape[0]
    latent = np.empty((n_samples, values.size))
    observed = np.empty((n_samples, values.size))
    for s in range(n_samples):
        ns = descriptor.evaluate(samples[s], overrides={covariate: values})
        mu = np.broadcast_to(ns[node], values.shape)
        tau = float(ns[lik.precision]) if lik.precision is not None else None
        latent[s] = mu
        observed[s] = draw_observation(lik.family, mu, tau, rng)

    if not np.all(np.isfinite(latent)):
        msg = f"ノード '{node}' の予測値に非有限値が含まれます"
        raise EstimationError(msg)

    probs_arr = np.asarray(probs, dtype=np.float64)
    credible = np.quantile(latent, probs_arr, axis=0)
    predictive = np.quantile(observed, probs_arr, axis=0)

    lower = probs_arr < 0.5
    upper = probs_arr > 0.5
    predictive[lower] = np.minimum(predictive[lower], credible[lower])
    predictive[upper] = np.maximum(predictive[upper], credible[upper])

    return IntervalTable(
        covariate=covariate,
        grid=values,
        probs=probs_arr,
        credible=credible,
        predictive=predictive,
    )


def impute_missing_responses(
    descriptor: ModelDescriptor,
    samples: np.ndarray,
    rng: np.random.Generator,
) -> dict[str, np.ndarray]:
    """尤度から除外された欠測応答を事後予測分布から補完する

    Returns:
        対象名 → 補完ドロー (n_samples, n_missing)
    """
    imputed: dict[str, np.ndarray] = {}
    missing = descriptor.missing_responses()
    for target, idx in missing.items():
        lik = descriptor.likelihood_for(target)
        draws = np.empty((samples.shape[0], idx.size))
        for s in range(samples.shape[0]):
            ns = descriptor.evaluate(samples[s])
            mu = np.broadcast_to(ns[lik.mean], descriptor.data[target].shape)[idx]
            tau = float(ns[lik.precision]) if lik.precision is not None else None
            draws[s] = draw_observation(lik.family, mu, tau, rng)
        imputed[target] = draws
    return imputed


def _prior_moments(prior_config: PriorConfig | None, element: str) -> tuple[float, float]:
    if prior_config is None:
        return float("nan"), float("nan")
    block, _, rest = element.partition("[")
    if block not in prior_config:
        return float("nan"), float("nan")
    prior = prior_config.get_prior(block)
    i = int(rest.rstrip("]")) if rest else 0
    return float(prior.center()[i]), float(prior.spread()[i])


def build_estimation_result(
    mcmc_result: MCMCResult,
    prior_config: PriorConfig | None = None,
    diagnostics_config: DiagnosticsConfig | None = None,
    retain: Sequence[str] | None = None,
    probs: Sequence[float] = DEFAULT_PROBS,
) -> EstimationResult:
    """MCMC結果から EstimationResult を構築する

    収束診断でバーンインを自動選択し、以降のサンプルを全チェーン結合して要約する。
    非収束の場合は後半半分を用いて要約し、診断結果に NOT_CONVERGED を残す。

    Args:
        mcmc_result: MCMC結果
        prior_config: 事前分布設定（事前平均・標準偏差の表示用）
        diagnostics_config: 収束診断設定
        retain: 出力対象パラメータ名。Noneなら MCMCConfig.retain、それもNoneなら全て
        probs: サマリーの分位点確率

    Returns:
        完成した EstimationResult
    """
    if retain is None:
        retain = mcmc_result.retain
    indices = resolve_retained(mcmc_result.parameter_names, retain)
    names = [mcmc_result.parameter_names[i] for i in indices]

    diagnostics = run_diagnostics(mcmc_result, diagnostics_config, indices)
    selection = diagnostics.burn_in
    if selection.burn_in is None:
        burn_in = mcmc_result.n_draws // 2
        logger.warning("収束しなかったため後半 %d ドローで要約します", mcmc_result.n_draws - burn_in)
    else:
        burn_in = selection.burn_in

    posterior_samples = pool_samples(mcmc_result, burn_in)[:, indices]
    quantiles = posterior_quantiles(posterior_samples, probs)

    summaries: list[PosteriorSummary] = []
    for j, name in enumerate(names):
        samples_j = posterior_samples[:, j]
        hpd_lower, hpd_upper = compute_hpd(samples_j, alpha=0.05)
        prior_mean, prior_std = _prior_moments(prior_config, name)
        summaries.append(
            PosteriorSummary(
                name=name,
                mean=float(np.mean(samples_j)),
                median=float(np.median(samples_j)),
                std=float(np.std(samples_j)),
                hpd_lower=hpd_lower,
                hpd_upper=hpd_upper,
                quantiles={float(p): float(q) for p, q in zip(probs, quantiles[:, j], strict=True)},
                r_hat=float(diagnostics.r_hat[j]),
                ess=float(diagnostics.ess[j]),
                prior_mean=prior_mean,
                prior_std=prior_std,
            )
        )

    n = mcmc_result.n_draws
    chain_tables = [np.asarray(c.samples[:n])[:, indices] for c in mcmc_result.chains]

    return EstimationResult(
        posterior_samples=posterior_samples,
        parameter_names=names,
        diagnostics=diagnostics,
        summaries=summaries,
        chain_tables=chain_tables,
        mode=mcmc_result.mode[indices],
        mode_log_posterior=mcmc_result.mode_log_posterior,
        n_chains=mcmc_result.n_chains,
        n_draws=n,
        burn_in=burn_in,
        probs=tuple(float(p) for p in probs),
    )
