"""MCMC収束診断

Gelman-Rubin R-hat, 有効サンプルサイズ (ESS), バーンイン自動選択, Geweke検定を実装する。
診断結果は保存済みチェーンから毎回再計算される読み取り専用の集約値である。
"""

import logging
from dataclasses import dataclass
from enum import Enum

import numpy as np
import scipy.stats

from seedling_bayes.core.exceptions import EstimationError, SamplerConfigurationError
from seedling_bayes.inference.mcmc import MCMCResult

logger = logging.getLogger(__name__)


class ESSMethod(Enum):
    """有効サンプルサイズの推定方法"""

    LAG1 = "lag1"
    MULTI_LAG = "multi_lag"


class BurnInStatus(Enum):
    """バーンイン選択の結果"""

    CONVERGED = "converged"
    NOT_CONVERGED = "not_converged"


@dataclass(frozen=True)
class DiagnosticsConfig:
    """収束診断の設定

    Attributes:
        rhat_threshold: 収束とみなす R-hat の上限
        ess_method: ESS の推定方法
        burnin_step: バーンイン候補の走査間隔（ドロー数）
        min_retained: バーンイン後にチェーンあたり最低限残すドロー数
    """

    rhat_threshold: float = 1.1
    ess_method: ESSMethod = ESSMethod.LAG1
    burnin_step: int = 50
    min_retained: int = 100

    def validate(self) -> None:
        if not self.rhat_threshold >= 1.0:
            msg = f"rhat_threshold は1以上: {self.rhat_threshold}"
            raise SamplerConfigurationError(msg)
        if self.burnin_step < 1:
            msg = f"burnin_step は1以上: {self.burnin_step}"
            raise SamplerConfigurationError(msg)
        if self.min_retained < 2:
            msg = f"min_retained は2以上: {self.min_retained}"
            raise SamplerConfigurationError(msg)


@dataclass(frozen=True)
class BurnInSelection:
    """バーンイン走査の結果

    Attributes:
        status: 収束したかどうか
        burn_in: 選択されたバーンイン位置。NOT_CONVERGED の場合は None
        candidates: 走査したバーンイン候補
        max_rhat: 各候補での全パラメータ中最大の R-hat
        threshold: 使用した閾値
        recommendation: 非収束時の推奨対応
    """

    status: BurnInStatus
    burn_in: int | None
    candidates: np.ndarray
    max_rhat: np.ndarray
    threshold: float
    recommendation: str = ""

    @property
    def converged(self) -> bool:
        return self.status == BurnInStatus.CONVERGED


@dataclass(frozen=True)
class DiagnosticSummary:
    """MCMC収束診断結果

    Attributes:
        r_hat: Gelman-Rubin R-hat統計量 (n_params,)
        ess: 有効サンプルサイズ (n_params,)
        ess_method: ESS の推定方法
        acceptance_rates: チェーンごとの採択率 (n_chains,)
        geweke_z: Geweke z-scores (n_params,)
        geweke_p: Geweke p-values (n_params,)
        parameter_names: パラメータ名のリスト
        burn_in: バーンイン選択の結果
        n_retained: チェーンあたりのバーンイン後ドロー数
    """

    r_hat: np.ndarray
    ess: np.ndarray
    ess_method: ESSMethod
    acceptance_rates: np.ndarray
    geweke_z: np.ndarray
    geweke_p: np.ndarray
    parameter_names: list[str]
    burn_in: BurnInSelection
    n_retained: int

    @property
    def converged(self) -> bool:
        """全パラメータの R-hat が閾値内に留まるバーンインが見つかったかどうか"""
        return self.burn_in.converged


def compute_rhat(chains: np.ndarray) -> np.ndarray:
    """Gelman-Rubin R-hat統計量を計算する

    Args:
        chains: MCMCチェーン配列 (n_chains, n_draws, n_params)

    Returns:
        R-hat値 (n_params,)

    チェーン間の分散とチェーン内の分散の比に基づく収束診断指標。

    Formula:
        W = チェーン内分散の平均
        B = チェーン平均の分散 * n_draws
        V_hat = (1 - 1/n) * W + (1/n) * B
        R_hat = sqrt(V_hat / W)
    """
    n_chains, n_draws, n_params = chains.shape
    if n_chains < 2 or n_draws < 2:
        msg = f"R-hat には2本以上・長さ2以上のチェーンが必要です: shape={chains.shape}"
        raise EstimationError(msg)

    chain_means = chains.mean(axis=1)
    chain_vars = chains.var(axis=1, ddof=1)

    w = chain_vars.mean(axis=0)
    b = chain_means.var(axis=0, ddof=1) * n_draws
    v_hat = (1.0 - 1.0 / n_draws) * w + (1.0 / n_draws) * b

    # W が 0 の場合（全チェーンが定数）は R-hat = 1.0
    with np.errstate(divide="ignore", invalid="ignore"):
        r_hat = np.where(w > 0, np.sqrt(v_hat / w), 1.0)
    return r_hat


def split_chains(chains: np.ndarray) -> np.ndarray:
    """各チェーンを前半・後半に分割する（split R-hat 用）

    奇数長の場合は先頭の1ドローを捨てる。

    Args:
        chains: (n_chains, n_draws, n_params)

    Returns:
        (2 * n_chains, n_draws // 2, n_params)
    """
    n_chains, n_draws, n_params = chains.shape
    half = n_draws // 2
    trimmed = chains[:, n_draws - 2 * half :]
    return trimmed.reshape(n_chains * 2, half, n_params)


def lag1_autocorrelation(x: np.ndarray) -> float:
    """1次の自己相関係数"""
    centered = x - x.mean()
    denom = float(np.dot(centered, centered))
    if denom < 1e-30:
        return 0.0
    return float(np.dot(centered[:-1], centered[1:]) / denom)


def compute_ess_lag1(chains: np.ndarray) -> np.ndarray:
    """1次自己相関に基づく簡易有効サンプルサイズ

    各チェーンについて n * (1 - rho) / (1 + rho) を計算し、チェーン間で合計する。
    rho は [0, 1) に切り詰めるため、ESS は常に総サンプル数以下となり、
    rho = 0 のときに限り等号が成立する。

    1次ラグのみを用いる近似であり、正の自己相関が高次ラグまで残る場合は
    ESS を過大評価する。厳密な推定には compute_ess を用いる。

    Args:
        chains: (n_chains, n_draws, n_params)

    Returns:
        ESS値 (n_params,)
    """
    n_chains, n_draws, n_params = chains.shape
    ess = np.zeros(n_params)
    for p in range(n_params):
        for c in range(n_chains):
            rho = min(max(lag1_autocorrelation(chains[c, :, p]), 0.0), 1.0 - 1e-12)
            ess[p] += n_draws * (1.0 - rho) / (1.0 + rho)
    return ess


def compute_ess(chains: np.ndarray, max_lag: int | None = None) -> np.ndarray:
    """自己相関の正の部分和に基づく有効サンプルサイズを計算する

    Args:
        chains: MCMCチェーン配列 (n_chains, n_draws, n_params)
        max_lag: 自己相関計算の最大ラグ。Noneの場合は n_draws を使用。

    Returns:
        ESS値 (n_params,)

    各パラメータについて:
    1. チェーンごとに自己相関を計算し、チェーン間で平均
    2. 最初に負になるラグまでの和をとる
    3. ESS = n_total / (1 + 2 * sum)、ただし n_total を上限とする
    """
    n_chains, n_draws, n_params = chains.shape
    n_total = n_chains * n_draws

    if max_lag is None:
        max_lag = n_draws

    ess = np.zeros(n_params)

    for p in range(n_params):
        x = chains[:, :, p]
        centered = x - x.mean(axis=1, keepdims=True)
        var = (centered**2).mean(axis=1)

        if np.all(var < 1e-30):
            ess[p] = float(n_total)
            continue
        var = np.where(var < 1e-30, np.inf, var)

        autocorr_sum = 0.0
        for lag in range(1, max_lag):
            c = float(np.mean((centered[:, :-lag] * centered[:, lag:]).mean(axis=1) / var))
            if c < 0:
                break
            autocorr_sum += c

        denominator = 1.0 + 2.0 * autocorr_sum
        ess[p] = n_total / max(denominator, 1.0)

    return ess


def geweke_test(
    chain: np.ndarray,
    first_frac: float = 0.1,
    last_frac: float = 0.5,
) -> tuple[np.ndarray, np.ndarray]:
    """Geweke収束診断

    チェーンの最初 first_frac 部分と最後 last_frac 部分の平均を比較する。
    収束していれば z-score は標準正規分布に従う。

    Args:
        chain: MCMCチェーン (n_draws, n_params)
        first_frac: 前半ウィンドウの割合
        last_frac: 後半ウィンドウの割合

    Returns:
        (z_scores, p_values) 各 (n_params,)
    """
    if chain.ndim == 1:
        chain = chain[:, np.newaxis]
    n_draws = chain.shape[0]

    n_first = max(int(n_draws * first_frac), 2)
    n_last = max(int(n_draws * last_frac), 2)

    first_part = chain[:n_first]
    last_part = chain[-n_last:]

    mean_first = first_part.mean(axis=0)
    mean_last = last_part.mean(axis=0)

    # スペクトル密度の推定にはサンプル分散を使用（簡易版）
    var_first = first_part.var(axis=0, ddof=1) / n_first
    var_last = last_part.var(axis=0, ddof=1) / n_last

    se = np.sqrt(var_first + var_last)
    with np.errstate(divide="ignore", invalid="ignore"):
        z_scores = np.where(se > 0, (mean_first - mean_last) / se, 0.0)
    p_values = 2.0 * (1.0 - scipy.stats.norm.cdf(np.abs(z_scores)))

    return z_scores, p_values


def select_burnin(
    chains: np.ndarray,
    threshold: float = 1.1,
    step: int = 50,
    min_retained: int = 100,
) -> BurnInSelection:
    """R-hat が閾値内に留まり続ける最初のバーンイン位置を選択する

    候補 b = 0, step, 2*step, ... (n_draws - min_retained まで) を昇順に走査し、
    b 以降の全候補で全パラメータの R-hat が閾値以下となる最小の b を返す。
    単一の好都合な窓を拾うことを避けるため、途中で閾値を超える候補があれば
    それより後の候補のみが選択対象となる。

    Args:
        chains: (n_chains, n_draws, n_params)
        threshold: R-hat の閾値
        step: 候補の間隔
        min_retained: バーンイン後に残す最低ドロー数

    Returns:
        BurnInSelection。該当位置がなければ NOT_CONVERGED（例外は送出しない）
    """
    n_draws = chains.shape[1]
    last = n_draws - max(min_retained, 2)
    candidates = np.arange(0, last + 1, step) if last >= 0 else np.array([], dtype=int)

    max_rhat = np.array([float(np.max(compute_rhat(chains[:, b:]))) for b in candidates])

    if candidates.size == 0:
        return BurnInSelection(
            status=BurnInStatus.NOT_CONVERGED,
            burn_in=None,
            candidates=candidates,
            max_rhat=max_rhat,
            threshold=threshold,
            recommendation=(
                f"チェーン長 {n_draws} が最低保持数 {min_retained} に満たないため診断できません。"
                "より長いチェーンで再実行してください。"
            ),
        )

    failing = np.flatnonzero(~(max_rhat <= threshold))
    if failing.size == 0:
        first_ok = 0
    else:
        first_ok = int(failing[-1]) + 1

    if first_ok >= candidates.size:
        logger.warning(
            "R-hat が閾値 %.3f 以下に収まるバーンインが見つかりません（最終候補で %.3f）",
            threshold,
            max_rhat[-1],
        )
        return BurnInSelection(
            status=BurnInStatus.NOT_CONVERGED,
            burn_in=None,
            candidates=candidates,
            max_rhat=max_rhat,
            threshold=threshold,
            recommendation=(
                f"最大 R-hat {max_rhat[-1]:.3f} が閾値 {threshold} を超えています。"
                "チェーンを長くするか、モデルの再パラメータ化を検討してください。"
            ),
        )

    return BurnInSelection(
        status=BurnInStatus.CONVERGED,
        burn_in=int(candidates[first_ok]),
        candidates=candidates,
        max_rhat=max_rhat,
        threshold=threshold,
    )


def run_diagnostics(
    result: MCMCResult,
    config: DiagnosticsConfig | None = None,
    indices: list[int] | None = None,
) -> DiagnosticSummary:
    """全ての収束診断を実行する

    バーンインを自動選択し、選択位置以降（非収束時は後半半分）で
    R-hat・ESS・Geweke を計算する。

    Args:
        result: MCMC結果
        config: 診断設定
        indices: 診断対象とするパラメータの位置。Noneなら全て

    Returns:
        全診断結果を含む DiagnosticSummary
    """
    cfg = config or DiagnosticsConfig()
    cfg.validate()

    chains = result.stacked()
    names = list(result.parameter_names)
    if indices is not None:
        chains = chains[:, :, indices]
        names = [names[i] for i in indices]

    selection = select_burnin(
        chains,
        threshold=cfg.rhat_threshold,
        step=cfg.burnin_step,
        min_retained=cfg.min_retained,
    )
    burn_in = selection.burn_in if selection.burn_in is not None else chains.shape[1] // 2
    retained = chains[:, burn_in:]

    r_hat = compute_rhat(retained)
    if cfg.ess_method == ESSMethod.LAG1:
        ess = compute_ess_lag1(retained)
    else:
        ess = compute_ess(retained)

    n_chains, n_draws, n_params = retained.shape
    geweke_z, geweke_p = geweke_test(retained.reshape(n_chains * n_draws, n_params))

    return DiagnosticSummary(
        r_hat=r_hat,
        ess=ess,
        ess_method=cfg.ess_method,
        acceptance_rates=result.acceptance_rates,
        geweke_z=geweke_z,
        geweke_p=geweke_p,
        parameter_names=names,
        burn_in=selection,
        n_retained=n_draws,
    )
