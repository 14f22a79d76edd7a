"""Random Walk Metropolis-Hastingsサンプラー

ベイズ推定の事後分布からのサンプリングを行う。
事後モード探索 → 提案共分散行列の構築 → 過分散な初期値からの複数チェーンMCMC
の手順で実行する。各チェーンは独立した乱数ストリームを持ち、
サンプリング中に他のチェーンの状態を参照しない。
"""

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

import numpy as np
import scipy.optimize

from seedling_bayes.core.exceptions import EstimationError, SamplerConfigurationError
from seedling_bayes.inference.model import ModelDescriptor

logger = logging.getLogger(__name__)

# 初期値の再抽選回数の上限
_MAX_INIT_ATTEMPTS = 100


@dataclass(frozen=True)
class MCMCConfig:
    """MCMC設定

    Attributes:
        n_chains: チェーン数（2以上）
        n_draws: チェーンあたりのドロー数
        seed: 乱数シード。各チェーンのストリームは SeedSequence(seed).spawn で生成する
        init_dispersion: 初期値の過分散係数（モード周りの事後標準偏差の倍率）
        proposal_scale: 提案共分散のスケール。Noneの場合は 2.38²/次元数
        mode_search_max_iter: モード探索の最大反復数
        proposal_floor: 事前標準偏差に対する提案標準偏差の下限の比率
        max_workers: 並列実行するチェーン数（1なら逐次実行。チェーンを1ステップずつ交互に進める）
        retain: 出力に残すパラメータ名（ブロック名または要素名）。Noneなら全て
    """

    n_chains: int = 4
    n_draws: int = 5_000
    seed: int = 42
    init_dispersion: float = 3.0
    proposal_scale: float | None = None
    mode_search_max_iter: int = 500
    proposal_floor: float = 1e-4
    max_workers: int = 1
    retain: tuple[str, ...] | None = None

    def validate(self) -> None:
        """設定値を検証する

        Raises:
            SamplerConfigurationError: 設定値が不正な場合
        """
        if self.n_chains < 2:
            msg = f"収束診断には2本以上のチェーンが必要です: n_chains={self.n_chains}"
            raise SamplerConfigurationError(msg)
        if self.n_draws < 2:
            msg = f"n_draws は2以上: {self.n_draws}"
            raise SamplerConfigurationError(msg)
        if not self.init_dispersion > 0:
            msg = f"init_dispersion は正: {self.init_dispersion}"
            raise SamplerConfigurationError(msg)
        if self.proposal_scale is not None and not self.proposal_scale > 0:
            msg = f"proposal_scale は正: {self.proposal_scale}"
            raise SamplerConfigurationError(msg)
        if not self.proposal_floor >= 0:
            msg = f"proposal_floor は0以上: {self.proposal_floor}"
            raise SamplerConfigurationError(msg)
        if self.max_workers < 1:
            msg = f"max_workers は1以上: {self.max_workers}"
            raise SamplerConfigurationError(msg)


class Chain:
    """1本のMCMCチェーン

    サンプルは追記のみで、既存の要素は書き換えない。
    samples / burned() は読み取り専用ビューを返すため、
    バーンインは破壊的な切り詰めではなく部分範囲として表現される。
    """

    def __init__(self, chain_id: int, start: np.ndarray, capacity: int) -> None:
        self.chain_id = chain_id
        self.start = np.array(start, dtype=np.float64)
        self.start.setflags(write=False)
        self._draws = np.empty((capacity, self.start.shape[0]))
        self._log_posts = np.empty(capacity)
        self._n = 0
        self.n_accepted = 0

    def __len__(self) -> int:
        return self._n

    @property
    def n_params(self) -> int:
        return int(self.start.shape[0])

    def append(self, theta: np.ndarray, log_post: float, accepted: bool) -> None:
        """サンプルを末尾に追加する"""
        if self._n >= self._draws.shape[0]:
            msg = f"チェーン {self.chain_id} の容量 {self._draws.shape[0]} を超えて追加できません"
            raise EstimationError(msg)
        self._draws[self._n] = theta
        self._log_posts[self._n] = log_post
        self._n += 1
        if accepted:
            self.n_accepted += 1

    @property
    def samples(self) -> np.ndarray:
        """サンプル (n, n_params) の読み取り専用ビュー"""
        view = self._draws[: self._n]
        view.setflags(write=False)
        return view

    @property
    def log_posteriors(self) -> np.ndarray:
        """対数事後密度のトレース (n,) の読み取り専用ビュー"""
        view = self._log_posts[: self._n]
        view.setflags(write=False)
        return view

    def burned(self, burn_in: int, length: int | None = None) -> np.ndarray:
        """バーンイン以降（length まで）のサンプルビュー"""
        stop = self._n if length is None else min(length, self._n)
        return self.samples[burn_in:stop]

    @property
    def acceptance_rate(self) -> float:
        return self.n_accepted / self._n if self._n else 0.0


@dataclass
class MCMCResult:
    """MCMC結果

    Attributes:
        chains: チェーンのリスト
        mode: 事後分布のモード (n_params,)
        mode_hessian_inv: モードでのヘシアン逆行列 (n_params, n_params)
        mode_log_posterior: モードでの対数事後密度
        parameter_names: パラメータ要素名のリスト
        cancelled: 途中でキャンセルされたかどうか
        retain: 要約で出力に残すパラメータ名（MCMCConfig.retain の引き継ぎ）
    """

    chains: list[Chain]
    mode: np.ndarray
    mode_hessian_inv: np.ndarray
    mode_log_posterior: float
    parameter_names: list[str] = field(default_factory=list)
    cancelled: bool = False
    retain: tuple[str, ...] | None = None

    @property
    def n_chains(self) -> int:
        return len(self.chains)

    @property
    def n_draws(self) -> int:
        """全チェーン共通のドロー数（最短チェーンの長さ）"""
        return min(len(c) for c in self.chains)

    @property
    def n_params(self) -> int:
        return self.chains[0].n_params

    @property
    def acceptance_rates(self) -> np.ndarray:
        return np.array([c.acceptance_rate for c in self.chains])

    def stacked(self, burn_in: int = 0) -> np.ndarray:
        """バーンイン以降のサンプルを (n_chains, n, n_params) に積み重ねる

        全チェーンを共通の長さ n_draws に揃える。
        """
        n = self.n_draws
        if not 0 <= burn_in < n:
            msg = f"burn_in={burn_in} はチェーン長 {n} の範囲外です"
            raise EstimationError(msg)
        return np.stack([c.burned(burn_in, n) for c in self.chains])

    def log_posteriors(self, burn_in: int = 0) -> np.ndarray:
        """バーンイン以降の対数事後密度 (n_chains, n)"""
        n = self.n_draws
        return np.stack([c.log_posteriors[burn_in:n] for c in self.chains])


class MetropolisHastings:
    """Random Walk Metropolis-Hastingsサンプラー"""

    def __init__(
        self,
        log_posterior_fn: Callable[[np.ndarray], float],
        n_params: int,
        config: MCMCConfig | None = None,
        parameter_names: list[str] | None = None,
        bounds: Sequence[tuple[float | None, float | None]] | None = None,
        prior_scales: np.ndarray | None = None,
    ) -> None:
        self._log_posterior_fn = log_posterior_fn
        self._n_params = n_params
        self._config = config or MCMCConfig()
        self._parameter_names = parameter_names or [f"param_{i}" for i in range(n_params)]
        self._bounds = list(bounds) if bounds is not None else None
        self._prior_scales = (
            np.asarray(prior_scales, dtype=np.float64) if prior_scales is not None else None
        )

        self._lower = np.full(n_params, -np.inf)
        self._upper = np.full(n_params, np.inf)
        for i, (lo, hi) in enumerate(self._bounds or []):
            if lo is not None:
                self._lower[i] = lo
            if hi is not None:
                self._upper[i] = hi

    @property
    def config(self) -> MCMCConfig:
        return self._config

    def find_mode(self, theta0: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """事後モードとヘシアン逆行列を求める

        scipy.optimize.minimize (L-BFGS-B) で負の対数事後確率を最小化する。
        ヘシアンは有限差分で数値近似する。正定値でなければ単位行列にフォールバック。

        Args:
            theta0: 初期パラメータベクトル

        Returns:
            (mode, hessian_inverse) のタプル
        """

        def neg_log_posterior(theta: np.ndarray) -> float:
            lp = self._log_posterior_fn(theta)
            if not np.isfinite(lp):
                return 1e10
            return -lp

        result = scipy.optimize.minimize(
            neg_log_posterior,
            theta0,
            method="L-BFGS-B",
            bounds=self._bounds,
            options={"maxiter": self._config.mode_search_max_iter},
        )

        mode = result.x
        if not np.isfinite(self._log_posterior_fn(mode)):
            logger.warning("モード探索が有限の事後密度に到達しなかったため初期値を使用")
            mode = np.asarray(theta0, dtype=np.float64).copy()

        hessian_inv = self._compute_hessian_inverse(neg_log_posterior, mode)

        return mode, hessian_inv

    def _stencil_center(self, mode: np.ndarray, steps: np.ndarray) -> np.ndarray:
        """差分の評価点（中心 ± 2ステップ）がサポート内に収まる中心

        境界上または境界近くのモードは、境界から離した点で曲率を評価する。
        """
        reach = 2.5 * steps
        center = mode.copy()
        room = self._upper - self._lower > 2.0 * reach
        near_lower = room & (center - reach < self._lower)
        near_upper = room & (center + reach > self._upper)
        center[near_lower] = self._lower[near_lower] + reach[near_lower]
        center[near_upper] = self._upper[near_upper] - reach[near_upper]
        return center

    def _compute_hessian_inverse(
        self,
        neg_log_posterior: Callable[[np.ndarray], float],
        mode: np.ndarray,
    ) -> np.ndarray:
        """ヘシアン逆行列を数値的に計算する

        有限差分で二階微分を近似し、逆行列を計算する。
        差分の評価点はサポート内に取る（_stencil_center）。
        正定値でない場合は単位行列にフォールバックする。
        """
        n = self._n_params
        eps = 1e-4
        steps = eps * np.maximum(1.0, np.abs(mode))
        center = self._stencil_center(mode, steps)
        hessian = np.zeros((n, n))

        for i in range(n):
            ei = np.zeros(n)
            ei[i] = steps[i]
            for j in range(i, n):
                ej = np.zeros(n)
                ej[j] = steps[j]

                fpp = neg_log_posterior(center + ei + ej)
                fpm = neg_log_posterior(center + ei - ej)
                fmp = neg_log_posterior(center - ei + ej)
                fmm = neg_log_posterior(center - ei - ej)

                hessian[i, j] = (fpp - fpm - fmp + fmm) / (4.0 * ei[i] * ej[j])
                hessian[j, i] = hessian[i, j]

        if np.all(np.isfinite(hessian)):
            try:
                eigvals = np.linalg.eigvalsh(hessian)
                if np.all(eigvals > 0):
                    hessian_inv: np.ndarray = np.linalg.inv(hessian)
                    return 0.5 * (hessian_inv + hessian_inv.T)
            except np.linalg.LinAlgError:
                logger.debug("ヘシアンの固有値分解に失敗")

        logger.warning("ヘシアンが正定値でないため単位行列にフォールバック")
        return np.eye(n)

    def _apply_proposal_floor(self, hessian_inv: np.ndarray) -> np.ndarray:
        """対角要素に (proposal_floor * 事前標準偏差)² の下限を課す

        対角への非負の加算なので半正定値性は保たれる。
        """
        if self._prior_scales is None or self._config.proposal_floor == 0:
            return hessian_inv
        floor = (self._config.proposal_floor * self._prior_scales) ** 2
        deficit = np.where(np.isfinite(floor), np.maximum(floor - np.diag(hessian_inv), 0.0), 0.0)
        if np.any(deficit > 0):
            logger.info("提案分散を下限まで引き上げ: %d 要素", int(np.count_nonzero(deficit)))
        return hessian_inv + np.diag(deficit)

    def _initial_state(
        self,
        chain_id: int,
        mode: np.ndarray,
        chol: np.ndarray,
        rng: np.random.Generator,
    ) -> np.ndarray:
        """過分散な初期値を生成する

        mode + init_dispersion * N(0, H⁻¹) を境界内に切り詰め、
        対数事後密度が有限になるまで再抽選する。
        """
        dispersion = self._config.init_dispersion
        for _ in range(_MAX_INIT_ATTEMPTS):
            candidate = mode + dispersion * (chol @ rng.standard_normal(self._n_params))
            candidate = np.clip(candidate, self._lower, self._upper)
            if np.isfinite(self._log_posterior_fn(candidate)):
                return candidate
        logger.warning("チェーン %d: 過分散初期値が得られないためモードから開始", chain_id)
        return mode.copy()

    def run(
        self,
        theta0: np.ndarray | None = None,
        cancel_event: threading.Event | None = None,
    ) -> MCMCResult:
        """MCMCサンプリングを実行する

        1. find_mode()でモードとヘシアンを求める
        2. 提案共分散: hessian_inverse * proposal_scale（既定 2.38²/n_params）
        3. SeedSequence から各チェーン独立の乱数ストリームを生成
        4. 各チェーンの初期値: mode + init_dispersion * N(0, hessian_inverse)
        5. Random Walk MH: theta_new = theta_old + N(0, proposal_cov)
        6. Accept/reject: log(u) < log_post(new) - log_post(old)

        max_workers=1 では全チェーンを1ステップずつ交互に進めるため、
        途中でキャンセルされても全チェーンが同じ長さのサンプルを持つ。
        各チェーンは自分の乱数ストリームのみを使うので、結果は並列実行と一致する。
        バーンインの除去は行わない（診断側で部分範囲として選択する）。

        Args:
            theta0: モード探索の初期パラメータベクトル
            cancel_event: セットされると全チェーンがそれ以上のドローを停止する

        Returns:
            MCMCResult

        Raises:
            SamplerConfigurationError: 設定が不正な場合
            EstimationError: theta0 が不正、またはキャンセルでチェーンが短すぎる場合
        """
        if theta0 is None:
            msg = "theta0を指定してください"
            raise EstimationError(msg)
        cfg = self._config
        cfg.validate()

        theta0 = np.asarray(theta0, dtype=np.float64)
        if theta0.shape != (self._n_params,):
            msg = f"theta0 の形状 {theta0.shape} が n_params={self._n_params} と一致しません"
            raise EstimationError(msg)
        if not np.isfinite(self._log_posterior_fn(theta0)):
            msg = "theta0 の対数事後密度が有限ではありません"
            raise EstimationError(msg)

        mode, hessian_inv = self.find_mode(theta0)
        mode_log_post = float(self._log_posterior_fn(mode))

        scale = cfg.proposal_scale if cfg.proposal_scale is not None else (2.38**2) / self._n_params
        proposal_cov = scale * self._apply_proposal_floor(hessian_inv)
        proposal_cov = 0.5 * (proposal_cov + proposal_cov.T)
        eigvals = np.linalg.eigvalsh(proposal_cov)
        if np.any(eigvals <= 0):
            proposal_cov += (abs(eigvals.min()) + 1e-8) * np.eye(self._n_params)
        chol = np.linalg.cholesky(proposal_cov)
        init_chol = np.linalg.cholesky(proposal_cov / scale)

        seeds = np.random.SeedSequence(cfg.seed).spawn(cfg.n_chains)
        rngs = [np.random.default_rng(s) for s in seeds]
        starts = [
            self._initial_state(chain_id, mode, init_chol, rng)
            for chain_id, rng in enumerate(rngs)
        ]

        logger.info(
            "MCMC開始: chains=%d, draws=%d, params=%d, workers=%d",
            cfg.n_chains,
            cfg.n_draws,
            self._n_params,
            cfg.max_workers,
        )

        if cfg.max_workers > 1:
            with ThreadPoolExecutor(max_workers=cfg.max_workers) as pool:
                futures = [
                    pool.submit(self._run_chain, i, starts[i], chol, rngs[i], cancel_event)
                    for i in range(cfg.n_chains)
                ]
                chains = [f.result() for f in futures]
        else:
            chains = self._run_interleaved(starts, chol, rngs, cancel_event)

        for chain in chains:
            logger.info("チェーン %d: 受容率 %.3f", chain.chain_id, chain.acceptance_rate)

        cancelled = cancel_event is not None and cancel_event.is_set()
        result = MCMCResult(
            chains=chains,
            mode=mode,
            mode_hessian_inv=hessian_inv,
            mode_log_posterior=mode_log_post,
            parameter_names=list(self._parameter_names),
            cancelled=cancelled,
            retain=cfg.retain,
        )
        if result.n_draws < 2:
            msg = f"キャンセルによりチェーン長が不足しています: {result.n_draws}"
            raise EstimationError(msg)
        if cancelled:
            logger.warning("サンプリングがキャンセルされました: 共通長 %d に揃えます", result.n_draws)
        return result

    def _step(
        self,
        theta_cur: np.ndarray,
        lp_cur: float,
        chol: np.ndarray,
        rng: np.random.Generator,
    ) -> tuple[np.ndarray, float, bool]:
        """1ステップの提案と採択判定"""
        z = rng.standard_normal(self._n_params)
        theta_prop = theta_cur + chol @ z
        lp_prop = self._log_posterior_fn(theta_prop)

        # サポート外の候補 (-inf) は通常の棄却として扱う
        log_alpha = lp_prop - lp_cur
        log_u = np.log(rng.uniform())
        if np.isfinite(lp_prop) and log_u < log_alpha:
            return theta_prop, lp_prop, True
        return theta_cur, lp_cur, False

    def _run_chain(
        self,
        chain_id: int,
        theta0: np.ndarray,
        chol: np.ndarray,
        rng: np.random.Generator,
        cancel_event: threading.Event | None = None,
    ) -> Chain:
        """1チェーンを最後まで実行する

        Args:
            chain_id: チェーン番号
            theta0: 初期パラメータベクトル
            chol: 提案共分散行列のCholesky因子
            rng: このチェーン専用の乱数生成器
            cancel_event: キャンセル通知

        Returns:
            n_draws 個（キャンセル時はそれ以下）のサンプルを持つ Chain
        """
        chain = Chain(chain_id, theta0, capacity=self._config.n_draws)
        theta_cur = theta0.copy()
        lp_cur = self._log_posterior_fn(theta_cur)

        for _ in range(self._config.n_draws):
            if cancel_event is not None and cancel_event.is_set():
                break
            theta_cur, lp_cur, accepted = self._step(theta_cur, lp_cur, chol, rng)
            chain.append(theta_cur, lp_cur, accepted)

        return chain

    def _run_interleaved(
        self,
        starts: list[np.ndarray],
        chol: np.ndarray,
        rngs: list[np.random.Generator],
        cancel_event: threading.Event | None = None,
    ) -> list[Chain]:
        """全チェーンを1ステップずつ交互に進める

        キャンセルは各ラウンドの開始時にのみ確認するため、全チェーンの長さは常に等しい。
        """
        n_draws = self._config.n_draws
        chains = [Chain(i, start, capacity=n_draws) for i, start in enumerate(starts)]
        thetas = [start.copy() for start in starts]
        lps = [self._log_posterior_fn(start) for start in starts]

        for _ in range(n_draws):
            if cancel_event is not None and cancel_event.is_set():
                break
            for i, chain in enumerate(chains):
                thetas[i], lps[i], accepted = self._step(thetas[i], lps[i], chol, rngs[i])
                chain.append(thetas[i], lps[i], accepted)

        return chains


def make_log_posterior(descriptor: ModelDescriptor) -> Callable[[np.ndarray], float]:
    """モデル記述子から対数事後密度関数を構築する

    Args:
        descriptor: モデル記述子

    Returns:
        log_posterior(theta) → float を返す関数
    """

    def log_posterior(theta: np.ndarray) -> float:
        return descriptor.log_density(theta)

    return log_posterior


def sample_posterior(
    descriptor: ModelDescriptor,
    config: MCMCConfig | None = None,
    cancel_event: threading.Event | None = None,
) -> MCMCResult:
    """モデル記述子に対してMCMCサンプリングを実行する

    Args:
        descriptor: モデル記述子
        config: MCMC設定
        cancel_event: キャンセル通知

    Returns:
        MCMCResult
    """
    mh = MetropolisHastings(
        log_posterior_fn=make_log_posterior(descriptor),
        n_params=descriptor.n_params,
        config=config,
        parameter_names=descriptor.parameter_names,
        bounds=descriptor.bounds(),
        prior_scales=descriptor.prior_scales(),
    )
    return mh.run(theta0=descriptor.initial_point(), cancel_event=cancel_event)
