"""階層ベイズモデルの記述子と対数事後密度の評価

モデルはコード生成ではなく宣言（事前分布・線形予測子・尤度・潜在配列・欠測データ事前分布）
のデータ構造として記述し、ModelDescriptor がそれを解釈して
非正規化対数事後密度 = Σ対数事前密度 + Σ対数尤度 を計算する。

サポート外の候補（負のポアソン率、非正の精度など）は例外ではなく -inf として扱う。
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

import numpy as np
import scipy.special
import scipy.stats

from seedling_bayes.core.exceptions import DataValidationError, ModelConfigurationError
from seedling_bayes.inference.data_loader import ModelData
from seedling_bayes.inference.priors import ParameterPrior, Prior, PriorConfig

logger = logging.getLogger(__name__)


class Link(Enum):
    """線形予測子のリンク関数"""

    IDENTITY = "identity"
    LOG = "log"
    LOGIT = "logit"

    def inverse(self, eta: np.ndarray) -> np.ndarray:
        """逆リンク関数を適用する"""
        match self:
            case Link.IDENTITY:
                return eta
            case Link.LOG:
                return np.exp(eta)
            case Link.LOGIT:
                return scipy.special.expit(eta)


class Family(Enum):
    """観測モデル（尤度）の分布族"""

    POISSON = "poisson"
    NORMAL = "normal"


@dataclass(frozen=True)
class LinearPredictor:
    """決定論的ノード: link⁻¹(c[0] + Σ_k c[k+1]·covariate_k)

    Attributes:
        name: ノード名
        coefficients: 係数ベクトルのパラメータ名（長さ = 共変量数 + 1）
        covariates: 共変量名（データ配列・潜在配列・先行する決定論的ノード）
        link: リンク関数
    """

    name: str
    coefficients: str
    covariates: tuple[str, ...]
    link: Link = Link.IDENTITY


@dataclass(frozen=True)
class Likelihood:
    """確率的ノード: target ~ family(mean, precision)

    target が潜在配列の場合は階層事前分布として作用する。

    Attributes:
        target: 観測データ配列名または潜在配列名
        family: 分布族
        mean: 平均を与える決定論的ノード名
        precision: 精度パラメータ名（NORMALのみ）
    """

    target: str
    family: Family
    mean: str
    precision: str | None = None


@dataclass(frozen=True)
class LatentArray:
    """未知の潜在配列（例: 真の土壌水分）

    Attributes:
        name: 配列名
        size: 要素数。group を指定した場合はそのデータグループの標本サイズ
        group: 長さを合わせるデータグループ名
    """

    name: str
    size: int = 0
    group: str | None = None


@dataclass(frozen=True)
class MissingDataPrior:
    """データ配列中の欠測要素をパラメータに昇格させる事前分布

    Attributes:
        data_key: 欠測を含むデータ配列名
        prior: 各欠測要素に独立に適用するスカラー事前分布
    """

    data_key: str
    prior: ParameterPrior


@dataclass(frozen=True)
class ParameterBlock:
    """パラメータベクトル内の連続ブロック

    Attributes:
        name: ブロック名（事前分布名・潜在配列名・欠測データ配列名）
        size: 要素数
        start: パラメータベクトル内の開始位置
        kind: "prior", "latent", "missing" のいずれか
        scalar: スカラーパラメータかどうか（要素名に添字を付けない）
        indices: 要素名に用いる添字（欠測ブロックではデータ上の位置）
    """

    name: str
    size: int
    start: int
    kind: str
    scalar: bool = False
    indices: tuple[int, ...] = ()

    @property
    def stop(self) -> int:
        return self.start + self.size

    @property
    def slice(self) -> slice:
        return slice(self.start, self.stop)

    @property
    def element_names(self) -> list[str]:
        if self.scalar:
            return [self.name]
        idx = self.indices or tuple(range(self.size))
        return [f"{self.name}[{i}]" for i in idx]


class ParameterLayout:
    """名前付きブロックとフラットなθベクトルの双方向マッピング

    パラメータの同一性は位置で決まり、次元はモデルごとに固定される。
    """

    def __init__(self, blocks: list[ParameterBlock]) -> None:
        self.blocks = blocks
        self._by_name: dict[str, ParameterBlock] = {b.name: b for b in blocks}
        self._element_index: dict[str, int] = {
            name: i for i, name in enumerate(self.names)
        }

    @property
    def n_params(self) -> int:
        return sum(b.size for b in self.blocks)

    @property
    def names(self) -> list[str]:
        """展開済み要素名（例: beta[0], beta[1], tau）"""
        return [name for b in self.blocks for name in b.element_names]

    @property
    def block_names(self) -> list[str]:
        return [b.name for b in self.blocks]

    def block(self, name: str) -> ParameterBlock:
        try:
            return self._by_name[name]
        except KeyError:
            msg = f"パラメータブロック '{name}' が見つかりません"
            raise ModelConfigurationError(msg) from None

    def index_of(self, element_name: str) -> int:
        """要素名からθ上の位置を返す"""
        try:
            return self._element_index[element_name]
        except KeyError:
            msg = f"パラメータ要素 '{element_name}' が見つかりません"
            raise ModelConfigurationError(msg) from None

    def indices_of(self, names: Sequence[str]) -> list[int]:
        """ブロック名または要素名のリストをθ上の位置リストに展開する"""
        out: list[int] = []
        for name in names:
            if name in self._by_name:
                out.extend(range(self._by_name[name].start, self._by_name[name].stop))
            else:
                out.append(self.index_of(name))
        return out

    def unpack(self, theta: np.ndarray) -> dict[str, np.ndarray]:
        """θベクトルをブロック名→値に分解する（スカラーは0次元配列）"""
        values: dict[str, np.ndarray] = {}
        for b in self.blocks:
            v = theta[b.slice]
            values[b.name] = v[0] if b.scalar else v
        return values

    def pack(self, values: Mapping[str, np.ndarray | float]) -> np.ndarray:
        """ブロック名→値 からθベクトルを組み立てる"""
        theta = np.empty(self.n_params)
        for b in self.blocks:
            theta[b.slice] = np.broadcast_to(np.asarray(values[b.name], dtype=np.float64), b.size)
        return theta


def draw_observation(
    family: Family,
    mean: np.ndarray,
    precision: float | None,
    rng: np.random.Generator,
) -> np.ndarray:
    """観測モデルから1回分の観測値を生成する"""
    match family:
        case Family.POISSON:
            return rng.poisson(np.maximum(mean, 0.0)).astype(np.float64)
        case Family.NORMAL:
            if precision is None:
                msg = "NORMAL尤度の生成には精度が必要です"
                raise ModelConfigurationError(msg)
            return rng.normal(mean, 1.0 / np.sqrt(precision))


class ModelDescriptor:
    """宣言的モデル記述子と対数事後密度インタプリタ

    パラメータベクトルの並び: 事前分布（宣言順）→ 潜在配列 → 欠測データ要素。
    """

    def __init__(
        self,
        priors: PriorConfig | Sequence[Prior],
        data: ModelData,
        deterministics: Sequence[LinearPredictor] = (),
        likelihoods: Sequence[Likelihood] = (),
        latents: Sequence[LatentArray] = (),
        missing: Sequence[MissingDataPrior] = (),
        name: str = "model",
    ) -> None:
        self.name = name
        self.prior_config = priors if isinstance(priors, PriorConfig) else PriorConfig(list(priors))
        self.data = data
        self.deterministics = list(deterministics)
        self.likelihoods = list(likelihoods)
        self.missing = list(missing)

        self._latent_sizes: dict[str, int] = {}
        for latent in latents:
            size = data.n(latent.group) if latent.group is not None else latent.size
            if size < 1:
                msg = f"潜在配列 '{latent.name}' の要素数が決まりません"
                raise ModelConfigurationError(msg)
            self._latent_sizes[latent.name] = size

        self._det_by_name: dict[str, LinearPredictor] = {d.name: d for d in self.deterministics}
        self._missing_idx: dict[str, np.ndarray] = {
            m.data_key: np.flatnonzero(data.missing_mask(m.data_key))
            for m in self.missing
            if m.data_key in data
        }

        self._validate_names()
        self.layout = self._build_layout()
        self._node_lengths = self._validate_nodes()
        self._observed_masks = self._build_observed_masks()

    # ------------------------------------------------------------------
    # 構築時検証
    # ------------------------------------------------------------------

    def _validate_names(self) -> None:
        owners: dict[str, str] = {}

        def claim(name: str, owner: str) -> None:
            if name in owners:
                msg = f"名前 '{name}' が {owners[name]} と {owner} で重複しています"
                raise ModelConfigurationError(msg)
            owners[name] = owner

        for key in self.data.keys:
            claim(key, "データ")
        for p in self.prior_config.priors:
            claim(p.name, "事前分布")
        for latent in self._latent_sizes:
            claim(latent, "潜在配列")
        for d in self.deterministics:
            claim(d.name, "決定論的ノード")

        for m in self.missing:
            if m.data_key not in self.data:
                msg = f"欠測データ事前分布の対象 '{m.data_key}' がデータにありません"
                raise ModelConfigurationError(msg)
            if m.prior.size != 1:
                msg = f"欠測データ '{m.data_key}' の事前分布はスカラーである必要があります"
                raise ModelConfigurationError(msg)

    def _build_layout(self) -> ParameterLayout:
        blocks: list[ParameterBlock] = []
        start = 0
        for p in self.prior_config.priors:
            scalar = isinstance(p, ParameterPrior) and p.size == 1
            blocks.append(ParameterBlock(p.name, p.size, start, "prior", scalar=scalar))
            start += p.size
        for name, size in self._latent_sizes.items():
            blocks.append(ParameterBlock(name, size, start, "latent"))
            start += size
        for m in self.missing:
            idx = self._missing_idx[m.data_key]
            if idx.size == 0:
                continue
            blocks.append(
                ParameterBlock(
                    m.data_key,
                    int(idx.size),
                    start,
                    "missing",
                    indices=tuple(int(i) for i in idx),
                )
            )
            start += int(idx.size)
        return ParameterLayout(blocks)

    def _validate_nodes(self) -> dict[str, int]:
        lengths: dict[str, int] = {key: len(self.data[key]) for key in self.data.keys}
        lengths.update(self._latent_sizes)
        promoted = {m.data_key for m in self.missing}

        for det in self.deterministics:
            if det.coefficients not in self.prior_config:
                msg = f"ノード '{det.name}' の係数 '{det.coefficients}' の事前分布がありません"
                raise ModelConfigurationError(msg)
            n_coef = self.prior_config.get_prior(det.coefficients).size
            if n_coef != len(det.covariates) + 1:
                msg = (
                    f"ノード '{det.name}' の係数の長さ {n_coef} が"
                    f"共変量数+1 ({len(det.covariates) + 1}) と一致しません"
                )
                raise ModelConfigurationError(msg)

            cov_lengths: set[int] = set()
            for cov in det.covariates:
                if cov not in lengths:
                    msg = f"ノード '{det.name}' の共変量 '{cov}' が未定義です"
                    raise ModelConfigurationError(msg)
                if cov in self.data and cov not in promoted and np.any(self.data.missing_mask(cov)):
                    msg = (
                        f"共変量 '{cov}' に欠測がありますが MissingDataPrior が宣言されていません"
                    )
                    raise ModelConfigurationError(msg)
                cov_lengths.add(lengths[cov])
            if len(cov_lengths) > 1:
                msg = f"ノード '{det.name}' の共変量の長さが一致しません: {sorted(cov_lengths)}"
                raise ModelConfigurationError(msg)
            lengths[det.name] = cov_lengths.pop() if cov_lengths else 1

        targeted: set[str] = set()
        for lik in self.likelihoods:
            if lik.target not in self.data and lik.target not in self._latent_sizes:
                msg = f"尤度の対象 '{lik.target}' がデータにも潜在配列にもありません"
                raise ModelConfigurationError(msg)
            if lik.mean not in self._det_by_name:
                msg = f"尤度 '{lik.target}' の平均ノード '{lik.mean}' が未定義です"
                raise ModelConfigurationError(msg)
            if lengths[lik.mean] not in (1, lengths[lik.target]):
                msg = (
                    f"尤度 '{lik.target}' の長さ {lengths[lik.target]} と"
                    f"平均ノード '{lik.mean}' の長さ {lengths[lik.mean]} が一致しません"
                )
                raise ModelConfigurationError(msg)
            if lik.family == Family.NORMAL:
                if lik.precision is None or lik.precision not in self.prior_config:
                    msg = f"NORMAL尤度 '{lik.target}' には精度パラメータの事前分布が必要です"
                    raise ModelConfigurationError(msg)
                if self.prior_config.get_prior(lik.precision).size != 1:
                    msg = f"精度パラメータ '{lik.precision}' はスカラーである必要があります"
                    raise ModelConfigurationError(msg)
            elif lik.precision is not None:
                msg = f"{lik.family.value}尤度 '{lik.target}' に精度パラメータは指定できません"
                raise ModelConfigurationError(msg)
            if lik.family == Family.POISSON and lik.target in self.data:
                y = self.data[lik.target]
                observed = y[~np.isnan(y)]
                if np.any(observed < 0) or np.any(observed != np.round(observed)):
                    msg = f"ポアソン尤度の観測 '{lik.target}' は非負整数である必要があります"
                    raise DataValidationError(msg)
            targeted.add(lik.target)

        for latent in self._latent_sizes:
            if latent not in targeted:
                msg = f"潜在配列 '{latent}' の分布を与える尤度がありません"
                raise ModelConfigurationError(msg)
        return lengths

    def _build_observed_masks(self) -> dict[str, np.ndarray]:
        masks: dict[str, np.ndarray] = {}
        for lik in self.likelihoods:
            if lik.target in self.data and lik.target not in self._missing_idx:
                mask = ~self.data.missing_mask(lik.target)
                if not np.all(mask):
                    logger.info(
                        "'%s' の欠測 %d 件を尤度から除外（事後予測で補完）",
                        lik.target,
                        int((~mask).sum()),
                    )
                masks[lik.target] = mask
        return masks

    # ------------------------------------------------------------------
    # 評価
    # ------------------------------------------------------------------

    @property
    def n_params(self) -> int:
        return self.layout.n_params

    @property
    def parameter_names(self) -> list[str]:
        return self.layout.names

    def missing_responses(self) -> dict[str, np.ndarray]:
        """尤度から除外された欠測応答の位置（対象名→添字配列）"""
        return {
            target: np.flatnonzero(~mask)
            for target, mask in self._observed_masks.items()
            if not np.all(mask)
        }

    def likelihood_for(self, target: str) -> Likelihood:
        for lik in self.likelihoods:
            if lik.target == target:
                return lik
        msg = f"'{target}' を対象とする尤度がありません"
        raise ModelConfigurationError(msg)

    def _compute_node(self, det: LinearPredictor, ns: Mapping[str, np.ndarray]) -> np.ndarray:
        coef = np.atleast_1d(ns[det.coefficients])
        eta = np.full(1, coef[0], dtype=np.float64)
        for k, cov in enumerate(det.covariates):
            eta = eta + coef[k + 1] * np.asarray(ns[cov], dtype=np.float64)
        return det.link.inverse(eta)

    def evaluate(
        self,
        theta: np.ndarray,
        overrides: Mapping[str, np.ndarray] | None = None,
    ) -> dict[str, np.ndarray]:
        """θから名前空間（パラメータ・補完済みデータ・決定論的ノード）を構築する

        Args:
            theta: パラメータベクトル
            overrides: 名前空間の値を差し替えるマッピング（新しい共変量グリッドでの予測用）

        Returns:
            名前→値 のマッピング
        """
        values = self.layout.unpack(np.asarray(theta, dtype=np.float64))
        ns: dict[str, np.ndarray] = {}
        for key in self.data.keys:
            arr = self.data[key]
            idx = self._missing_idx.get(key)
            if idx is not None and idx.size > 0:
                arr = arr.copy()
                arr[idx] = values[key]
            ns[key] = arr
        for b in self.layout.blocks:
            if b.kind != "missing":
                ns[b.name] = values[b.name]
        if overrides:
            ns.update({k: np.asarray(v, dtype=np.float64) for k, v in overrides.items()})

        with np.errstate(over="ignore", invalid="ignore"):
            for det in self.deterministics:
                if overrides and det.name in overrides:
                    continue
                ns[det.name] = self._compute_node(det, ns)
        return ns

    def log_prior(self, theta: np.ndarray) -> float:
        """対数事前密度（欠測データ要素の事前分布を含む）"""
        values = self.layout.unpack(np.asarray(theta, dtype=np.float64))
        return self._log_prior(values)

    def _log_prior(self, values: Mapping[str, np.ndarray]) -> float:
        lp = self.prior_config.log_prior(values)
        if not np.isfinite(lp):
            return -np.inf
        for m in self.missing:
            if m.data_key in values:
                lp_m = m.prior.log_pdf(values[m.data_key])
                if not np.isfinite(lp_m):
                    return -np.inf
                lp += lp_m
        return lp

    def _log_likelihood(self, lik: Likelihood, ns: Mapping[str, np.ndarray]) -> float:
        y = np.asarray(ns[lik.target], dtype=np.float64)
        mu = np.broadcast_to(np.asarray(ns[lik.mean], dtype=np.float64), y.shape)
        mask = self._observed_masks.get(lik.target)
        if mask is not None:
            y = y[mask]
            mu = mu[mask]
        if not np.all(np.isfinite(mu)):
            return -np.inf

        match lik.family:
            case Family.POISSON:
                if np.any(mu < 0):
                    return -np.inf
                ll = float(np.sum(scipy.stats.poisson.logpmf(y, mu)))
            case Family.NORMAL:
                tau = float(ns[lik.precision])  # type: ignore[index]
                if not (np.isfinite(tau) and tau > 0):
                    return -np.inf
                ll = float(np.sum(scipy.stats.norm.logpdf(y, loc=mu, scale=1.0 / np.sqrt(tau))))
        return ll if np.isfinite(ll) else -np.inf

    def log_density(self, theta: np.ndarray) -> float:
        """非正規化対数事後密度を計算する

        決定論的ノードを先に評価し、対数事前密度と対数尤度を合計する。
        サポート外の候補には -inf を返す（例外は送出しない）。

        Args:
            theta: パラメータベクトル (n_params,)

        Returns:
            対数事後密度（正規化定数を除く）
        """
        theta = np.asarray(theta, dtype=np.float64)
        if not np.all(np.isfinite(theta)):
            return -np.inf
        ns = self.evaluate(theta)

        total = self._log_prior(self.layout.unpack(theta))
        if not np.isfinite(total):
            return -np.inf

        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            for lik in self.likelihoods:
                ll = self._log_likelihood(lik, ns)
                if not np.isfinite(ll):
                    return -np.inf
                total += ll
        return float(total)

    def initial_point(self) -> np.ndarray:
        """有限の対数密度を持つ代表的な初期値を返す

        事前分布は平均（一様分布は中点）、欠測要素は事前分布の代表点、
        潜在配列はそれを対象とする尤度の平均ノードの値とする。
        """
        values: dict[str, np.ndarray | float] = {}
        for p in self.prior_config.priors:
            values[p.name] = p.center()
        for name, size in self._latent_sizes.items():
            values[name] = np.zeros(size)
        for m in self.missing:
            if m.data_key in self.layout.block_names:
                values[m.data_key] = m.prior.center()[0]
        theta = self.layout.pack(values)

        if self._latent_sizes:
            ns = self.evaluate(theta)
            for lik in self.likelihoods:
                if lik.target in self._latent_sizes and lik.mean in ns:
                    mean = np.broadcast_to(ns[lik.mean], self._latent_sizes[lik.target])
                    if np.all(np.isfinite(mean)):
                        theta[self.layout.block(lik.target).slice] = mean
        return theta

    def _block_prior(self, block: ParameterBlock) -> Prior | None:
        if block.kind == "prior":
            return self.prior_config.get_prior(block.name)
        if block.kind == "missing":
            return {m.data_key: m.prior for m in self.missing}[block.name]
        return None

    def bounds(self) -> list[tuple[float | None, float | None]]:
        """モード探索（L-BFGS-B）用の要素ごとの境界"""
        out: list[tuple[float | None, float | None]] = []
        for b in self.layout.blocks:
            prior = self._block_prior(b)
            lower: float | None = None
            upper: float | None = None
            if isinstance(prior, ParameterPrior):
                lo, hi = prior.support
                lower = float(lo) if np.isfinite(lo) else None
                upper = float(hi) if np.isfinite(hi) else None
            out.extend([(lower, upper)] * b.size)
        return out

    def prior_scales(self) -> np.ndarray:
        """要素ごとの事前標準偏差（潜在配列は NaN）"""
        out = np.full(self.n_params, np.nan)
        for b in self.layout.blocks:
            prior = self._block_prior(b)
            if prior is None:
                continue
            spread = prior.spread()
            out[b.slice] = spread if spread.size == b.size else spread[0]
        return out
