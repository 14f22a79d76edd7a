"""ベイズ推定の事前分布

正規分布・多変量正規分布（平均ベクトル＋精度行列）・ガンマ分布・一様分布の
事前分布宣言を定義する。ハイパーパラメータの妥当性は構築時に検証し、
不正な場合はサンプリング開始前に PriorConfigurationError を送出する。
"""

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from functools import cached_property
from typing import Any

import numpy as np
import scipy.stats

from seedling_bayes.core.exceptions import PriorConfigurationError


class DistributionType(Enum):
    """事前分布の種類"""

    NORMAL = "normal"
    MV_NORMAL = "mv_normal"
    GAMMA = "gamma"
    UNIFORM = "uniform"


@dataclass(frozen=True)
class ParameterPrior:
    """単一パラメータ（またはi.i.d.ベクトル）の事前分布

    Attributes:
        name: パラメータ名
        dist_type: 分布の種類（NORMAL, GAMMA, UNIFORM）
        mean: 事前分布の平均（NORMAL, GAMMA）
        std: 事前分布の標準偏差（NORMAL, GAMMA）
        lower_bound: 下限値（UNIFORMでは必須、他は切断として作用）
        upper_bound: 上限値（UNIFORMでは必須、他は切断として作用）
        size: 要素数。1より大きい場合は各要素が独立に同じ分布に従う
    """

    name: str
    dist_type: DistributionType
    mean: float = 0.0
    std: float = 1.0
    lower_bound: float = -np.inf
    upper_bound: float = np.inf
    size: int = 1

    def __post_init__(self) -> None:
        if self.size < 1:
            msg = f"事前分布 '{self.name}' の size は1以上: {self.size}"
            raise PriorConfigurationError(msg)
        if self.lower_bound >= self.upper_bound:
            msg = (
                f"事前分布 '{self.name}' の下限 {self.lower_bound} が"
                f"上限 {self.upper_bound} 以上です"
            )
            raise PriorConfigurationError(msg)

        match self.dist_type:
            case DistributionType.NORMAL:
                if not np.isfinite(self.mean) or not (np.isfinite(self.std) and self.std > 0):
                    msg = f"正規事前分布 '{self.name}' の平均は有限、標準偏差は正: std={self.std}"
                    raise PriorConfigurationError(msg)
            case DistributionType.GAMMA:
                if not (np.isfinite(self.mean) and self.mean > 0):
                    msg = f"ガンマ事前分布 '{self.name}' の平均は正: mean={self.mean}"
                    raise PriorConfigurationError(msg)
                if not (np.isfinite(self.std) and self.std > 0):
                    msg = f"ガンマ事前分布 '{self.name}' の標準偏差は正: std={self.std}"
                    raise PriorConfigurationError(msg)
            case DistributionType.UNIFORM:
                if not (np.isfinite(self.lower_bound) and np.isfinite(self.upper_bound)):
                    msg = f"一様事前分布 '{self.name}' の上下限は有限である必要があります"
                    raise PriorConfigurationError(msg)
            case DistributionType.MV_NORMAL:
                msg = f"多変量正規事前分布 '{self.name}' には MultivariateNormalPrior を使用してください"
                raise PriorConfigurationError(msg)

    @classmethod
    def normal(
        cls, name: str, mean: float, precision: float, size: int = 1
    ) -> "ParameterPrior":
        """平均と精度（分散の逆数）から正規事前分布を構築する"""
        if not (np.isfinite(precision) and precision > 0):
            msg = f"正規事前分布 '{name}' の精度は正: precision={precision}"
            raise PriorConfigurationError(msg)
        return cls(
            name=name,
            dist_type=DistributionType.NORMAL,
            mean=mean,
            std=float(1.0 / np.sqrt(precision)),
            size=size,
        )

    @classmethod
    def gamma(cls, name: str, shape: float, rate: float, size: int = 1) -> "ParameterPrior":
        """形状・レートパラメータからガンマ事前分布を構築する

        平均 shape/rate、標準偏差 sqrt(shape)/rate に変換して保持する。
        """
        if not (shape > 0 and rate > 0):
            msg = f"ガンマ事前分布 '{name}' の shape, rate は正: shape={shape}, rate={rate}"
            raise PriorConfigurationError(msg)
        return cls(
            name=name,
            dist_type=DistributionType.GAMMA,
            mean=shape / rate,
            std=float(np.sqrt(shape) / rate),
            lower_bound=0.0,
            size=size,
        )

    @classmethod
    def uniform(cls, name: str, lower: float, upper: float, size: int = 1) -> "ParameterPrior":
        """一様事前分布を構築する"""
        return cls(
            name=name,
            dist_type=DistributionType.UNIFORM,
            lower_bound=lower,
            upper_bound=upper,
            size=size,
        )

    @cached_property
    def _dist(self) -> Any:
        """scipy frozen分布オブジェクト"""
        match self.dist_type:
            case DistributionType.NORMAL:
                return scipy.stats.norm(loc=self.mean, scale=self.std)
            case DistributionType.GAMMA:
                a = (self.mean / self.std) ** 2
                scale = self.std**2 / self.mean
                return scipy.stats.gamma(a, scale=scale)
            case DistributionType.UNIFORM:
                return scipy.stats.uniform(
                    loc=self.lower_bound, scale=self.upper_bound - self.lower_bound
                )

    @property
    def support(self) -> tuple[float, float]:
        """切断を考慮したサポート (下限, 上限)"""
        lower = self.lower_bound
        if self.dist_type == DistributionType.GAMMA:
            lower = max(lower, 0.0)
        return lower, self.upper_bound

    def log_pdf(self, value: float | np.ndarray) -> float:
        """対数確率密度を計算する

        Args:
            value: パラメータの値（size要素）

        Returns:
            対数確率密度の合計。サポート外・非有限値の場合は -inf
        """
        arr = np.asarray(value, dtype=np.float64)
        if not np.all(np.isfinite(arr)):
            return -np.inf
        lower, upper = self.support
        if np.any(arr < lower) or np.any(arr > upper):
            return -np.inf
        lp = float(np.sum(self._dist.logpdf(arr)))
        if not np.isfinite(lp):
            return -np.inf
        return lp

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        """事前分布から size 要素のサンプルを生成する"""
        dist = self._dist
        samples = np.asarray(dist.rvs(size=self.size, random_state=rng), dtype=np.float64)
        lower, upper = self.support
        clipped: np.ndarray = np.clip(
            samples,
            lower + 1e-10 if np.isfinite(lower) else None,
            upper - 1e-10 if np.isfinite(upper) else None,
        )
        return clipped

    def center(self) -> np.ndarray:
        """サポート内の代表点（平均または区間の中点）"""
        if self.dist_type == DistributionType.UNIFORM:
            value = 0.5 * (self.lower_bound + self.upper_bound)
        else:
            value = self.mean
        return np.full(self.size, value, dtype=np.float64)

    def spread(self) -> np.ndarray:
        """事前標準偏差（要素ごと）"""
        if self.dist_type == DistributionType.UNIFORM:
            value = (self.upper_bound - self.lower_bound) / np.sqrt(12.0)
        else:
            value = self.std
        return np.full(self.size, value, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class MultivariateNormalPrior:
    """多変量正規事前分布（平均ベクトル・精度行列による指定）

    Attributes:
        name: パラメータ名
        mean: 平均ベクトル (k,)
        precision: 精度行列 (k, k)。対称正定値であること
    """

    name: str
    mean: np.ndarray
    precision: np.ndarray

    def __post_init__(self) -> None:
        mean = np.atleast_1d(np.asarray(self.mean, dtype=np.float64))
        precision = np.atleast_2d(np.asarray(self.precision, dtype=np.float64))
        k = mean.shape[0]

        if mean.ndim != 1:
            msg = f"多変量正規事前分布 '{self.name}' の平均は1次元配列: shape={mean.shape}"
            raise PriorConfigurationError(msg)
        if precision.shape != (k, k):
            msg = (
                f"多変量正規事前分布 '{self.name}' の精度行列の形状 {precision.shape} が"
                f"平均ベクトル長 {k} と一致しません"
            )
            raise PriorConfigurationError(msg)
        if not (np.all(np.isfinite(mean)) and np.all(np.isfinite(precision))):
            msg = f"多変量正規事前分布 '{self.name}' に非有限のハイパーパラメータがあります"
            raise PriorConfigurationError(msg)
        if not np.allclose(precision, precision.T):
            msg = f"多変量正規事前分布 '{self.name}' の精度行列が対称ではありません"
            raise PriorConfigurationError(msg)
        try:
            np.linalg.cholesky(precision)
        except np.linalg.LinAlgError as e:
            msg = f"多変量正規事前分布 '{self.name}' の精度行列が正定値ではありません"
            raise PriorConfigurationError(msg) from e

        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "precision", precision)

    @property
    def dist_type(self) -> DistributionType:
        return DistributionType.MV_NORMAL

    @property
    def size(self) -> int:
        return int(self.mean.shape[0])

    @cached_property
    def _dist(self) -> Any:
        cov = scipy.stats.Covariance.from_precision(self.precision)
        return scipy.stats.multivariate_normal(mean=self.mean, cov=cov)

    def log_pdf(self, value: np.ndarray) -> float:
        """対数確率密度を計算する。非有限値の場合は -inf"""
        arr = np.asarray(value, dtype=np.float64)
        if not np.all(np.isfinite(arr)):
            return -np.inf
        lp = float(self._dist.logpdf(arr))
        if not np.isfinite(lp):
            return -np.inf
        return lp

    def sample(self, rng: np.random.Generator) -> np.ndarray:
        samples = self._dist.rvs(random_state=rng)
        return np.atleast_1d(np.asarray(samples, dtype=np.float64))

    def center(self) -> np.ndarray:
        return self.mean.copy()

    def spread(self) -> np.ndarray:
        return np.sqrt(np.diag(np.linalg.inv(self.precision)))


Prior = ParameterPrior | MultivariateNormalPrior


class PriorConfig:
    """事前分布の集合

    Attributes:
        priors: パラメータ事前分布のリスト（宣言順がパラメータベクトルの順序）
    """

    def __init__(self, priors: list[Prior]) -> None:
        self.priors = priors
        self._name_to_index: dict[str, int] = {}
        for i, p in enumerate(priors):
            if p.name in self._name_to_index:
                msg = f"事前分布 '{p.name}' が重複して宣言されています"
                raise PriorConfigurationError(msg)
            self._name_to_index[p.name] = i

    @property
    def n_params(self) -> int:
        """パラメータ要素数の合計"""
        return sum(p.size for p in self.priors)

    @property
    def names(self) -> list[str]:
        """パラメータ（ブロック）名のリスト"""
        return [p.name for p in self.priors]

    def __contains__(self, name: object) -> bool:
        return name in self._name_to_index

    def get_prior(self, name: str) -> Prior:
        """名前でパラメータ事前分布を取得する"""
        idx = self._name_to_index[name]
        return self.priors[idx]

    def log_prior(self, values: Mapping[str, np.ndarray]) -> float:
        """パラメータ値に対する対数事前確率を計算する

        Args:
            values: パラメータ名から値へのマッピング

        Returns:
            対数事前確率の合計
        """
        total = 0.0
        for prior in self.priors:
            lp = prior.log_pdf(values[prior.name])
            if not np.isfinite(lp):
                return -np.inf
            total += lp
        return total

    def sample(self, rng: np.random.Generator) -> dict[str, np.ndarray]:
        """全パラメータの事前分布からサンプルを生成する"""
        return {p.name: p.sample(rng) for p in self.priors}

    def centers(self) -> dict[str, np.ndarray]:
        """全パラメータの代表点を返す"""
        return {p.name: p.center() for p in self.priors}
