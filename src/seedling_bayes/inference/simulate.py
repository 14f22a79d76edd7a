"""合成データ生成モジュール

苗木数 y ~ Poisson(exp(intercept + slope * x)) と、
土壌水分の検量線データ（TDR読み値と真値）をシミュレーションする。
テスト・検証（事後区間の較正チェック）に使用する。
"""

from pathlib import Path

import numpy as np

from seedling_bayes.inference.data_loader import ModelData


class SyntheticDataGenerator:
    """合成データ生成（テスト・検証用）"""

    def generate(
        self,
        n: int = 200,
        intercept: float = 0.5,
        slope: float = 2.0,
        rng: np.random.Generator | None = None,
        missing_fraction: float = 0.0,
        group: str = "field",
    ) -> ModelData:
        """ポアソン回帰の合成データを生成する

        x は [0, 1] 上の一様乱数とする。

        Args:
            n: 標本サイズ
            intercept: 真の切片
            slope: 真の傾き
            rng: 乱数生成器。Noneの場合はデフォルトを使用。
            missing_fraction: x と y それぞれを欠測にする割合
            group: データグループ名

        Returns:
            配列 "x"（土壌水分）と "y"（苗木数）を持つ ModelData
        """
        if rng is None:
            rng = np.random.default_rng()

        x = rng.uniform(0.0, 1.0, n)
        y = rng.poisson(np.exp(intercept + slope * x)).astype(np.float64)

        if missing_fraction > 0:
            n_missing = int(round(missing_fraction * n))
            x[rng.choice(n, n_missing, replace=False)] = np.nan
            y[rng.choice(n, n_missing, replace=False)] = np.nan

        return ModelData(arrays={"x": x, "y": y}, groups={group: ["x", "y"]})

    def generate_calibration(
        self,
        n_calibration: int = 10,
        n_field: int = 30,
        calibration_intercept: float = 0.05,
        calibration_slope: float = 0.9,
        calibration_sd: float = 0.02,
        intercept: float = 0.5,
        slope: float = 2.0,
        rng: np.random.Generator | None = None,
    ) -> ModelData:
        """誤差付き変数モデル（検量線＋回帰）の合成データを生成する

        真の土壌水分 x = calibration_intercept + calibration_slope * tdr + ε を、
        検量線用（tdr_cal, moisture_cal）と圃場用（tdr, y）で生成する。
        圃場の真の土壌水分は観測されない。

        Returns:
            グループ "field"（tdr, y）と "calibration"（tdr_cal, moisture_cal）を持つ ModelData
        """
        if rng is None:
            rng = np.random.default_rng()

        tdr_cal = rng.uniform(0.05, 0.6, n_calibration)
        moisture_cal = (
            calibration_intercept
            + calibration_slope * tdr_cal
            + rng.normal(0.0, calibration_sd, n_calibration)
        )

        tdr = rng.uniform(0.05, 0.6, n_field)
        moisture = (
            calibration_intercept + calibration_slope * tdr + rng.normal(0.0, calibration_sd, n_field)
        )
        y = rng.poisson(np.exp(intercept + slope * moisture)).astype(np.float64)

        return ModelData.from_groups(
            {
                "field": {"tdr": tdr, "y": y},
                "calibration": {"tdr_cal": tdr_cal, "moisture_cal": moisture_cal},
            }
        )

    @staticmethod
    def to_csv(data: ModelData, path: str | Path, group: str) -> None:
        """1グループをCSVに書き出す（欠測は NA）"""
        keys = data.groups[group]
        lines = [",".join(keys)]
        for row in np.column_stack([data[k] for k in keys]):
            lines.append(",".join("NA" if np.isnan(v) else f"{v:.10g}" for v in row))
        filepath = Path(path)
        filepath.parent.mkdir(parents=True, exist_ok=True)
        filepath.write_text("\n".join(lines) + "\n", encoding="utf-8")
