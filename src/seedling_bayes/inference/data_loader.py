"""推定用データの読込・検証モジュール

名前付き配列（応答・共変量・検量線観測）をグループ単位で保持し、
欠測値は数値のプレースホルダではなく NaN（未知マーカー）で表現する。
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from seedling_bayes.core.exceptions import DataValidationError

# CSV上で欠測として扱うトークン
MISSING_TOKENS: frozenset[str] = frozenset({"", "NA", "na", "N/A", "NaN", "nan", "null", "None"})


@dataclass
class ModelData:
    """推定用データ

    Attributes:
        arrays: 配列名から float64 配列へのマッピング（欠測は NaN）
        groups: グループ名から所属配列名リストへのマッピング。
                同一グループの配列は全て同じ長さである必要がある。
    """

    arrays: dict[str, np.ndarray]
    groups: dict[str, list[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        converted: dict[str, np.ndarray] = {}
        for key, values in self.arrays.items():
            raw = np.ravel(np.asarray(values, dtype=object))
            try:
                arr = np.array([np.nan if v is None else v for v in raw], dtype=np.float64)
            except (TypeError, ValueError) as e:
                msg = f"配列 '{key}' に数値として解釈できない値があります"
                raise DataValidationError(msg) from e
            arr.setflags(write=False)
            converted[key] = arr
        self.arrays = converted

        if not self.groups:
            self.groups = {"default": list(self.arrays)}

        seen: dict[str, str] = {}
        for group, keys in self.groups.items():
            lengths: dict[str, int] = {}
            for key in keys:
                if key not in self.arrays:
                    msg = f"グループ '{group}' の配列 '{key}' が見つかりません"
                    raise DataValidationError(msg)
                if key in seen:
                    msg = f"配列 '{key}' がグループ '{seen[key]}' と '{group}' に重複しています"
                    raise DataValidationError(msg)
                seen[key] = group
                lengths[key] = len(self.arrays[key])
            if len(set(lengths.values())) > 1:
                detail = ", ".join(f"{k}={n}" for k, n in lengths.items())
                msg = f"グループ '{group}' の配列長が一致しません: {detail}"
                raise DataValidationError(msg)

        orphans = [key for key in self.arrays if key not in seen]
        if orphans:
            msg = f"どのグループにも属さない配列があります: {', '.join(orphans)}"
            raise DataValidationError(msg)

    @classmethod
    def from_groups(
        cls, groups: Mapping[str, Mapping[str, Sequence[float | None] | np.ndarray]]
    ) -> "ModelData":
        """グループ→配列名→値 の入れ子マッピングから構築する"""
        arrays: dict[str, np.ndarray] = {}
        group_keys: dict[str, list[str]] = {}
        for group, columns in groups.items():
            group_keys[group] = []
            for key, values in columns.items():
                if key in arrays:
                    msg = f"配列 '{key}' が複数のグループで定義されています"
                    raise DataValidationError(msg)
                arrays[key] = np.asarray(values, dtype=object)
                group_keys[group].append(key)
        return cls(arrays=arrays, groups=group_keys)

    def __getitem__(self, key: str) -> np.ndarray:
        try:
            return self.arrays[key]
        except KeyError:
            msg = f"データ配列 '{key}' が見つかりません"
            raise DataValidationError(msg) from None

    def __contains__(self, key: object) -> bool:
        return key in self.arrays

    @property
    def keys(self) -> list[str]:
        """配列名のリスト"""
        return list(self.arrays)

    def group_of(self, key: str) -> str:
        """配列の所属グループ名"""
        for group, keys in self.groups.items():
            if key in keys:
                return group
        msg = f"データ配列 '{key}' が見つかりません"
        raise DataValidationError(msg)

    def n(self, group: str) -> int:
        """グループの標本サイズ"""
        keys = self.groups.get(group)
        if not keys:
            msg = f"グループ '{group}' が見つかりません"
            raise DataValidationError(msg)
        return len(self.arrays[keys[0]])

    def missing_mask(self, key: str) -> np.ndarray:
        """欠測要素のブールマスク"""
        return np.isnan(self[key])

    def merge(self, other: "ModelData") -> "ModelData":
        """別の ModelData とグループ単位で結合する"""
        duplicated = set(self.arrays) & set(other.arrays)
        if duplicated:
            msg = f"結合時に配列名が重複しています: {', '.join(sorted(duplicated))}"
            raise DataValidationError(msg)
        groups = {g: list(k) for g, k in self.groups.items()}
        for group, keys in other.groups.items():
            groups.setdefault(group, []).extend(keys)
        return ModelData(arrays={**self.arrays, **other.arrays}, groups=groups)


class DataLoader:
    """CSV読込クラス

    1行目をヘッダ（配列名）とし、各列を1つの名前付き配列として読み込む。
    欠測トークン（NA、空欄等）は NaN に変換される。
    """

    def __init__(self, missing_tokens: frozenset[str] = MISSING_TOKENS) -> None:
        self.missing_tokens = missing_tokens

    def load_csv(self, path: str | Path, group: str = "field") -> ModelData:
        """CSV読込→ModelData

        Args:
            path: CSVファイルパス
            group: 読み込んだ全列を所属させるグループ名

        Returns:
            1グループから成る ModelData

        Raises:
            DataValidationError: 列数の不一致、数値として解釈できないトークン
        """
        filepath = Path(path)
        raw_text = filepath.read_text(encoding="utf-8")
        lines = [line.strip() for line in raw_text.strip().split("\n") if line.strip()]
        if not lines:
            msg = f"CSVファイルが空です: {filepath}"
            raise DataValidationError(msg)

        header = [col.strip().strip('"') for col in lines[0].split(",")]
        columns: dict[str, list[float]] = {col: [] for col in header}

        for line_no, line in enumerate(lines[1:], start=2):
            values = [v.strip().strip('"') for v in line.split(",")]
            if len(values) != len(header):
                msg = f"{filepath}:{line_no} 列数 {len(values)} がヘッダ列数 {len(header)} と一致しません"
                raise DataValidationError(msg)
            for col_name, token in zip(header, values, strict=True):
                columns[col_name].append(self._parse_token(token, filepath, line_no))

        arrays = {col: np.asarray(vals, dtype=np.float64) for col, vals in columns.items()}
        return ModelData(arrays=arrays, groups={group: header})

    def _parse_token(self, token: str, filepath: Path, line_no: int) -> float:
        if token in self.missing_tokens:
            return np.nan
        try:
            return float(token)
        except ValueError:
            msg = f"{filepath}:{line_no} 数値として解釈できない値: '{token}'"
            raise DataValidationError(msg) from None
