"""seedling-bayesカスタム例外階層

FailFast原則に従い、設定・データの誤りはサンプリング開始前に即座に報告される。
候補パラメータが分布のサポート外に出ることはエラーではなく、
対数密度 -inf として扱われる。
"""


class SeedlingBayesError(Exception):
    """seedling-bayesの基底例外クラス"""

    pass


class ValidationError(SeedlingBayesError):
    """入力バリデーションエラー"""

    pass


class DataValidationError(ValidationError):
    """入力データの形式・長さが不正なエラー

    同一グループ内の配列長の不一致、解釈できない欠測マーカー等で発生。
    """

    pass


class ModelConfigurationError(ValidationError):
    """モデル記述子の構成エラー

    未定義の名前の参照、係数と共変量の数の不一致等で発生。
    """

    pass


class PriorConfigurationError(ModelConfigurationError):
    """事前分布のハイパーパラメータが不正なエラー

    正定値でない精度行列、非正の標準偏差等で発生。
    """

    pass


class SamplerConfigurationError(ValidationError):
    """MCMC・収束診断の設定値が不正なエラー

    チェーン数1、非正の過分散係数、1未満の R-hat 閾値等で発生。
    サンプリング開始前に報告される。
    """

    pass


class EstimationError(SeedlingBayesError):
    """MCMC推定の実行時エラー"""

    pass
