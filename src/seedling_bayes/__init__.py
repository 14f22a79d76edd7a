"""seedling-bayes - 苗木密度と土壌水分のベイズ・ポアソン回帰"""

from importlib.metadata import PackageNotFoundError, version


def _resolve_version() -> str:
    """配布メタデータからバージョンを解決する。"""
    try:
        return version("seedling-bayes")
    except PackageNotFoundError:
        # インストール前のローカル実行時フォールバック
        return "0+unknown"


__version__ = _resolve_version()

from seedling_bayes.inference.diagnostics import DiagnosticsConfig
from seedling_bayes.inference.mcmc import MCMCConfig, MetropolisHastings
from seedling_bayes.inference.model import ModelDescriptor
from seedling_bayes.inference.results import EstimationResult

__all__ = [
    "DiagnosticsConfig",
    "EstimationResult",
    "MCMCConfig",
    "MetropolisHastings",
    "ModelDescriptor",
]
