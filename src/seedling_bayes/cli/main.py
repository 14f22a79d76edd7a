"""CLIメインエントリーポイント"""

import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from seedling_bayes import __version__
from seedling_bayes.cli.commands import (
    calibration_check_command,
    fit_command,
    simulate_command,
)

app = typer.Typer(
    name="seedling-bayes",
    help="苗木密度と土壌水分のベイズ推定（Metropolis-Hastings MCMC）",
    no_args_is_help=True,
)
console = Console()


@app.callback()
def main(
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="詳細ログを表示"),
    ] = False,
) -> None:
    """seedling-bayes コマンドライン"""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


@app.command("fit")
def fit(
    data_file: Annotated[
        Path | None,
        typer.Argument(help="観測データCSVファイル（列: x, y など）"),
    ] = None,
    model: Annotated[
        str,
        typer.Option("--model", "-m", help="モデル: poisson, missing, calibration"),
    ] = "poisson",
    calibration_file: Annotated[
        Path | None,
        typer.Option("--calibration-data", help="検量線データCSV（calibration モデル用）"),
    ] = None,
    synthetic: Annotated[
        bool,
        typer.Option("--synthetic", help="合成データを使用"),
    ] = False,
    synthetic_n: Annotated[
        int,
        typer.Option("--synthetic-n", help="合成データの標本サイズ"),
    ] = 200,
    chains: Annotated[
        int,
        typer.Option("--chains", "-c", help="チェーン数（2以上）"),
    ] = 4,
    draws: Annotated[
        int,
        typer.Option("--draws", "-d", help="チェーンあたりのドロー数"),
    ] = 5_000,
    seed: Annotated[
        int,
        typer.Option("--seed", help="乱数シード"),
    ] = 42,
    workers: Annotated[
        int,
        typer.Option("--workers", "-w", help="並列実行するチェーン数"),
    ] = 1,
    threshold: Annotated[
        float,
        typer.Option("--threshold", help="R-hat の収束判定しきい値"),
    ] = 1.1,
    ess_method: Annotated[
        str,
        typer.Option("--ess-method", help="ESS推定方法: lag1, multi_lag"),
    ] = "lag1",
    burnin_step: Annotated[
        int,
        typer.Option("--burnin-step", help="バーンイン候補の刻み幅"),
    ] = 50,
    retain: Annotated[
        list[str] | None,
        typer.Option("--retain", "-r", help="出力対象パラメータ（複数指定可）"),
    ] = None,
    grid_min: Annotated[
        float,
        typer.Option("--grid-min", help="予測グリッドの下限"),
    ] = 0.0,
    grid_max: Annotated[
        float,
        typer.Option("--grid-max", help="予測グリッドの上限"),
    ] = 1.0,
    grid_points: Annotated[
        int,
        typer.Option("--grid-points", help="予測グリッドの点数"),
    ] = 11,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="結果出力ディレクトリ"),
    ] = None,
) -> None:
    """ベイズ推定（Metropolis-Hastings MCMC）を実行

    例:
        seedling-bayes fit seedlings.csv --draws 5000 --chains 4 --output results/
        seedling-bayes fit --synthetic --model missing --draws 2000 --chains 2
        seedling-bayes fit field.csv --model calibration --calibration-data tdr.csv
    """
    fit_command(
        data_file,
        model,
        calibration_file,
        synthetic,
        synthetic_n,
        chains,
        draws,
        seed,
        workers,
        threshold,
        ess_method,
        burnin_step,
        retain,
        grid_min,
        grid_max,
        grid_points,
        output_dir,
    )


@app.command("simulate")
def simulate(
    output_file: Annotated[
        Path,
        typer.Option("--output", "-o", help="出力CSVファイルパス"),
    ] = Path("data/seedlings.csv"),
    n: Annotated[
        int,
        typer.Option("--n", "-n", help="標本サイズ"),
    ] = 200,
    intercept: Annotated[
        float,
        typer.Option("--intercept", help="真の切片"),
    ] = 0.5,
    slope: Annotated[
        float,
        typer.Option("--slope", help="真の傾き"),
    ] = 2.0,
    missing_fraction: Annotated[
        float,
        typer.Option("--missing-fraction", help="欠測にする割合"),
    ] = 0.0,
    calibration: Annotated[
        bool,
        typer.Option("--calibration", help="検量線データも生成（誤差付き変数モデル用）"),
    ] = False,
    seed: Annotated[
        int,
        typer.Option("--seed", help="乱数シード"),
    ] = 42,
) -> None:
    """合成データを生成してCSV出力

    例:
        seedling-bayes simulate --output data/seedlings.csv --n 200
        seedling-bayes simulate --calibration -o data/field.csv
    """
    simulate_command(output_file, n, intercept, slope, missing_fraction, calibration, seed)


@app.command("calibration-check")
def calibration_check(
    datasets: Annotated[
        int,
        typer.Option("--datasets", help="合成データセット数"),
    ] = 100,
    n: Annotated[
        int,
        typer.Option("--n", "-n", help="データセットあたりの標本サイズ"),
    ] = 200,
    chains: Annotated[
        int,
        typer.Option("--chains", "-c", help="チェーン数"),
    ] = 2,
    draws: Annotated[
        int,
        typer.Option("--draws", "-d", help="チェーンあたりのドロー数"),
    ] = 2_000,
    seed: Annotated[
        int,
        typer.Option("--seed", help="乱数シード"),
    ] = 0,
) -> None:
    """傾きの95%信用区間が真値を含む割合を測定

    例:
        seedling-bayes calibration-check --datasets 100
    """
    calibration_check_command(datasets, n, chains, draws, seed)


@app.command("version")
def version() -> None:
    """バージョン情報を表示"""
    console.print(f"seedling-bayes version {__version__}")


if __name__ == "__main__":
    app()
