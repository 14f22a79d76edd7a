"""CLIコマンド実装"""

from collections.abc import Callable
from functools import wraps
from pathlib import Path
from typing import TypeVar

import numpy as np
import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from seedling_bayes.core.exceptions import EstimationError, SeedlingBayesError, ValidationError
from seedling_bayes.inference.data_loader import DataLoader, ModelData
from seedling_bayes.inference.diagnostics import DiagnosticsConfig, ESSMethod
from seedling_bayes.inference.mcmc import MCMCConfig, sample_posterior
from seedling_bayes.inference.results import (
    build_estimation_result,
    impute_missing_responses,
    pool_samples,
    predict_intervals,
)
from seedling_bayes.inference.simulate import SyntheticDataGenerator
from seedling_bayes.models.calibration_check import slope_coverage
from seedling_bayes.models.seedling import PREDICTION_COVARIATE, PREDICTION_NODE, build_model

console = Console()

F = TypeVar("F", bound=Callable[..., None])


def handle_errors(func: F) -> F:
    """CLI用エラーハンドリングデコレータ

    seedling-bayesの例外を捕捉し、ユーザーフレンドリーなエラーメッセージを表示する。
    """

    @wraps(func)
    def wrapper(*args: object, **kwargs: object) -> None:
        try:
            func(*args, **kwargs)
        except ValidationError as e:
            console.print(f"[red]入力エラー: {e}[/red]")
            raise typer.Exit(1) from e
        except EstimationError as e:
            console.print(f"[red]推定エラー: {e}[/red]")
            raise typer.Exit(2) from e
        except SeedlingBayesError as e:
            console.print(f"[red]エラー: {e}[/red]")
            raise typer.Exit(3) from e

    return wrapper  # type: ignore[return-value]


def _load_data(
    model: str,
    data_file: Path | None,
    calibration_file: Path | None,
    synthetic: bool,
    synthetic_n: int,
    seed: int,
) -> ModelData:
    if synthetic:
        gen = SyntheticDataGenerator()
        rng = np.random.default_rng(seed)
        if model == "calibration":
            data = gen.generate_calibration(n_field=synthetic_n, rng=rng)
        else:
            fraction = 0.1 if model == "missing" else 0.0
            data = gen.generate(n=synthetic_n, rng=rng, missing_fraction=fraction)
        console.print(f"[cyan]合成データを生成: n={synthetic_n}[/cyan]")
        return data

    if data_file is None:
        console.print("[red]データファイルまたは --synthetic を指定してください[/red]")
        raise typer.Exit(1)

    loader = DataLoader()
    data = loader.load_csv(data_file, group="field")
    if model == "calibration":
        if calibration_file is None:
            console.print("[red]calibration モデルには --calibration-data が必要です[/red]")
            raise typer.Exit(1)
        data = data.merge(loader.load_csv(calibration_file, group="calibration"))
    console.print(f"[cyan]データ読み込み完了: {data_file} (n={data.n('field')})[/cyan]")
    return data


@handle_errors
def fit_command(
    data_file: Path | None,
    model: str,
    calibration_file: Path | None,
    synthetic: bool,
    synthetic_n: int,
    chains: int,
    draws: int,
    seed: int,
    workers: int,
    threshold: float,
    ess_method: str,
    burnin_step: int,
    retain: list[str] | None,
    grid_min: float,
    grid_max: float,
    grid_points: int,
    output_dir: Path | None,
) -> None:
    """ベイズ推定（Metropolis-Hastings MCMC）を実行"""
    try:
        method = ESSMethod(ess_method)
    except ValueError:
        console.print(f"[red]エラー: 不明なESS推定方法 '{ess_method}'[/red]")
        raise typer.Exit(1) from None

    mcmc_cfg = MCMCConfig(
        n_chains=chains,
        n_draws=draws,
        seed=seed,
        max_workers=workers,
        retain=tuple(retain) if retain else None,
    )
    diag_cfg = DiagnosticsConfig(
        rhat_threshold=threshold,
        ess_method=method,
        burnin_step=burnin_step,
        min_retained=min(100, max(draws // 4, 2)),
    )
    mcmc_cfg.validate()
    diag_cfg.validate()

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        task = progress.add_task("データを読み込み中...", total=None)
        data = _load_data(model, data_file, calibration_file, synthetic, synthetic_n, seed)

        progress.update(task, description="モデルを構築中...")
        descriptor = build_model(model, data)

        console.print(
            f"[cyan]MCMC設定: model={model}, params={descriptor.n_params}, "
            f"chains={chains}, draws={draws}, seed={seed}[/cyan]"
        )
        progress.update(task, description="MCMC推定を実行中...")
        mcmc_result = sample_posterior(descriptor, mcmc_cfg)

        progress.update(task, description="結果を集計中...")
        result = build_estimation_result(
            mcmc_result,
            prior_config=descriptor.prior_config,
            diagnostics_config=diag_cfg,
        )

        pooled = pool_samples(mcmc_result, result.burn_in)
        rng = np.random.default_rng(seed)
        grid = np.linspace(grid_min, grid_max, grid_points)
        table = predict_intervals(
            descriptor, pooled, PREDICTION_NODE, {PREDICTION_COVARIATE: grid}, rng
        )
        result.intervals[PREDICTION_NODE] = table
        imputed = impute_missing_responses(descriptor, pooled, rng)

    selection = result.diagnostics.burn_in
    status = "[green]OK[/green]" if result.converged else "[red]NG[/red]"
    console.print()
    console.print(
        Panel(
            f"[bold]ベイズ推定結果[/bold]\n"
            f"モデル: {model}\n"
            f"チェーン数: {chains}\n"
            f"ドロー数: {draws}\n"
            f"収束判定: {status}（R-hat ≤ {threshold}）\n"
            f"バーンイン: {result.burn_in}",
            title="Bayesian Estimation",
        )
    )
    if selection.recommendation:
        console.print(f"[yellow]{selection.recommendation}[/yellow]")

    acc_table = Table(title="採択率")
    acc_table.add_column("チェーン", style="cyan")
    acc_table.add_column("採択率", style="green")
    for i, rate in enumerate(result.diagnostics.acceptance_rates):
        acc_table.add_row(f"Chain {i}", f"{rate:.3f}")
    console.print(acc_table)

    console.print()
    console.print(result.summary_table())

    interval_table = Table(title=f"{PREDICTION_NODE} の95%区間")
    interval_table.add_column(PREDICTION_COVARIATE, style="cyan")
    interval_table.add_column("信用区間", style="green")
    interval_table.add_column("予測区間", style="yellow")
    for j, x in enumerate(table.grid):
        interval_table.add_row(
            f"{x:.3f}",
            f"[{table.credible[0, j]:.2f}, {table.credible[-1, j]:.2f}]",
            f"[{table.predictive[0, j]:.0f}, {table.predictive[-1, j]:.0f}]",
        )
    console.print(interval_table)

    for target, draws_missing in imputed.items():
        means = ", ".join(f"{v:.2f}" for v in draws_missing.mean(axis=0))
        console.print(f"[cyan]欠測 {target} の事後予測平均: {means}[/cyan]")

    if output_dir is not None:
        result.save(output_dir)
        console.print(f"\n[green]結果を保存しました: {output_dir}[/green]")


@handle_errors
def simulate_command(
    output_file: Path,
    n: int,
    intercept: float,
    slope: float,
    missing_fraction: float,
    calibration: bool,
    seed: int,
) -> None:
    """合成データを生成してCSV出力"""
    gen = SyntheticDataGenerator()
    rng = np.random.default_rng(seed)

    if calibration:
        data = gen.generate_calibration(n_field=n, intercept=intercept, slope=slope, rng=rng)
        cal_file = output_file.with_name(f"{output_file.stem}_calibration{output_file.suffix}")
        gen.to_csv(data, output_file, group="field")
        gen.to_csv(data, cal_file, group="calibration")
        console.print(f"[green]データを保存しました: {output_file}, {cal_file}[/green]")
    else:
        data = gen.generate(
            n=n, intercept=intercept, slope=slope, rng=rng, missing_fraction=missing_fraction
        )
        gen.to_csv(data, output_file, group="field")
        console.print(f"[green]データを保存しました: {output_file}[/green]")

    console.print(f"標本サイズ: {n}")
    console.print(f"配列: {', '.join(data.keys)}")


@handle_errors
def calibration_check_command(
    datasets: int,
    n: int,
    chains: int,
    draws: int,
    seed: int,
) -> None:
    """傾きの95%信用区間の被覆率を測定"""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task(f"{datasets}個の合成データセットで推定中...", total=None)
        report = slope_coverage(
            n_datasets=datasets,
            n=n,
            mcmc_config=MCMCConfig(n_chains=chains, n_draws=draws),
            diagnostics_config=DiagnosticsConfig(min_retained=min(100, max(draws // 4, 2))),
            seed=seed,
        )

    table = Table(title="較正チェック")
    table.add_column("項目", style="cyan")
    table.add_column("値", style="green")
    table.add_row("データセット数", f"{report.n_datasets}")
    table.add_row("真の傾き", f"{report.true_slope}")
    table.add_row("区間が真値を含んだ数", f"{report.n_covered}")
    table.add_row("被覆率", f"{report.coverage:.3f}")
    table.add_row("収束したデータセット数", f"{report.n_converged}")
    console.print(table)
