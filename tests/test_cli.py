"""CLIコマンドのテスト"""

from pathlib import Path

from typer.testing import CliRunner

from seedling_bayes import __version__
from seedling_bayes.cli.main import app

runner = CliRunner()


class TestVersionCommand:
    """versionコマンドのテスト"""

    def test_version(self) -> None:
        result = runner.invoke(app, ["version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self) -> None:
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("fit", "simulate", "calibration-check", "version"):
            assert command in result.output


class TestSimulateCommand:
    """simulateコマンドのテスト"""

    def test_simulate_writes_csv(self, tmp_path: Path) -> None:
        out = tmp_path / "seedlings.csv"
        result = runner.invoke(app, ["simulate", "-o", str(out), "--n", "30", "--seed", "1"])
        assert result.exit_code == 0
        lines = out.read_text(encoding="utf-8").strip().split("\n")
        assert lines[0] == "x,y"
        assert len(lines) == 31

    def test_simulate_calibration(self, tmp_path: Path) -> None:
        out = tmp_path / "field.csv"
        result = runner.invoke(app, ["simulate", "-o", str(out), "--n", "15", "--calibration"])
        assert result.exit_code == 0
        assert out.exists()
        cal = tmp_path / "field_calibration.csv"
        assert cal.read_text(encoding="utf-8").startswith("tdr_cal,moisture_cal")


class TestFitCommand:
    """fitコマンドのテスト"""

    def test_fit_synthetic(self, tmp_path: Path) -> None:
        out = tmp_path / "results"
        result = runner.invoke(
            app,
            [
                "fit",
                "--synthetic",
                "--synthetic-n",
                "80",
                "--chains",
                "2",
                "--draws",
                "600",
                "--burnin-step",
                "50",
                "--grid-points",
                "3",
                "--output",
                str(out),
            ],
        )
        assert result.exit_code == 0, result.output
        assert "beta[1]" in result.output
        assert (out / "chain_0.csv").exists()
        assert (out / "chain_1.csv").exists()
        assert (out / "diagnostics.csv").exists()
        assert (out / "summary.md").exists()
        assert (out / "intervals_lambda.csv").exists()

    def test_fit_csv(self, tmp_path: Path) -> None:
        data = tmp_path / "seedlings.csv"
        runner.invoke(app, ["simulate", "-o", str(data), "--n", "60", "--missing-fraction", "0.1"])
        result = runner.invoke(
            app,
            [
                "fit",
                str(data),
                "--model",
                "missing",
                "--chains",
                "2",
                "--draws",
                "400",
                "--retain",
                "beta",
                "--grid-points",
                "3",
            ],
        )
        assert result.exit_code == 0, result.output
        assert "beta[0]" in result.output

    def test_fit_invalid_model(self) -> None:
        """未知のモデル名は入力エラー（終了コード1）"""
        result = runner.invoke(app, ["fit", "--synthetic", "--model", "negbin"])
        assert result.exit_code == 1

    def test_fit_single_chain(self) -> None:
        """チェーン数1は設定エラー（終了コード1）"""
        result = runner.invoke(
            app, ["fit", "--synthetic", "--synthetic-n", "20", "--chains", "1", "--draws", "50"]
        )
        assert result.exit_code == 1
        assert "入力エラー" in result.output

    def test_fit_invalid_threshold(self) -> None:
        """R-hat 閾値の誤りはサンプリング前に設定エラーとなる"""
        result = runner.invoke(app, ["fit", "--synthetic", "--threshold", "0.5"])
        assert result.exit_code == 1
        assert "rhat_threshold" in result.output

    def test_fit_missing_data_file(self) -> None:
        result = runner.invoke(app, ["fit"])
        assert result.exit_code == 1

    def test_fit_invalid_ess_method(self) -> None:
        result = runner.invoke(app, ["fit", "--synthetic", "--ess-method", "bogus"])
        assert result.exit_code == 1

    def test_fit_calibration_requires_calibration_data(self, tmp_path: Path) -> None:
        data = tmp_path / "field.csv"
        runner.invoke(app, ["simulate", "-o", str(data), "--n", "10", "--calibration"])
        result = runner.invoke(app, ["fit", str(data), "--model", "calibration"])
        assert result.exit_code == 1
