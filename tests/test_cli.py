"""
Tests for the command line in simulation mode.
"""

from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from tacho_link.cli import app

runner = CliRunner()


@pytest.fixture
def config_file(temp_dir: Path) -> Path:
    path = temp_dir / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "protocol": {
                    "dialects_dir": str(temp_dir / "dialects"),
                    "auth_timeout": 0.2,
                    "download_timeout": 2.0,
                    "command_delay": 0.0,
                    "fire_and_forget_delay": 0.0,
                },
                "probe": {"response_window": 0.05, "inter_command_delay": 0.0, "settle_delay": 0.0},
                "storage": {"output_dir": str(temp_dir / "downloads")},
                "logging": {"log_dir": str(temp_dir / "logs")},
            }
        )
    )
    return path


def _invoke(config_file: Path, *args: str):
    return runner.invoke(app, ["--config", str(config_file), "--simulate", *args])


class TestCli:
    """Tests for the tacho-link commands."""

    def test_download_vehicle_unit(self, config_file: Path, temp_dir: Path):
        """Test a simulated vehicle unit download writes a .tgd file."""
        result = _invoke(config_file, "download", "--password", "1234")

        assert result.exit_code == 0, result.output
        files = list((temp_dir / "downloads").glob("download_*.tgd"))
        assert len(files) == 1
        assert files[0].stat().st_size == 1501

    def test_download_driver_card(self, config_file: Path, temp_dir: Path):
        """Test the driver card option writes a .ddd file."""
        result = _invoke(config_file, "download", "--kind", "driver", "--password", "1234")

        assert result.exit_code == 0, result.output
        assert len(list((temp_dir / "downloads").glob("download_*.ddd"))) == 1

    def test_rejected_password_aborts(self, config_file: Path, temp_dir: Path):
        """Test a rejected password stops before downloading."""
        result = _invoke(config_file, "download", "--password", "0000")

        assert result.exit_code == 1
        assert not (temp_dir / "downloads").exists()

    def test_date_range_needs_both_ends(self, config_file: Path):
        """Test --start without --end is refused."""
        result = _invoke(config_file, "download", "--start", "2024-01-01")

        assert result.exit_code == 1

    def test_custom_invalid_opcode(self, config_file: Path):
        """Test malformed hex is refused before connecting."""
        result = _invoke(config_file, "custom", "zz")

        assert result.exit_code == 1

    def test_probe_export(self, config_file: Path, temp_dir: Path):
        """Test the probe writes a YAML report."""
        report = temp_dir / "probe.yaml"
        result = _invoke(config_file, "probe", "--export", str(report))

        assert result.exit_code == 0, result.output
        data = yaml.safe_load(report.read_text())
        assert len(data["results"]) == 9

    def test_export_dialect(self, config_file: Path, temp_dir: Path):
        """Test the built-in dialect can be exported."""
        target = temp_dir / "digiblu.yaml"
        result = _invoke(config_file, "export-dialect", str(target))

        assert result.exit_code == 0, result.output
        assert yaml.safe_load(target.read_text())["dialects"][0]["name"] == "digiblu"
