"""Tests for the tierconvert command line."""

import json

import pytest
from typer.testing import CliRunner

from tierconvert import __version__
from tierconvert.cli.main import app


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def html_file(temp_dir):
    path = temp_dir / "report.html"
    path.write_text(
        "<html><head><title>Report</title></head>"
        "<body><h1>Report</h1><p>All systems nominal.</p>"
        "<script>track()</script></body></html>",
        encoding="utf-8",
    )
    return path


class TestMain:
    def test_version(self, runner):
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_help(self, runner):
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "convert" in result.output
        assert "capabilities" in result.output


class TestConvertCommand:
    """Tests for the convert command."""

    def test_markup_export(self, runner, html_file, temp_dir):
        output = temp_dir / "out" / "report.html"

        result = runner.invoke(
            app,
            ["convert", str(html_file), "-f", "html", "--tier", "markup", "-o", str(output)],
        )

        assert result.exit_code == 0, result.output
        content = output.read_text(encoding="utf-8")
        assert "All systems nominal." in content
        assert "track()" not in content
        assert "markup" in result.output

    def test_default_output_path(self, runner, html_file):
        result = runner.invoke(app, ["convert", str(html_file), "-f", "html", "-t", "markup"])

        assert result.exit_code == 0, result.output
        # html output keeps the input extension and overwrites it
        assert "All systems nominal." in html_file.read_text(encoding="utf-8")

    def test_invalid_format(self, runner, html_file):
        result = runner.invoke(app, ["convert", str(html_file), "-f", "docx"])

        assert result.exit_code == 1
        assert "Invalid format" in result.output

    def test_empty_document(self, runner, temp_dir):
        empty = temp_dir / "empty.html"
        empty.write_text("   ", encoding="utf-8")

        result = runner.invoke(app, ["convert", str(empty), "-f", "html", "-t", "markup"])

        assert result.exit_code == 1
        assert "Invalid document" in result.output

    def test_missing_file(self, runner, temp_dir):
        result = runner.invoke(app, ["convert", str(temp_dir / "missing.html")])
        assert result.exit_code != 0

    def test_task_log_written(self, runner, html_file, temp_dir):
        runner.invoke(app, ["convert", str(html_file), "-f", "html", "-t", "markup"])

        logs = list((temp_dir / ".logs").glob("convert_*.log"))
        assert len(logs) == 1


class TestCapabilitiesCommand:
    def test_json_output(self, runner):
        result = runner.invoke(app, ["capabilities", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["backend_scores"]["markup"]["available"] is True
        assert data["recommended_tier"] in {"engine", "canvas", "remote", "markup"}

    def test_table_output(self, runner):
        result = runner.invoke(app, ["capabilities"])

        assert result.exit_code == 0, result.output
        assert "Overall score" in result.output


class TestServicesCommand:
    def test_lists_default_services(self, runner):
        result = runner.invoke(app, ["services", "pdf"])

        assert result.exit_code == 0, result.output
        assert "Remote Conversion Services" in result.output

    def test_unknown_category(self, runner):
        result = runner.invoke(app, ["services", "fax"])

        assert result.exit_code == 1
        assert "Unknown category" in result.output
