# tests/unit/test_cli.py
"""Tests for the cellflow command line interface."""

import json
import logging
from pathlib import Path

import pytest
import structlog
from typer.testing import CliRunner

from cellflow import __version__
from cellflow.cli import app

FIXTURES = Path(__file__).parents[1] / "fixtures"
CELLS = "tests.fixtures.loan:build_registry"

runner = CliRunner()


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch):
    """Keep log lines out of captured command output."""
    monkeypatch.setattr("cellflow.core.logging.configure_logging", lambda **kwargs: None)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL))
    yield
    structlog.reset_defaults()


def test_version() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestValidateCommand:
    def test_valid_manifest(self) -> None:
        result = runner.invoke(app, ["validate", str(FIXTURES / "loan.yaml"), "--cells", CELLS])
        assert result.exit_code == 0, result.output
        assert "Workflow 'loan-approval' valid: 5 cells, 0 joins" in result.output

    def test_every_issue_listed(self) -> None:
        result = runner.invoke(app, ["validate", str(FIXTURES / "broken_loan.yaml"), "-c", CELLS])
        assert result.exit_code == 1
        assert "Manifest Validation Failed" in result.output
        assert "edge_target" in result.output
        assert "dispatch_coverage" in result.output

    def test_missing_manifest(self) -> None:
        result = runner.invoke(app, ["validate", str(FIXTURES / "nope.yaml"), "-c", CELLS])
        assert result.exit_code == 1
        assert "File Not Found" in result.output

    def test_bad_cells_import(self) -> None:
        result = runner.invoke(app, ["validate", str(FIXTURES / "loan.yaml"), "-c", "tests.fixtures.loan:nothing"])
        assert result.exit_code == 1
        assert "Cell Registry Not Found" in result.output

    def test_cells_factory_must_return_registry(self) -> None:
        result = runner.invoke(app, ["validate", str(FIXTURES / "loan.yaml"), "-c", "builtins:dict"])
        assert result.exit_code == 1
        assert "returned dict" in result.output

    def test_settings_file(self, tmp_path: Path) -> None:
        settings = tmp_path / "settings.yaml"
        settings.write_text("strict_manifests: true\n")
        result = runner.invoke(app, ["validate", str(FIXTURES / "loan.yaml"), "-c", CELLS, "-s", str(settings)])
        assert result.exit_code == 1
        assert "on_error_required" in result.output

    def test_invalid_settings(self, tmp_path: Path) -> None:
        settings = tmp_path / "settings.yaml"
        settings.write_text("max_steps: 0\n")
        result = runner.invoke(app, ["validate", str(FIXTURES / "loan.yaml"), "-c", CELLS, "-s", str(settings)])
        assert result.exit_code == 1
        assert "Configuration Validation Failed" in result.output

    def test_settings_file_drives_logging(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        calls = []
        monkeypatch.setattr("cellflow.core.logging.configure_logging", lambda **kwargs: calls.append(kwargs))
        settings = tmp_path / "settings.yaml"
        settings.write_text("log_level: ERROR\nlog_json: true\n")

        result = runner.invoke(app, ["-v", "validate", str(FIXTURES / "loan.yaml"), "-c", CELLS, "-s", str(settings)])

        assert result.exit_code == 0, result.output
        applied = calls[-1]
        assert applied["settings"].log_level == "ERROR"
        assert applied["settings"].log_json is True
        assert applied["level"] == "DEBUG"
        assert "json_output" not in applied


class TestPathsCommand:
    def test_lists_paths(self) -> None:
        result = runner.invoke(app, ["paths", str(FIXTURES / "loan.yaml")])
        assert result.exit_code == 0, result.output
        assert "start -> assess -approve-> approve -> end" in result.output
        assert "start -> assess -reject-> reject -> end" in result.output
        assert "3 path(s)" in result.output

    def test_json(self) -> None:
        result = runner.invoke(app, ["paths", str(FIXTURES / "with_fragment.yaml"), "--json"])
        assert result.exit_code == 0, result.output
        paths = json.loads(result.output)
        assert len(paths) == 3
        assert paths[0][0]["source"] == "start"


class TestStatusCommand:
    def test_failing_cell_reported(self) -> None:
        result = runner.invoke(app, ["status", str(FIXTURES / "loan.yaml"), "-c", CELLS])
        assert result.exit_code == 1
        assert "Status: 4/5 cells passing" in result.output
        assert "[FAIL] start (loan/intake)" in result.output
        assert "[PASS] review (loan/review)" in result.output

    def test_pending_cells_do_not_fail(self, tmp_path: Path) -> None:
        path = tmp_path / "draft.yaml"
        path.write_text("id: draft\ncells:\n  start: draft/first\nedges:\n  start: end\n")
        result = runner.invoke(app, ["status", str(path), "-c", CELLS])
        assert result.exit_code == 0, result.output
        assert "[    ] start (draft/first)" in result.output


class TestBriefCommand:
    def test_prints_prompt(self) -> None:
        result = runner.invoke(app, ["brief", str(FIXTURES / "loan.yaml"), "assess", "-c", CELLS])
        assert result.exit_code == 0, result.output
        assert result.output.startswith("## Cell: loan/assess")
        assert "Transitions: approve, reject, review" in result.output

    def test_without_registry(self) -> None:
        result = runner.invoke(app, ["brief", str(FIXTURES / "loan.yaml"), "assess"])
        assert result.exit_code == 0, result.output
        assert "dynamic (any keys)" in result.output

    def test_previous_failure_appended(self) -> None:
        result = runner.invoke(app, ["brief", str(FIXTURES / "loan.yaml"), "assess", "-c", CELLS, "--error", "risk missing"])
        assert "## Previous Implementation Failed" in result.output
        assert "Error: risk missing" in result.output

    def test_unknown_cell(self) -> None:
        result = runner.invoke(app, ["brief", str(FIXTURES / "loan.yaml"), "ghost"])
        assert result.exit_code == 1
        assert "Unknown Cell" in result.output


class TestSystemCommand:
    def test_index_printed(self) -> None:
        result = runner.invoke(app, ["system", str(FIXTURES / "routes.yaml"), "-c", CELLS])
        assert result.exit_code == 0, result.output
        assert "/loans/apply  (loan-approval)" in result.output
        assert "Shared cells: loan/approve, loan/assess, loan/intake" in result.output

    def test_json(self) -> None:
        result = runner.invoke(app, ["system", str(FIXTURES / "routes.yaml"), "-c", CELLS, "--json"])
        assert result.exit_code == 0, result.output
        index = json.loads(result.output)
        assert index["cell_usage"]["loan/intake"] == ["/loans/apply", "/loans/quick"]

    def test_routes_file_must_be_mapping(self, tmp_path: Path) -> None:
        routes = tmp_path / "routes.yaml"
        routes.write_text("- loan.yaml\n")
        result = runner.invoke(app, ["system", str(routes), "-c", CELLS])
        assert result.exit_code == 1
        assert "Invalid Routes File" in result.output
