"""Tests for the admission CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from admission.cli import cli


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestPoliciesCommand:
    """Tests for the policies command."""

    def test_json_builtins(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["policies", "--json"], env={"POLICIES_PATH": None})

        assert result.exit_code == 0
        names = [p["name"] for p in json.loads(result.output)]
        assert names == ["readCommon", "writeByRole"]

    def test_json_from_file(self, runner: CliRunner, policy_file: Path) -> None:
        result = runner.invoke(cli, ["--policies", str(policy_file), "policies", "--json"])

        assert result.exit_code == 0
        policies = {p["name"]: p for p in json.loads(result.output)}
        assert policies["readCommon"]["permit_limit"] == 3
        assert policies["writeByRole"]["roles"]["Recepcionista"]["queue_order"] == "newest_first"

    def test_table(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["policies"], env={"POLICIES_PATH": None})

        assert result.exit_code == 0
        assert "readCommon" in result.output
        assert "Recepcionista" in result.output

    def test_invalid_file(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "bad.json"
        path.write_text("[]")

        result = runner.invoke(cli, ["--policies", str(path), "policies"])

        assert result.exit_code == 1
        assert "Invalid policy configuration" in result.output

    def test_list_section_is_config_error(self, runner: CliRunner, tmp_path: Path) -> None:
        path = tmp_path / "list.json"
        path.write_text(json.dumps({"policies": [{"permit_limit": 1, "window_seconds": 5}]}))

        result = runner.invoke(cli, ["--policies", str(path), "policies"])

        assert result.exit_code == 1
        assert "Invalid policy configuration" in result.output


class TestSimulateCommand:
    """Tests for the simulate command."""

    def test_read_policy(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["simulate", "readCommon", "--count", "3"], env={"POLICIES_PATH": None}
        )

        assert result.exit_code == 0
        assert "allowed" in result.output
        assert "rejected" not in result.output

    def test_receptionist_hits_limit(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli,
            ["simulate", "writeByRole", "--role", "recepcionista", "-n", "6"],
            env={"POLICIES_PATH": None},
        )

        assert result.exit_code == 0
        assert result.output.count("allowed") == 5
        assert result.output.count("rejected") == 1

    def test_role_policy_without_role(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli, ["simulate", "writeByRole"], env={"POLICIES_PATH": None}
        )

        assert result.exit_code == 1
        assert "writeByRole" in result.output

    def test_unknown_policy(self, runner: CliRunner) -> None:
        result = runner.invoke(cli, ["simulate", "nope"], env={"POLICIES_PATH": None})
        assert result.exit_code == 1
