"""Unit tests for volume_autoscaler.cli.main."""

from __future__ import annotations

import json
from unittest.mock import patch

import click
from click.testing import CliRunner

from volume_autoscaler import __version__
from volume_autoscaler.cli.main import cli

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _policies_response() -> dict[str, object]:
    return {
        "policies": [
            {
                "policy": "db/postgres",
                "ready": True,
                "reason": "Polling",
                "message": "Monitoring 2 PVC(s)",
                "volumes": 2,
                "expanded": 1,
                "requeue_after_seconds": 60.0,
                "error": None,
                "finished_at": "2026-01-15T10:30:00Z",
            },
            {
                "policy": "web/cache",
                "ready": False,
                "reason": "NoPVCsFound",
                "message": "No PVCs matched the target",
                "volumes": 0,
                "expanded": 0,
                "requeue_after_seconds": 60.0,
                "error": None,
                "finished_at": "2026-01-15T10:30:00Z",
            },
        ]
    }


# ---------------------------------------------------------------------------
# version
# ---------------------------------------------------------------------------


class TestVersion:
    def test_prints_version(self) -> None:
        result = CliRunner().invoke(cli, ["version"])
        assert result.exit_code == 0
        assert result.output.strip() == f"volume-autoscaler {__version__}"


# ---------------------------------------------------------------------------
# status
# ---------------------------------------------------------------------------


class TestStatus:
    def test_lists_policies(self) -> None:
        with patch("volume_autoscaler.cli.main._get", return_value=_policies_response()) as mock_get:
            result = CliRunner().invoke(cli, ["status"])

        assert result.exit_code == 0
        mock_get.assert_called_once_with("http://localhost:8080", "/api/v1/policies")
        assert "db/postgres" in result.output
        assert "Ready" in result.output
        assert "NotReady" in result.output
        assert "No PVCs matched the target" in result.output

    def test_namespace_filter(self) -> None:
        with patch("volume_autoscaler.cli.main._get", return_value=_policies_response()):
            result = CliRunner().invoke(cli, ["status", "-n", "db"])

        assert "db/postgres" in result.output
        assert "web/cache" not in result.output

    def test_json_output(self) -> None:
        with patch("volume_autoscaler.cli.main._get", return_value=_policies_response()):
            result = CliRunner().invoke(cli, ["status", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert len(data["policies"]) == 2

    def test_empty(self) -> None:
        with patch("volume_autoscaler.cli.main._get", return_value={"policies": []}):
            result = CliRunner().invoke(cli, ["status"])
        assert "No policies reconciled yet." in result.output

    def test_api_url_option(self) -> None:
        with patch("volume_autoscaler.cli.main._get", return_value={"policies": []}) as mock_get:
            CliRunner().invoke(cli, ["--api-url", "http://ctrl:9000", "status"])
        mock_get.assert_called_once_with("http://ctrl:9000", "/api/v1/policies")

    def test_connection_failure_exits_nonzero(self) -> None:
        with patch("volume_autoscaler.cli.main._get", side_effect=click.ClickException("Cannot connect")):
            result = CliRunner().invoke(cli, ["status"])
        assert result.exit_code == 1
        assert "Cannot connect" in result.output


# ---------------------------------------------------------------------------
# calculate
# ---------------------------------------------------------------------------


class TestCalculate:
    def test_percentage_step(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "100Gi", "--max-size", "1Ti"])
        assert result.exit_code == 0
        assert result.output.strip() == "100Gi -> 120Gi"

    def test_minimum_step(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "10Gi", "--max-size", "100Gi", "--increase-minimum", "5Gi"])
        assert result.output.strip() == "10Gi -> 15Gi"

    def test_default_minimum_is_one_gibibyte(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "1Gi", "--max-size", "10Gi", "--increase-percent", "10"])
        assert result.output.strip() == "1Gi -> 2Gi"

    def test_capped_at_max_size(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "95Gi", "--max-size", "100Gi"])
        assert result.output.strip() == "95Gi -> 100Gi"

    def test_already_at_max(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "100Gi", "--max-size", "100Gi"])
        assert result.exit_code == 0
        assert "already at or above max size 100Gi" in result.output

    def test_invalid_quantity(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "lots", "--max-size", "100Gi"])
        assert result.exit_code == 2
        assert "CURRENT" in result.output

    def test_zero_percent_rejected(self) -> None:
        result = CliRunner().invoke(cli, ["calculate", "10Gi", "--max-size", "100Gi", "--increase-percent", "0"])
        assert result.exit_code == 2
