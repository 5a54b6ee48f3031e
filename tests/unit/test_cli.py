"""Tests for CLI functionality."""

import json

import pytest
from typer.testing import CliRunner

from apps.cli.main import EXIT_INPUT_ERROR, app


def last_json_line(output: str) -> dict:
    return json.loads(output.strip().splitlines()[-1])


class TestCLI:
    """Test CLI command interface."""

    @pytest.fixture(autouse=True)
    def setup(self, tmp_path, monkeypatch, make_client, write_manifest, sample_manifest_data):
        """Route the CLI to a temporary root and a fake package manager."""
        self.runner = CliRunner()
        self.tmp_path = tmp_path
        self.client = make_client()
        monkeypatch.setattr("apps.cli.main.WingetClient", lambda **kwargs: self.client)
        self.manifest = write_manifest(sample_manifest_data)
        self.state_path = tmp_path / ".endstate" / "state.json"

    def invoke(self, *args):
        options = ["--root", str(self.tmp_path), "--platform", "windows"]
        return self.runner.invoke(app, [*options, *args])

    def test_cli_help_command(self):
        """Should display help when called with --help."""
        result = self.runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "endstate" in result.output.lower()
        for command in ("apply", "plan", "verify", "report", "diff", "state"):
            assert command in result.output

    def test_apply_json(self):
        """Should install missing apps, verify and record state."""
        result = self.invoke("apply", str(self.manifest), "--json")

        assert result.exit_code == 0, result.output
        payload = last_json_line(result.stdout)
        assert payload["command"] == "apply"
        assert payload["counts"]["installed"] == 1
        assert payload["verifyResult"]["okCount"] == 1
        assert self.client.calls == [("Git.Git", False)]
        assert self.state_path.exists()

    def test_apply_human_output(self):
        result = self.invoke("apply", str(self.manifest))

        assert result.exit_code == 0, result.output
        assert "git (winget) installed" in result.output
        assert "Result: success" in result.output

    def test_plan_does_not_install(self):
        """Should report planned actions without side effects."""
        result = self.invoke("plan", str(self.manifest), "--json")

        assert result.exit_code == 0, result.output
        payload = last_json_line(result.stdout)
        assert payload["command"] == "plan"
        assert payload["dryRun"] is True
        assert payload["items"][0]["reason"] == "would_install"
        assert self.client.calls == []
        assert not self.state_path.exists()

    def test_verify_missing_app_fails(self):
        result = self.invoke("verify", str(self.manifest), "--json")

        assert result.exit_code == 1
        payload = last_json_line(result.stdout)
        assert payload["missingApps"] == ["git"]

    def test_verify_installed_app_passes(self):
        self.client.installed["Git.Git"] = "2.43.0"
        result = self.invoke("verify", str(self.manifest), "--json")

        assert result.exit_code == 0, result.output
        assert last_json_line(result.stdout)["okCount"] == 1

    def test_missing_manifest_is_input_error(self):
        """Should exit 2 with the error code when the manifest is absent."""
        result = self.invoke("apply", str(self.tmp_path / "absent.jsonc"))

        assert result.exit_code == EXIT_INPUT_ERROR
        assert "manifest_not_found" in result.output
        assert self.client.calls == []

    def test_non_positive_timeout_is_input_error(self):
        result = self.invoke("--timeout", "0", "report")
        assert result.exit_code == EXIT_INPUT_ERROR

    def test_report_without_state(self):
        result = self.invoke("report", "--json")

        assert result.exit_code == 0, result.output
        assert last_json_line(result.stdout) == {"command": "report", "hasState": False}

    def test_report_after_apply_with_manifest(self):
        self.invoke("apply", str(self.manifest))
        result = self.invoke("report", "--manifest", str(self.manifest), "--json")

        assert result.exit_code == 0, result.output
        payload = last_json_line(result.stdout)
        assert payload["hasState"] is True
        assert payload["state"]["appsObserved"]["git"]["installed"] is True
        assert payload["drift"]["missing"] == []

    def test_state_reset_then_report(self):
        self.invoke("apply", str(self.manifest))

        reset = self.invoke("state", "reset")
        assert reset.exit_code == 0
        assert "State reset" in reset.output

        result = self.invoke("report", "--json")
        assert last_json_line(result.stdout)["hasState"] is False

    def test_state_export_and_import(self):
        self.invoke("apply", str(self.manifest))
        exported = self.tmp_path / "exported.json"

        result = self.invoke("state", "export", str(exported))
        assert result.exit_code == 0, result.output
        assert json.loads(exported.read_text())["schemaVersion"] == 1

        self.invoke("state", "reset")
        result = self.invoke("state", "import", str(exported), "--replace")
        assert result.exit_code == 0, result.output
        assert json.loads(self.state_path.read_text()) == json.loads(exported.read_text())

    def test_state_import_schema_mismatch(self):
        """Should reject a future schema without touching state."""
        source = self.tmp_path / "future.json"
        source.write_text(json.dumps({"schemaVersion": 2, "appsObserved": {}}))

        result = self.invoke("state", "import", str(source))

        assert result.exit_code == EXIT_INPUT_ERROR
        assert not self.state_path.exists()

    def test_diff_of_two_artifacts(self):
        """Should show what changed between a plan and an apply."""
        before = self.tmp_path / "plan.json"
        after = self.tmp_path / "apply.json"
        self.invoke("plan", str(self.manifest), "--out", str(before))
        self.invoke("apply", str(self.manifest), "--out", str(after))

        result = self.invoke("diff", str(before), str(after), "--json")

        assert result.exit_code == 0, result.output
        payload = last_json_line(result.stdout)
        assert payload["identical"] is False
        changed = {item["id"]: item for item in payload["itemsChanged"]}
        assert "git" in changed

    def test_diff_identical_artifacts(self):
        first = self.tmp_path / "a.json"
        second = self.tmp_path / "b.json"
        self.invoke("plan", str(self.manifest), "--out", str(first))
        self.invoke("plan", str(self.manifest), "--out", str(second))

        result = self.invoke("diff", str(first), str(second))

        assert result.exit_code == 0, result.output
        assert "No differences." in result.output

    def test_events_stream(self):
        """Should stream JSONL events on stderr and keep stdout one document."""
        result = self.invoke("plan", str(self.manifest), "--events", "jsonl", "--json")

        assert result.exit_code == 0, result.output
        assert len(result.stdout.strip().splitlines()) == 1
        assert json.loads(result.stdout)["command"] == "plan"

        events = [json.loads(line) for line in result.stderr.splitlines() if line.startswith("{")]
        kinds = [event["event"] for event in events]
        assert kinds[0] == "phase"
        assert "item" in kinds
        assert {event["runId"] for event in events} == {json.loads(result.stdout)["runId"]}
        item = next(event for event in events if event["event"] == "item")
        assert item["id"] == "git"
        assert item["reason"] == "would_install"

    def test_unsupported_version_operator_is_input_error(self, write_manifest):
        """Should refuse a constraint it cannot evaluate before touching the machine."""
        self.client.installed["Git.Git"] = "1.0"
        manifest = write_manifest(
            {"version": 1, "apps": [{"id": "Git.Git", "version": "<=2.0"}]}, name="bad.jsonc"
        )

        for _ in range(2):
            result = self.invoke("apply", str(manifest))
            assert result.exit_code == EXIT_INPUT_ERROR
            assert "manifest_invalid" in result.output

        assert self.client.calls == []
        assert not self.state_path.exists()

    def test_unsupported_event_format(self):
        result = self.invoke("plan", str(self.manifest), "--events", "xml")
        assert result.exit_code == EXIT_INPUT_ERROR
