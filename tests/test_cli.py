"""
Tests for the click command group.
"""

import signal
import threading
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from stepdeploy.app import App
from stepdeploy.cli import _cancel_on_signal, main
from stepdeploy.models import ExecutionOutput

from conftest import sm_arn

BASE = sm_arn("hello")


@pytest.fixture
def run(config_file, clients):
    runner = CliRunner()

    def invoke(*args, **kwargs):
        with patch("stepdeploy.cli.new_clients", return_value=clients):
            return runner.invoke(main, ["--config", str(config_file), "--log-level", "error", "--no-color", *args],
                                 **kwargs)
    return invoke


class TestCommands:
    """Test each command end to end."""

    def test_deploy(self, run, sfn_client):
        result = run("deploy")
        assert result.exit_code == 0, result.output
        assert f"deployed {BASE}:1" in result.output
        assert sfn_client.routing(f"{BASE}:current")[0]["weight"] == 100

    def test_deploy_extra_tags(self, run, sfn_client, events_client):
        result = run("deploy", "--tag", "env=dev")
        assert result.exit_code == 0, result.output
        tags = {t["key"]: t["value"] for t in sfn_client.tags[BASE]}
        assert tags["env"] == "dev"
        assert tags["team"] == "platform"

    def test_deploy_rejects_bad_tag(self, run, sfn_client):
        result = run("deploy", "--tag", "novalue")
        assert result.exit_code == 1
        assert "Invalid tag format" in result.output
        assert sfn_client.machines == {}

    def test_deploy_dry_run(self, run, sfn_client):
        result = run("deploy", "--dry-run")
        assert result.exit_code == 0, result.output
        assert "+++ " in result.output
        assert sfn_client.machines == {}

    def test_diff_after_deploy(self, run):
        run("deploy")
        result = run("diff")
        assert result.exit_code == 0, result.output
        assert "+++" not in result.output

    def test_versions_json(self, run):
        run("deploy")
        run("deploy")
        result = run("versions", "--format", "json")
        assert result.exit_code == 0, result.output
        assert '"version": 2' in result.output
        assert '"aliases": [' in result.output

    def test_status_json(self, run):
        run("deploy")
        result = run("status", "--format", "json")
        assert result.exit_code == 0, result.output
        assert '"current_version": 1' in result.output
        assert '"rule_name": "hello-hourly"' in result.output

    def test_rollback(self, run, sfn_client):
        sfn_client.seed("hello", versions=3, aliases={"current": 3})
        result = run("rollback")
        assert result.exit_code == 0, result.output
        assert "rolled back to version 2" in result.output

    def test_rollback_dry_run_prints_plan(self, run, sfn_client):
        sfn_client.seed("hello", versions=3, aliases={"current": 3})
        result = run("rollback", "--dry-run")
        assert result.exit_code == 0, result.output
        assert f'-      "StateMachineVersionArn": "{BASE}:3"' in result.output
        assert f'+      "StateMachineVersionArn": "{BASE}:2"' in result.output
        assert f"--- {BASE}:3" in result.output
        assert "would roll back to version 2" in result.output
        assert sfn_client.routing(f"{BASE}:current")[0]["stateMachineVersionArn"] == f"{BASE}:3"
        assert sorted(sfn_client.versions[BASE]) == [1, 2, 3]

    def test_rollback_dry_run_keep_version(self, run, sfn_client):
        sfn_client.seed("hello", versions=3, aliases={"current": 3})
        result = run("rollback", "--dry-run", "--keep-version")
        assert result.exit_code == 0, result.output
        assert f'+      "StateMachineVersionArn": "{BASE}:2"' in result.output
        assert f"--- {BASE}:3" not in result.output

    def test_rollback_target_not_found(self, run, sfn_client):
        sfn_client.seed("hello", versions=2, aliases={"current": 2})
        del sfn_client.versions[BASE][1]
        result = run("rollback")
        assert result.exit_code == 1
        assert "rollback target not found" in result.output

    def test_delete_with_confirmation(self, run, sfn_client):
        run("deploy")
        result = run("delete", input="hello\n")
        assert result.exit_code == 0, result.output
        assert sfn_client.machines == {}

    def test_delete_wrong_name(self, run, sfn_client):
        run("deploy")
        result = run("delete", input="other\n")
        assert result.exit_code == 1
        assert BASE in sfn_client.machines

    def test_execute_failure_exit_code(self, run, tmp_path):
        payload = tmp_path / "input.json"
        payload.write_text('{"a": 1}')
        output = ExecutionOutput(execution_arn="arn:exec", failed=True, output=None,
                                 detail={"error": "States.TaskFailed"})
        with patch.object(App, "execute", return_value=(output, [])) as execute:
            result = run("execute", "--input", str(payload), "--qualifier", "current")
        assert result.exit_code == 1
        assert execute.call_args.kwargs["input"] == '{"a": 1}'
        assert execute.call_args.kwargs["qualifier"] == "current"

    def test_execute_rejects_bad_input(self, run, tmp_path):
        payload = tmp_path / "input.json"
        payload.write_text("{not json")
        result = run("execute", "--input", str(payload))
        assert result.exit_code == 1
        assert "Invalid input JSON" in result.output


def test_missing_config_exits_1(tmp_path):
    result = CliRunner().invoke(main, ["--config", str(tmp_path / "missing.yaml"), "status"])
    assert result.exit_code == 1
    assert "Error:" in result.output


class TestSignals:
    """Test SIGTERM cancellation wiring."""

    def test_handler_sets_cancel(self):
        cancel = threading.Event()
        _cancel_on_signal(cancel)(signal.SIGTERM, None)
        assert cancel.is_set()

    def test_sigterm_cancels_the_running_command(self, run, sfn_client):
        sfn_client.seed("hello", versions=3, aliases={"current": 3})
        original = signal.getsignal(signal.SIGTERM)
        seen = {}

        def rollback(app, dry_run=False, keep_version=False):
            signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
            seen["cancelled"] = app.sfn.cancel.is_set()

        with patch.object(App, "rollback", rollback):
            result = run("rollback")
        assert result.exit_code == 0, result.output
        assert seen["cancelled"]
        assert signal.getsignal(signal.SIGTERM) is original
