"""Tests for the command line interface."""

import json
import logging
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from conftest import ScriptedChannel, ScriptedProbe, make_spec
from vmship.cli.main import cli
from vmship.orchestrator.dependency_graph import build
from vmship.orchestrator.engine import Engine
from vmship.orchestrator.planner import plan
from vmship.providers.memory import InMemoryProvider
from vmship.utils.errors import ConcurrentModificationError, ConflictError

RESOURCES = [
    {"id": "sg", "kind": "security_group", "attributes": {"name": "web-sg"}},
    {"id": "web", "kind": "compute_instance", "attributes": {"name": "web", "security_group_ids": ["${sg.group_id}"]}},
]


@pytest.fixture(autouse=True)
def isolated(tmp_path, monkeypatch):
    """Run in tmp_path and restore the root logger afterwards."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("COLUMNS", "200")
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config_path(write_config):
    return write_config(RESOURCES, deployment={"host_resource": "web", "health": {"attempts": 2, "interval": 0}})


def invoke(runner, config_path, *args):
    return runner.invoke(cli, ["--log-level", "error", "--no-log-file", "--config", config_path, *args])


def engine_factory(config_path, **kwargs):
    return lambda path: Engine(path, **kwargs)


class TestPlanCommand:

    def test_plan_table(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "plan")
        assert result.exit_code == 0, result.output
        assert "2 to create" in result.output

    def test_plan_json(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "plan", "--json")
        assert result.exit_code == 0, result.output

        data = json.loads(result.stdout)
        assert data["summary"]["create"] == 2
        assert [a["id"] for a in data["actions"]] == ["sg", "web"]
        assert data["actions"][1]["depends_on"] == ["sg"]

    def test_plan_writes_nothing(self, runner, config_path, tmp_path) -> None:
        result = invoke(runner, config_path, "plan")
        assert result.exit_code == 0, result.output
        assert sorted(p.name for p in tmp_path.iterdir()) == ["vmship.yaml"]

    def test_log_dir_option(self, runner, config_path, tmp_path) -> None:
        result = runner.invoke(
            cli, ["--log-level", "error", "--log-dir", str(tmp_path / "logs"), "--config", config_path, "plan"]
        )
        assert result.exit_code == 0, result.output

        log_files = list((tmp_path / "logs").glob("vmship-*.jsonl"))
        assert len(log_files) == 1
        entries = [json.loads(line) for line in log_files[0].read_text().splitlines()]
        assert all({"timestamp", "level", "logger", "message"} <= set(entry) for entry in entries)
        assert not (tmp_path / ".vmship").exists()

    def test_missing_config(self, runner, tmp_path) -> None:
        result = invoke(runner, str(tmp_path / "absent.yaml"), "plan")
        assert result.exit_code == 1

    def test_cycle_is_a_planning_error(self, runner, write_config) -> None:
        path = write_config([
            {"id": "a", "kind": "repository", "depends_on": ["b"]},
            {"id": "b", "kind": "repository", "depends_on": ["a"]},
        ])
        result = invoke(runner, path, "plan")
        assert result.exit_code == 8
        assert "Circular dependency" in result.output


class TestApplyCommand:

    def test_apply_then_no_changes(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "apply", "--yes")
        assert result.exit_code == 0, result.output

        result = invoke(runner, config_path, "apply", "--yes")
        assert result.exit_code == 0
        assert "No changes" in result.output

    def test_declined_confirmation_changes_nothing(self, runner, config_path, tmp_path) -> None:
        result = runner.invoke(
            cli, ["--log-level", "error", "--config", config_path, "apply"], input="n\n"
        )
        assert result.exit_code == 0
        assert "Apply cancelled" in result.output
        assert not (tmp_path / ".vmship" / "state.json").exists()

    def test_partial_failure_exit_code(self, runner, config_path) -> None:
        provider = InMemoryProvider()
        provider.fail("create", "web")
        with patch("vmship.cli.main.create_engine", engine_factory(config_path, provider=provider)):
            result = invoke(runner, config_path, "apply", "--yes")
        assert result.exit_code == 3

    def test_total_failure_exit_code(self, runner, config_path) -> None:
        provider = InMemoryProvider()
        provider.fail("create", "web-sg")
        with patch("vmship.cli.main.create_engine", engine_factory(config_path, provider=provider)):
            result = invoke(runner, config_path, "apply", "--yes")
        assert result.exit_code == 4

    def test_concurrent_modification_exit_code(self, runner, config_path) -> None:
        engine = MagicMock()
        engine.plan.return_value = plan(build([make_spec("A")]), {})
        engine.apply.side_effect = ConcurrentModificationError(ConflictError("A", 0, 1))
        with patch("vmship.cli.main.create_engine", return_value=engine):
            result = invoke(runner, config_path, "apply", "--yes")
        assert result.exit_code == 5


class TestStateCommands:

    def test_state_list_and_show(self, runner, config_path) -> None:
        invoke(runner, config_path, "apply", "--yes")

        result = invoke(runner, config_path, "state", "list")
        assert result.exit_code == 0
        assert "web" in result.output
        assert "Total resources: 2" in result.output

        result = invoke(runner, config_path, "state", "show", "web")
        assert result.exit_code == 0
        assert "public_ip" in result.output

    def test_state_show_unknown(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "state", "show", "ghost")
        assert result.exit_code == 1

    def test_empty_state(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "state", "list")
        assert result.exit_code == 0
        assert "State is empty" in result.output


class TestDeployCommand:

    def deploy(self, runner, config_path, probe, *args):
        factory = engine_factory(config_path, channel=ScriptedChannel(), probe=probe)
        with patch("vmship.cli.main.create_engine", factory):
            return invoke(runner, config_path, "deploy", *args)

    def test_healthy(self, runner, config_path) -> None:
        result = self.deploy(runner, config_path, ScriptedProbe(), "registry.local/site:v1", "--host", "10.0.0.9")
        assert result.exit_code == 0, result.output

        result = invoke(runner, config_path, "history")
        assert result.exit_code == 0
        assert "10.0.0.9" in result.output

    def test_rolled_back(self, runner, config_path) -> None:
        probe = ScriptedProbe([False, False, True])
        result = self.deploy(
            runner, config_path, probe,
            "registry.local/site:v2", "--host", "10.0.0.9", "--previous", "registry.local/site:v1",
        )
        assert result.exit_code == 6

    def test_failed(self, runner, config_path) -> None:
        result = self.deploy(runner, config_path, ScriptedProbe([False]), "registry.local/site:v2", "--host", "10.0.0.9")
        assert result.exit_code == 7

    def test_no_target_host(self, runner, config_path) -> None:
        result = self.deploy(runner, config_path, ScriptedProbe(), "registry.local/site:v1")
        assert result.exit_code == 1
        assert "has not been applied" in result.output


class TestHistoryCommand:

    def test_empty_history(self, runner, config_path) -> None:
        result = invoke(runner, config_path, "history")
        assert result.exit_code == 0
        assert "No deployment history" in result.output
