import json
from pathlib import Path

from click.testing import CliRunner

from gateflow.cli import cli
from gateflow.config import load_config
from gateflow.gates import PHASE_ORDER


def _init(tmp_path: Path, monkeypatch) -> tuple[CliRunner, list[str]]:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.delenv("GATEFLOW_SESSION", raising=False)
    config_args = ["--config", str(tmp_path / "gateflow.toml")]
    runner = CliRunner()
    result = runner.invoke(
        cli,
        [
            "init",
            "--data-root",
            str(tmp_path / "data"),
            "--scratch-root",
            str(tmp_path / "scratch"),
            *config_args,
        ],
    )
    assert result.exit_code == 0, result.output
    return runner, config_args


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)

    config = load_config(tmp_path / "gateflow.toml")
    assert Path(config.paths.data_root) == (tmp_path / "data").resolve()
    assert (tmp_path / "data" / "active").is_dir()

    start_result = runner.invoke(
        cli, ["start", "feature", "--mode", "eco", "--id", "wf-cli", *config_args]
    )
    assert start_result.exit_code == 0, start_result.output
    assert "Started feature workflow wf-cli" in start_result.output
    assert "Current phase: planning" in start_result.output

    status_result = runner.invoke(cli, ["status", *config_args])
    assert status_result.exit_code == 0
    status = json.loads(status_result.output)
    assert status["workflow_id"] == "wf-cli"
    assert status["mode"] == "eco"
    assert status["pending"] == list(PHASE_ORDER)

    check_result = runner.invoke(cli, ["check", *config_args])
    assert check_result.exit_code == 2
    assert json.loads(check_result.output)["can_complete"] is False

    early_archive = runner.invoke(cli, ["archive", *config_args])
    assert early_archive.exit_code != 0
    assert "still has open gates" in early_archive.output

    gate_result = runner.invoke(
        cli, ["gate", "planning", "passed", "--agent", "architect", *config_args]
    )
    assert gate_result.exit_code == 0
    assert "Current phase: implementation" in gate_result.output

    for gate in PHASE_ORDER[1:]:
        result = runner.invoke(cli, ["gate", gate, "passed", *config_args])
        assert result.exit_code == 0, result.output

    passed_check = runner.invoke(cli, ["check", *config_args])
    assert passed_check.exit_code == 0
    assert json.loads(passed_check.output)["reason"] == "All mandatory gates passed"

    archive_result = runner.invoke(cli, ["archive", *config_args])
    assert archive_result.exit_code == 0
    assert (tmp_path / "data" / "completed" / "wf-cli.state.json").exists()
    assert not (tmp_path / "data" / "active" / "wf-cli.state.json").exists()

    empty_status = runner.invoke(cli, ["status", *config_args])
    assert json.loads(empty_status.output) == {"active": False}


def test_gate_command_reports_refused_transition(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)
    runner.invoke(cli, ["start", "bugfix", "--id", "wf-1", *config_args])

    assert runner.invoke(cli, ["gate", "tests", "passed", *config_args]).exit_code == 0
    refused = runner.invoke(cli, ["gate", "tests", "failed", *config_args])

    assert refused.exit_code != 0
    assert "cannot move from passed to failed" in refused.output


def test_sessions_track_their_own_workflow(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)
    runner.invoke(cli, ["start", "feature", "--id", "wf-a", "--session", "ses-a", *config_args])
    runner.invoke(cli, ["start", "feature", "--id", "wf-b", "--session", "ses-b", *config_args])

    runner.invoke(cli, ["gate", "planning", "passed", "--session", "ses-a", *config_args])

    status_a = json.loads(runner.invoke(cli, ["status", "--session", "ses-a", *config_args]).output)
    status_b = json.loads(runner.invoke(cli, ["status", "--session", "ses-b", *config_args]).output)
    assert status_a["workflow_id"] == "wf-a"
    assert status_a["gates"]["planning"]["status"] == "passed"
    assert status_b["gates"]["planning"]["status"] == "pending"

    record = tmp_path / "data" / "active" / "wf-a.state.json"
    bind_result = runner.invoke(cli, ["bind", str(record), "--session", "ses-b", *config_args])
    assert bind_result.exit_code == 0
    rebound = json.loads(runner.invoke(cli, ["status", "--session", "ses-b", *config_args]).output)
    assert rebound["workflow_id"] == "wf-a"


def test_bind_rejects_unreadable_record(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)
    bogus = tmp_path / "data" / "active" / "bogus.state.json"
    bogus.write_text("{not json", encoding="utf-8")

    result = runner.invoke(cli, ["bind", str(bogus), *config_args])

    assert result.exit_code != 0
    assert "Not a readable workflow record" in result.output


def test_invalid_mode_is_rejected(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)

    result = runner.invoke(cli, ["start", "feature", "--mode", "ludicrous", *config_args])

    assert result.exit_code == 2


def test_check_valves_fire_across_invocations(tmp_path: Path, monkeypatch) -> None:
    runner, config_args = _init(tmp_path, monkeypatch)
    runner.invoke(cli, ["start", "feature", "--id", "wf-1", *config_args])

    guard = tmp_path / "scratch" / "workflow-guard-cli.json"

    exit_codes = [runner.invoke(cli, ["check", *config_args]).exit_code for _ in range(7)]
    assert guard.exists()
    exit_codes.append(runner.invoke(cli, ["check", *config_args]).exit_code)

    assert exit_codes == [2, 2, 2, 0, 2, 2, 2, 0]
    assert not guard.exists()
