import re
import stat
import sys
from pathlib import Path

from click.testing import CliRunner

from kennel.cli import cli
from kennel.config import load_config, save_config

FAKE_CLAUDE = """
import sys
print("Working on " + sys.argv[-1].splitlines()[0])
print("Created src/health.py")
print("Done.")
print("## Summary")
print("Added a health endpoint.")
"""

BROKEN_CLAUDE = """
print("error: model quota exhausted")
raise SystemExit(2)
"""


def _install_fake_harness(repo: Path, body: str) -> None:
    binary = repo / "bin" / "fake-claude"
    binary.parent.mkdir(exist_ok=True)
    binary.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    config = load_config(repo / "kennel.toml")
    config.harnesses.claude = str(binary)
    config.pool.kill_grace_seconds = 0.5
    save_config(repo / "kennel.toml", config)
    (repo / "workspaces" / "proj-a").mkdir(parents=True, exist_ok=True)


def _task_id(output: str) -> str:
    match = re.search(r"Task (tsk_[a-z0-9]+) created", output)
    assert match is not None, output
    return match.group(1)


def test_cli_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init"])
    assert init_result.exit_code == 0
    assert (tmp_path / "kennel.toml").exists()
    assert (tmp_path / "workspaces").is_dir()

    harnesses_result = runner.invoke(cli, ["harnesses"])
    assert harnesses_result.exit_code == 0
    assert "claude (default)" in harnesses_result.output
    assert "codex" in harnesses_result.output

    assert "No tasks found." in runner.invoke(cli, ["list"]).output
    assert "No interrupted tasks." in runner.invoke(cli, ["reconcile"]).output

    _install_fake_harness(tmp_path, FAKE_CLAUDE)
    run_result = runner.invoke(cli, ["run", "Add a health check endpoint", "--workspace", "proj-a"])
    assert run_result.exit_code == 0, run_result.output
    assert "[completed] Added a health endpoint." in run_result.output
    assert "Status: completed" in run_result.output
    assert "Files: src/health.py" in run_result.output
    task_id = _task_id(run_result.output)

    status_result = runner.invoke(cli, ["status", task_id])
    assert status_result.exit_code == 0
    assert '"status": "completed"' in status_result.output

    list_result = runner.invoke(cli, ["list", "--session", "cli", "--status", "completed"])
    assert task_id in list_result.output


def test_run_reports_harness_failure(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    _install_fake_harness(tmp_path, BROKEN_CLAUDE)

    result = runner.invoke(cli, ["run", "Add a health check endpoint", "--workspace", "proj-a"])

    assert result.exit_code == 1
    assert "[failed]" in result.output
    assert "process:" in result.output


def test_cli_rejects_bad_input(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    runner = CliRunner()
    assert runner.invoke(cli, ["init", "--harness", "gemini"]).exit_code == 0
    assert load_config(tmp_path / "kennel.toml").tasks.default_harness == "gemini"

    missing = runner.invoke(cli, ["status", "tsk_missing"])
    assert missing.exit_code == 1
    assert "Unknown task" in missing.output

    bad_status = runner.invoke(cli, ["list", "--status", "sleeping"])
    assert bad_status.exit_code == 1
    assert "Unknown task status" in bad_status.output

    no_workspace = runner.invoke(cli, ["run", "goal", "--workspace", "nowhere"])
    assert no_workspace.exit_code == 1
    assert "Unknown workspace" in no_workspace.output
