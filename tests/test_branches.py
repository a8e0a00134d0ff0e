from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from taskherd.branches import (
    commit_checkpoint,
    ensure_sequence_branch,
    ensure_task_branch,
    task_branch_name,
)
from taskherd.models import AgentConfig, EngineConfig, GitStateError

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _make_config(root: Path, **overrides) -> EngineConfig:
    values = dict(
        project_root=root,
        pipelines={},
        default_pipeline="default",
        agent=AgentConfig(command="fake-agent", timeout_seconds=0),
        task_folder="tasks",
        state_path=".taskherd/state",
        logs_path=".taskherd/logs",
        steps_path=".taskherd/steps",
    )
    values.update(overrides)
    return EngineConfig(**values)


def _git(root: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=root, capture_output=True, text=True, check=True)
    return result.stdout.strip()


def _init_repo(root: Path) -> Path:
    _git(root, "init", "-q")
    _git(root, "checkout", "-q", "-b", "main")
    _git(root, "config", "user.email", "dev@example.com")
    _git(root, "config", "user.name", "Dev")
    _git(root, "config", "commit.gpgsign", "false")
    task = root / "tasks" / "01-login.md"
    task.parent.mkdir(parents=True)
    task.write_text("# Login\n", encoding="utf-8")
    _git(root, "add", "tasks")
    _git(root, "commit", "-q", "-m", "initial")
    return task


def test_task_branch_name_drops_task_prefix(tmp_path: Path) -> None:
    config = _make_config(tmp_path, branch_prefix="bots")

    assert task_branch_name(config, tmp_path / "tasks" / "01-login.md") == "bots/tasks-01-login"


def test_ensure_task_branch_creates_then_resumes(tmp_path: Path) -> None:
    task = _init_repo(tmp_path)
    config = _make_config(tmp_path)

    created = ensure_task_branch(config, task)
    (tmp_path / "work.txt").write_text("in progress", encoding="utf-8")
    resumed = ensure_task_branch(config, task)

    assert created == resumed == "taskherd/tasks-01-login"
    assert _git(tmp_path, "branch", "--show-current") == "taskherd/tasks-01-login"
    log_text = (config.logs_dir / "orchestrator.log").read_text(encoding="utf-8")
    assert "no remote 'origin' configured" in log_text
    assert "resuming on existing branch" in log_text


def test_dirty_tree_blocks_branch_switch(tmp_path: Path) -> None:
    task = _init_repo(tmp_path)
    config = _make_config(tmp_path)
    (tmp_path / "tasks" / "01-login.md").write_text("# edited\n", encoding="utf-8")

    with pytest.raises(GitStateError, match="not clean"):
        ensure_task_branch(config, task)
    assert _git(tmp_path, "branch", "--show-current") == "main"


def test_engine_data_directory_does_not_make_tree_dirty(tmp_path: Path) -> None:
    task = _init_repo(tmp_path)
    config = _make_config(tmp_path)
    config.state_dir.mkdir(parents=True)
    (config.state_dir / "task-x.state.json").write_text("{}", encoding="utf-8")

    assert ensure_task_branch(config, task) == "taskherd/tasks-01-login"


def test_missing_main_branch_is_a_git_state_error(tmp_path: Path) -> None:
    task = _init_repo(tmp_path)
    _git(tmp_path, "checkout", "-q", "-b", "feature")
    config = _make_config(tmp_path, main_branch="trunk")

    with pytest.raises(GitStateError, match="could not check out 'trunk'"):
        ensure_task_branch(config, task)


def test_disabled_branch_management_stays_on_current_branch(tmp_path: Path) -> None:
    task = _init_repo(tmp_path)
    _git(tmp_path, "checkout", "-q", "-b", "scratch")
    config = _make_config(tmp_path, manage_git_branch=False)

    assert ensure_task_branch(config, task) == "scratch"
    assert ensure_sequence_branch(config, "sequence-sprint") == "scratch"


def test_existing_sequence_branch_is_checked_out(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    _git(tmp_path, "branch", "taskherd/sequence-sprint")
    config = _make_config(tmp_path)

    assert ensure_sequence_branch(config, "sequence-sprint") == "taskherd/sequence-sprint"
    assert _git(tmp_path, "branch", "--show-current") == "taskherd/sequence-sprint"


def test_commit_checkpoint_excludes_engine_data(tmp_path: Path) -> None:
    _init_repo(tmp_path)
    config = _make_config(tmp_path)
    (tmp_path / "feature.py").write_text("print('hi')\n", encoding="utf-8")
    config.logs_dir.mkdir(parents=True)
    (config.logs_dir / "orchestrator.log").write_text("log\n", encoding="utf-8")

    commit_checkpoint(config, "implement")
    commit_checkpoint(config, "review")

    assert _git(tmp_path, "log", "-2", "--format=%s").splitlines() == [
        "chore(review): checkpoint",
        "chore(implement): checkpoint",
    ]
    tracked = _git(tmp_path, "ls-files").splitlines()
    assert "feature.py" in tracked
    assert not any(path.startswith(".taskherd/") for path in tracked)
