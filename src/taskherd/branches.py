"""Taskherd git branch lifecycle: per-task branches and checkpoint commits."""

from __future__ import annotations

from pathlib import Path

from taskherd.constants import REMOTE_SYNC_TIMEOUT_SECONDS
from taskherd.models import CheckpointCommitError, EngineConfig, GitStateError
from taskherd.utils import (
    _announce,
    _append_log,
    _data_dir_pathspec,
    _git_detail,
    _run_git,
    task_path_to_task_id,
)


def task_branch_name(config: EngineConfig, task_path: Path) -> str:
    task_id = task_path_to_task_id(task_path, config.project_root)
    segment = task_id[len("task-"):] if task_id.startswith("task-") else task_id
    return f"{config.branch_prefix}/{segment}"


def sequence_branch_name(config: EngineConfig, sequence_id: str) -> str:
    return f"{config.branch_prefix}/{sequence_id}"


def _current_branch(project_root: Path) -> str:
    result = _run_git(project_root, ["branch", "--show-current"])
    if result.returncode != 0:
        raise GitStateError(
            f"could not determine the current branch: {_git_detail(result, 'git branch failed')}"
        )
    return result.stdout.strip()


def _working_tree_is_clean(project_root: Path) -> bool:
    result = _run_git(
        project_root, ["status", "--porcelain", "--", ".", _data_dir_pathspec()]
    )
    if result.returncode != 0:
        raise GitStateError(
            f"could not read working tree status: {_git_detail(result, 'git status failed')}"
        )
    return not result.stdout.strip()


def _sync_main_branch(config: EngineConfig) -> None:
    root = config.project_root
    if not config.remote:
        return
    remote = _run_git(root, ["remote", "get-url", config.remote])
    if remote.returncode != 0:
        _announce(
            root,
            f"no remote '{config.remote}' configured; proceeding with local '{config.main_branch}'",
            logs_path=config.logs_path,
        )
        return
    pull = _run_git(
        root,
        ["pull", config.remote, config.main_branch],
        timeout=REMOTE_SYNC_TIMEOUT_SECONDS,
    )
    if pull.returncode != 0:
        _announce(
            root,
            f"warning: could not sync '{config.main_branch}' from '{config.remote}' "
            f"({_git_detail(pull, 'git pull failed')}); proceeding with local branch",
            logs_path=config.logs_path,
        )


def _switch_to_branch(config: EngineConfig, branch: str) -> str:
    root = config.project_root
    current = _current_branch(root)
    if current == branch:
        _announce(root, f"resuming on existing branch '{branch}'", logs_path=config.logs_path)
        return branch

    if not _working_tree_is_clean(root):
        raise GitStateError(
            f"git working tree on branch '{current}' is not clean; commit or stash your changes first"
        )

    checkout_main = _run_git(root, ["checkout", config.main_branch])
    if checkout_main.returncode != 0:
        raise GitStateError(
            f"could not check out '{config.main_branch}'; the integration branch is required "
            f"for automatic branch management ({_git_detail(checkout_main, 'git checkout failed')})"
        )

    _sync_main_branch(config)

    existing = _run_git(root, ["branch", "--list", branch])
    if existing.returncode == 0 and existing.stdout.strip():
        _announce(root, f"branch '{branch}' already exists; checking it out", logs_path=config.logs_path)
        switch = _run_git(root, ["checkout", branch])
    else:
        _announce(root, f"creating branch '{branch}'", logs_path=config.logs_path)
        switch = _run_git(root, ["checkout", "-b", branch])
    if switch.returncode != 0:
        raise GitStateError(
            f"could not switch to branch '{branch}': {_git_detail(switch, 'git checkout failed')}"
        )
    return branch


def ensure_task_branch(config: EngineConfig, task_path: Path) -> str:
    """Put the repository on the task's branch and return its name.

    With branch management disabled the current branch is returned untouched.
    """
    if not config.manage_git_branch:
        current = _current_branch(config.project_root)
        _announce(
            config.project_root,
            f"branch management disabled; running on current branch '{current}'",
            logs_path=config.logs_path,
        )
        return current
    return _switch_to_branch(config, task_branch_name(config, task_path))


def ensure_sequence_branch(config: EngineConfig, sequence_id: str) -> str:
    if not config.manage_git_branch:
        return _current_branch(config.project_root)
    return _switch_to_branch(config, sequence_branch_name(config, sequence_id))


def commit_checkpoint(config: EngineConfig, step_name: str) -> None:
    root = config.project_root
    add = _run_git(root, ["add", "-A", "--", ".", _data_dir_pathspec()])
    if add.returncode != 0:
        detail = _git_detail(add, "git add failed")
        _append_log(root, f"checkpoint add failed step={step_name}: {detail}", logs_path=config.logs_path)
        raise CheckpointCommitError(f"could not stage changes for step '{step_name}': {detail}")

    message = f"chore({step_name}): checkpoint"
    commit = _run_git(root, ["commit", "--allow-empty", "-m", message])
    if commit.returncode != 0:
        detail = _git_detail(commit, "git commit failed")
        _append_log(root, f"checkpoint commit failed step={step_name}: {detail}", logs_path=config.logs_path)
        raise CheckpointCommitError(f"could not create checkpoint commit for step '{step_name}': {detail}")

    head = _run_git(root, ["rev-parse", "--short", "HEAD"])
    commit_id = head.stdout.strip() if head.returncode == 0 else "<unknown>"
    _append_log(root, f"checkpoint commit step={step_name} commit={commit_id}", logs_path=config.logs_path)
