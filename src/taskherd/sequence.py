from __future__ import annotations

from pathlib import Path
from typing import Any

from taskherd.branches import ensure_sequence_branch
from taskherd.constants import TASK_FILE_SUFFIX
from taskherd.interaction import HumanInteractionCoordinator
from taskherd.models import ConfigurationError, EngineConfig, TaskherdError, TaskInterrupted
from taskherd.pipeline import run_task
from taskherd.state import (
    _empty_stats,
    _finalize_stats,
    _log_journal_event,
    _merge_usage_tables,
    _sequence_state_path,
    _task_state_path,
    read_sequence_state,
    read_task_state,
    update_sequence_state,
)
from taskherd.utils import (
    _announce,
    _relative_posix,
    _seconds_since,
    folder_path_to_sequence_id,
    task_path_to_task_id,
)


def _list_task_files(folder: Path) -> list[Path]:
    """Task files in *folder*, by file name; names starting with ``_`` are skipped."""
    return sorted(
        (
            path
            for path in folder.iterdir()
            if path.is_file()
            and path.suffix == TASK_FILE_SUFFIX
            and not path.name.startswith("_")
        ),
        key=lambda path: path.name,
    )


def _next_task(config: EngineConfig, folder: Path, completed: list[str]) -> Path | None:
    done = set(completed)
    for path in _list_task_files(folder):
        if _relative_posix(path, config.project_root) not in done:
            return path
    return None


def run_sequence(
    config: EngineConfig,
    folder_path: str | Path,
    *,
    coordinator: HumanInteractionCoordinator | None = None,
) -> dict[str, Any]:
    """Run the task files in *folder_path* one at a time on one branch.

    The folder is re-listed after every finished task, so a task may add
    later tasks to the same sequence.
    """
    folder = Path(folder_path).resolve()
    if not folder.is_dir():
        raise ConfigurationError(f"sequence folder not found: {folder}")
    if not _list_task_files(folder):
        raise ConfigurationError(f"no task files found in {folder}")

    root = config.project_root
    sequence_id = folder_path_to_sequence_id(folder)
    state_path = _sequence_state_path(config, sequence_id)
    folder_label = _relative_posix(folder, root)
    branch = ensure_sequence_branch(config, sequence_id)
    coordinator = coordinator or HumanInteractionCoordinator(config)

    def _start(state: dict[str, Any]) -> None:
        state["sequenceId"] = sequence_id
        state["folderPath"] = folder_label
        state["branch"] = branch
        state["phase"] = "running"

    update_sequence_state(state_path, _start, sequence_id=sequence_id)
    _log_journal_event(config, "sequence_started", id=sequence_id)
    _announce(root, f"starting sequence {sequence_id} on branch '{branch}'", logs_path=config.logs_path)

    while True:
        completed = read_sequence_state(state_path, sequence_id)["completedTasks"]
        task_path = _next_task(config, folder, completed)
        if task_path is None:
            break
        relative_task = _relative_posix(task_path, root)

        def _current(state: dict[str, Any]) -> None:
            state["currentTaskPath"] = relative_task
            state["phase"] = "running"

        update_sequence_state(state_path, _current, sequence_id=sequence_id)
        _announce(root, f"sequence {sequence_id}: running {relative_task}", logs_path=config.logs_path)

        try:
            run_task(
                config,
                task_path,
                sequence_id=sequence_id,
                sequence_folder=folder_label,
                branch=branch,
                coordinator=coordinator,
            )
        except TaskInterrupted:
            update_sequence_state(
                state_path, lambda state: state.update(phase="interrupted"), sequence_id=sequence_id
            )
            _log_journal_event(config, "sequence_finished", id=sequence_id, status="interrupted")
            raise
        except TaskherdError:
            update_sequence_state(
                state_path, lambda state: state.update(phase="failed"), sequence_id=sequence_id
            )
            _log_journal_event(config, "sequence_finished", id=sequence_id, status="failed")
            raise

        task_state = read_task_state(
            _task_state_path(config, task_path_to_task_id(task_path, root))
        )

        def _record_success(state: dict[str, Any]) -> None:
            if relative_task not in state["completedTasks"]:
                state["completedTasks"].append(relative_task)
            stats = state.get("stats")
            if not isinstance(stats, dict):
                stats = _empty_stats()
                state["stats"] = stats
            _merge_usage_tables(
                stats.setdefault("totalTokenUsage", {}), task_state.get("tokenUsage") or {}
            )

        update_sequence_state(state_path, _record_success, sequence_id=sequence_id)

    def _complete(state: dict[str, Any]) -> None:
        state["phase"] = "done"
        state["currentTaskPath"] = None
        _finalize_stats(state, _seconds_since(state.get("startTime", "")))
        state["stats"].setdefault("totalTokenUsage", {})

    final_state = update_sequence_state(state_path, _complete, sequence_id=sequence_id)
    _log_journal_event(config, "sequence_finished", id=sequence_id, status="done")
    _announce(root, f"sequence {sequence_id} completed", logs_path=config.logs_path)
    return final_state
