from __future__ import annotations

from pathlib import Path
from typing import Any

from taskherd.branches import ensure_task_branch
from taskherd.config import _resolve_pipeline_name
from taskherd.executor import execute_step
from taskherd.interaction import HumanInteractionCoordinator
from taskherd.models import (
    ConfigurationError,
    EngineConfig,
    StepLogPaths,
    StepRun,
    TaskherdError,
    TaskInterrupted,
)
from taskherd.prompts import build_step_prompt
from taskherd.state import (
    _finalize_stats,
    _log_journal_event,
    _task_state_path,
    read_task_state,
    update_task_state,
)
from taskherd.utils import (
    _announce,
    _relative_posix,
    _seconds_since,
    parse_task_document,
    task_path_to_task_id,
)


def _step_log_paths(logs_dir: Path, index: int, step_name: str) -> StepLogPaths:
    stem = f"{index + 1:02d}-{step_name}"
    return StepLogPaths(
        log=logs_dir / f"{stem}.log",
        reasoning=logs_dir / f"{stem}.reasoning.log",
        raw_json=logs_dir / f"{stem}.raw.json.log",
    )


def run_task(
    config: EngineConfig,
    task_path: str | Path,
    *,
    pipeline_option: str = "",
    sequence_id: str | None = None,
    sequence_folder: str = "",
    branch: str | None = None,
    coordinator: HumanInteractionCoordinator | None = None,
) -> dict[str, Any]:
    """Run every not-yet-done step of the task at *task_path* and return its final record.

    When *branch* is given the caller owns the git branch (sequence runs);
    otherwise the task's own branch is ensured first.
    """
    path = Path(task_path).resolve()
    if not path.is_file():
        raise ConfigurationError(f"task file not found: {path}")
    root = config.project_root
    document = parse_task_document(path.read_text(encoding="utf-8"))
    pipeline_name, source = _resolve_pipeline_name(
        config, option=pipeline_option, task_preference=document.pipeline
    )
    pipeline = config.pipelines[pipeline_name]
    autonomy_level = (
        document.autonomy_level if document.autonomy_level is not None else config.autonomy_level
    )
    _announce(root, f"using pipeline '{pipeline_name}' ({source})", logs_path=config.logs_path)

    task_id = task_path_to_task_id(path, root)
    state_path = _task_state_path(config, task_id)
    active_branch = branch if branch is not None else ensure_task_branch(config, path)

    def _initialize(state: dict[str, Any]) -> None:
        state["taskId"] = task_id
        state["taskPath"] = _relative_posix(path, root)
        state["pipelineName"] = pipeline_name
        state["branch"] = active_branch
        if sequence_id:
            state["parentSequenceId"] = sequence_id
        steps = state.setdefault("steps", {})
        for step in pipeline:
            steps.setdefault(step.name, "pending")

    update_task_state(state_path, _initialize, task_id=task_id)
    _log_journal_event(config, "task_started", id=task_id, parentId=sequence_id)

    logs_dir = config.logs_dir / task_id
    logs_dir.mkdir(parents=True, exist_ok=True)
    coordinator = coordinator or HumanInteractionCoordinator(config)

    try:
        for index, step in enumerate(pipeline):
            state = read_task_state(state_path, task_id)
            if state["steps"].get(step.name) == "done":
                _announce(root, f"skipping '{step.name}' (already done)", logs_path=config.logs_path)
                continue
            prompt = build_step_prompt(
                config,
                pipeline=pipeline,
                step_index=index,
                task_body=document.body,
                state=state,
                autonomy_level=autonomy_level,
                sequence_folder=sequence_folder,
            )
            execute_step(
                config,
                step,
                prompt=prompt,
                run=StepRun(
                    task_id=task_id,
                    pipeline_name=pipeline_name,
                    state_path=state_path,
                    log_paths=_step_log_paths(logs_dir, index, step.name),
                    sequence_id=sequence_id,
                ),
                coordinator=coordinator,
            )
    except TaskInterrupted:
        _log_journal_event(config, "task_finished", id=task_id, parentId=sequence_id, status="interrupted")
        raise
    except TaskherdError:
        _log_journal_event(config, "task_finished", id=task_id, parentId=sequence_id, status="failed")
        raise

    def _complete(state: dict[str, Any]) -> None:
        state["phase"] = "done"
        state["currentStep"] = ""
        _finalize_stats(state, _seconds_since(state.get("startTime", "")))

    final_state = update_task_state(state_path, _complete, task_id=task_id)
    _log_journal_event(config, "task_finished", id=task_id, parentId=sequence_id, status="done")
    _announce(root, f"task {task_id}: all steps completed", logs_path=config.logs_path)
    return final_state
