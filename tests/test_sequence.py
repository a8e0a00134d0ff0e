from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

import taskherd.executor as executor
import taskherd.sequence as sequence_mod
from taskherd.interaction import HumanInteractionCoordinator
from taskherd.models import (
    AgentConfig,
    AgentOutcome,
    CheckFailure,
    CheckSpec,
    ConfigurationError,
    EngineConfig,
    PipelineStepConfig,
)
from taskherd.sequence import _list_task_files, run_sequence
from taskherd.state import _sequence_state_path, _task_state_path, read_sequence_state, read_task_state

SEQUENCE_ID = "sequence-sprint"


def _make_config(root: Path, checks: tuple[CheckSpec, ...] = (CheckSpec(type="none"),)) -> EngineConfig:
    config = EngineConfig(
        project_root=root,
        pipelines={"default": (PipelineStepConfig(name="implement", command="implement", checks=checks),)},
        default_pipeline="default",
        agent=AgentConfig(command="fake-agent", timeout_seconds=0),
        task_folder="tasks",
        state_path=".taskherd/state",
        logs_path=".taskherd/logs",
        steps_path=".taskherd/steps",
        auto_commit=False,
        answer_poll_interval_seconds=0.01,
    )
    config.steps_dir.mkdir(parents=True, exist_ok=True)
    (config.steps_dir / "implement.md").write_text("Implement the task.", encoding="utf-8")
    return config


def _sprint(root: Path, *names: str) -> Path:
    folder = root / "tasks" / "sprint"
    folder.mkdir(parents=True, exist_ok=True)
    for name in names:
        (folder / name).write_text(f"# {name}\n", encoding="utf-8")
    return folder


def _coordinator(config: EngineConfig) -> HumanInteractionCoordinator:
    return HumanInteractionCoordinator(config, input_stream=io.StringIO(), output_stream=io.StringIO())


class _SprintAgent:
    def __init__(self, folder: Path, on_task=None) -> None:
        self.folder = folder
        self.on_task = on_task or {}
        self.task_ids: list[str] = []
        self.prompts: list[str] = []

    def __call__(self, config, *, prompt, step, log_paths, env_overrides=None, echo=None) -> AgentOutcome:
        task_id = (env_overrides or {})["TASKHERD_TASK_ID"]
        self.task_ids.append(task_id)
        self.prompts.append(prompt)
        action = self.on_task.get(task_id)
        if action is not None:
            action(self.folder)
        return AgentOutcome(
            kind="success",
            exit_code=0,
            output="ok",
            model="claude-sonnet",
            token_usage={"inputTokens": 17, "outputTokens": 8},
        )


@pytest.fixture(autouse=True)
def no_branch_switch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        sequence_mod, "ensure_sequence_branch", lambda config, sequence_id: f"taskherd/{sequence_id}"
    )


def test_sequence_runs_tasks_in_name_order_and_picks_up_new_files(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    folder = _sprint(tmp_path, "01-a.md", "03-c.md")
    config = _make_config(tmp_path)

    def _add_follow_up(sprint: Path) -> None:
        (sprint / "02-b.md").write_text("# follow-up\n", encoding="utf-8")

    agent = _SprintAgent(folder, on_task={"task-tasks-sprint-01-a": _add_follow_up})
    monkeypatch.setattr(executor, "invoke_agent", agent)

    final_state = run_sequence(config, folder, coordinator=_coordinator(config))

    assert agent.task_ids == [
        "task-tasks-sprint-01-a",
        "task-tasks-sprint-02-b",
        "task-tasks-sprint-03-c",
    ]
    assert final_state["phase"] == "done"
    assert final_state["branch"] == f"taskherd/{SEQUENCE_ID}"
    assert final_state["completedTasks"] == [
        "tasks/sprint/01-a.md",
        "tasks/sprint/02-b.md",
        "tasks/sprint/03-c.md",
    ]
    assert final_state["currentTaskPath"] is None
    assert 'running a task from the folder "tasks/sprint"' in agent.prompts[0]


def test_sequence_aggregates_task_token_usage(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    folder = _sprint(tmp_path, "01-a.md", "02-b.md")
    config = _make_config(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", _SprintAgent(folder))

    final_state = run_sequence(config, folder, coordinator=_coordinator(config))

    usage = final_state["stats"]["totalTokenUsage"]["claude-sonnet"]
    assert usage["inputTokens"] == 34
    assert usage["outputTokens"] == 16
    task_state = read_task_state(_task_state_path(config, "task-tasks-sprint-01-a"))
    assert task_state["parentSequenceId"] == SEQUENCE_ID
    assert task_state["branch"] == f"taskherd/{SEQUENCE_ID}"


def test_failed_task_halts_the_sequence(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    folder = _sprint(tmp_path, "01-a.md", "02-b.md")
    config = _make_config(tmp_path, checks=(CheckSpec(type="fileExists", path="never.txt"),))
    agent = _SprintAgent(folder)
    monkeypatch.setattr(executor, "invoke_agent", agent)

    with pytest.raises(CheckFailure):
        run_sequence(config, folder, coordinator=_coordinator(config))

    state = read_sequence_state(_sequence_state_path(config, SEQUENCE_ID))
    assert agent.task_ids == ["task-tasks-sprint-01-a"]
    assert state["phase"] == "failed"
    assert state["completedTasks"] == []
    assert state["currentTaskPath"] == "tasks/sprint/01-a.md"
    journal = json.loads((config.state_dir / "run-journal.json").read_text(encoding="utf-8"))
    assert (journal[-1]["eventType"], journal[-1]["status"]) == ("sequence_finished", "failed")


def test_rerun_skips_completed_tasks(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    folder = _sprint(tmp_path, "01-a.md", "02-b.md")
    config = _make_config(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", _SprintAgent(folder))
    run_sequence(config, folder, coordinator=_coordinator(config))

    (folder / "03-c.md").write_text("# late addition\n", encoding="utf-8")
    agent = _SprintAgent(folder)
    monkeypatch.setattr(executor, "invoke_agent", agent)
    run_sequence(config, folder, coordinator=_coordinator(config))

    assert agent.task_ids == ["task-tasks-sprint-03-c"]


def test_missing_or_empty_folder_is_rejected(tmp_path: Path) -> None:
    config = _make_config(tmp_path)
    empty = tmp_path / "tasks" / "empty"
    empty.mkdir(parents=True)
    (empty / "_draft.md").write_text("draft", encoding="utf-8")

    with pytest.raises(ConfigurationError, match="not found"):
        run_sequence(config, tmp_path / "tasks" / "nope")
    with pytest.raises(ConfigurationError, match="no task files"):
        run_sequence(config, empty)


def test_list_task_files_skips_underscore_and_non_markdown(tmp_path: Path) -> None:
    folder = _sprint(tmp_path, "10-z.md", "02-b.md", "_notes.md", "readme.txt")
    (folder / "nested.md").mkdir()

    assert [path.name for path in _list_task_files(folder)] == ["02-b.md", "10-z.md"]
