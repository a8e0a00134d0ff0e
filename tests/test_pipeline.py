from __future__ import annotations

import io
import json
import shutil
import subprocess
from pathlib import Path

import pytest

import taskherd.executor as executor
import taskherd.pipeline as pipeline_mod
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
from taskherd.pipeline import run_task
from taskherd.state import _task_state_path, read_task_state, update_task_state

TASK_ID = "task-tasks-01-login"


def _steps(*names: str, retry: int = 0, checks: tuple[CheckSpec, ...] = (CheckSpec(type="none"),)):
    return tuple(PipelineStepConfig(name=name, command=name, checks=checks, retry=retry) for name in names)


def _make_config(root: Path, pipelines: dict, **overrides) -> EngineConfig:
    values = dict(
        project_root=root,
        pipelines=pipelines,
        default_pipeline="default",
        agent=AgentConfig(command="fake-agent", timeout_seconds=0),
        task_folder="tasks",
        state_path=".taskherd/state",
        logs_path=".taskherd/logs",
        steps_path=".taskherd/steps",
        auto_commit=False,
        manage_git_branch=False,
        answer_poll_interval_seconds=0.01,
    )
    values.update(overrides)
    config = EngineConfig(**values)
    config.steps_dir.mkdir(parents=True, exist_ok=True)
    for steps in pipelines.values():
        for step in steps:
            (config.steps_dir / f"{step.command}.md").write_text(
                f"Instructions for {step.name}.", encoding="utf-8"
            )
    return config


def _write_task(root: Path, content: str = "# Add login\n\nBuild the login form.\n") -> Path:
    path = root / "tasks" / "01-login.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _coordinator(config: EngineConfig) -> HumanInteractionCoordinator:
    return HumanInteractionCoordinator(config, input_stream=io.StringIO(), output_stream=io.StringIO())


class _RecordingAgent:
    def __init__(self, root: Path, on_step=None) -> None:
        self.root = root
        self.on_step = on_step or {}
        self.calls: list[tuple[str, str]] = []

    def __call__(self, config, *, prompt, step, log_paths, env_overrides=None, echo=None) -> AgentOutcome:
        self.calls.append((step.name, prompt))
        action = self.on_step.get(step.name)
        if action is not None:
            action(self.root, sum(1 for name, _ in self.calls if name == step.name))
        return AgentOutcome(
            kind="success",
            exit_code=0,
            output="ok",
            model="claude-sonnet",
            token_usage={"inputTokens": 2, "outputTokens": 1},
        )


@pytest.fixture
def no_branch_switch(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(pipeline_mod, "ensure_task_branch", lambda _config, _path: "taskherd/tasks-01-login")


def test_run_task_skips_steps_already_done(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch) -> None:
    config = _make_config(tmp_path, {"default": _steps("a", "b", "c")})
    task = _write_task(tmp_path)

    def _resume_point(state: dict) -> None:
        state["steps"] = {"a": "done", "b": "done", "c": "failed"}
        state["phase"] = "failed"

    update_task_state(_task_state_path(config, TASK_ID), _resume_point, task_id=TASK_ID)
    agent = _RecordingAgent(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", agent)

    final_state = run_task(config, task, coordinator=_coordinator(config))

    assert [name for name, _prompt in agent.calls] == ["c"]
    assert final_state["phase"] == "done"
    assert final_state["steps"] == {"a": "done", "b": "done", "c": "done"}
    assert final_state["currentStep"] == ""
    assert final_state["branch"] == "taskherd/tasks-01-login"
    assert final_state["stats"]["totalDurationExcludingPauses"] >= 0


def test_task_frontmatter_selects_pipeline_and_autonomy(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch
) -> None:
    config = _make_config(tmp_path, {"default": _steps("plan"), "docs": _steps("write-docs")})
    task = _write_task(tmp_path, "---\npipeline: docs\nautonomyLevel: 5\n---\n# Document the API\n")
    agent = _RecordingAgent(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", agent)

    final_state = run_task(config, task, coordinator=_coordinator(config))

    assert final_state["pipelineName"] == "docs"
    assert [name for name, _prompt in agent.calls] == ["write-docs"]
    prompt = agent.calls[0][1]
    assert "Work in guided mode." in prompt
    assert "--- TASK DEFINITION ---\n# Document the API" in prompt
    assert '--- YOUR INSTRUCTIONS FOR THE "write-docs" STEP ---\nInstructions for write-docs.' in prompt


def test_pipeline_option_overrides_frontmatter(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch
) -> None:
    config = _make_config(tmp_path, {"default": _steps("plan"), "docs": _steps("write-docs")})
    task = _write_task(tmp_path, "---\npipeline: docs\n---\nBody\n")
    agent = _RecordingAgent(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", agent)

    run_task(config, task, pipeline_option="default", coordinator=_coordinator(config))

    assert [name for name, _prompt in agent.calls] == ["plan"]


def test_plan_content_reaches_later_steps(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch) -> None:
    config = _make_config(tmp_path, {"default": _steps("plan", "implement")})
    task = _write_task(tmp_path)

    def _write_plan(root: Path, _call: int) -> None:
        (root / "PLAN.md").write_text("1. Add a form\n2. Wire the endpoint\n", encoding="utf-8")

    agent = _RecordingAgent(tmp_path, on_step={"plan": _write_plan})
    monkeypatch.setattr(executor, "invoke_agent", agent)

    run_task(config, task, coordinator=_coordinator(config))

    plan_prompt = dict(agent.calls)["plan"]
    implement_prompt = dict(agent.calls)["implement"]
    assert "--- PLAN CONTENT ---" not in plan_prompt
    assert "--- PLAN CONTENT ---\n1. Add a form\n2. Wire the endpoint" in implement_prompt
    assert "This is the full pipeline for your awareness:\n1. plan\n2. implement" in implement_prompt


def test_missing_step_instructions_fail_the_task(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch
) -> None:
    config = _make_config(tmp_path, {"default": _steps("plan")})
    (config.steps_dir / "plan.md").unlink()
    task = _write_task(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", _RecordingAgent(tmp_path))

    with pytest.raises(ConfigurationError, match="instructions for step 'plan' not found"):
        run_task(config, task, coordinator=_coordinator(config))

    journal = json.loads((config.state_dir / "run-journal.json").read_text(encoding="utf-8"))
    assert journal[-1]["eventType"] == "task_finished"
    assert journal[-1]["status"] == "failed"


def test_failed_step_stops_the_pipeline(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, no_branch_switch) -> None:
    failing = (CheckSpec(type="fileExists", path="never.txt"),)
    config = _make_config(
        tmp_path,
        {"default": (*_steps("plan"), *_steps("implement", checks=failing), *_steps("review"))},
    )
    task = _write_task(tmp_path)
    agent = _RecordingAgent(tmp_path)
    monkeypatch.setattr(executor, "invoke_agent", agent)

    with pytest.raises(CheckFailure):
        run_task(config, task, coordinator=_coordinator(config))

    state = read_task_state(_task_state_path(config, TASK_ID))
    assert [name for name, _prompt in agent.calls] == ["plan", "implement"]
    assert state["steps"] == {"plan": "done", "implement": "failed", "review": "pending"}
    assert state["phase"] == "failed"


def test_missing_task_file_is_a_configuration_error(tmp_path: Path) -> None:
    config = _make_config(tmp_path, {"default": _steps("plan")})

    with pytest.raises(ConfigurationError, match="task file not found"):
        run_task(config, tmp_path / "tasks" / "missing.md")


def _git(root: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=root, capture_output=True, text=True, check=True)
    return result.stdout.strip()


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_full_run_on_a_real_repository(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _git(tmp_path, "init", "-q")
    _git(tmp_path, "checkout", "-q", "-b", "main")
    _git(tmp_path, "config", "user.email", "dev@example.com")
    _git(tmp_path, "config", "user.name", "Dev")
    _git(tmp_path, "config", "commit.gpgsign", "false")
    task = _write_task(tmp_path)
    _git(tmp_path, "add", "tasks")
    _git(tmp_path, "commit", "-q", "-m", "add task")

    config = _make_config(
        tmp_path,
        {
            "default": (
                *_steps("plan", checks=(CheckSpec(type="fileExists", path="PLAN.md"),)),
                *_steps("implement", retry=2, checks=(CheckSpec(type="shell", command="test -f done.flag"),)),
            )
        },
        auto_commit=True,
        manage_git_branch=True,
    )

    def _write_plan(root: Path, _call: int) -> None:
        (root / "PLAN.md").write_text("plan", encoding="utf-8")

    def _implement(root: Path, call: int) -> None:
        if call == 3:
            (root / "done.flag").write_text("done", encoding="utf-8")

    agent = _RecordingAgent(tmp_path, on_step={"plan": _write_plan, "implement": _implement})
    monkeypatch.setattr(executor, "invoke_agent", agent)

    final_state = run_task(config, task, coordinator=_coordinator(config))

    assert final_state["phase"] == "done"
    assert final_state["branch"] == "taskherd/tasks-01-login"
    assert [name for name, _prompt in agent.calls] == ["plan", "implement", "implement", "implement"]
    assert _git(tmp_path, "branch", "--show-current") == "taskherd/tasks-01-login"
    subjects = _git(tmp_path, "log", "--format=%s").splitlines()
    assert subjects[:2] == ["chore(implement): checkpoint", "chore(plan): checkpoint"]
    tracked = _git(tmp_path, "ls-files").splitlines()
    assert "done.flag" in tracked
    assert not any(path.startswith(".taskherd/") for path in tracked)
    assert final_state["tokenUsage"]["claude-sonnet"]["inputTokens"] == 8
