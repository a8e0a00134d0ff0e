"""Taskherd data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_float(value: Any, *, default: float) -> float:
    try:
        return float(value)
    except Exception:
        return default


def _coerce_non_negative_int(value: Any, *, default: int) -> int:
    try:
        parsed = int(value)
    except Exception:
        return default
    return parsed if parsed >= 0 else default


class TaskherdError(RuntimeError):
    """Base class for every error the engine raises on purpose."""


class ConfigurationError(TaskherdError):
    """Raised when the pipeline configuration is invalid."""


class GitStateError(TaskherdError):
    """Raised when the repository is not in a state the engine can work from."""


class CheckpointCommitError(GitStateError):
    """Raised when a checkpoint commit cannot be created."""


class AgentProcessFailure(TaskherdError):
    def __init__(
        self,
        message: str,
        *,
        log_path: Path | None = None,
        reasoning_log_path: Path | None = None,
        exit_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.log_path = log_path
        self.reasoning_log_path = reasoning_log_path
        self.exit_code = exit_code


class CheckFailure(TaskherdError):
    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class RateLimitReached(TaskherdError):
    def __init__(self, message: str, *, reset_at: datetime) -> None:
        super().__init__(message)
        self.reset_at = reset_at


class HumanInterventionRequested(Exception):
    """Control-flow signal: the agent asked a question and is waiting for a human."""

    def __init__(self, question: str) -> None:
        super().__init__("Human intervention is required.")
        self.question = question


class TaskInterrupted(TaskherdError):
    """Raised when the user interrupts a running task.

    ``outcome`` carries whatever the agent reported before it was stopped.
    """

    def __init__(self, message: str, *, outcome: AgentOutcome | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class InterruptedWhileWaiting(TaskInterrupted):
    """Raised when the user cancels a human-answer wait; the task stays parked."""


@dataclass(frozen=True)
class CheckSpec:
    type: str
    path: str = ""
    command: str = ""
    expect: str = "pass"


@dataclass(frozen=True)
class CheckResult:
    success: bool
    output: str = ""


@dataclass(frozen=True)
class PipelineStepConfig:
    name: str
    command: str
    checks: tuple[CheckSpec, ...]
    retry: int = 0
    model: str = ""
    allow_write: tuple[str, ...] = ()


@dataclass(frozen=True)
class AgentConfig:
    command: str
    timeout_seconds: float


@dataclass(frozen=True)
class EngineConfig:
    project_root: Path
    pipelines: dict[str, tuple[PipelineStepConfig, ...]]
    default_pipeline: str
    agent: AgentConfig
    task_folder: str
    state_path: str
    logs_path: str
    steps_path: str
    manage_git_branch: bool = True
    auto_commit: bool = True
    main_branch: str = "main"
    remote: str = "origin"
    branch_prefix: str = "taskherd"
    wait_for_rate_limit_reset: bool = False
    autonomy_level: int = 0
    answer_poll_interval_seconds: float = 1.0

    @property
    def state_dir(self) -> Path:
        return self.project_root / self.state_path

    @property
    def logs_dir(self) -> Path:
        return self.project_root / self.logs_path

    @property
    def steps_dir(self) -> Path:
        return self.project_root / self.steps_path


@dataclass(frozen=True)
class AgentOutcome:
    """Classified result of one agent invocation."""

    kind: str  # "success" | "failure" | "intervention" | "rate_limit"
    exit_code: int
    output: str
    model: str
    token_usage: dict[str, int] = field(default_factory=dict)
    question: str = ""
    reset_timestamp: float | None = None
    log_path: Path | None = None
    reasoning_log_path: Path | None = None


@dataclass(frozen=True)
class StepLogPaths:
    log: Path
    reasoning: Path
    raw_json: Path


@dataclass(frozen=True)
class TaskDocument:
    body: str
    pipeline: str = ""
    autonomy_level: int | None = None


@dataclass(frozen=True)
class StepRun:
    """Where one step execution reads and writes: its task record, logs, and parent sequence."""

    task_id: str
    pipeline_name: str
    state_path: Path
    log_paths: StepLogPaths
    sequence_id: str | None = None
