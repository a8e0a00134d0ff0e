from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator

from taskherd.constants import (
    CHECK_EXPECTATIONS,
    CHECK_TYPES,
    CONFIG_DIR_NAME,
    CONFIG_FILE_NAME,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_ANSWER_POLL_INTERVAL_SECONDS,
    DEFAULT_AUTONOMY_LEVEL,
    DEFAULT_BRANCH_PREFIX,
    DEFAULT_LOGS_PATH,
    DEFAULT_MAIN_BRANCH,
    DEFAULT_PIPELINE_NAME,
    DEFAULT_REMOTE,
    DEFAULT_STATE_PATH,
    DEFAULT_STEPS_PATH,
    DEFAULT_TASK_FOLDER,
    MAX_AUTONOMY_LEVEL,
)
from taskherd.models import (
    AgentConfig,
    CheckSpec,
    ConfigurationError,
    EngineConfig,
    PipelineStepConfig,
    _coerce_bool,
    _coerce_float,
    _coerce_non_negative_int,
)
from taskherd.utils import _command_uses_shell_syntax

_CHECK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["type"],
    "properties": {
        "type": {"enum": list(CHECK_TYPES)},
        "path": {"type": "string", "minLength": 1},
        "command": {"type": "string", "minLength": 1},
        "expect": {"enum": list(CHECK_EXPECTATIONS)},
    },
    "allOf": [
        {
            "if": {"properties": {"type": {"const": "fileExists"}}},
            "then": {"required": ["path"]},
        },
        {
            "if": {"properties": {"type": {"const": "shell"}}},
            "then": {"required": ["command"]},
        },
    ],
}

_STEP_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["name", "command", "check"],
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "command": {"type": "string", "minLength": 1},
        "check": {
            "oneOf": [
                _CHECK_SCHEMA,
                {"type": "array", "minItems": 1, "items": _CHECK_SCHEMA},
            ]
        },
        "retry": {"type": "integer", "minimum": 0},
        "model": {"type": "string"},
        "file_access": {
            "type": "object",
            "properties": {
                "allow_write": {"type": "array", "items": {"type": "string"}},
            },
        },
    },
}

CONFIG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "task_folder": {"type": "string"},
        "state_path": {"type": "string", "minLength": 1},
        "logs_path": {"type": "string", "minLength": 1},
        "steps_path": {"type": "string", "minLength": 1},
        "manage_git_branch": {"type": "boolean"},
        "auto_commit": {"type": "boolean"},
        "main_branch": {"type": "string", "minLength": 1},
        "remote": {"type": "string"},
        "branch_prefix": {"type": "string", "minLength": 1},
        "wait_for_rate_limit_reset": {"type": "boolean"},
        "autonomy_level": {"type": "integer", "minimum": 0, "maximum": MAX_AUTONOMY_LEVEL},
        "answer_poll_interval_seconds": {"type": "number", "exclusiveMinimum": 0},
        "default_pipeline": {"type": "string"},
        "agent": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "minLength": 1},
                "timeout_seconds": {"type": "number", "minimum": 0},
            },
        },
        "pipelines": {
            "type": "object",
            "minProperties": 1,
            "additionalProperties": {"type": "array", "minItems": 1, "items": _STEP_SCHEMA},
        },
        "pipeline": {"type": "array", "minItems": 1, "items": _STEP_SCHEMA},
    },
    "anyOf": [{"required": ["pipelines"]}, {"required": ["pipeline"]}],
}


def _find_project_root(start: Path) -> Path | None:
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / CONFIG_DIR_NAME / CONFIG_FILE_NAME).exists():
            return candidate
    return None


def _resolve_project_root(explicit: str | Path | None = None) -> Path:
    if explicit:
        return Path(explicit).expanduser().resolve()
    found = _find_project_root(Path.cwd())
    if found is None:
        raise ConfigurationError(
            f"could not find {CONFIG_DIR_NAME}/{CONFIG_FILE_NAME} in the current directory or any parent"
        )
    return found


def _load_raw_config(project_root: Path) -> dict[str, Any]:
    config_path = project_root / CONFIG_DIR_NAME / CONFIG_FILE_NAME
    if not config_path.exists():
        raise ConfigurationError(f"configuration file not found at {config_path}")
    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"configuration could not be parsed at {config_path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"configuration at {config_path} must be a mapping")
    return loaded


def _schema_errors(raw: dict[str, Any]) -> list[str]:
    validator = Draft202012Validator(CONFIG_SCHEMA)
    messages: list[str] = []
    for error in sorted(validator.iter_errors(raw), key=lambda item: list(item.absolute_path)):
        location = ".".join(str(part) for part in error.absolute_path) or "<root>"
        messages.append(f"{location}: {error.message}")
    return messages


def _parse_check(raw: dict[str, Any]) -> CheckSpec:
    return CheckSpec(
        type=str(raw["type"]),
        path=str(raw.get("path", "")).strip(),
        command=str(raw.get("command", "")).strip(),
        expect=str(raw.get("expect", "pass")),
    )


def _parse_step(raw: dict[str, Any]) -> PipelineStepConfig:
    raw_check = raw["check"]
    raw_checks = raw_check if isinstance(raw_check, list) else [raw_check]
    file_access = raw.get("file_access") or {}
    allow_write = tuple(
        str(pattern).strip()
        for pattern in (file_access.get("allow_write") or [])
        if str(pattern).strip()
    )
    return PipelineStepConfig(
        name=str(raw["name"]).strip(),
        command=str(raw["command"]).strip(),
        checks=tuple(_parse_check(entry) for entry in raw_checks),
        retry=_coerce_non_negative_int(raw.get("retry", 0), default=0),
        model=str(raw.get("model") or "").strip(),
        allow_write=allow_write,
    )


def _parse_pipelines(raw: dict[str, Any]) -> dict[str, tuple[PipelineStepConfig, ...]]:
    raw_pipelines = raw.get("pipelines") or {}
    if not raw_pipelines and raw.get("pipeline"):
        raw_pipelines = {DEFAULT_PIPELINE_NAME: raw["pipeline"]}

    pipelines: dict[str, tuple[PipelineStepConfig, ...]] = {}
    for pipeline_name, raw_steps in raw_pipelines.items():
        steps = tuple(_parse_step(entry) for entry in raw_steps)
        seen: set[str] = set()
        for step in steps:
            if step.name in seen:
                raise ConfigurationError(
                    f"pipeline '{pipeline_name}' defines step '{step.name}' more than once"
                )
            seen.add(step.name)
        pipelines[str(pipeline_name)] = steps
    return pipelines


def _parse_agent_config(raw: dict[str, Any]) -> AgentConfig:
    agent = raw.get("agent") or {}
    command = str(agent.get("command") or DEFAULT_AGENT_COMMAND).strip()
    if _command_uses_shell_syntax(command):
        raise ConfigurationError(
            "agent.command contains shell metacharacters; "
            "configure an argv-safe command without pipes/subshell syntax"
        )
    try:
        argv = shlex.split(command)
    except ValueError as exc:
        raise ConfigurationError(f"agent.command could not be parsed: {exc}") from exc
    if not argv:
        raise ConfigurationError("agent.command resolved to empty arguments")
    return AgentConfig(
        command=command,
        timeout_seconds=_coerce_float(
            agent.get("timeout_seconds", DEFAULT_AGENT_TIMEOUT_SECONDS),
            default=DEFAULT_AGENT_TIMEOUT_SECONDS,
        ),
    )


def parse_engine_config(raw: dict[str, Any], project_root: Path) -> EngineConfig:
    """Validate a raw configuration mapping and build the typed ``EngineConfig``."""
    errors = _schema_errors(raw)
    if errors:
        raise ConfigurationError("invalid configuration:\n  " + "\n  ".join(errors))

    pipelines = _parse_pipelines(raw)
    default_pipeline = str(raw.get("default_pipeline") or "").strip()
    if default_pipeline and default_pipeline not in pipelines:
        raise ConfigurationError(
            f"default_pipeline '{default_pipeline}' is not defined. Available: {', '.join(pipelines)}"
        )

    return EngineConfig(
        project_root=project_root,
        pipelines=pipelines,
        default_pipeline=default_pipeline,
        agent=_parse_agent_config(raw),
        task_folder=str(raw.get("task_folder", DEFAULT_TASK_FOLDER)),
        state_path=str(raw.get("state_path", DEFAULT_STATE_PATH)),
        logs_path=str(raw.get("logs_path", DEFAULT_LOGS_PATH)),
        steps_path=str(raw.get("steps_path", DEFAULT_STEPS_PATH)),
        manage_git_branch=_coerce_bool(raw.get("manage_git_branch"), default=True),
        auto_commit=_coerce_bool(raw.get("auto_commit"), default=True),
        main_branch=str(raw.get("main_branch", DEFAULT_MAIN_BRANCH)),
        remote=str(raw.get("remote", DEFAULT_REMOTE)),
        branch_prefix=str(raw.get("branch_prefix", DEFAULT_BRANCH_PREFIX)).strip("/"),
        wait_for_rate_limit_reset=_coerce_bool(
            raw.get("wait_for_rate_limit_reset"), default=False
        ),
        autonomy_level=_coerce_non_negative_int(
            raw.get("autonomy_level", DEFAULT_AUTONOMY_LEVEL), default=DEFAULT_AUTONOMY_LEVEL
        ),
        answer_poll_interval_seconds=_coerce_float(
            raw.get("answer_poll_interval_seconds", DEFAULT_ANSWER_POLL_INTERVAL_SECONDS),
            default=DEFAULT_ANSWER_POLL_INTERVAL_SECONDS,
        ),
    )


def load_engine_config(project_root: str | Path | None = None) -> EngineConfig:
    root = _resolve_project_root(project_root)
    return parse_engine_config(_load_raw_config(root), root)


def _resolve_pipeline_name(
    config: EngineConfig,
    *,
    option: str = "",
    task_preference: str = "",
) -> tuple[str, str]:
    """Return ``(pipeline_name, source)`` by priority: option, task, configured default, first."""
    for candidate, source in (
        (option, "option"),
        (task_preference, "task frontmatter"),
        (config.default_pipeline, "default"),
    ):
        name = str(candidate or "").strip()
        if not name:
            continue
        if name not in config.pipelines:
            raise ConfigurationError(
                f"pipeline '{name}' not found. Available: {', '.join(config.pipelines)}"
            )
        return name, source
    return next(iter(config.pipelines)), "first defined"
