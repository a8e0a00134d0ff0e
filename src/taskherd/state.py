"""Taskherd state store: task and sequence status records, answers, and the run journal.

Every mutation goes through ``update_task_state`` / ``update_sequence_state``,
which read the current record, apply a mutator, stamp ``lastUpdate`` and write
the result with ``_write_json_atomic``.  Nothing is cached between calls.
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Callable

from taskherd.constants import (
    ANSWER_FILE_SUFFIX,
    JOURNAL_EVENT_TYPES,
    JOURNAL_FILE_NAME,
    SEQUENCE_STATUS_VERSION,
    STATE_FILE_SUFFIX,
    STEP_PHASES,
    TASK_PHASES,
    TASK_STATUS_VERSION,
    TOKEN_USAGE_FIELDS,
)
from taskherd.models import EngineConfig
from taskherd.utils import _append_log, _load_json_if_exists, _utc_now, _write_json_atomic

StateMutator = Callable[[dict[str, Any]], Any]


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def _task_state_path(config: EngineConfig, task_id: str) -> Path:
    return config.state_dir / f"{task_id}{STATE_FILE_SUFFIX}"


def _sequence_state_path(config: EngineConfig, sequence_id: str) -> Path:
    return config.state_dir / f"{sequence_id}{STATE_FILE_SUFFIX}"


_TASK_ID_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9-]*")


def _answer_file_path(state_dir: Path, task_id: str) -> Path:
    if not _TASK_ID_PATTERN.fullmatch(task_id):
        raise ValueError(
            f"invalid task id '{task_id}'; expected letters, digits and dashes, e.g. task-tasks-01-login"
        )
    return state_dir / f"{task_id}{ANSWER_FILE_SUFFIX}"


# ---------------------------------------------------------------------------
# Default records
# ---------------------------------------------------------------------------


def _empty_stats() -> dict[str, Any]:
    return {"totalDuration": 0.0, "totalDurationExcludingPauses": 0.0, "totalPauseTime": 0.0}


def _default_task_state(task_id: str = "unknown") -> dict[str, Any]:
    now = _utc_now()
    return {
        "version": TASK_STATUS_VERSION,
        "taskId": task_id,
        "taskPath": "",
        "branch": "",
        "pipelineName": "",
        "parentSequenceId": None,
        "phase": "pending",
        "currentStep": "",
        "steps": {},
        "interactionHistory": [],
        "tokenUsage": {},
        "stats": None,
        "startTime": now,
        "lastUpdate": now,
    }


def _default_sequence_state(sequence_id: str = "unknown") -> dict[str, Any]:
    now = _utc_now()
    return {
        "version": SEQUENCE_STATUS_VERSION,
        "sequenceId": sequence_id,
        "folderPath": "",
        "branch": "",
        "phase": "pending",
        "currentTaskPath": None,
        "completedTasks": [],
        "stats": None,
        "startTime": now,
        "lastUpdate": now,
    }


def _merge_with_defaults(payload: Any, defaults: dict[str, Any]) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return defaults
    merged = dict(defaults)
    merged.update(payload)
    if merged.get("phase") not in TASK_PHASES:
        merged["phase"] = defaults["phase"]
    for key in ("steps", "tokenUsage"):
        if key in defaults and not isinstance(merged.get(key), dict):
            merged[key] = {}
    for key in ("interactionHistory", "completedTasks"):
        if key in defaults and not isinstance(merged.get(key), list):
            merged[key] = []
    return merged


# ---------------------------------------------------------------------------
# Read / update primitives
# ---------------------------------------------------------------------------


def read_task_state(path: Path, task_id: str = "unknown") -> dict[str, Any]:
    """Return the task record at *path*; a missing or corrupt file reads as never started."""
    return _merge_with_defaults(_load_json_if_exists(path), _default_task_state(task_id))


def read_sequence_state(path: Path, sequence_id: str = "unknown") -> dict[str, Any]:
    return _merge_with_defaults(
        _load_json_if_exists(path), _default_sequence_state(sequence_id)
    )


def _apply_update(
    path: Path,
    current: dict[str, Any],
    mutator: StateMutator,
) -> dict[str, Any]:
    result = mutator(current)
    updated = result if isinstance(result, dict) else current
    if updated.get("phase") != "waiting_for_input":
        updated.pop("pendingQuestion", None)
    updated["lastUpdate"] = _utc_now()
    _write_json_atomic(path, updated)
    return updated


def update_task_state(path: Path, mutator: StateMutator, *, task_id: str = "unknown") -> dict[str, Any]:
    return _apply_update(path, read_task_state(path, task_id), mutator)


def update_sequence_state(
    path: Path, mutator: StateMutator, *, sequence_id: str = "unknown"
) -> dict[str, Any]:
    return _apply_update(path, read_sequence_state(path, sequence_id), mutator)


# ---------------------------------------------------------------------------
# Record helpers used inside mutators
# ---------------------------------------------------------------------------


def _set_step_phase(state: dict[str, Any], step_name: str, phase: str) -> None:
    if phase not in STEP_PHASES:
        raise ValueError(f"unknown step phase: {phase}")
    steps = state.setdefault("steps", {})
    if steps.get(step_name) == "done":
        return
    steps[step_name] = phase


def _empty_token_usage() -> dict[str, int]:
    return {field: 0 for field in TOKEN_USAGE_FIELDS.values()}


def _merge_token_usage(
    totals: dict[str, dict[str, int]],
    model: str,
    usage: dict[str, int],
) -> dict[str, dict[str, int]]:
    entry = totals.setdefault(model, _empty_token_usage())
    for field in TOKEN_USAGE_FIELDS.values():
        entry[field] = int(entry.get(field, 0)) + int(usage.get(field, 0) or 0)
    return totals


def _merge_usage_tables(
    totals: dict[str, dict[str, int]],
    usage_by_model: dict[str, dict[str, int]],
) -> dict[str, dict[str, int]]:
    for model, usage in usage_by_model.items():
        if isinstance(usage, dict):
            _merge_token_usage(totals, model, usage)
    return totals


def _add_pause_time(state: dict[str, Any], seconds: float) -> None:
    stats = state.get("stats")
    if not isinstance(stats, dict):
        stats = _empty_stats()
        state["stats"] = stats
    stats["totalPauseTime"] = float(stats.get("totalPauseTime", 0.0)) + max(0.0, seconds)


def _finalize_stats(state: dict[str, Any], total_duration: float) -> None:
    stats = state.get("stats")
    if not isinstance(stats, dict):
        stats = _empty_stats()
    pause_time = float(stats.get("totalPauseTime", 0.0))
    stats["totalDuration"] = total_duration
    stats["totalDurationExcludingPauses"] = max(0.0, total_duration - pause_time)
    stats["totalPauseTime"] = pause_time
    state["stats"] = stats


# ---------------------------------------------------------------------------
# File-drop answer channel
# ---------------------------------------------------------------------------


def write_answer(state_dir: Path, task_id: str, answer: str) -> Path:
    """Drop *answer* for *task_id* where a waiting run will pick it up."""
    path = _answer_file_path(state_dir, task_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    tmp_path.write_text(answer, encoding="utf-8")
    os.replace(tmp_path, path)
    return path


def consume_answer_file(state_dir: Path, task_id: str) -> str | None:
    path = _answer_file_path(state_dir, task_id)
    try:
        answer = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    path.unlink(missing_ok=True)
    return answer.strip()


# ---------------------------------------------------------------------------
# Run journal
# ---------------------------------------------------------------------------


def _read_journal(config: EngineConfig) -> list[dict[str, Any]]:
    payload = _load_json_if_exists(config.state_dir / JOURNAL_FILE_NAME)
    return payload if isinstance(payload, list) else []


def _log_journal_event(config: EngineConfig, event_type: str, **fields: Any) -> None:
    if event_type not in JOURNAL_EVENT_TYPES:
        raise ValueError(f"unknown journal event type: {event_type}")
    journal = _read_journal(config)
    event = {"timestamp": _utc_now(), "eventType": event_type}
    event.update({key: value for key, value in fields.items() if value is not None})
    journal.append(event)
    try:
        _write_json_atomic(config.state_dir / JOURNAL_FILE_NAME, journal)
    except (OSError, TypeError, ValueError) as exc:
        _append_log(
            config.project_root,
            f"warning: could not write {JOURNAL_FILE_NAME}: {exc}",
            logs_path=config.logs_path,
        )


def _summarize_state_file(path: Path) -> dict[str, Any]:
    """Compact view of one status record for the ``status`` command."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {"file": path.name, "phase": "unreadable"}
    if not isinstance(payload, dict):
        return {"file": path.name, "phase": "unreadable"}
    summary = {
        "id": payload.get("taskId") or payload.get("sequenceId") or path.name,
        "phase": payload.get("phase", "pending"),
        "lastUpdate": payload.get("lastUpdate", ""),
    }
    if payload.get("currentStep"):
        summary["currentStep"] = payload["currentStep"]
    pending = payload.get("pendingQuestion")
    if isinstance(pending, dict) and pending.get("question"):
        summary["pendingQuestion"] = pending["question"]
    return summary
