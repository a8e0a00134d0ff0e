"""Taskherd utility functions: timestamps, JSON I/O, logging, git, and ids."""

from __future__ import annotations

import json
import os
import re
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from taskherd.constants import (
    CONFIG_DIR_NAME,
    DEFAULT_LOGS_PATH,
    ORCHESTRATOR_LOG_NAME,
    TASK_FILE_SUFFIX,
)
from taskherd.models import TaskDocument


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def _utc_now() -> str:
    return (
        datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
    )


def _parse_utc(value: str) -> datetime | None:
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _seconds_since(value: str) -> float:
    started = _parse_utc(value)
    if started is None:
        return 0.0
    return max(0.0, (datetime.now(timezone.utc) - started).total_seconds())


# ---------------------------------------------------------------------------
# JSON I/O helpers
# ---------------------------------------------------------------------------


def _write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON through a sibling temp file, fsync it, then rename over *path*.

    Readers polling *path* see either the previous document or the new one.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    rendered = json.dumps(payload, indent=2) + "\n"
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(rendered)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def _load_json_if_exists(path: Path) -> Any:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        return None


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def _compact_log_text(text: str, limit: int = 240) -> str:
    compact = " ".join(text.strip().split())
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


SECRET_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)\b(api[_-]?key|token|secret|password)\b\s*[:=]\s*([^\s]+)"),
    re.compile(r"(?i)\b(authorization:\s*bearer)\s+([^\s]+)"),
    re.compile(r"\bsk-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bsk-ant-[A-Za-z0-9_-]{10,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bhf_[A-Za-z0-9]{20,}\b"),
)


def _redact_sensitive_text(text: str) -> str:
    redacted = str(text)
    for pattern in SECRET_PATTERNS:
        redacted = pattern.sub(
            lambda match: f"{match.group(1)}=<redacted>" if match.groups() else "<redacted>",
            redacted,
        )
    return redacted


_SHELL_META_PATTERN = re.compile(r"[|&;<>()$`]")


def _command_uses_shell_syntax(command: str) -> bool:
    return bool(_SHELL_META_PATTERN.search(command))


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


def _append_log(project_root: Path, message: str, *, logs_path: str = DEFAULT_LOGS_PATH) -> None:
    log_path = project_root / logs_path / ORCHESTRATOR_LOG_NAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(f"{_utc_now()} {message}\n")


def _announce(project_root: Path, message: str, *, logs_path: str = DEFAULT_LOGS_PATH) -> None:
    print(f"[taskherd] {message}")
    _append_log(project_root, message, logs_path=logs_path)


# ---------------------------------------------------------------------------
# Git helpers
# ---------------------------------------------------------------------------


def _run_git(
    project_root: Path,
    args: list[str],
    *,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", "-C", str(project_root), *args]
    try:
        return subprocess.run(
            command,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        return subprocess.CompletedProcess(command, 127, "", f"git not found: {exc}")
    except subprocess.TimeoutExpired:
        return subprocess.CompletedProcess(command, 124, "", f"git timed out after {timeout}s")
    except OSError as exc:
        return subprocess.CompletedProcess(command, 1, "", str(exc))


def _git_detail(result: subprocess.CompletedProcess[str], fallback: str) -> str:
    return _compact_log_text((result.stderr or result.stdout or fallback).strip())


def _data_dir_pathspec() -> str:
    return f":(exclude){CONFIG_DIR_NAME}"


# ---------------------------------------------------------------------------
# Identifier derivation
# ---------------------------------------------------------------------------


def _relative_posix(path: Path, project_root: Path) -> str:
    resolved = path.resolve()
    try:
        return resolved.relative_to(project_root.resolve()).as_posix()
    except ValueError:
        return resolved.as_posix().lstrip("/")


def task_path_to_task_id(task_path: Path, project_root: Path) -> str:
    """Derive the stable task id, e.g. ``tasks/01-add login.md`` -> ``task-tasks-01-add-login``."""
    relative = _relative_posix(task_path, project_root)
    if relative.endswith(TASK_FILE_SUFFIX):
        relative = relative[: -len(TASK_FILE_SUFFIX)]
    sanitized = re.sub(r"[^A-Za-z0-9-]", "-", relative.replace("/", "-"))
    return f"task-{sanitized}"


def folder_path_to_sequence_id(folder_path: Path) -> str:
    folder_name = folder_path.resolve().name
    return f"sequence-{re.sub(r'[^A-Za-z0-9-]', '-', folder_name)}"


# ---------------------------------------------------------------------------
# Task documents
# ---------------------------------------------------------------------------

_FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)


def parse_task_document(content: str) -> TaskDocument:
    """Split optional YAML frontmatter (``pipeline``, ``autonomyLevel``) from the task body.

    Unparsable frontmatter is not an error: the whole file is treated as the body.
    """
    match = _FRONTMATTER_PATTERN.match(content)
    if not match:
        return TaskDocument(body=content.strip())
    try:
        frontmatter = yaml.safe_load(match.group(1))
    except yaml.YAMLError:
        return TaskDocument(body=content.strip())
    if not isinstance(frontmatter, dict):
        frontmatter = {}
    body = content[match.end():].strip()

    raw_level = frontmatter.get("autonomyLevel")
    if frontmatter.get("interactionThreshold") is not None:
        raw_level = frontmatter.get("interactionThreshold")
    autonomy_level: int | None = None
    if raw_level is not None:
        try:
            autonomy_level = int(raw_level)
        except (TypeError, ValueError):
            autonomy_level = None

    return TaskDocument(
        body=body,
        pipeline=str(frontmatter.get("pipeline") or "").strip(),
        autonomy_level=autonomy_level,
    )
