from __future__ import annotations

import argparse
import sys
from pathlib import Path

from taskherd.config import load_engine_config
from taskherd.constants import STATE_FILE_SUFFIX
from taskherd.models import EngineConfig, TaskherdError, TaskInterrupted
from taskherd.pipeline import run_task
from taskherd.sequence import run_sequence
from taskherd.state import (
    _sequence_state_path,
    _summarize_state_file,
    _task_state_path,
    read_sequence_state,
    read_task_state,
    write_answer,
)
from taskherd.utils import folder_path_to_sequence_id, task_path_to_task_id

_INTERRUPTED_EXIT_CODE = 130


def _load_config(args: argparse.Namespace) -> EngineConfig:
    return load_engine_config(getattr(args, "project_root", None))


def _report_error(command: str, exc: Exception) -> int:
    print(f"taskherd {command}: ERROR {exc}", file=sys.stderr)
    return 1


def _cmd_run(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        state = run_task(config, args.task_path, pipeline_option=args.pipeline or "")
    except TaskInterrupted as exc:
        print(f"taskherd run: interrupted ({exc}); re-run the same command to resume", file=sys.stderr)
        return _INTERRUPTED_EXIT_CODE
    except KeyboardInterrupt:
        print("taskherd run: interrupted; re-run the same command to resume", file=sys.stderr)
        return _INTERRUPTED_EXIT_CODE
    except TaskherdError as exc:
        return _report_error("run", exc)
    print(f"taskherd run: {state['taskId']} {state['phase']}")
    return 0


def _cmd_run_sequence(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
        state = run_sequence(config, args.folder)
    except TaskInterrupted as exc:
        print(
            f"taskherd run-sequence: interrupted ({exc}); re-run the same command to resume",
            file=sys.stderr,
        )
        return _INTERRUPTED_EXIT_CODE
    except KeyboardInterrupt:
        print("taskherd run-sequence: interrupted; re-run the same command to resume", file=sys.stderr)
        return _INTERRUPTED_EXIT_CODE
    except TaskherdError as exc:
        return _report_error("run-sequence", exc)
    completed = len(state.get("completedTasks") or [])
    print(f"taskherd run-sequence: {state['sequenceId']} {state['phase']} ({completed} tasks)")
    return 0


def _print_record(record: dict) -> None:
    for key in ("taskId", "sequenceId", "phase", "branch", "pipelineName", "currentStep", "currentTaskPath"):
        if record.get(key):
            print(f"{key}: {record[key]}")
    steps = record.get("steps") or {}
    for name, phase in steps.items():
        print(f"  step {name}: {phase}")
    pending = record.get("pendingQuestion")
    if isinstance(pending, dict) and pending.get("question"):
        print(f"pendingQuestion: {pending['question']}")
    for model, usage in (record.get("tokenUsage") or {}).items():
        print(f"  tokens {model}: {usage}")
    completed = record.get("completedTasks")
    if completed:
        print("completedTasks:")
        for path in completed:
            print(f"  - {path}")
    stats = record.get("stats")
    if isinstance(stats, dict):
        print(
            "stats: "
            f"duration={stats.get('totalDuration', 0):.1f}s "
            f"excluding_pauses={stats.get('totalDurationExcludingPauses', 0):.1f}s "
            f"pauses={stats.get('totalPauseTime', 0):.1f}s"
        )


def _cmd_status(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except TaskherdError as exc:
        return _report_error("status", exc)

    if not args.target:
        state_dir = config.state_dir
        files = sorted(state_dir.glob(f"*{STATE_FILE_SUFFIX}")) if state_dir.exists() else []
        if not files:
            print("taskherd status: no runs recorded")
            return 0
        for path in files:
            summary = _summarize_state_file(path)
            line = f"{summary.get('id', path.name)}: {summary['phase']}"
            if summary.get("currentStep"):
                line += f" (step {summary['currentStep']})"
            if summary.get("pendingQuestion"):
                line += f" question: {summary['pendingQuestion']}"
            print(line)
        return 0

    target = Path(args.target).resolve()
    if target.is_dir():
        sequence_id = folder_path_to_sequence_id(target)
        record = read_sequence_state(_sequence_state_path(config, sequence_id), sequence_id)
    else:
        task_id = task_path_to_task_id(target, config.project_root)
        record = read_task_state(_task_state_path(config, task_id), task_id)
    _print_record(record)
    return 0


def _cmd_answer(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except TaskherdError as exc:
        return _report_error("answer", exc)
    answer = " ".join(args.answer).strip()
    if not answer:
        return _report_error("answer", ValueError("answer text must not be empty"))
    try:
        path = write_answer(config.state_dir, args.task_id, answer)
    except ValueError as exc:
        return _report_error("answer", exc)
    print(f"taskherd answer: wrote {path}")
    return 0


def _cmd_validate(args: argparse.Namespace) -> int:
    try:
        config = _load_config(args)
    except TaskherdError as exc:
        return _report_error("validate", exc)
    missing: list[str] = []
    for pipeline_name, steps in config.pipelines.items():
        for step in steps:
            instructions = config.steps_dir / f"{step.command}.md"
            if not instructions.exists():
                missing.append(f"{pipeline_name}.{step.name}: {instructions}")
    if missing:
        print("taskherd validate: ERROR missing step instructions:", file=sys.stderr)
        for entry in missing:
            print(f"  {entry}", file=sys.stderr)
        return 1
    default_pipeline = config.default_pipeline or next(iter(config.pipelines))
    print(f"taskherd validate: ok ({len(config.pipelines)} pipelines, default '{default_pipeline}')")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="taskherd command line interface")
    subparsers = parser.add_subparsers(dest="command")

    def _add_project_root(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--project-root",
            default=None,
            help="Project directory containing .taskherd/config.yaml (default: search upwards from cwd).",
        )

    run = subparsers.add_parser("run", help="Run (or resume) the pipeline for one task file")
    run.add_argument("task_path", help="Path to the task markdown file.")
    run.add_argument("--pipeline", default="", help="Pipeline name to use instead of the default.")
    _add_project_root(run)
    run.set_defaults(handler=_cmd_run)

    run_seq = subparsers.add_parser("run-sequence", help="Run every task file in a folder, in order")
    run_seq.add_argument("folder", help="Folder containing task markdown files.")
    _add_project_root(run_seq)
    run_seq.set_defaults(handler=_cmd_run_sequence)

    status = subparsers.add_parser("status", help="Show recorded task or sequence state")
    status.add_argument("target", nargs="?", default="", help="Task file or sequence folder.")
    _add_project_root(status)
    status.set_defaults(handler=_cmd_status)

    answer = subparsers.add_parser("answer", help="Answer a pending question for a task")
    answer.add_argument("task_id", help="Task id, e.g. task-taskherd-tasks-01-login.")
    answer.add_argument("answer", nargs="+", help="Answer text.")
    _add_project_root(answer)
    answer.set_defaults(handler=_cmd_answer)

    validate = subparsers.add_parser("validate", help="Validate .taskherd/config.yaml and step instructions")
    _add_project_root(validate)
    validate.set_defaults(handler=_cmd_validate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
