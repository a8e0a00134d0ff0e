from __future__ import annotations

import codecs
import json
import os
import shlex
import subprocess
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

from taskherd.constants import (
    ASK_HUMAN_TOOL_NAME,
    DEFAULT_MODEL_NAME,
    RATE_LIMIT_TEXT_PATTERN,
    TOKEN_USAGE_FIELDS,
)
from taskherd.models import (
    AgentOutcome,
    AgentProcessFailure,
    ConfigurationError,
    EngineConfig,
    PipelineStepConfig,
    StepLogPaths,
    TaskInterrupted,
)
from taskherd.utils import (
    _append_log,
    _command_uses_shell_syntax,
    _redact_sensitive_text,
    _utc_now,
)

_READ_CHUNK_SIZE = 65536
_LOG_SEPARATOR = "=" * 49


def _log_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class _LineBuffer:
    """Split a byte stream into text lines across arbitrary chunk boundaries.

    The incremental decoder holds back partial UTF-8 sequences and the carry
    string holds back a partial line until its newline arrives.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._carry += self._decoder.decode(chunk)
        *lines, self._carry = self._carry.split("\n")
        return lines

    def close(self) -> list[str]:
        self._carry += self._decoder.decode(b"", final=True)
        remainder, self._carry = self._carry, ""
        return [remainder] if remainder.strip() else []


def _is_ask_human_tool(name: str) -> bool:
    return name == ASK_HUMAN_TOOL_NAME or name.endswith(f"__{ASK_HUMAN_TOOL_NAME}")


class _StreamRecorder:
    """Route agent events to the step logs and accumulate the invocation outcome."""

    def __init__(self, log: TextIO, reasoning: TextIO, raw_json: TextIO, *, echo: TextIO | None) -> None:
        self.log = log
        self.reasoning = reasoning
        self.raw_json = raw_json
        self.echo = echo
        self.lock = threading.Lock()
        self.output_parts: list[str] = []
        self.assistant_text_seen = False
        self.model = ""
        self.usage = {field: 0 for field in TOKEN_USAGE_FIELDS.values()}
        self.question = ""
        self.reset_timestamp: float | None = None

    def _write_main(self, text: str) -> None:
        self.log.write(text)
        self.output_parts.append(text)
        if self.echo is not None:
            self.echo.write(text)
            self.echo.flush()

    def _write_reasoning(self, kind: str, text: str) -> None:
        self.reasoning.write(f"[{_log_timestamp()}] [{kind}] {text}\n")

    def _add_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return
        for source, target in TOKEN_USAGE_FIELDS.items():
            try:
                self.usage[target] += int(usage.get(source) or 0)
            except (TypeError, ValueError):
                continue

    def _check_rate_limit_text(self, text: str) -> None:
        match = RATE_LIMIT_TEXT_PATTERN.search(text)
        if match:
            self.reset_timestamp = float(match.group(1))

    def handle_stderr(self, text: str) -> None:
        with self.lock:
            self.log.write(text)
            self._write_reasoning("STDERR", text.rstrip("\n"))

    def handle_line(self, line: str) -> None:
        if not line.strip():
            return
        with self.lock:
            self.raw_json.write(line + "\n")
            try:
                event = json.loads(line)
            except ValueError:
                event = None
            if not isinstance(event, dict):
                self._write_main(line + "\n")
                return
            self._handle_event(event)

    def _handle_event(self, event: dict[str, Any]) -> None:
        event_type = str(event.get("type", ""))
        if event_type == "system":
            if event.get("model"):
                self.model = str(event["model"])
            return
        if event_type == "assistant":
            self._handle_assistant_message(event.get("message") or {})
            return
        if event_type == "result":
            result_text = event.get("result")
            if isinstance(result_text, str) and result_text:
                self._check_rate_limit_text(result_text)
                if not self.assistant_text_seen:
                    self._write_main(result_text if result_text.endswith("\n") else result_text + "\n")
            return
        if event_type == "rate_limit":
            try:
                self.reset_timestamp = float(event.get("reset_timestamp"))
            except (TypeError, ValueError):
                self._write_reasoning("RATE_LIMIT", "rate limit event without a reset timestamp")
            return
        self._write_reasoning(event_type.upper() or "DATA", json.dumps(event)[:2000])

    def _handle_assistant_message(self, message: dict[str, Any]) -> None:
        if not isinstance(message, dict):
            return
        if message.get("model"):
            self.model = str(message["model"])
        self._add_usage(message.get("usage"))
        content = message.get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        for item in content:
            if not isinstance(item, dict):
                continue
            item_type = item.get("type")
            if item_type == "thinking":
                self._write_reasoning("THINKING", str(item.get("thinking") or item.get("text") or ""))
            elif item_type == "text":
                text = str(item.get("text") or "")
                self.assistant_text_seen = True
                self._check_rate_limit_text(text)
                self._write_main(text if text.endswith("\n") else text + "\n")
            elif item_type == "tool_use":
                name = str(item.get("name") or "")
                tool_input = item.get("input") or {}
                self._write_reasoning("TOOL_USE", f"{name}({json.dumps(tool_input)})")
                if _is_ask_human_tool(name) and isinstance(tool_input, dict):
                    question = str(tool_input.get("question") or "").strip()
                    if question and not self.question:
                        self.question = question


def _build_agent_argv(config: EngineConfig, step: PipelineStepConfig) -> list[str]:
    command = config.agent.command
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
    if step.model:
        argv.extend(["--model", step.model])
    return argv


def _terminate_process(process: Any) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


def _write_header(handle: TextIO, *, started: str, cwd: Path, command: str) -> None:
    handle.write(
        f"{_LOG_SEPARATOR}\n"
        f"--- Log started at: {started} ---\n"
        f"--- Working directory: {cwd} ---\n"
        f"--- Command: {command} ---\n"
    )


def _write_trailer(handle: TextIO, *, duration: float, exit_code: int | None, usage: dict[str, int]) -> None:
    counts = " ".join(f"{name}={value}" for name, value in usage.items())
    handle.write(
        f"\n-------------------------------------------------\n"
        f"--- Process finished at: {_utc_now()} ---\n"
        f"--- Duration: {duration:.2f}s, Exit Code: {exit_code} ---\n"
        f"--- Token Usage --- {counts}\n"
    )


def _classify_outcome(
    recorder: _StreamRecorder,
    *,
    exit_code: int,
    step: PipelineStepConfig,
    log_paths: StepLogPaths,
) -> AgentOutcome:
    if recorder.question:
        kind = "intervention"
    elif recorder.reset_timestamp is not None:
        kind = "rate_limit"
    elif exit_code != 0:
        kind = "failure"
    else:
        kind = "success"
    return AgentOutcome(
        kind=kind,
        exit_code=exit_code,
        output="".join(recorder.output_parts),
        model=recorder.model or step.model or DEFAULT_MODEL_NAME,
        token_usage=dict(recorder.usage),
        question=recorder.question,
        reset_timestamp=recorder.reset_timestamp,
        log_path=log_paths.log,
        reasoning_log_path=log_paths.reasoning,
    )


def invoke_agent(
    config: EngineConfig,
    *,
    prompt: str,
    step: PipelineStepConfig,
    log_paths: StepLogPaths,
    env_overrides: dict[str, str] | None = None,
    echo: TextIO | None = None,
) -> AgentOutcome:
    """Run the agent once for *step* and classify what it reported.

    stdout is parsed as newline-delimited JSON events; lines that are not JSON
    objects are kept as plain output.  An ``askHuman`` tool call stops the
    agent and yields an ``intervention`` outcome.
    """
    root = config.project_root
    argv = _build_agent_argv(config, step)
    display_command = _redact_sensitive_text(" ".join(argv))
    env = os.environ.copy()
    env.update(env_overrides or {})
    echo = sys.stdout if echo is None else echo

    log_paths.log.parent.mkdir(parents=True, exist_ok=True)
    started_at = _utc_now()
    started = time.monotonic()
    _append_log(
        root,
        f"agent start step={step.name} command={display_command} log={log_paths.log}",
        logs_path=config.logs_path,
    )

    with log_paths.log.open("a", encoding="utf-8") as log, log_paths.reasoning.open(
        "a", encoding="utf-8"
    ) as reasoning, log_paths.raw_json.open("a", encoding="utf-8") as raw_json:
        _write_header(log, started=started_at, cwd=root, command=display_command)
        _write_header(reasoning, started=started_at, cwd=root, command=display_command)
        log.write(f"\n--- PROMPT DATA ---\n{prompt}\n--- END PROMPT DATA ---\n\n")
        log.flush()
        recorder = _StreamRecorder(log, reasoning, raw_json, echo=echo)

        try:
            process = subprocess.Popen(
                argv,
                cwd=root,
                shell=False,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                env=env,
            )
        except OSError as exc:
            _write_trailer(log, duration=0.0, exit_code=None, usage=recorder.usage)
            _write_trailer(reasoning, duration=0.0, exit_code=None, usage=recorder.usage)
            raise AgentProcessFailure(
                f"agent command could not be started: {exc}",
                log_path=log_paths.log,
                reasoning_log_path=log_paths.reasoning,
            ) from exc

        if process.stdin is not None:
            try:
                process.stdin.write(prompt.encode("utf-8"))
                process.stdin.flush()
            except BrokenPipeError:
                pass
            finally:
                process.stdin.close()

        def _pump_stderr(stream: Any) -> None:
            if stream is None:
                return
            try:
                for raw_line in iter(stream.readline, b""):
                    recorder.handle_stderr(raw_line.decode("utf-8", errors="replace"))
            finally:
                stream.close()

        stderr_thread = threading.Thread(target=_pump_stderr, args=(process.stderr,), daemon=True)
        stderr_thread.start()

        timed_out = threading.Event()
        timer: threading.Timer | None = None
        if config.agent.timeout_seconds > 0:

            def _on_timeout() -> None:
                timed_out.set()
                _terminate_process(process)

            timer = threading.Timer(config.agent.timeout_seconds, _on_timeout)
            timer.daemon = True
            timer.start()

        buffer = _LineBuffer()
        stopped_for_question = False
        try:
            while True:
                chunk = process.stdout.read(_READ_CHUNK_SIZE)
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    recorder.handle_line(line)
                if recorder.question and not stopped_for_question:
                    stopped_for_question = True
                    _append_log(root, f"agent asked for human input step={step.name}", logs_path=config.logs_path)
                    _terminate_process(process)
            for line in buffer.close():
                recorder.handle_line(line)
            exit_code = process.wait()
        except KeyboardInterrupt:
            _terminate_process(process)
            duration = time.monotonic() - started
            _write_trailer(log, duration=duration, exit_code=process.poll(), usage=recorder.usage)
            _write_trailer(reasoning, duration=duration, exit_code=process.poll(), usage=recorder.usage)
            _append_log(root, f"agent interrupted step={step.name}", logs_path=config.logs_path)
            partial = _classify_outcome(
                recorder, exit_code=process.poll() or 1, step=step, log_paths=log_paths
            )
            raise TaskInterrupted(
                f"step '{step.name}' was interrupted by the user", outcome=partial
            ) from None
        finally:
            if timer is not None:
                timer.cancel()
            stderr_thread.join(timeout=2)
            if process.stdout is not None:
                process.stdout.close()

        duration = time.monotonic() - started
        _write_trailer(log, duration=duration, exit_code=exit_code, usage=recorder.usage)
        _write_trailer(reasoning, duration=duration, exit_code=exit_code, usage=recorder.usage)

    if timed_out.is_set():
        _append_log(
            root,
            f"agent timeout step={step.name} timeout_seconds={config.agent.timeout_seconds}",
            logs_path=config.logs_path,
        )
        if exit_code == 0:
            exit_code = 124

    outcome = _classify_outcome(recorder, exit_code=exit_code, step=step, log_paths=log_paths)
    _append_log(
        root,
        f"agent exit step={step.name} returncode={exit_code} outcome={outcome.kind} model={outcome.model}",
        logs_path=config.logs_path,
    )
    return outcome
