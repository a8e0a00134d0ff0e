"""Taskherd human interaction: race an interactive prompt against a dropped answer file.

Both channels run on their own thread and report into one queue.  The first
answer wins; the loser is cancelled and joined before ``await_answer``
returns, so no reader or poller outlives the question it was started for.
"""

from __future__ import annotations

import os
import queue
import select
import sys
import termios
import threading
import time
from pathlib import Path
from typing import Any, Callable, TextIO

from taskherd.models import EngineConfig, InterruptedWhileWaiting
from taskherd.state import (
    _add_pause_time,
    _sequence_state_path,
    _set_step_phase,
    _task_state_path,
    consume_answer_file,
    update_sequence_state,
    update_task_state,
)
from taskherd.utils import _append_log, _compact_log_text, _utc_now

Deliver = Callable[[str, "str | None"], None]

_QUEUE_WAIT_SECONDS = 0.1


def _prompt_fileno(stream: Any) -> int | None:
    if stream is None:
        return None
    try:
        return int(stream.fileno())
    except (AttributeError, OSError, ValueError):
        return None


def _discard_pending_input(fd: int) -> None:
    """Drop anything typed before the question was shown."""
    if os.isatty(fd):
        try:
            termios.tcflush(fd, termios.TCIFLUSH)
        except termios.error:
            pass
        return
    while True:
        try:
            readable, _, _ = select.select([fd], [], [], 0)
        except (OSError, ValueError):
            return
        if not readable:
            return
        try:
            data = os.read(fd, 4096)
        except OSError:
            return
        if not data:
            return


def _drain_late_answers(results: queue.Queue) -> list[tuple[str, str]]:
    """Collect answers that arrived after the race was decided."""
    dropped: list[tuple[str, str]] = []
    while True:
        try:
            source, answer = results.get_nowait()
        except queue.Empty:
            return dropped
        if answer is not None:
            dropped.append((source, answer))


class _PromptChannel:
    """Read one non-blank line from a file descriptor until cancelled."""

    def __init__(self, fd: int, deliver: Deliver) -> None:
        self._fd = fd
        self._deliver = deliver
        self._wake_read, self._wake_write = os.pipe()
        self._thread = threading.Thread(target=self._run, name="taskherd-prompt", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        pending = b""
        while True:
            try:
                readable, _, _ = select.select([self._fd, self._wake_read], [], [])
            except (OSError, ValueError):
                self._deliver("closed", None)
                return
            if self._wake_read in readable:
                return
            try:
                data = os.read(self._fd, 4096)
            except OSError:
                data = b""
            if not data:
                self._deliver("closed", None)
                return
            pending += data
            while b"\n" in pending:
                raw_line, pending = pending.split(b"\n", 1)
                answer = raw_line.decode("utf-8", errors="replace").strip()
                if answer:
                    self._deliver("prompt", answer)
                    return

    def cancel(self) -> None:
        try:
            os.write(self._wake_write, b"x")
        except OSError:
            pass
        self._thread.join(timeout=2)
        for fd in (self._wake_read, self._wake_write):
            try:
                os.close(fd)
            except OSError:
                pass


class _AnswerFilePoller:
    def __init__(self, state_dir: Path, task_id: str, interval: float, deliver: Deliver) -> None:
        self._state_dir = state_dir
        self._task_id = task_id
        self._interval = interval
        self._deliver = deliver
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="taskherd-answer-file", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while True:
            if self._stop.is_set():
                return
            answer = consume_answer_file(self._state_dir, self._task_id)
            if answer is not None:
                self._deliver("file", answer)
                return
            if self._stop.wait(self._interval):
                return

    def cancel(self) -> None:
        self._stop.set()
        self._thread.join(timeout=max(2.0, self._interval * 2))


class HumanInteractionCoordinator:
    def __init__(
        self,
        config: EngineConfig,
        *,
        input_stream: Any = None,
        output_stream: TextIO | None = None,
    ) -> None:
        self.config = config
        self.input_stream = sys.stdin if input_stream is None else input_stream
        self.output_stream = sys.stdout if output_stream is None else output_stream

    def _log(self, message: str) -> None:
        _append_log(self.config.project_root, message, logs_path=self.config.logs_path)

    def _print_question(self, question: str, *, prompt_enabled: bool) -> None:
        out = self.output_stream
        out.write("\n[taskherd] Task has been paused. The agent needs your input.\n\n")
        out.write("QUESTION:\n")
        out.write(f"{question}\n\n")
        if prompt_enabled:
            out.write("(Answer here, or drop an answer with `taskherd answer`.)\n")
            out.write("Your answer: ")
        else:
            out.write("(Waiting for an answer via `taskherd answer`.)\n")
        out.flush()

    def _wait_for_first_answer(self, task_id: str, question: str) -> tuple[str, str]:
        results: queue.Queue[tuple[str, str | None]] = queue.Queue()

        def deliver(source: str, answer: str | None) -> None:
            results.put((source, answer))

        fd = _prompt_fileno(self.input_stream)
        prompt = _PromptChannel(fd, deliver) if fd is not None else None
        poller = _AnswerFilePoller(
            self.config.state_dir,
            task_id,
            self.config.answer_poll_interval_seconds,
            deliver,
        )
        if fd is not None:
            _discard_pending_input(fd)
        self._print_question(question, prompt_enabled=prompt is not None)
        try:
            if prompt is not None:
                prompt.start()
            poller.start()
            while True:
                try:
                    source, answer = results.get(timeout=_QUEUE_WAIT_SECONDS)
                except queue.Empty:
                    continue
                if source == "closed":
                    self._log(f"prompt input closed task={task_id}; waiting for answer file")
                    continue
                return source, answer or ""
        except KeyboardInterrupt:
            self._log(f"human wait interrupted task={task_id}; question stays pending")
            raise InterruptedWhileWaiting(
                f"wait for an answer to task '{task_id}' was interrupted; the question is still pending"
            ) from None
        finally:
            poller.cancel()
            if prompt is not None:
                prompt.cancel()
            for late_source, late_answer in _drain_late_answers(results):
                self._log(
                    f"discarded late answer task={task_id} source={late_source}: "
                    f"{_compact_log_text(late_answer)}"
                )

    def await_answer(
        self,
        task_id: str,
        question: str,
        *,
        step_name: str = "",
        sequence_id: str | None = None,
    ) -> str:
        """Block until a human answers *question*, then record it on the task.

        Expects the task record to already be parked in ``waiting_for_input``.
        """
        started = time.monotonic()
        source, answer = self._wait_for_first_answer(task_id, question)
        paused = time.monotonic() - started
        if source == "file":
            self.output_stream.write("\n[taskherd] Answer received from answer file. Resuming...\n")
            self.output_stream.flush()
        self._log(f"human answer task={task_id} source={source}: {_compact_log_text(answer)}")

        def _record(state: dict[str, Any]) -> None:
            state.setdefault("interactionHistory", []).append(
                {"question": question, "answer": answer, "timestamp": _utc_now()}
            )
            state.pop("pendingQuestion", None)
            state["phase"] = "running"
            if step_name:
                _set_step_phase(state, step_name, "running")
            _add_pause_time(state, paused)

        update_task_state(_task_state_path(self.config, task_id), _record, task_id=task_id)

        if sequence_id:

            def _resume_sequence(state: dict[str, Any]) -> None:
                state["phase"] = "running"
                _add_pause_time(state, paused)

            update_sequence_state(
                _sequence_state_path(self.config, sequence_id),
                _resume_sequence,
                sequence_id=sequence_id,
            )
        return answer
