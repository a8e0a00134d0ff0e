"""Taskherd step executor: invoke, pause for humans, check, retry, checkpoint."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from taskherd.branches import commit_checkpoint
from taskherd.checks import run_checks
from taskherd.constants import (
    AGENT_ENV_PIPELINE,
    AGENT_ENV_PROJECT_ROOT,
    AGENT_ENV_STATE_FILE,
    AGENT_ENV_STEP,
    AGENT_ENV_TASK_ID,
    LONG_RATE_LIMIT_WAIT_SECONDS,
)
from taskherd.interaction import HumanInteractionCoordinator
from taskherd.models import (
    AgentOutcome,
    AgentProcessFailure,
    CheckFailure,
    CheckpointCommitError,
    EngineConfig,
    HumanInterventionRequested,
    PipelineStepConfig,
    RateLimitReached,
    StepRun,
    TaskInterrupted,
)
from taskherd.prompts import (
    _check_failure_feedback,
    _compose_attempt_prompt,
    _intervention_feedback,
    _rate_limit_feedback,
)
from taskherd.runners import _log_timestamp, invoke_agent
from taskherd.state import (
    _add_pause_time,
    _merge_token_usage,
    _sequence_state_path,
    _set_step_phase,
    read_task_state,
    update_sequence_state,
    update_task_state,
)
from taskherd.utils import _announce, _append_log, _utc_now


def _log(config: EngineConfig, message: str) -> None:
    _append_log(config.project_root, message, logs_path=config.logs_path)


def _update_task(run: StepRun, mutator: Any) -> dict[str, Any]:
    return update_task_state(run.state_path, mutator, task_id=run.task_id)


def _update_sequence(config: EngineConfig, run: StepRun, mutator: Any) -> None:
    if not run.sequence_id:
        return
    try:
        update_sequence_state(
            _sequence_state_path(config, run.sequence_id),
            mutator,
            sequence_id=run.sequence_id,
        )
    except OSError as exc:
        _log(config, f"warning: could not update sequence {run.sequence_id}: {exc}")


def _agent_env(config: EngineConfig, step: PipelineStepConfig, run: StepRun) -> dict[str, str]:
    return {
        AGENT_ENV_TASK_ID: run.task_id,
        AGENT_ENV_STEP: step.name,
        AGENT_ENV_PIPELINE: run.pipeline_name,
        AGENT_ENV_STATE_FILE: str(run.state_path),
        AGENT_ENV_PROJECT_ROOT: str(config.project_root),
    }


def _mark_step_failed(run: StepRun, step_name: str) -> None:
    def _fail(state: dict[str, Any]) -> None:
        state["phase"] = "failed"
        _set_step_phase(state, step_name, "failed")

    _update_task(run, _fail)


def _record_token_usage(run: StepRun, outcome: AgentOutcome | None) -> None:
    if outcome is None or not any(outcome.token_usage.values()):
        return

    def _merge(state: dict[str, Any]) -> None:
        _merge_token_usage(state.setdefault("tokenUsage", {}), outcome.model, outcome.token_usage)

    _update_task(run, _merge)


def _run_attempt(
    config: EngineConfig,
    step: PipelineStepConfig,
    run: StepRun,
    prompt: str,
) -> AgentOutcome:
    try:
        outcome = invoke_agent(
            config,
            prompt=prompt,
            step=step,
            log_paths=run.log_paths,
            env_overrides=_agent_env(config, step, run),
        )
    except TaskInterrupted as exc:
        _record_token_usage(run, exc.outcome)
        _update_task(run, lambda state: state.update(phase="interrupted"))
        raise
    _record_token_usage(run, outcome)
    if outcome.kind == "intervention":
        raise HumanInterventionRequested(outcome.question)
    return outcome


def _pause_for_human(
    config: EngineConfig,
    step: PipelineStepConfig,
    run: StepRun,
    question: str,
    coordinator: HumanInteractionCoordinator,
) -> str:
    def _park(state: dict[str, Any]) -> None:
        state["phase"] = "waiting_for_input"
        state["currentStep"] = step.name
        state["pendingQuestion"] = {"question": question, "timestamp": _utc_now()}

    _update_task(run, _park)
    _update_sequence(config, run, lambda state: state.update(phase="waiting_for_input"))
    _log(config, f"step={step.name} waiting for human input")

    answer = coordinator.await_answer(
        run.task_id, question, step_name=step.name, sequence_id=run.sequence_id
    )
    run.log_paths.reasoning.parent.mkdir(parents=True, exist_ok=True)
    with run.log_paths.reasoning.open("a", encoding="utf-8") as handle:
        handle.write(f'[{_log_timestamp()}] [USER_INPUT] User answered: "{answer}"\n\n')
    return answer


def _wait_for_rate_limit_reset(config: EngineConfig, run: StepRun, reset_at: datetime) -> None:
    wait_seconds = (reset_at - datetime.now(timezone.utc)).total_seconds()
    if wait_seconds <= 0:
        return
    if wait_seconds > LONG_RATE_LIMIT_WAIT_SECONDS:
        _announce(
            config.project_root,
            f"warning: usage limit resets at {reset_at.isoformat()}; the run will pause for over 8 hours. "
            "Ctrl-C is safe; re-run after the reset to continue.",
            logs_path=config.logs_path,
        )
    _announce(
        config.project_root,
        f"usage limit reached; pausing until {reset_at.isoformat()}",
        logs_path=config.logs_path,
    )

    def _waiting(state: dict[str, Any]) -> None:
        state["phase"] = "waiting_for_reset"
        _add_pause_time(state, wait_seconds)

    _update_task(run, _waiting)
    _update_sequence(config, run, _waiting)
    try:
        time.sleep(wait_seconds)
    except KeyboardInterrupt:
        _update_task(run, lambda state: state.update(phase="interrupted"))
        raise TaskInterrupted("wait for the usage limit reset was interrupted") from None
    _update_task(run, lambda state: state.update(phase="running"))
    _update_sequence(config, run, lambda state: state.update(phase="running"))


def _start_step(run: StepRun, step_name: str) -> str:
    """Mark *step_name* running and return a parked question for it, if any."""
    existing = read_task_state(run.state_path, run.task_id)
    pending = existing.get("pendingQuestion") or {}
    parked = ""
    if (
        existing.get("phase") == "waiting_for_input"
        and existing.get("currentStep") == step_name
        and isinstance(pending, dict)
    ):
        parked = str(pending.get("question") or "")

    def _begin(state: dict[str, Any]) -> None:
        state["currentStep"] = step_name
        _set_step_phase(state, step_name, "running")
        if not parked:
            state["phase"] = "running"

    _update_task(run, _begin)
    return parked


def execute_step(
    config: EngineConfig,
    step: PipelineStepConfig,
    *,
    prompt: str,
    run: StepRun,
    coordinator: HumanInteractionCoordinator | None = None,
) -> None:
    """Drive *step* to ``done`` or raise.

    Human interventions and usage-limit waits re-invoke the agent without
    consuming a retry; only check failures count against ``step.retry``.
    """
    coordinator = coordinator or HumanInteractionCoordinator(config)
    _announce(config.project_root, f"starting step '{step.name}'", logs_path=config.logs_path)

    answers: list[str] = []
    retry_feedback = ""
    parked_question = _start_step(run, step.name)
    if parked_question:
        _announce(
            config.project_root,
            f"step '{step.name}' has an unanswered question; resuming the wait",
            logs_path=config.logs_path,
        )
        _update_sequence(config, run, lambda state: state.update(phase="waiting_for_input"))
        answer = coordinator.await_answer(
            run.task_id, parked_question, step_name=step.name, sequence_id=run.sequence_id
        )
        answers.append(_intervention_feedback(parked_question, answer))

    attempt = 1
    while True:
        attempt_prompt = _compose_attempt_prompt(prompt, [*answers, retry_feedback])
        try:
            outcome = _run_attempt(config, step, run, attempt_prompt)
        except HumanInterventionRequested as request:
            answer = _pause_for_human(config, step, run, request.question, coordinator)
            answers.append(_intervention_feedback(request.question, answer))
            continue

        if outcome.kind == "rate_limit":
            reset_at = datetime.fromtimestamp(float(outcome.reset_timestamp or 0), tz=timezone.utc)
            if not config.wait_for_rate_limit_reset:
                _mark_step_failed(run, step.name)
                raise RateLimitReached(
                    f"usage limit reached during step '{step.name}'; it resets at {reset_at.isoformat()}. "
                    "Set wait_for_rate_limit_reset: true to wait automatically, or re-run after the reset.",
                    reset_at=reset_at,
                )
            _wait_for_rate_limit_reset(config, run, reset_at)
            retry_feedback = _rate_limit_feedback()
            continue

        if outcome.kind == "failure":
            _mark_step_failed(run, step.name)
            raise AgentProcessFailure(
                f"step '{step.name}' failed (exit code {outcome.exit_code}). "
                f"Check the output log: {outcome.log_path} and the reasoning log: {outcome.reasoning_log_path}",
                log_path=outcome.log_path,
                reasoning_log_path=outcome.reasoning_log_path,
                exit_code=outcome.exit_code,
            )

        try:
            result = run_checks(config, step.checks)
            if result.success:
                if config.auto_commit:
                    try:
                        commit_checkpoint(config, step.name)
                    except CheckpointCommitError:
                        _mark_step_failed(run, step.name)
                        raise
                else:
                    _log(config, f"step={step.name} passed; auto commit disabled")
        except KeyboardInterrupt:
            _update_task(run, lambda state: state.update(phase="interrupted"))
            _log(config, f"step={step.name} interrupted during checks or checkpoint commit")
            raise TaskInterrupted(
                f"step '{step.name}' was interrupted while running checks or committing"
            ) from None

        if result.success:

            def _done(state: dict[str, Any]) -> None:
                state["phase"] = "pending"
                _set_step_phase(state, step.name, "done")

            _update_task(run, _done)
            _announce(config.project_root, f"step '{step.name}' done", logs_path=config.logs_path)
            return

        _announce(
            config.project_root,
            f"check failed for step '{step.name}' (attempt {attempt}/{step.retry + 1})",
            logs_path=config.logs_path,
        )
        if attempt > step.retry:
            _mark_step_failed(run, step.name)
            raise CheckFailure(
                f"step '{step.name}' failed after {step.retry} retries. "
                f"Final check error: {result.output or 'check validation failed'}",
                output=result.output,
            )
        retry_feedback = _check_failure_feedback(step, prompt, result.output)
        attempt += 1
