from __future__ import annotations

from pathlib import Path
from typing import Any, Sequence

from taskherd.constants import ASK_HUMAN_TOOL_NAME, PLAN_FILE_NAME, PLAN_STEP_NAME
from taskherd.models import ConfigurationError, EngineConfig, PipelineStepConfig
from taskherd.utils import _append_log

_AUTONOMY_MAXIMUM = (
    "Work with maximum autonomy. Make reasonable assumptions and keep going; "
    f"call the `{ASK_HUMAN_TOOL_NAME}` tool only when you are completely blocked "
    "and no sensible default exists."
)
_AUTONOMY_BALANCED = (
    "Work with balanced autonomy. Decide routine details yourself, but call the "
    f"`{ASK_HUMAN_TOOL_NAME}` tool before making architectural choices, changing "
    "public interfaces, or interpreting genuinely ambiguous requirements."
)
_AUTONOMY_GUIDED = (
    "Work in guided mode. Call the `{tool}` tool whenever a decision is not "
    "spelled out in the task or the plan, and wait for the answer before proceeding."
).format(tool=ASK_HUMAN_TOOL_NAME)
_AUTONOMY_COMMON = (
    "Your autonomy level is %%AUTONOMY_LEVEL%% on a scale of 1 (most autonomous) to 5 "
    f"(most guided). When you call `{ASK_HUMAN_TOOL_NAME}`, pass a single clear "
    "`question`; the task pauses until a human answers and then resumes with the answer."
)

_INTRO = (
    "Here is a task that has been broken down into several steps. You are an "
    "autonomous agent responsible for completing one step at a time."
)


def _autonomy_instructions(autonomy_level: int) -> str:
    if autonomy_level <= 0:
        return ""
    if autonomy_level <= 2:
        instructions = _AUTONOMY_MAXIMUM
    elif autonomy_level <= 4:
        instructions = _AUTONOMY_BALANCED
    else:
        instructions = _AUTONOMY_GUIDED
    common = _AUTONOMY_COMMON.replace("%%AUTONOMY_LEVEL%%", str(autonomy_level))
    return f"{instructions}\n\n{common}"


def _load_step_instructions(config: EngineConfig, step: PipelineStepConfig) -> str:
    path = config.steps_dir / f"{step.command}.md"
    if not path.exists():
        raise ConfigurationError(
            f"instructions for step '{step.name}' not found: expected {path}"
        )
    return path.read_text(encoding="utf-8")


def _format_interaction_history(history: Sequence[Any]) -> str:
    entries: list[str] = []
    for item in history:
        if not isinstance(item, dict):
            continue
        entries.append(
            f"Q: {str(item.get('question', '')).strip()}\nA: {str(item.get('answer', '')).strip()}"
        )
    return "\n\n".join(entries)


def _build_step_context(
    config: EngineConfig,
    *,
    pipeline: Sequence[PipelineStepConfig],
    step_index: int,
    task_body: str,
    state: dict[str, Any],
) -> dict[str, str]:
    """Collect the titled context blocks for the step at *step_index*.

    ``PLAN.md`` is included for steps positioned after a ``plan`` step.
    """
    context: dict[str, str] = {"task definition": task_body}

    plan_index = next(
        (index for index, step in enumerate(pipeline) if step.name == PLAN_STEP_NAME),
        None,
    )
    if plan_index is not None and step_index > plan_index:
        plan_path = config.project_root / PLAN_FILE_NAME
        if plan_path.exists():
            context["plan content"] = plan_path.read_text(encoding="utf-8")
        else:
            _append_log(
                config.project_root,
                f"warning: {PLAN_FILE_NAME} not found for step '{pipeline[step_index].name}'",
                logs_path=config.logs_path,
            )

    history = _format_interaction_history(state.get("interactionHistory") or [])
    if history:
        context["interaction history"] = history
    return context


def assemble_prompt(
    *,
    pipeline: Sequence[PipelineStepConfig],
    step_name: str,
    context: dict[str, str],
    instructions: str,
    autonomy_level: int = 0,
    sequence_folder: str = "",
) -> str:
    intro = _INTRO
    if sequence_folder:
        intro += (
            f'\n\nYou are currently running a task from the folder "{sequence_folder}". '
            'Whenever this task mentions the "sequence folder" or "sequence directory", '
            f'it refers to "{sequence_folder}".'
        )
    overview = "This is the full pipeline for your awareness:\n" + "\n".join(
        f"{index}. {step.name}" for index, step in enumerate(pipeline, start=1)
    )
    responsibility = f'You are responsible for executing step "{step_name}".'
    context_text = "\n\n".join(
        f"--- {title.upper()} ---\n{content.strip()}" for title, content in context.items()
    )
    parts = [
        intro,
        _autonomy_instructions(autonomy_level),
        overview,
        responsibility,
        context_text,
        f'--- YOUR INSTRUCTIONS FOR THE "{step_name}" STEP ---',
        instructions.strip(),
    ]
    return "\n\n".join(part for part in parts if part)


def build_step_prompt(
    config: EngineConfig,
    *,
    pipeline: Sequence[PipelineStepConfig],
    step_index: int,
    task_body: str,
    state: dict[str, Any],
    autonomy_level: int,
    sequence_folder: str = "",
) -> str:
    step = pipeline[step_index]
    return assemble_prompt(
        pipeline=pipeline,
        step_name=step.name,
        context=_build_step_context(
            config,
            pipeline=pipeline,
            step_index=step_index,
            task_body=task_body,
            state=state,
        ),
        instructions=_load_step_instructions(config, step),
        autonomy_level=autonomy_level,
        sequence_folder=sequence_folder,
    )


# ---------------------------------------------------------------------------
# Feedback fragments appended to later attempts
# ---------------------------------------------------------------------------


def _check_failure_feedback(step: PipelineStepConfig, base_prompt: str, output: str) -> str:
    subject = "One of the validation checks" if len(step.checks) > 1 else "The validation check"
    return (
        f"Your previous attempt to complete the '{step.name}' step failed its validation check.\n\n"
        "Here are the original instructions you were given for this step:\n"
        f"--- ORIGINAL INSTRUCTIONS ---\n{base_prompt}\n--- END ORIGINAL INSTRUCTIONS ---\n\n"
        f"{subject} failed with the following error output:\n"
        f"--- ERROR OUTPUT ---\n{output or 'No output captured'}\n--- END ERROR OUTPUT ---\n\n"
        "Please re-attempt the task. Satisfy the original instructions while also fixing "
        "the error reported above. Do not modify the tests or checks."
    )


def _intervention_feedback(question: str, answer: str) -> str:
    return (
        f'You previously asked: "{question}". The user responded: "{answer}". '
        "Continue your work based on this answer."
    )


def _rate_limit_feedback() -> str:
    return (
        "You are resuming an automated task that was interrupted by an API usage limit. "
        "Your progress up to the point of interruption has been saved. Review your "
        "previous actions and continue the task from where you left off."
    )


def _compose_attempt_prompt(base_prompt: str, feedback: Sequence[str]) -> str:
    fragments = [fragment.strip() for fragment in feedback if fragment.strip()]
    if not fragments:
        return base_prompt
    joined = "\n\n".join(fragments)
    return f"{base_prompt}\n\n--- FEEDBACK ---\n{joined}\n--- END FEEDBACK ---"
