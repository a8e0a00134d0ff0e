"""Taskherd constants: phases, defaults, file layout, and agent event names."""

from __future__ import annotations

import re

TASK_PHASES = (
    "pending",
    "running",
    "waiting_for_input",
    "done",
    "failed",
    "interrupted",
    "waiting_for_reset",
)
STEP_PHASES = ("pending", "running", "done", "failed")
CHECK_TYPES = ("none", "fileExists", "shell")
CHECK_EXPECTATIONS = ("pass", "fail")

TASK_STATUS_VERSION = 2
SEQUENCE_STATUS_VERSION = 1

CONFIG_DIR_NAME = ".taskherd"
CONFIG_FILE_NAME = "config.yaml"
STATE_FILE_SUFFIX = ".state.json"
ANSWER_FILE_SUFFIX = ".answer"
JOURNAL_FILE_NAME = "run-journal.json"
ORCHESTRATOR_LOG_NAME = "orchestrator.log"
PLAN_FILE_NAME = "PLAN.md"
PLAN_STEP_NAME = "plan"
TASK_FILE_SUFFIX = ".md"

DEFAULT_TASK_FOLDER = "taskherd-tasks"
DEFAULT_STATE_PATH = ".taskherd/state"
DEFAULT_LOGS_PATH = ".taskherd/logs"
DEFAULT_STEPS_PATH = ".taskherd/steps"
DEFAULT_MAIN_BRANCH = "main"
DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH_PREFIX = "taskherd"
DEFAULT_PIPELINE_NAME = "default"
DEFAULT_AGENT_COMMAND = "claude -p --output-format stream-json --verbose"
DEFAULT_AGENT_TIMEOUT_SECONDS = 0.0
DEFAULT_ANSWER_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_AUTONOMY_LEVEL = 0
MAX_AUTONOMY_LEVEL = 5
DEFAULT_MODEL_NAME = "default"
REMOTE_SYNC_TIMEOUT_SECONDS = 5.0
LONG_RATE_LIMIT_WAIT_SECONDS = 8 * 60 * 60

ASK_HUMAN_TOOL_NAME = "askHuman"
RATE_LIMIT_TEXT_PATTERN = re.compile(r"usage limit reached\|(\d+)", re.IGNORECASE)

TOKEN_USAGE_FIELDS = {
    "input_tokens": "inputTokens",
    "output_tokens": "outputTokens",
    "cache_creation_input_tokens": "cacheCreationInputTokens",
    "cache_read_input_tokens": "cacheReadInputTokens",
}

JOURNAL_EVENT_TYPES = (
    "task_started",
    "task_finished",
    "sequence_started",
    "sequence_finished",
)

AGENT_ENV_TASK_ID = "TASKHERD_TASK_ID"
AGENT_ENV_STEP = "TASKHERD_STEP"
AGENT_ENV_PIPELINE = "TASKHERD_PIPELINE"
AGENT_ENV_STATE_FILE = "TASKHERD_STATE_FILE"
AGENT_ENV_PROJECT_ROOT = "TASKHERD_PROJECT_ROOT"
