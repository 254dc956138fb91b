"""Smithers constants: defaults, status vocabulary, and path layout."""

from __future__ import annotations

import re
from pathlib import Path

DEFAULT_AGENT_COMMAND = "codex"
DEFAULT_MAX_ITERATIONS = 30
DEFAULT_COMPLETION_PROMISE = "TASK_COMPLETE"
DEFAULT_PROMISE_MODE = "tag"
DEFAULT_SANDBOX = "read-only"
DEFAULT_APPROVAL = "on-request"
DEFAULT_HARD_STOP_TOKEN = "HARD STOP"
DEFAULT_HARD_STOP_MODE = "pause"
DEFAULT_SAME_PROMPT_EACH_ITERATION = False

FULL_AUTO_SANDBOX = "workspace-write"
FULL_AUTO_APPROVAL = "on-request"

PROMISE_MODES = ("tag", "plain", "regex")
HARD_STOP_MODES = ("pause", "exit")
SANDBOX_POLICIES = ("read-only", "workspace-write", "danger-full-access")
APPROVAL_POLICIES = ("untrusted", "on-failure", "on-request", "never")
DANGEROUS_SANDBOX = "danger-full-access"
DANGEROUS_APPROVAL = "never"

# ---------------------------------------------------------------------------
# Loop status vocabulary
# ---------------------------------------------------------------------------

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_STOPPED_MAX_ITERATIONS = "stopped_max_iterations"
STATUS_PAUSED_HARD_STOP = "paused_hard_stop"
STATUS_PAUSED_USER_INTERRUPT = "paused_user_interrupt"
STATUS_CANCELED = "canceled"
STATUS_ERROR_SPAWN = "error_spawn"
STATUS_ERROR_NO_SESSION = "error_no_session"

LOOP_STATUSES: frozenset[str] = frozenset(
    {
        STATUS_RUNNING,
        STATUS_COMPLETED,
        STATUS_STOPPED_MAX_ITERATIONS,
        STATUS_PAUSED_HARD_STOP,
        STATUS_PAUSED_USER_INTERRUPT,
        STATUS_CANCELED,
        STATUS_ERROR_SPAWN,
        STATUS_ERROR_NO_SESSION,
    }
)
ERROR_STATUSES: frozenset[str] = frozenset({STATUS_ERROR_SPAWN, STATUS_ERROR_NO_SESSION})

# ---------------------------------------------------------------------------
# Workspace layout
# ---------------------------------------------------------------------------

SMITHERS_DIR = Path(".codex") / "smithers"
LOOPS_DIR = SMITHERS_DIR / "loops"
LOG_PATH = SMITHERS_DIR / "logs" / "smithers.log"
CONFIG_PATH = SMITHERS_DIR / "config.yaml"
SUMMARY_FILENAME = "summary.json"
LAST_MESSAGE_TEMPLATE = "last_message_iter_{iteration}.txt"
EVENTS_DIR_TEMPLATE = "events_iter_{iteration}.jsonl"
HELPER_PROMPT_PATH = Path(".codex") / "prompts" / "smithers.md"
HELPER_SKILL_PATH = Path(".codex") / "skills" / "smithers" / "SKILL.md"

SESSION_UUID_PATTERN = re.compile(
    r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}",
    re.IGNORECASE,
)
LINE_SPLIT_PATTERN = re.compile(r"\r?\n")
TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"
PROMPT_TOKEN_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
