"""Smithers data models: exceptions, dataclasses, and coercion helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from smithers.constants import DANGEROUS_APPROVAL, DANGEROUS_SANDBOX


def _coerce_bool(value: Any, *, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"true", "1", "yes", "on"}
    return bool(value) if value is not None else default


def _coerce_optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class StateError(RuntimeError):
    """Raised when a loop state record cannot be loaded or validated."""


class ConfigError(RuntimeError):
    """Raised when the workspace configuration is invalid."""


class AgentSpawnError(RuntimeError):
    """Raised when the agent process cannot be started."""


@dataclass(frozen=True)
class AgentOptions:
    model: str | None = None
    profile: str | None = None
    sandbox: str | None = None
    ask_for_approval: str | None = None
    full_auto: bool = False
    skip_git_repo_check: bool = False
    cd: str | None = None

    @property
    def is_dangerous(self) -> bool:
        return self.sandbox == DANGEROUS_SANDBOX or self.ask_for_approval == DANGEROUS_APPROVAL


@dataclass(frozen=True)
class IterationOutcome:
    """What one agent invocation resolved to."""
    exit_code: int | None
    session_id: str | None
    stdout: str
    stderr: str


@dataclass(frozen=True)
class LoopDefaults:
    max_iterations: int
    completion_promise: str
    promise_mode: str
    same_prompt_each_iteration: bool
    hard_stop_token: str
    hard_stop_mode: str


@dataclass(frozen=True)
class AgentDefaults:
    command: str
    model: str | None
    profile: str | None
    sandbox: str
    ask_for_approval: str


@dataclass(frozen=True)
class SmithersConfig:
    loop: LoopDefaults
    agent: AgentDefaults
