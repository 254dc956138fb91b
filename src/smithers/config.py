from __future__ import annotations
from pathlib import Path
from typing import Any

import yaml

from smithers.constants import (
    APPROVAL_POLICIES,
    CONFIG_PATH,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_APPROVAL,
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_HARD_STOP_MODE,
    DEFAULT_HARD_STOP_TOKEN,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_PROMISE_MODE,
    DEFAULT_SAME_PROMPT_EACH_ITERATION,
    DEFAULT_SANDBOX,
    FULL_AUTO_APPROVAL,
    FULL_AUTO_SANDBOX,
    HARD_STOP_MODES,
    PROMISE_MODES,
    SANDBOX_POLICIES,
)
from smithers.models import (
    AgentDefaults,
    AgentOptions,
    ConfigError,
    LoopDefaults,
    SmithersConfig,
    _coerce_bool,
    _coerce_optional_str,
)


def _default_config() -> SmithersConfig:
    return SmithersConfig(
        loop=LoopDefaults(
            max_iterations=DEFAULT_MAX_ITERATIONS,
            completion_promise=DEFAULT_COMPLETION_PROMISE,
            promise_mode=DEFAULT_PROMISE_MODE,
            same_prompt_each_iteration=DEFAULT_SAME_PROMPT_EACH_ITERATION,
            hard_stop_token=DEFAULT_HARD_STOP_TOKEN,
            hard_stop_mode=DEFAULT_HARD_STOP_MODE,
        ),
        agent=AgentDefaults(
            command=DEFAULT_AGENT_COMMAND,
            model=None,
            profile=None,
            sandbox=DEFAULT_SANDBOX,
            ask_for_approval=DEFAULT_APPROVAL,
        ),
    )


def _require_choice(value: str, choices: tuple[str, ...], *, field_name: str) -> str:
    if value not in choices:
        raise ConfigError(f"{field_name} must be one of {list(choices)}, got '{value}'")
    return value


def _section(loaded: dict[str, Any], name: str) -> dict[str, Any]:
    section = loaded.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise ConfigError(f"{name} section must be a mapping")
    return section


def _load_loop_defaults(section: dict[str, Any]) -> LoopDefaults:
    raw_max = section.get("max_iterations", DEFAULT_MAX_ITERATIONS)
    try:
        max_iterations = int(raw_max)
    except Exception as exc:
        raise ConfigError("loop.max_iterations must be a positive integer") from exc
    if max_iterations <= 0:
        raise ConfigError("loop.max_iterations must be > 0")

    completion_promise = str(section.get("completion_promise", DEFAULT_COMPLETION_PROMISE)).strip()
    if not completion_promise:
        raise ConfigError("loop.completion_promise must be non-empty")
    hard_stop_token = str(section.get("hard_stop_token", DEFAULT_HARD_STOP_TOKEN)).strip()
    if not hard_stop_token:
        raise ConfigError("loop.hard_stop_token must be non-empty")

    return LoopDefaults(
        max_iterations=max_iterations,
        completion_promise=completion_promise,
        promise_mode=_require_choice(
            str(section.get("promise_mode", DEFAULT_PROMISE_MODE)).strip().lower(),
            PROMISE_MODES,
            field_name="loop.promise_mode",
        ),
        same_prompt_each_iteration=_coerce_bool(
            section.get("same_prompt_each_iteration"),
            default=DEFAULT_SAME_PROMPT_EACH_ITERATION,
        ),
        hard_stop_token=hard_stop_token,
        hard_stop_mode=_require_choice(
            str(section.get("hard_stop_mode", DEFAULT_HARD_STOP_MODE)).strip().lower(),
            HARD_STOP_MODES,
            field_name="loop.hard_stop_mode",
        ),
    )


def _load_agent_defaults(section: dict[str, Any]) -> AgentDefaults:
    command = str(section.get("command", DEFAULT_AGENT_COMMAND)).strip()
    if not command:
        raise ConfigError("agent.command must be non-empty")
    return AgentDefaults(
        command=command,
        model=_coerce_optional_str(section.get("model")),
        profile=_coerce_optional_str(section.get("profile")),
        sandbox=_require_choice(
            str(section.get("sandbox", DEFAULT_SANDBOX)).strip(),
            SANDBOX_POLICIES,
            field_name="agent.sandbox",
        ),
        ask_for_approval=_require_choice(
            str(section.get("ask_for_approval", DEFAULT_APPROVAL)).strip(),
            APPROVAL_POLICIES,
            field_name="agent.ask_for_approval",
        ),
    )


def _load_config(workspace_root: Path) -> SmithersConfig:
    config_path = workspace_root / CONFIG_PATH
    if not config_path.exists():
        return _default_config()

    try:
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ConfigError(f"smithers config could not be parsed at {config_path}: {exc}") from exc

    if not isinstance(loaded, dict):
        return _default_config()

    return SmithersConfig(
        loop=_load_loop_defaults(_section(loaded, "loop")),
        agent=_load_agent_defaults(_section(loaded, "agent")),
    )


def _build_agent_options(
    *,
    workspace_root: Path,
    model: str | None = None,
    profile: str | None = None,
    sandbox: str | None = None,
    ask_for_approval: str | None = None,
    full_auto: bool = False,
    skip_git_repo_check: bool = False,
    fallback: dict[str, Any] | None = None,
    defaults: AgentDefaults | None = None,
) -> AgentOptions:
    """Merge CLI values over stored values over configured defaults.

    ``fallback`` is the ``agent`` block of an existing state record, so a
    resumed loop keeps its model and policies unless they are overridden.
    """
    stored = fallback or {}
    agent_defaults = defaults or _default_config().agent

    sandbox_value = sandbox or (FULL_AUTO_SANDBOX if full_auto else None)
    approval_value = ask_for_approval or (FULL_AUTO_APPROVAL if full_auto else None)

    return AgentOptions(
        model=model or _coerce_optional_str(stored.get("model")) or agent_defaults.model,
        profile=profile or _coerce_optional_str(stored.get("profile")) or agent_defaults.profile,
        sandbox=sandbox_value or _coerce_optional_str(stored.get("sandbox")) or agent_defaults.sandbox,
        ask_for_approval=(
            approval_value
            or _coerce_optional_str(stored.get("approval"))
            or agent_defaults.ask_for_approval
        ),
        full_auto=bool(full_auto),
        skip_git_repo_check=bool(skip_git_repo_check),
        cd=str(workspace_root),
    )
