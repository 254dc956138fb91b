from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from smithers.config import _build_agent_options, _load_config
from smithers.constants import CONFIG_PATH, DEFAULT_MAX_ITERATIONS
from smithers.models import ConfigError


def _write_config(repo: Path, payload: object) -> None:
    config_path = repo / CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(payload, sort_keys=False), encoding="utf-8")


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config = _load_config(tmp_path)
    assert config.loop.max_iterations == DEFAULT_MAX_ITERATIONS
    assert config.loop.completion_promise == "TASK_COMPLETE"
    assert config.loop.promise_mode == "tag"
    assert config.loop.hard_stop_mode == "pause"
    assert config.agent.command == "codex"
    assert config.agent.sandbox == "read-only"
    assert config.agent.ask_for_approval == "on-request"


def test_config_sections_override_defaults(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        {
            "loop": {
                "max_iterations": 7,
                "completion_promise": "SHIPPED",
                "promise_mode": "plain",
                "same_prompt_each_iteration": True,
                "hard_stop_mode": "exit",
            },
            "agent": {"command": "/opt/bin/codex", "model": "o4-mini", "sandbox": "workspace-write"},
        },
    )
    config = _load_config(tmp_path)
    assert config.loop.max_iterations == 7
    assert config.loop.completion_promise == "SHIPPED"
    assert config.loop.promise_mode == "plain"
    assert config.loop.same_prompt_each_iteration is True
    assert config.loop.hard_stop_mode == "exit"
    assert config.agent.command == "/opt/bin/codex"
    assert config.agent.model == "o4-mini"
    assert config.agent.sandbox == "workspace-write"


def test_non_mapping_config_falls_back_to_defaults(tmp_path: Path) -> None:
    _write_config(tmp_path, ["not", "a", "mapping"])
    assert _load_config(tmp_path).loop.max_iterations == DEFAULT_MAX_ITERATIONS


@pytest.mark.parametrize(
    "payload",
    [
        {"loop": {"max_iterations": 0}},
        {"loop": {"promise_mode": "fuzzy"}},
        {"agent": {"sandbox": "everything"}},
        {"loop": "not-a-section"},
    ],
)
def test_invalid_config_values_raise(tmp_path: Path, payload: dict) -> None:
    _write_config(tmp_path, payload)
    with pytest.raises(ConfigError):
        _load_config(tmp_path)


def test_unparseable_yaml_raises(tmp_path: Path) -> None:
    config_path = tmp_path / CONFIG_PATH
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text("loop: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        _load_config(tmp_path)


def test_agent_options_precedence(tmp_path: Path) -> None:
    defaults = _load_config(tmp_path).agent
    stored = {"model": "stored-model", "sandbox": "workspace-write", "approval": "never"}

    options = _build_agent_options(workspace_root=tmp_path, fallback=stored, defaults=defaults)
    assert options.model == "stored-model"
    assert options.sandbox == "workspace-write"
    assert options.ask_for_approval == "never"
    assert options.cd == str(tmp_path)

    options = _build_agent_options(
        workspace_root=tmp_path,
        model="cli-model",
        sandbox="read-only",
        fallback=stored,
        defaults=defaults,
    )
    assert options.model == "cli-model"
    assert options.sandbox == "read-only"


def test_full_auto_preset_fills_unset_policies(tmp_path: Path) -> None:
    options = _build_agent_options(workspace_root=tmp_path, full_auto=True)
    assert options.full_auto is True
    assert options.sandbox == "workspace-write"
    assert options.ask_for_approval == "on-request"
    assert options.is_dangerous is False

    dangerous = _build_agent_options(
        workspace_root=tmp_path, sandbox="danger-full-access", full_auto=True
    )
    assert dangerous.sandbox == "danger-full-access"
    assert dangerous.is_dangerous is True
