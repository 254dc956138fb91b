"""Smithers state: loop record persistence, summaries, listing, and path resolution."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any

from smithers.constants import (
    DEFAULT_COMPLETION_PROMISE,
    DEFAULT_HARD_STOP_MODE,
    DEFAULT_HARD_STOP_TOKEN,
    DEFAULT_PROMISE_MODE,
    EVENTS_DIR_TEMPLATE,
    LOOP_STATUSES,
    LOOPS_DIR,
    PROMISE_MODES,
    STATUS_RUNNING,
    SUMMARY_FILENAME,
)
from smithers.models import AgentOptions, StateError, _coerce_bool
from smithers.utils import _read_json, _rel_to_workspace, _utc_now, _write_json


# ---------------------------------------------------------------------------
# Path resolution helpers
# ---------------------------------------------------------------------------


def _resolve_loops_dir(workspace_root: Path) -> Path:
    return workspace_root / LOOPS_DIR


def _resolve_state_path(loop_id: str | None, state_file: str | None, workspace_root: Path) -> Path:
    if state_file:
        return Path(state_file).expanduser().resolve()
    if not loop_id:
        raise StateError("a loop id is required when no state file is provided")
    return (_resolve_loops_dir(workspace_root) / f"{loop_id}.json").resolve()


def _resolve_artifacts_dir(loop_id: str, workspace_root: Path) -> Path:
    return (_resolve_loops_dir(workspace_root) / loop_id).resolve()


def _resolve_summary_path(artifacts_dir: Path, summary_json: str | None = None) -> Path:
    if summary_json:
        return Path(summary_json).expanduser().resolve()
    return artifacts_dir / SUMMARY_FILENAME


def _compute_jsonl_path(jsonl_base: Path | None, iteration: int) -> Path | None:
    """Per-iteration event log path; ``*.jsonl`` bases get a suffix, others are dirs."""
    if jsonl_base is None:
        return None
    if jsonl_base.suffix == ".jsonl":
        return jsonl_base.with_name(f"{jsonl_base.stem}_iter_{iteration}.jsonl")
    return jsonl_base / EVENTS_DIR_TEMPLATE.format(iteration=iteration)


# ---------------------------------------------------------------------------
# State creation / loading / normalisation
# ---------------------------------------------------------------------------


def _create_initial_state(
    *,
    loop_id: str,
    workspace_root: Path,
    prompt: str,
    completion_promise: str,
    promise_mode: str,
    max_iterations: int,
    same_prompt_each_iteration: bool,
    state_path: Path,
    artifacts_dir: Path,
    summary_path: Path | None,
    jsonl_events_base: Path | None,
    checkpoint_path: Path | None,
    hard_stop_token: str,
    hard_stop_mode: str,
    agent_options: AgentOptions,
) -> dict[str, Any]:
    now = _utc_now()
    checkpoint = None
    if checkpoint_path is not None:
        checkpoint = {
            "path": _rel_to_workspace(checkpoint_path, workspace_root),
            "hard_stop_token": hard_stop_token,
            "hard_stop_mode": hard_stop_mode,
            "paused_for_hard_stop": False,
        }
    return {
        "loop_id": loop_id,
        "created_at": now,
        "updated_at": now,
        "workspace_root": str(workspace_root),
        "prompt": prompt,
        "completion_promise": completion_promise,
        "promise_mode": promise_mode,
        "max_iterations": max_iterations,
        "same_prompt_each_iteration": bool(same_prompt_each_iteration),
        "iteration": 0,
        "status": STATUS_RUNNING,
        "agent": {
            "session_id": None,
            "model": agent_options.model,
            "profile": agent_options.profile,
            "sandbox": agent_options.sandbox,
            "approval": agent_options.ask_for_approval,
        },
        "checkpoint": checkpoint,
        "artifacts": {
            "dir": _rel_to_workspace(artifacts_dir, workspace_root),
            "last_message_path": None,
            "jsonl_path": None,
            "jsonl_events_base": (
                _rel_to_workspace(jsonl_events_base, workspace_root) if jsonl_events_base else None
            ),
            "summary_json_path": (
                _rel_to_workspace(summary_path, workspace_root) if summary_path else None
            ),
        },
        "history": [],
        "last_result": None,
        "state_path": _rel_to_workspace(state_path, workspace_root),
    }


def _load_state(path: Path) -> dict[str, Any]:
    return _normalize_state(_read_json(path))


def _normalize_state(state: dict[str, Any]) -> dict[str, Any]:
    required = ("loop_id", "prompt", "iteration", "status", "max_iterations")
    missing = [key for key in required if key not in state]
    if missing:
        raise StateError(f"state file missing required keys: {missing}")

    normalized = dict(state)
    loop_id = str(normalized.get("loop_id", "")).strip()
    if not loop_id:
        raise StateError("state.loop_id must be non-empty")
    normalized["loop_id"] = loop_id

    status = str(normalized.get("status", "")).strip()
    if status not in LOOP_STATUSES:
        raise StateError(f"state.status must be one of {sorted(LOOP_STATUSES)}, got '{status}'")
    normalized["status"] = status

    for key in ("iteration", "max_iterations"):
        try:
            value = int(normalized.get(key))
        except Exception as exc:
            raise StateError(f"state.{key} must be an integer") from exc
        if value < 0:
            raise StateError(f"state.{key} must be >= 0")
        normalized[key] = value

    normalized["completion_promise"] = str(
        normalized.get("completion_promise") or DEFAULT_COMPLETION_PROMISE
    )
    promise_mode = str(normalized.get("promise_mode") or DEFAULT_PROMISE_MODE).strip().lower()
    if promise_mode not in PROMISE_MODES:
        raise StateError(f"state.promise_mode must be one of {list(PROMISE_MODES)}, got '{promise_mode}'")
    normalized["promise_mode"] = promise_mode
    normalized["same_prompt_each_iteration"] = _coerce_bool(
        normalized.get("same_prompt_each_iteration"), default=False
    )

    agent_raw = normalized.get("agent")
    if not isinstance(agent_raw, dict):
        agent_raw = {}
    normalized["agent"] = {
        "session_id": agent_raw.get("session_id") or None,
        "model": agent_raw.get("model"),
        "profile": agent_raw.get("profile"),
        "sandbox": agent_raw.get("sandbox"),
        "approval": agent_raw.get("approval"),
    }

    checkpoint_raw = normalized.get("checkpoint")
    if isinstance(checkpoint_raw, dict) and checkpoint_raw.get("path"):
        normalized["checkpoint"] = {
            "path": str(checkpoint_raw["path"]),
            "hard_stop_token": str(checkpoint_raw.get("hard_stop_token") or DEFAULT_HARD_STOP_TOKEN),
            "hard_stop_mode": str(checkpoint_raw.get("hard_stop_mode") or DEFAULT_HARD_STOP_MODE),
            "paused_for_hard_stop": _coerce_bool(checkpoint_raw.get("paused_for_hard_stop")),
        }
    else:
        normalized["checkpoint"] = None

    artifacts_raw = normalized.get("artifacts")
    if not isinstance(artifacts_raw, dict):
        artifacts_raw = {}
    normalized["artifacts"] = {
        "dir": artifacts_raw.get("dir") or (LOOPS_DIR / loop_id).as_posix(),
        "last_message_path": artifacts_raw.get("last_message_path"),
        "jsonl_path": artifacts_raw.get("jsonl_path"),
        "jsonl_events_base": artifacts_raw.get("jsonl_events_base"),
        "summary_json_path": artifacts_raw.get("summary_json_path"),
    }

    history_raw = normalized.get("history", [])
    normalized["history"] = [dict(entry) for entry in history_raw if isinstance(entry, dict)] if isinstance(history_raw, list) else []
    if not isinstance(normalized.get("last_result"), dict):
        normalized["last_result"] = None
    return normalized


def _save_state(state: dict[str, Any], state_path: Path) -> None:
    state["updated_at"] = _utc_now()
    _write_json(state_path, state)


def _write_summary(summary_path: Path | None, state: dict[str, Any]) -> None:
    if summary_path is None:
        return
    summary = {
        "loop_id": state.get("loop_id"),
        "status": state.get("status"),
        "iteration": state.get("iteration"),
        "max_iterations": state.get("max_iterations"),
        "completion_promise": state.get("completion_promise"),
        "promise_mode": state.get("promise_mode"),
        "history": state.get("history", []),
        "workspace_root": state.get("workspace_root"),
        "artifacts": state.get("artifacts"),
        "last_result": state.get("last_result"),
        "updated_at": state.get("updated_at"),
    }
    _write_json(summary_path, summary)


# ---------------------------------------------------------------------------
# Resume / listing / cleanup
# ---------------------------------------------------------------------------


def _apply_resume_overrides(
    state: dict[str, Any],
    *,
    max_iterations: int | None = None,
    completion_promise: str | None = None,
    promise_mode: str | None = None,
    same_prompt_each_iteration: bool | None = None,
    agent_options: AgentOptions | None = None,
) -> dict[str, Any]:
    """Apply resume-time overrides in place; identity and history are untouched."""
    if max_iterations:
        state["max_iterations"] = int(max_iterations)
    if completion_promise:
        state["completion_promise"] = completion_promise
    if promise_mode:
        state["promise_mode"] = promise_mode
    if same_prompt_each_iteration is not None:
        state["same_prompt_each_iteration"] = bool(same_prompt_each_iteration)
    if agent_options is not None:
        agent = state.setdefault("agent", {})
        agent["model"] = agent_options.model
        agent["profile"] = agent_options.profile
        agent["sandbox"] = agent_options.sandbox
        agent["approval"] = agent_options.ask_for_approval
    checkpoint = state.get("checkpoint")
    if isinstance(checkpoint, dict):
        checkpoint["paused_for_hard_stop"] = False
    return state


def _list_states(workspace_root: Path) -> tuple[list[dict[str, Any]], int]:
    """Return (valid records newest first, count of state files found)."""
    loops_dir = _resolve_loops_dir(workspace_root)
    if not loops_dir.is_dir():
        return [], 0
    candidates = sorted(path for path in loops_dir.glob("*.json") if path.is_file())
    records: list[dict[str, Any]] = []
    for path in candidates:
        try:
            records.append(_read_json(path))
        except (StateError, OSError, UnicodeDecodeError):
            continue
    records.sort(key=lambda record: str(record.get("updated_at", "")), reverse=True)
    return records, len(candidates)


def _delete_artifacts(artifacts_dir: Path, state_path: Path) -> None:
    if artifacts_dir.exists():
        shutil.rmtree(artifacts_dir, ignore_errors=True)
    if state_path.exists():
        state_path.unlink()
