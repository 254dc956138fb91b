from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

from smithers.config import _build_agent_options, _load_config
from smithers.constants import (
    APPROVAL_POLICIES,
    DEFAULT_COMPLETION_PROMISE,
    ERROR_STATUSES,
    HARD_STOP_MODES,
    HELPER_PROMPT_PATH,
    HELPER_SKILL_PATH,
    PROMISE_MODES,
    SANDBOX_POLICIES,
    STATUS_CANCELED,
)
from smithers.loop import LoopController
from smithers.models import AgentOptions, ConfigError, StateError
from smithers.prompts import install_helpers
from smithers.runners import AgentRunner
from smithers.state import (
    _apply_resume_overrides,
    _create_initial_state,
    _delete_artifacts,
    _list_states,
    _load_state,
    _resolve_artifacts_dir,
    _resolve_state_path,
    _resolve_summary_path,
    _save_state,
    _write_summary,
)
from smithers.utils import _append_log, _default_loop_id, _read_json, _resolve_in_workspace


def _positive_int(value: str) -> int:
    try:
        parsed = int(value, 10)
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError("value must be a positive integer") from None
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be a positive integer")
    return parsed


def _workspace_from_args(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "cd", None) or Path.cwd()).expanduser().resolve()


def _agent_options_from_args(
    args: argparse.Namespace,
    workspace_root: Path,
    *,
    fallback: dict[str, Any] | None = None,
    defaults: Any = None,
) -> AgentOptions:
    return _build_agent_options(
        workspace_root=workspace_root,
        model=args.model,
        profile=args.profile,
        sandbox=args.sandbox,
        ask_for_approval=args.ask_for_approval,
        full_auto=bool(args.full_auto),
        skip_git_repo_check=bool(args.skip_git_repo_check),
        fallback=fallback,
        defaults=defaults,
    )


def _run_controller(
    state: dict[str, Any],
    *,
    state_path: Path,
    workspace_root: Path,
    artifacts_dir: Path,
    summary_path: Path | None,
    jsonl_events_base: Path | None,
    agent_options: AgentOptions,
    agent_command: str,
) -> int:
    controller = LoopController(
        state,
        state_path=state_path,
        workspace_root=workspace_root,
        artifacts_dir=artifacts_dir,
        summary_path=summary_path,
        jsonl_events_base=jsonl_events_base,
        runner=AgentRunner(agent_options, executable=agent_command),
    )
    controller.install_interrupt_handler()
    try:
        final_status = controller.run()
    finally:
        controller.restore_interrupt_handler()
    print(f"loop {state['loop_id']}: {final_status} (iteration {state['iteration']}/{state['max_iterations']})")
    return 1 if final_status in ERROR_STATUSES else 0


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_start(args: argparse.Namespace) -> int:
    workspace_root = _workspace_from_args(args)
    try:
        config = _load_config(workspace_root)
    except ConfigError as exc:
        print(f"smithers start: ERROR {exc}", file=sys.stderr)
        return 1

    prompt = str(args.prompt or "").strip()
    if not prompt:
        print("smithers start: ERROR prompt must be non-empty", file=sys.stderr)
        return 2

    loop_id = args.loop_id or _default_loop_id(workspace_root)
    state_path = _resolve_state_path(loop_id, args.state_file, workspace_root)
    if state_path.exists():
        print(
            f"smithers start: ERROR state file already exists at {state_path}. Use --loop-id to start a new loop.",
            file=sys.stderr,
        )
        return 1

    artifacts_dir = (
        Path(args.last_message_dir).expanduser().resolve()
        if args.last_message_dir
        else _resolve_artifacts_dir(loop_id, workspace_root)
    )
    summary_path = _resolve_summary_path(artifacts_dir, args.summary_json)
    jsonl_events_base = (
        _resolve_in_workspace(workspace_root, args.jsonl_events) if args.jsonl_events else None
    )
    checkpoint_path = _resolve_in_workspace(workspace_root, args.todo_file) if args.todo_file else None
    loop_defaults = config.loop
    same_prompt = args.same_prompt_each_iteration
    if same_prompt is None:
        same_prompt = loop_defaults.same_prompt_each_iteration
    agent_options = _agent_options_from_args(args, workspace_root, defaults=config.agent)

    state = _create_initial_state(
        loop_id=loop_id,
        workspace_root=workspace_root,
        prompt=prompt,
        completion_promise=args.completion_promise or loop_defaults.completion_promise,
        promise_mode=args.promise_mode or loop_defaults.promise_mode,
        max_iterations=args.max_iterations or loop_defaults.max_iterations,
        same_prompt_each_iteration=same_prompt,
        state_path=state_path,
        artifacts_dir=artifacts_dir,
        summary_path=summary_path,
        jsonl_events_base=jsonl_events_base,
        checkpoint_path=checkpoint_path,
        hard_stop_token=args.hard_stop_token or loop_defaults.hard_stop_token,
        hard_stop_mode=args.hard_stop_mode or loop_defaults.hard_stop_mode,
        agent_options=agent_options,
    )
    _save_state(state, state_path)
    _write_summary(summary_path, state)
    _append_log(workspace_root, f"loop {loop_id} created state_file={state_path}")

    print("smithers start")
    print(f"loop_id: {loop_id}")
    print(f"state_file: {state_path}")
    print(f"max_iterations: {state['max_iterations']}")
    print(f"completion_promise: {state['completion_promise']} ({state['promise_mode']})")
    return _run_controller(
        state,
        state_path=state_path,
        workspace_root=workspace_root,
        artifacts_dir=artifacts_dir,
        summary_path=summary_path,
        jsonl_events_base=jsonl_events_base,
        agent_options=agent_options,
        agent_command=config.agent.command,
    )


def _cmd_resume(args: argparse.Namespace) -> int:
    lookup_root = _workspace_from_args(args)
    try:
        state_path = _resolve_state_path(args.loop_id, args.state_file, lookup_root)
        state = _load_state(state_path)
    except StateError as exc:
        print(f"smithers resume: ERROR {exc}", file=sys.stderr)
        return 1

    workspace_root = (
        Path(state["workspace_root"]).resolve() if state.get("workspace_root") else lookup_root
    )
    try:
        config = _load_config(workspace_root)
    except ConfigError as exc:
        print(f"smithers resume: ERROR {exc}", file=sys.stderr)
        return 1

    artifacts = state["artifacts"]
    artifacts_dir = _resolve_in_workspace(workspace_root, artifacts["dir"])
    summary_path = (
        _resolve_in_workspace(workspace_root, artifacts["summary_json_path"])
        if artifacts.get("summary_json_path")
        else _resolve_summary_path(artifacts_dir)
    )
    if args.jsonl_events:
        jsonl_events_base = _resolve_in_workspace(workspace_root, args.jsonl_events)
        artifacts["jsonl_events_base"] = args.jsonl_events
    elif artifacts.get("jsonl_events_base"):
        jsonl_events_base = _resolve_in_workspace(workspace_root, artifacts["jsonl_events_base"])
    else:
        jsonl_events_base = None

    agent_options = _agent_options_from_args(
        args,
        workspace_root,
        fallback=state["agent"],
        defaults=config.agent,
    )
    _apply_resume_overrides(
        state,
        max_iterations=args.max_iterations,
        completion_promise=args.completion_promise,
        promise_mode=args.promise_mode,
        same_prompt_each_iteration=args.same_prompt_each_iteration,
        agent_options=agent_options,
    )
    _save_state(state, state_path)
    _append_log(
        workspace_root,
        f"loop {state['loop_id']} resumed from iteration={state['iteration']} status={state['status']}",
    )

    print("smithers resume")
    print(f"loop_id: {state['loop_id']}")
    print(f"state_file: {state_path}")
    print(f"iteration: {state['iteration']}/{state['max_iterations']}")
    return _run_controller(
        state,
        state_path=state_path,
        workspace_root=workspace_root,
        artifacts_dir=artifacts_dir,
        summary_path=summary_path,
        jsonl_events_base=jsonl_events_base,
        agent_options=agent_options,
        agent_command=config.agent.command,
    )


def _cmd_status(args: argparse.Namespace) -> int:
    workspace_root = _workspace_from_args(args)
    try:
        state_path = _resolve_state_path(args.loop_id, args.state_file, workspace_root)
        state = _read_json(state_path)
    except StateError as exc:
        print(f"smithers status: ERROR {exc}", file=sys.stderr)
        return 1
    print(json.dumps(state, indent=2))
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    workspace_root = _workspace_from_args(args)
    records, found = _list_states(workspace_root)
    if not found:
        print("No loops found.")
        return 0
    if not records:
        print("No valid loop state files found.")
        return 0

    rows = [
        {
            "loop_id": record.get("loop_id"),
            "status": record.get("status"),
            "iteration": record.get("iteration"),
            "max_iterations": record.get("max_iterations"),
            "completion_promise": record.get("completion_promise"),
            "same_prompt_each_iteration": bool(record.get("same_prompt_each_iteration", False)),
            "created_at": record.get("created_at"),
            "updated_at": record.get("updated_at"),
        }
        for record in records
    ]
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0

    print("Loops in this workspace:")
    for row in rows:
        label = f"{row['loop_id']} [ralph]" if row["same_prompt_each_iteration"] else str(row["loop_id"])
        print("")
        print(f"  {label}")
        print(f"    Status: {row['status']}")
        print(f"    Iteration: {row['iteration']}/{row['max_iterations']}")
        print(f"    Promise: {row['completion_promise']}")
        print(f"    Updated: {row['updated_at'] or '<unknown>'}")
    return 0


def _cmd_cancel(args: argparse.Namespace) -> int:
    workspace_root = _workspace_from_args(args)
    try:
        state_path = _resolve_state_path(args.loop_id, args.state_file, workspace_root)
        state = _read_json(state_path)
    except StateError as exc:
        print(f"smithers cancel: ERROR {exc}", file=sys.stderr)
        return 1

    state["status"] = STATUS_CANCELED
    _save_state(state, state_path)
    _append_log(workspace_root, f"loop {state.get('loop_id')} canceled")

    artifacts = state.get("artifacts") if isinstance(state.get("artifacts"), dict) else {}
    artifacts_dir = _resolve_in_workspace(
        workspace_root,
        artifacts.get("dir") or _resolve_artifacts_dir(str(state.get("loop_id")), workspace_root),
    )
    if args.cleanup_artifacts:
        _delete_artifacts(artifacts_dir, state_path)
        print(f"Canceled loop {state.get('loop_id')} and removed artifacts.")
        return 0

    summary_path = (
        _resolve_in_workspace(workspace_root, artifacts["summary_json_path"])
        if artifacts.get("summary_json_path")
        else None
    )
    _write_summary(summary_path, state)
    print(f"Canceled loop {state.get('loop_id')}. Artifacts remain at {artifacts_dir}.")
    return 0


def _cmd_install_helpers(args: argparse.Namespace) -> int:
    home = Path(args.home).expanduser().resolve() if args.home else Path.home()
    try:
        prompt_path, skill_path = install_helpers(
            home,
            completion_promise=args.completion_promise or DEFAULT_COMPLETION_PROMISE,
            loop_id=args.loop_id or "<loop-id>",
            prompt_relpath=HELPER_PROMPT_PATH,
            skill_relpath=HELPER_SKILL_PATH,
        )
    except (OSError, RuntimeError) as exc:
        print(f"smithers install-helpers: ERROR {exc}", file=sys.stderr)
        return 1
    print(f"Installed prompt helper at {prompt_path}")
    print(f"Installed skill helper at {skill_path}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_lookup_arguments(parser: argparse.ArgumentParser, *, require_loop_id: bool) -> None:
    parser.add_argument("--loop-id", required=require_loop_id, help="Loop identifier")
    parser.add_argument("--state-file", default=None, help="Path to state file (overrides loop id lookup)")
    parser.add_argument("--cd", default=None, help="Workspace root used to resolve the state path")


def _add_agent_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", default=None, help="Agent model")
    parser.add_argument("--profile", default=None, help="Agent profile name")
    parser.add_argument("--sandbox", choices=SANDBOX_POLICIES, default=None, help="Sandbox policy")
    parser.add_argument(
        "--ask-for-approval",
        choices=APPROVAL_POLICIES,
        default=None,
        help="Approval policy",
    )
    parser.add_argument("--full-auto", action="store_true", help="Enable the agent's low-friction preset")
    parser.add_argument(
        "--skip-git-repo-check",
        action="store_true",
        help="Skip git repository detection in the agent",
    )


def _add_loop_override_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--max-iterations",
        type=_positive_int,
        default=None,
        help="Maximum iterations before stopping (must be > 0)",
    )
    parser.add_argument("--completion-promise", default=None, help="Completion promise token")
    parser.add_argument("--promise-mode", choices=PROMISE_MODES, default=None, help="Promise detection mode")
    parser.add_argument(
        "--same-prompt",
        dest="same_prompt_each_iteration",
        action="store_true",
        help="Resend the full prompt every iteration instead of a short continuation.",
    )
    parser.add_argument(
        "--no-same-prompt",
        dest="same_prompt_each_iteration",
        action="store_false",
        help="Send a short continuation prompt once a session exists.",
    )
    parser.add_argument("--jsonl-events", default=None, help="Where to store per-iteration JSONL event streams")
    parser.set_defaults(same_prompt_each_iteration=None)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="smithers",
        description="Persistent agent iteration loop with completion promises",
    )
    subparsers = parser.add_subparsers(dest="command")

    start = subparsers.add_parser("start", help="Start a new loop for a task prompt")
    start.add_argument("prompt", help="Task prompt to run through the loop")
    start.add_argument("--loop-id", default=None, help="Loop identifier (defaults to <workspace>-<timestamp>)")
    start.add_argument("--state-file", default=None, help="Path to state file")
    start.add_argument("--cd", default=None, help="Workspace root")
    start.add_argument("--last-message-dir", default=None, help="Directory for captured last messages")
    start.add_argument("--summary-json", default=None, help="Where to write summary JSON")
    start.add_argument("--todo-file", default=None, help="Path to TODO file scanned for HARD STOP checkpoints")
    start.add_argument("--hard-stop-token", default=None, help="Token that triggers a HARD STOP")
    start.add_argument("--hard-stop-mode", choices=HARD_STOP_MODES, default=None, help="HARD STOP behavior")
    _add_loop_override_arguments(start)
    _add_agent_arguments(start)
    start.set_defaults(handler=_cmd_start)

    resume = subparsers.add_parser("resume", help="Resume a paused or stopped loop from saved state")
    _add_lookup_arguments(resume, require_loop_id=False)
    _add_loop_override_arguments(resume)
    _add_agent_arguments(resume)
    resume.set_defaults(handler=_cmd_resume)

    status = subparsers.add_parser("status", help="Show loop state as JSON")
    _add_lookup_arguments(status, require_loop_id=False)
    status.set_defaults(handler=_cmd_status)

    list_parser = subparsers.add_parser("list", help="List loops in the workspace")
    list_parser.add_argument("--cd", default=None, help="Workspace root")
    list_parser.add_argument("--json", action="store_true", help="Print loops as JSON")
    list_parser.set_defaults(handler=_cmd_list)

    cancel = subparsers.add_parser("cancel", help="Mark a loop canceled and optionally remove artifacts")
    _add_lookup_arguments(cancel, require_loop_id=False)
    cancel.add_argument(
        "--cleanup-artifacts",
        action="store_true",
        help="Remove stored artifacts and the state file after canceling",
    )
    cancel.set_defaults(handler=_cmd_cancel)

    helpers = subparsers.add_parser(
        "install-helpers",
        help="Install custom prompt and skill helper files for smithers loops",
    )
    helpers.add_argument("--completion-promise", default=None, help="Completion promise to include in helpers")
    helpers.add_argument("--loop-id", default=None, help="Loop id placeholder for the prompt helper")
    helpers.add_argument("--home", default=None, help="Home directory to install into (default: ~)")
    helpers.set_defaults(handler=_cmd_install_helpers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2
    return int(handler(args))
