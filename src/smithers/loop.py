"""Smithers loop controller: the iteration state machine and interrupt handling."""

from __future__ import annotations

import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, Callable

from smithers.constants import (
    DEFAULT_HARD_STOP_TOKEN,
    LAST_MESSAGE_TEMPLATE,
    STATUS_COMPLETED,
    STATUS_ERROR_NO_SESSION,
    STATUS_ERROR_SPAWN,
    STATUS_PAUSED_HARD_STOP,
    STATUS_PAUSED_USER_INTERRUPT,
    STATUS_RUNNING,
    STATUS_STOPPED_MAX_ITERATIONS,
)
from smithers.detection import check_hard_stop, detect_completion
from smithers.models import AgentSpawnError
from smithers.prompts import build_continue_prompt, build_full_prompt
from smithers.runners import AgentRunner
from smithers.state import _compute_jsonl_path, _save_state, _write_summary
from smithers.utils import _append_log, _read_text_or_empty, _rel_to_workspace, _utc_now


def prompt_yes_no(message: str) -> bool:
    try:
        answer = input(f"{message} [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


class LoopController:
    """Drive agent iterations for one loop state record until a stop condition.

    The record is mutated in place and persisted after every transition.
    Interrupt bookkeeping lives on the instance, so several controllers can
    coexist in one process.
    """

    def __init__(
        self,
        state: dict[str, Any],
        *,
        state_path: Path,
        workspace_root: Path,
        artifacts_dir: Path,
        runner: AgentRunner,
        summary_path: Path | None = None,
        jsonl_events_base: Path | None = None,
        confirm: Callable[[str], bool] = prompt_yes_no,
    ) -> None:
        self.state = state
        self.state_path = state_path
        self.workspace_root = workspace_root
        self.artifacts_dir = artifacts_dir
        self.runner = runner
        self.summary_path = summary_path
        self.jsonl_events_base = jsonl_events_base
        self.confirm = confirm
        self._current_process: subprocess.Popen[bytes] | None = None
        self._interrupted = threading.Event()
        self._recording = False
        self._deferred_sigint = False
        self._previous_sigint_handler: Any = None

    # ------------------------------------------------------------------
    # Interrupt handling
    # ------------------------------------------------------------------

    @property
    def interrupted(self) -> bool:
        return self._interrupted.is_set()

    def _register_process(self, process: subprocess.Popen[bytes] | None) -> None:
        self._current_process = process

    def _terminate_child(self) -> None:
        process = self._current_process
        if process is not None and process.poll() is None:
            process.terminate()

    def interrupt(self) -> None:
        """Terminate the in-flight agent and persist a ``paused_user_interrupt`` record."""
        self._interrupted.set()
        self._terminate_child()
        self.state["status"] = STATUS_PAUSED_USER_INTERRUPT
        self._persist()
        _append_log(self.workspace_root, f"loop {self.state['loop_id']} paused by user interrupt")
        print("\nPaused due to user interrupt. State saved for resume.", file=sys.stderr)

    def _handle_sigint(self, _signum: int, _frame: Any) -> None:
        if self._recording:
            # Finish recording the iteration first; run() exits afterwards.
            self._deferred_sigint = True
            self._interrupted.set()
            self._terminate_child()
            return
        self.interrupt()
        raise SystemExit(1)

    def install_interrupt_handler(self) -> None:
        self._previous_sigint_handler = signal.signal(signal.SIGINT, self._handle_sigint)

    def restore_interrupt_handler(self) -> None:
        if self._previous_sigint_handler is not None:
            signal.signal(signal.SIGINT, self._previous_sigint_handler)
            self._previous_sigint_handler = None

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    def _persist(self) -> None:
        _save_state(self.state, self.state_path)
        _write_summary(self.summary_path, self.state)

    def _transition(self, status: str) -> None:
        self.state["status"] = status
        self._persist()
        _append_log(
            self.workspace_root,
            f"loop {self.state['loop_id']} iteration={self.state['iteration']} status={status}",
        )

    # ------------------------------------------------------------------
    # Iteration helpers
    # ------------------------------------------------------------------

    def _checkpoint_path(self) -> Path | None:
        checkpoint = self.state.get("checkpoint")
        if not isinstance(checkpoint, dict) or not checkpoint.get("path"):
            return None
        return (self.workspace_root / checkpoint["path"]).resolve()

    def _build_prompt(self, iteration: int) -> str:
        state = self.state
        if state["agent"].get("session_id") is None or state.get("same_prompt_each_iteration"):
            checkpoint = state.get("checkpoint") or {}
            return build_full_prompt(
                loop_id=state["loop_id"],
                iteration=iteration,
                max_iterations=state["max_iterations"],
                promise_mode=state["promise_mode"],
                completion_promise=state["completion_promise"],
                user_prompt=state["prompt"],
                checkpoint_path=checkpoint.get("path"),
                hard_stop_token=checkpoint.get("hard_stop_token") or DEFAULT_HARD_STOP_TOKEN,
            )
        return build_continue_prompt(
            loop_id=state["loop_id"],
            iteration=iteration,
            max_iterations=state["max_iterations"],
            promise_mode=state["promise_mode"],
            completion_promise=state["completion_promise"],
        )

    def _warn_dangerous(self) -> None:
        if self.runner.options.is_dangerous:
            print(
                "[WARN] Running with dangerous settings. Commands may execute without sandbox or approvals.",
                file=sys.stderr,
            )

    def _on_detection_diagnostic(self, message: str) -> None:
        print(message, file=sys.stderr)
        _append_log(self.workspace_root, message)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def run(self) -> str:
        state = self.state
        self._warn_dangerous()
        max_iterations = int(state["max_iterations"])
        start = int(state["iteration"]) + 1
        _append_log(
            self.workspace_root,
            f"loop {state['loop_id']} start iteration={start} max_iterations={max_iterations} status={state['status']}",
        )
        if start > max_iterations:
            print(
                f"Loop {state['loop_id']} has no iterations left "
                f"({state['iteration']}/{max_iterations}); raise --max-iterations to continue.",
                file=sys.stderr,
            )
            return state["status"]

        history = state.setdefault("history", [])
        for iteration in range(start, max_iterations + 1):
            if self.interrupted:
                break

            last_message_path = self.artifacts_dir / LAST_MESSAGE_TEMPLATE.format(iteration=iteration)
            jsonl_path = _compute_jsonl_path(self.jsonl_events_base, iteration)
            last_message_path.parent.mkdir(parents=True, exist_ok=True)
            if last_message_path.exists():
                last_message_path.unlink()

            prompt = self._build_prompt(iteration)
            print(f"\n--- smithers iteration {iteration}/{max_iterations} (loop {state['loop_id']}) ---")

            try:
                outcome = self.runner.run(
                    prompt,
                    session_id=state["agent"].get("session_id"),
                    workspace_root=self.workspace_root,
                    last_message_path=last_message_path,
                    jsonl_path=jsonl_path,
                    on_spawn=self._register_process,
                )
            except AgentSpawnError as exc:
                print(f"agent exec failed: {exc}", file=sys.stderr)
                state["last_result"] = {"exit_code": None, "detected_promise": False}
                self._transition(STATUS_ERROR_SPAWN)
                break

            if not outcome.session_id:
                print("Unable to detect agent session id. The loop cannot continue.", file=sys.stderr)
                self._transition(STATUS_ERROR_NO_SESSION)
                break

            last_message = _read_text_or_empty(last_message_path)
            detected = detect_completion(
                last_message,
                state["promise_mode"],
                state["completion_promise"],
                on_diagnostic=self._on_detection_diagnostic,
            )
            last_message_rel = _rel_to_workspace(last_message_path, self.workspace_root)
            jsonl_rel = _rel_to_workspace(jsonl_path, self.workspace_root) if jsonl_path is not None else None

            # iteration and history must land in the record together.
            self._recording = True
            try:
                entry = {
                    "iteration": iteration,
                    "finished_at": _utc_now(),
                    "exit_code": outcome.exit_code,
                    "detected_promise": detected,
                    "last_message_path": last_message_rel,
                    "jsonl_path": jsonl_rel,
                }
                state["agent"]["session_id"] = outcome.session_id
                state["iteration"] = iteration
                state["status"] = STATUS_PAUSED_USER_INTERRUPT if self.interrupted else STATUS_RUNNING
                state["last_result"] = {"exit_code": outcome.exit_code, "detected_promise": detected}
                state["artifacts"]["last_message_path"] = last_message_rel
                state["artifacts"]["jsonl_path"] = jsonl_rel
                history.append(entry)
                self._persist()
            finally:
                self._recording = False
            _append_log(
                self.workspace_root,
                f"loop {state['loop_id']} iteration={iteration} exit_code={outcome.exit_code} detected_promise={detected}",
            )

            if self._deferred_sigint:
                self._deferred_sigint = False
                self.interrupt()
                raise SystemExit(1)
            if self.interrupted:
                break

            if detected:
                self._transition(STATUS_COMPLETED)
                print(f"Completion promise detected on iteration {iteration}. Loop {state['loop_id']} completed.")
                break

            checkpoint_path = self._checkpoint_path()
            checkpoint = state.get("checkpoint") or {}
            if checkpoint_path is not None and check_hard_stop(checkpoint_path, checkpoint.get("hard_stop_token", "")):
                checkpoint["paused_for_hard_stop"] = True
                self._transition(STATUS_PAUSED_HARD_STOP)
                print(f"\n{checkpoint['hard_stop_token']} token found in {checkpoint_path}.")
                if checkpoint.get("hard_stop_mode") == "exit":
                    print("Exiting loop. Resume later to continue.")
                    break
                if not self.confirm("HARD STOP reached. Continue the loop after review?"):
                    print(f"Pausing loop. Run `smithers resume --loop-id {state['loop_id']}` to continue.")
                    break
                checkpoint["paused_for_hard_stop"] = False
                self._transition(STATUS_RUNNING)

            if iteration >= max_iterations:
                self._transition(STATUS_STOPPED_MAX_ITERATIONS)
                print(f"Reached max iterations ({max_iterations}) without detecting completion promise.")
                break

        return state["status"]
