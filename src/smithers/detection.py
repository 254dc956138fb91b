"""Completion, session id, and HARD STOP detection over agent output."""

from __future__ import annotations

import json
import re
import sys
from pathlib import Path
from typing import Callable, Iterable

from smithers.constants import LINE_SPLIT_PATTERN, SESSION_UUID_PATTERN


# ---------------------------------------------------------------------------
# Completion promise
# ---------------------------------------------------------------------------


def detect_completion(
    message: str | None,
    promise_mode: str,
    completion_promise: str,
    *,
    on_diagnostic: Callable[[str], None] | None = None,
) -> bool:
    """Return True when ``message`` carries the completion promise.

    An empty message never matches. In ``regex`` mode an invalid pattern is
    reported through ``on_diagnostic`` (stderr by default) and treated as a
    non-match.
    """
    if not message:
        return False
    if promise_mode == "regex":
        try:
            pattern = re.compile(completion_promise)
        except re.error as exc:
            diagnostic = f"Invalid completion regex {completion_promise!r}: {exc}"
            if on_diagnostic is not None:
                on_diagnostic(diagnostic)
            else:
                print(diagnostic, file=sys.stderr)
            return False
        return pattern.search(message) is not None
    if promise_mode == "tag":
        return f"<promise>{completion_promise}</promise>" in message
    return completion_promise in message


# ---------------------------------------------------------------------------
# Session id extraction
# ---------------------------------------------------------------------------


def session_id_from_events(text: str) -> str | None:
    for line in LINE_SPLIT_PATTERN.split(text or ""):
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if not isinstance(event, dict):
            continue
        if event.get("session_id"):
            return str(event["session_id"])
        session = event.get("session")
        if isinstance(session, dict) and session.get("id"):
            return str(session["id"])
        if event.get("id") and event.get("type") == "session":
            return str(event["id"])
    return None


def session_id_from_text(text: str) -> str | None:
    for line in LINE_SPLIT_PATTERN.split(text or ""):
        match = SESSION_UUID_PATTERN.search(line)
        if match:
            return match.group(0)
    return None


def resolve_session_id(
    stdout: str,
    stderr: str,
    *,
    known_session_id: str | None = None,
) -> str | None:
    """Try structured events, then bare UUIDs, then the already known id."""
    strategies: Iterable[Callable[[], str | None]] = (
        lambda: session_id_from_events(f"{stdout}\n{stderr}"),
        lambda: session_id_from_text(stdout),
        lambda: session_id_from_text(stderr),
        lambda: known_session_id,
    )
    for strategy in strategies:
        candidate = strategy()
        if candidate:
            return candidate
    return None


# ---------------------------------------------------------------------------
# HARD STOP checkpoint
# ---------------------------------------------------------------------------


def check_hard_stop(checkpoint_path: Path | None, token: str) -> bool:
    if checkpoint_path is None or not token:
        return False
    if not checkpoint_path.exists():
        return False
    content = checkpoint_path.read_text(encoding="utf-8", errors="replace")
    return token in content
