from __future__ import annotations

from pathlib import Path

import pytest

from smithers.detection import (
    check_hard_stop,
    detect_completion,
    resolve_session_id,
    session_id_from_events,
    session_id_from_text,
)

UUID_A = "0b6f5e3c-1a2b-4c3d-8e9f-0123456789ab"
UUID_B = "7d2a1c4e-5f60-4a7b-9c8d-abcdefabcdef"


def test_tag_mode_requires_wrapped_promise() -> None:
    assert detect_completion("done <promise>TASK_COMPLETE</promise>", "tag", "TASK_COMPLETE")
    assert not detect_completion("TASK_COMPLETE", "tag", "TASK_COMPLETE")


def test_plain_mode_is_substring_match() -> None:
    assert detect_completion("all good: TASK_COMPLETE.", "plain", "TASK_COMPLETE")
    assert not detect_completion("task complete", "plain", "TASK_COMPLETE")


def test_regex_mode_searches_message() -> None:
    assert detect_completion("finished build 42", "regex", r"build \d+")
    assert not detect_completion("finished build", "regex", r"build \d+")


def test_invalid_regex_reports_diagnostic_and_does_not_match() -> None:
    diagnostics: list[str] = []
    detected = detect_completion(
        "anything", "regex", "([unclosed", on_diagnostic=diagnostics.append
    )
    assert detected is False
    assert len(diagnostics) == 1
    assert "([unclosed" in diagnostics[0]


def test_invalid_regex_defaults_to_stderr(capsys: pytest.CaptureFixture[str]) -> None:
    assert detect_completion("anything", "regex", "(") is False
    assert "Invalid completion regex" in capsys.readouterr().err


@pytest.mark.parametrize("mode", ["tag", "plain", "regex"])
def test_empty_message_never_matches(mode: str) -> None:
    assert detect_completion("", mode, ".*") is False
    assert detect_completion(None, mode, ".*") is False


def test_session_id_from_events_field_priority() -> None:
    text = "\n".join(
        [
            "not json",
            '{"type": "turn.started"}',
            '{"broken": ',
            f'{{"type": "session", "id": "{UUID_B}"}}',
        ]
    )
    assert session_id_from_events(text) == UUID_B
    assert session_id_from_events(f'{{"session": {{"id": "{UUID_A}"}}}}') == UUID_A
    assert session_id_from_events(f'{{"session_id": "{UUID_A}"}}\r\n') == UUID_A
    assert session_id_from_events('{"type": "message", "id": "abc"}') is None


def test_session_id_from_text_finds_first_uuid() -> None:
    assert session_id_from_text(f"session: {UUID_A.upper()}\nother {UUID_B}") == UUID_A.upper()
    assert session_id_from_text("no ids here") is None


def test_resolve_session_id_prefers_events_over_bare_uuids() -> None:
    stdout = f"started {UUID_A}\n"
    stderr = f'{{"session_id": "{UUID_B}"}}\n'
    assert resolve_session_id(stdout, stderr) == UUID_B


def test_resolve_session_id_prefers_stdout_uuid_over_stderr() -> None:
    assert resolve_session_id(f"id {UUID_A}", f"id {UUID_B}") == UUID_A
    assert resolve_session_id("", f"id {UUID_B}") == UUID_B


def test_resolve_session_id_falls_back_to_known_id() -> None:
    assert resolve_session_id("", "", known_session_id=UUID_A) == UUID_A
    assert resolve_session_id("", "") is None


def test_check_hard_stop(tmp_path: Path) -> None:
    todo = tmp_path / "TODO.md"
    assert check_hard_stop(todo, "HARD STOP") is False
    todo.write_text("- [ ] step one\n", encoding="utf-8")
    assert check_hard_stop(todo, "HARD STOP") is False
    todo.write_text("- [ ] step one\nHARD STOP\n", encoding="utf-8")
    assert check_hard_stop(todo, "HARD STOP") is True
    assert check_hard_stop(None, "HARD STOP") is False
