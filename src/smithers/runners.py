from __future__ import annotations
import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Any, BinaryIO, Callable, TextIO

from smithers.constants import DEFAULT_AGENT_COMMAND
from smithers.detection import resolve_session_id
from smithers.models import AgentOptions, AgentSpawnError, IterationOutcome
from smithers.utils import _append_log, _compact_log_text, _redact_sensitive_text


def _build_agent_argv(
    executable: str,
    *,
    prompt: str | None,
    session_id: str | None,
    last_message_path: Path,
    options: AgentOptions,
) -> list[str]:
    argv = [executable, "exec"]
    if session_id:
        argv.extend(["resume", session_id])
        if prompt:
            argv.append(prompt)
    else:
        argv.append(prompt or "")

    argv.extend(["--output-last-message", str(last_message_path), "--json"])
    if options.cd:
        argv.extend(["--cd", options.cd])
    if options.model:
        argv.extend(["--model", options.model])
    if options.profile:
        argv.extend(["--profile", options.profile])
    if options.sandbox:
        argv.extend(["--sandbox", options.sandbox])
    if options.ask_for_approval:
        argv.extend(["--ask-for-approval", options.ask_for_approval])
    if options.full_auto:
        argv.append("--full-auto")
    if options.skip_git_repo_check:
        argv.append("--skip-git-repo-check")
    return argv


def _describe_argv(argv: list[str], prompt: str | None) -> str:
    rendered = []
    for token in argv:
        if prompt and token == prompt:
            rendered.append(f"<prompt chars={len(prompt)}>")
        else:
            rendered.append(_redact_sensitive_text(token))
    return " ".join(rendered)


class AgentRunner:
    """Runs one agent turn as a child process and resolves its outcome.

    Both output streams are mirrored to the terminal as they arrive and
    buffered for session id extraction; stdout bytes are additionally copied
    verbatim into the per-iteration event log when one is requested.
    """

    def __init__(
        self,
        options: AgentOptions,
        *,
        executable: str = DEFAULT_AGENT_COMMAND,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
    ) -> None:
        self.options = options
        self.executable = executable
        self._stdout = stdout
        self._stderr = stderr

    def run(
        self,
        prompt: str | None,
        *,
        session_id: str | None,
        workspace_root: Path,
        last_message_path: Path,
        jsonl_path: Path | None = None,
        on_spawn: Callable[[subprocess.Popen[bytes] | None], None] | None = None,
    ) -> IterationOutcome:
        argv = _build_agent_argv(
            self.executable,
            prompt=prompt,
            session_id=session_id,
            last_message_path=last_message_path,
            options=self.options,
        )
        mode = "resume" if session_id else "fresh"
        _append_log(
            workspace_root,
            f"agent start mode={mode} session={session_id or '-'} command={_describe_argv(argv, prompt)}",
        )

        stdout_sink = self._stdout or sys.stdout
        stderr_sink = self._stderr or sys.stderr
        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []
        events_handle: BinaryIO | None = None
        if jsonl_path is not None:
            jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            events_handle = jsonl_path.open("wb")

        def _pump_stream(
            stream: Any,
            sink: TextIO,
            captured_chunks: list[bytes],
            tee: BinaryIO | None,
        ) -> None:
            if stream is None:
                return
            try:
                for chunk in iter(stream.readline, b""):
                    captured_chunks.append(chunk)
                    sink.write(chunk.decode("utf-8", errors="replace"))
                    sink.flush()
                    if tee is not None:
                        tee.write(chunk)
                        tee.flush()
            finally:
                try:
                    stream.close()
                except OSError:
                    pass

        stdout_thread: threading.Thread | None = None
        stderr_thread: threading.Thread | None = None
        try:
            try:
                process = subprocess.Popen(
                    argv,
                    cwd=workspace_root,
                    shell=False,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    env=os.environ.copy(),
                )
            except (OSError, ValueError) as exc:
                _append_log(workspace_root, f"agent spawn failed: {exc}")
                raise AgentSpawnError(f"{self.executable} exec failed to start: {exc}") from exc

            if on_spawn is not None:
                on_spawn(process)
            stdout_thread = threading.Thread(
                target=_pump_stream,
                args=(process.stdout, stdout_sink, stdout_chunks, events_handle),
                daemon=True,
            )
            stderr_thread = threading.Thread(
                target=_pump_stream,
                args=(process.stderr, stderr_sink, stderr_chunks, None),
                daemon=True,
            )
            stdout_thread.start()
            stderr_thread.start()

            returncode = process.wait()
        finally:
            if stdout_thread is not None:
                stdout_thread.join()
            if stderr_thread is not None:
                stderr_thread.join()
            if events_handle is not None:
                events_handle.close()
            if on_spawn is not None:
                on_spawn(None)

        stdout_text = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        resolved_session = resolve_session_id(
            stdout_text,
            stderr_text,
            known_session_id=session_id,
        )
        _append_log(
            workspace_root,
            f"agent exit returncode={returncode} session={resolved_session or '-'}",
        )
        if stderr_text.strip():
            _append_log(
                workspace_root,
                f"agent stderr: {_compact_log_text(_redact_sensitive_text(stderr_text))}",
            )
        return IterationOutcome(
            exit_code=returncode,
            session_id=resolved_session,
            stdout=stdout_text,
            stderr=stderr_text,
        )
