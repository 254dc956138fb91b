from __future__ import annotations
from pathlib import Path

from smithers.constants import DEFAULT_HARD_STOP_TOKEN, PROMPT_TOKEN_PATTERN, TEMPLATES_DIR


def _promise_text(promise_mode: str, completion_promise: str) -> str:
    if promise_mode == "tag":
        return f"<promise>{completion_promise}</promise>"
    if promise_mode == "regex":
        return f"Regex: {completion_promise}"
    return completion_promise


def build_full_prompt(
    *,
    loop_id: str,
    iteration: int,
    max_iterations: int,
    promise_mode: str,
    completion_promise: str,
    user_prompt: str,
    checkpoint_path: str | None = None,
    hard_stop_token: str = DEFAULT_HARD_STOP_TOKEN,
) -> str:
    """Render the first-turn prompt carrying the whole task and loop rules."""
    promise_text = _promise_text(promise_mode, completion_promise)
    if promise_mode == "tag":
        promise_rule = (
            f"You MUST output the exact string: {promise_text} ONLY when all requirements "
            "are satisfied and verification passes."
        )
    else:
        promise_rule = (
            f"You MUST output the completion promise ({promise_text}) ONLY when all "
            "requirements are satisfied and verification passes."
        )

    checkpoint_rules: list[str] = []
    if checkpoint_path:
        checkpoint_rules = [
            f"If {hard_stop_token} is present in {checkpoint_path}, stop and request human review before continuing.",
            "Work through TODO items from top to bottom before moving on.",
        ]

    lines = [
        "Smithers loop",
        f"Loop ID: {loop_id}",
        f"Iteration: {iteration} of {max_iterations}",
        f"Completion promise ({promise_mode} mode): {promise_text}",
        "",
        "Task:",
        user_prompt.strip(),
        "",
        "How to iterate:",
        "- Your previous work is available in the files and the git history.",
        "- Each iteration refines the codebase based on what you observe.",
        "- Do not aim for perfection on the first try; the loop will refine your work.",
        "- Treat test and lint failures as input for the next iteration.",
        "",
        "Rules:",
        promise_rule,
        "If blocked, output a short BLOCKED section with what is needed to proceed.",
        "Prefer deterministic verification steps (tests, linters, typechecks) before claiming completion.",
        "If a check fails after verifying, fix it and verify again in this same iteration if possible.",
        *checkpoint_rules,
        "",
        "When you are certain the task is complete and all verification passes, "
        "output ONLY the completion promise token on its own line.",
    ]
    return "\n".join(lines)


def build_continue_prompt(
    *,
    loop_id: str,
    iteration: int,
    max_iterations: int,
    promise_mode: str,
    completion_promise: str,
) -> str:
    promise_text = (
        f"<promise>{completion_promise}</promise>" if promise_mode == "tag" else completion_promise
    )
    return "\n".join(
        [
            "Continue the smithers loop.",
            f"Loop ID: {loop_id}",
            f"Iteration: {iteration} of {max_iterations}.",
            f"Remember the completion promise ({promise_mode}): {promise_text}",
            "Only output the promise when the task is fully complete and validated.",
        ]
    )


# ---------------------------------------------------------------------------
# Installable helper templates
# ---------------------------------------------------------------------------


def _load_helper_template(name: str) -> str:
    template_path = TEMPLATES_DIR / name
    if not template_path.is_file():
        raise RuntimeError(f"bundled helper template is unavailable at {template_path}")
    return template_path.read_text(encoding="utf-8")


def _render_tokens(template_text: str, values: dict[str, str]) -> str:
    def _replace_token(match) -> str:
        token = match.group(1).strip()
        if token not in values:
            raise RuntimeError(f"helper template has unsupported token '{token}'")
        return values[token]

    return PROMPT_TOKEN_PATTERN.sub(_replace_token, template_text)


def render_prompt_helper(loop_id: str, completion_promise: str) -> str:
    return _render_tokens(
        _load_helper_template("prompt_helper.md"),
        {"loop_id": loop_id, "completion_promise": completion_promise},
    )


def render_skill_helper(
    completion_promise: str,
    *,
    hard_stop_token: str = DEFAULT_HARD_STOP_TOKEN,
) -> str:
    return _render_tokens(
        _load_helper_template("skill_helper.md"),
        {"completion_promise": completion_promise, "hard_stop_token": hard_stop_token},
    )


def install_helpers(
    home: Path,
    *,
    completion_promise: str,
    loop_id: str,
    prompt_relpath: Path,
    skill_relpath: Path,
) -> tuple[Path, Path]:
    prompt_path = home / prompt_relpath
    skill_path = home / skill_relpath
    prompt_path.parent.mkdir(parents=True, exist_ok=True)
    skill_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_path.write_text(render_prompt_helper(loop_id, completion_promise), encoding="utf-8")
    skill_path.write_text(render_skill_helper(completion_promise), encoding="utf-8")
    return prompt_path, skill_path
