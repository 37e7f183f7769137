"""Codex CLI adapter (``codex exec --json``)."""

from __future__ import annotations

from typing import Any

from ..core.events import StandardEvent
from ..core.types import CodexOptions
from .base import BackendConfig, CLIBackend, as_dict, as_str
from .codex_events import CodexEventParser

# Model names that belong to other providers; Codex picks its own default.
FOREIGN_MODEL_ALIASES = frozenset({"codex", "sonnet", "opus", "haiku"})


def build_codex_prompt(config: BackendConfig) -> str:
    """Embed the system prompt ahead of the user request.

    Codex has no system-prompt flag, so instructions travel in the prompt.
    """
    if not config.system_prompt or not config.system_prompt.strip():
        return config.prompt
    return (
        "Follow all instructions below for this task.\n\n"
        f"## Agent Instructions\n\n{config.system_prompt.strip()}\n\n"
        f"## User Request\n\n{config.prompt}"
    )


class CodexBackend(CLIBackend):
    name = "codex"
    executable_name = "codex"

    def __init__(self) -> None:
        self._parser = CodexEventParser()

    def build_args(self, config: BackendConfig) -> list[str]:
        options = config.codex or CodexOptions()
        args = ["exec", "--json"]
        if options.full_auto:
            args.append("--dangerously-bypass-approvals-and-sandbox")
        else:
            args += ["--ask-for-approval", options.approval_mode, "--sandbox", options.sandbox]
        if options.search:
            args.append("--search")
        if options.profile:
            args += ["--profile", options.profile]
        args += ["-C", config.working_dir]
        if config.model and config.model.lower() not in FOREIGN_MODEL_ALIASES:
            args += ["--model", config.model]

        prompt = build_codex_prompt(config)
        if config.session_id:
            args += ["resume", config.session_id, prompt]
        else:
            args.append(prompt)
        return args

    def parse_event(self, raw: Any) -> list[StandardEvent]:
        event = as_dict(raw)
        if event.get("type") == "thread.started":
            return [StandardEvent(type="init", session_id=as_str(event.get("thread_id")))]
        return self._parser.parse_event(event)

    def extract_session_id(self, raw: Any) -> str | None:
        event = as_dict(raw)
        if event.get("type") == "thread.started":
            return as_str(event.get("thread_id"))
        return None
