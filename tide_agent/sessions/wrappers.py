"""Removal of system-injected text from user turns."""

from __future__ import annotations

import re

_INJECTED_BLOCK_RE = re.compile(
    r"<(user_instructions|environment_context|system-reminder|INSTRUCTIONS)>[\s\S]*?</\1>"
)
_AGENTS_HEADER_RE = re.compile(r"^# AGENTS\.md instructions for .*$", re.MULTILINE)
_INSTRUCTIONS_PREAMBLE = "Follow all instructions below for this task."
_USER_REQUEST_HEADING = "## User Request"


def strip_injected_context(text: str) -> str:
    """Return only the human-authored part of a user turn."""
    if _INSTRUCTIONS_PREAMBLE in text and _USER_REQUEST_HEADING in text:
        text = text.rsplit(_USER_REQUEST_HEADING, 1)[1]
    text = _INJECTED_BLOCK_RE.sub("", text)
    text = _AGENTS_HEADER_RE.sub("", text)
    return text.strip()
