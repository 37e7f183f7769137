"""Normalized provider events and the runner callback interface."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

EVENT_TYPES = frozenset(
    {
        "init",
        "text",
        "thinking",
        "tool_start",
        "tool_result",
        "step_complete",
        "error",
        "block_start",
        "block_end",
        "context_stats",
        "usage_stats",
    }
)


@dataclass
class TokenUsage:
    """Token counts reported for one turn."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    def is_empty(self) -> bool:
        return not (
            self.input_tokens
            or self.output_tokens
            or self.cache_creation_input_tokens
            or self.cache_read_input_tokens
        )

    def context_total(self) -> int:
        """Tokens occupying the context window after this turn."""
        return (
            self.cache_read_input_tokens
            + self.cache_creation_input_tokens
            + self.input_tokens
            + self.output_tokens
        )


@dataclass
class ModelUsage:
    """Per-model usage breakdown, including the context window size."""

    context_window: int | None = None
    max_output_tokens: int | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_input_tokens: int = 0
    cache_creation_input_tokens: int = 0


@dataclass
class StandardEvent:
    """One provider-agnostic event parsed from a provider's output stream.

    The ``type`` field determines which other fields are populated.

    Event types:
    - ``init``: Session started (``session_id``, ``model``, ``tools``).
    - ``text``: Assistant text; ``is_streaming`` marks partial deltas.
    - ``thinking``: Reasoning text, streamed or complete.
    - ``tool_start``: Tool invoked (``tool_name``, ``tool_input``, ``tool_use_id``).
    - ``tool_result``: Tool finished (``tool_name``, ``tool_output``, ``tool_use_id``).
    - ``step_complete``: Turn finished (``tokens``, ``model_usage``, ``cost``, ``result_text``).
    - ``error``: Provider-reported error (``error_message``).
    - ``block_start``/``block_end``: Streaming content block lifecycle (``block_type``).
    - ``context_stats``: Raw ``/context`` command output (``context_stats_raw``).
    - ``usage_stats``: Raw ``/usage`` command output (``usage_stats_raw``).

    ``uuid`` is a stable identifier per content block so consumers can drop
    duplicates when a provider re-emits a turn.
    """

    type: str
    text: str | None = None
    session_id: str | None = None
    model: str | None = None
    tools: list[str] | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: str | None = None
    tool_use_id: str | None = None
    is_streaming: bool = False
    block_type: str | None = None
    tokens: TokenUsage | None = None
    model_usage: ModelUsage | None = None
    cost: float | None = None
    duration_ms: int | None = None
    result_text: str | None = None
    permission_denials: list[dict[str, Any]] = field(default_factory=list)
    error_message: str | None = None
    context_stats_raw: str | None = None
    usage_stats_raw: str | None = None
    uuid: str | None = None
    subagent_name: str | None = None
    subagent_description: str | None = None
    subagent_type: str | None = None
    subagent_model: str | None = None


def _ignore(*_args: Any) -> None:
    return None


# (agent_id, event)
EventCallback = Callable[[str, StandardEvent], None]
# (agent_id, text, is_streaming, subagent_name, uuid, tool_meta)
OutputCallback = Callable[[str, str, bool, str | None, str | None, dict[str, Any] | None], None]
# (agent_id, session_id)
SessionIdCallback = Callable[[str, str], None]
# (agent_id, success)
CompleteCallback = Callable[[str, bool], None]
# (agent_id, message)
ErrorCallback = Callable[[str, str], None]


@dataclass
class RunnerCallbacks:
    """Handlers the runner calls for each agent, in stdout order.

    ``on_complete`` for a process is never called before the events of its
    last stdout line have been dispatched.
    """

    on_event: EventCallback = _ignore
    on_output: OutputCallback = _ignore
    on_session_id: SessionIdCallback = _ignore
    on_complete: CompleteCallback = _ignore
    on_error: ErrorCallback = _ignore
