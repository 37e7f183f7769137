"""Token and context-window accounting per agent."""

from __future__ import annotations

import logging
import math
import re
import time
from collections import deque
from dataclasses import dataclass, field

from .core.events import StandardEvent

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOW = 200_000
ROLLING_CONTEXT_TURNS = 40
PLAUSIBLE_USAGE_MULTIPLIER = 1.2
CONTEXT_COMMANDS = frozenset({"/context", "/cost", "/compact"})
AUTHORITATIVE_PROVIDERS = frozenset({"claude"})

CONTEXT_CATEGORIES = {
    "system_prompt": "System prompt",
    "system_tools": "System tools",
    "messages": "Messages",
    "free_space": "Free space",
    "autocompact_buffer": "Autocompact buffer",
}

_MODEL_RE = re.compile(r"\*\*Model:\*\*\s*(.+)")
_TOKENS_RE = re.compile(r"\*\*Tokens:\*\*\s*([\d.]+)(k?)\s*/\s*([\d.]+)(k?)\s*\((\d+)%\)")


@dataclass
class CategoryUsage:
    tokens: int = 0
    percent: float = 0.0


@dataclass
class ContextStats:
    """Snapshot of how the context window is being used."""

    model: str
    context_window: int
    total_tokens: int
    used_percent: int
    categories: dict[str, CategoryUsage] = field(default_factory=dict)
    last_updated: float = field(default_factory=time.time)


@dataclass
class UsageWindow:
    percent_used: float
    reset_time: str


@dataclass
class UsageStats:
    """Plan usage limits reported by ``/usage``."""

    session: UsageWindow
    weekly_all_models: UsageWindow
    weekly_sonnet: UsageWindow


@dataclass
class ContextReading:
    """Result of accounting one ``step_complete`` event."""

    context_used: int
    context_limit: int
    tokens_delta: int
    stats: ContextStats | None = None
    preserved: bool = False


def estimate_tokens(text: str | None) -> int:
    """Rough token count: one token per four characters."""
    if not text or not text.strip():
        return 0
    return max(1, math.ceil(len(text.strip()) / 4))


def _scaled(value: str, suffix: str) -> int:
    number = float(value)
    return round(number * 1000) if suffix else round(number)


def parse_context_output(content: str) -> ContextStats | None:
    """Parse the markdown printed by the ``/context`` command.

    Expects a line like ``**Tokens:** 19.6k / 200.0k (10%)`` and a table of
    ``| Category | 3.1k | 1.6% |`` rows.
    """
    tokens = _TOKENS_RE.search(content)
    if not tokens:
        logger.debug("No tokens line in /context output")
        return None
    model = _MODEL_RE.search(content)

    categories = {}
    for key, label in CONTEXT_CATEGORIES.items():
        row = re.search(
            rf"\|\s*{re.escape(label)}\s*\|\s*([\d.]+)(k?)\s*\|\s*([\d.]+)%\s*\|",
            content,
            re.IGNORECASE,
        )
        if row:
            categories[key] = CategoryUsage(_scaled(row.group(1), row.group(2)), float(row.group(3)))
        else:
            categories[key] = CategoryUsage()

    return ContextStats(
        model=model.group(1).strip() if model else "unknown",
        context_window=_scaled(tokens.group(3), tokens.group(4)),
        total_tokens=_scaled(tokens.group(1), tokens.group(2)),
        used_percent=int(tokens.group(5)),
        categories=categories,
    )


def parse_usage_output(content: str) -> UsageStats | None:
    """Parse the ``/usage`` table; returns None unless all three rows are present."""

    def row(pattern: str) -> UsageWindow | None:
        match = re.search(
            rf"\|\s*{pattern}\s*\|\s*([\d.]+)%\s*\|\s*([^|]+?)\s*\|", content, re.IGNORECASE
        )
        return UsageWindow(float(match.group(1)), match.group(2).strip()) if match else None

    session = row(r"Current Session")
    weekly_all = row(r"Current Week \(All Models\)")
    weekly_sonnet = row(r"Current Week \(Sonnet Only\)")
    if not (session and weekly_all and weekly_sonnet):
        logger.debug("Incomplete /usage output")
        return None
    return UsageStats(session, weekly_all, weekly_sonnet)


def build_estimated_stats(total_tokens: int, context_window: int, model: str | None) -> ContextStats:
    window = context_window if context_window > 0 else DEFAULT_CONTEXT_WINDOW
    free = max(0, window - total_tokens)
    return ContextStats(
        model=model or "codex",
        context_window=window,
        total_tokens=total_tokens,
        used_percent=min(100, max(0, round(total_tokens / window * 100))),
        categories={
            "system_prompt": CategoryUsage(),
            "system_tools": CategoryUsage(),
            "messages": CategoryUsage(total_tokens, round(total_tokens / window * 100, 1)),
            "free_space": CategoryUsage(free, round(free / window * 100, 1)),
            "autocompact_buffer": CategoryUsage(),
        },
    )


class ContextAccountant:
    """Maintains ``context_used``/``context_limit`` from step events.

    Claude reports authoritative usage. Codex input-token snapshots are
    sometimes wildly inflated, so its usage is estimated from a rolling window
    of per-turn growth and a snapshot is only trusted when it fits the window.
    """

    def __init__(
        self,
        default_window: int = DEFAULT_CONTEXT_WINDOW,
        rolling_turns: int = ROLLING_CONTEXT_TURNS,
        plausible_multiplier: float = PLAUSIBLE_USAGE_MULTIPLIER,
    ) -> None:
        self.default_window = default_window
        self.rolling_turns = rolling_turns
        self.plausible_multiplier = plausible_multiplier
        self._growth: dict[str, deque[int]] = {}

    def reset(self, agent_id: str) -> None:
        self._growth.pop(agent_id, None)

    def _rolling_estimate(self, agent_id: str, turn_growth: int) -> int:
        history = self._growth.setdefault(agent_id, deque(maxlen=self.rolling_turns))
        history.append(max(0, round(turn_growth)))
        return sum(history)

    def _estimate(
        self, agent_id: str, input_tokens: int, output_tokens: int, prompt: str | None, limit: int
    ) -> int:
        rolling = self._rolling_estimate(agent_id, estimate_tokens(prompt) + output_tokens)
        plausible = 0 < input_tokens <= limit * self.plausible_multiplier
        if plausible:
            return max(rolling, input_tokens + output_tokens)
        if input_tokens:
            logger.debug(
                "Agent %s reported %d input tokens for a %d window; using rolling estimate %d",
                agent_id,
                input_tokens,
                limit,
                rolling,
            )
        return rolling

    def record_step(
        self,
        agent_id: str,
        event: StandardEvent,
        *,
        provider: str,
        previous_used: int = 0,
        previous_limit: int | None = None,
        last_prompt: str | None = None,
        model: str | None = None,
    ) -> ContextReading:
        authoritative = provider in AUTHORITATIVE_PROVIDERS
        is_context_command = (last_prompt or "").strip() in CONTEXT_COMMANDS
        used = previous_used
        limit = previous_limit or self.default_window
        tokens = event.tokens
        usage = event.model_usage

        if usage is not None:
            limit = usage.context_window or self.default_window
            if authoritative:
                used = (
                    usage.cache_read_input_tokens
                    + usage.cache_creation_input_tokens
                    + usage.input_tokens
                    + usage.output_tokens
                )
            else:
                used = self._estimate(
                    agent_id, usage.input_tokens, usage.output_tokens, last_prompt, limit
                )
        elif tokens is not None:
            if authoritative:
                used = tokens.context_total()
            else:
                used = self._estimate(
                    agent_id, tokens.input_tokens, tokens.output_tokens, last_prompt, limit
                )

        preserved = False
        if (
            authoritative
            and tokens is not None
            and tokens.is_empty()
            and usage is None
            and not is_context_command
        ):
            logger.debug("Agent %s reported empty usage; keeping previous context", agent_id)
            used = previous_used
            limit = previous_limit or self.default_window
            preserved = True

        used = max(0, min(used, limit))
        delta = (tokens.input_tokens + tokens.output_tokens) if tokens else 0
        stats = None if authoritative else build_estimated_stats(used, max(1, limit), model)
        return ContextReading(
            context_used=used,
            context_limit=limit,
            tokens_delta=delta,
            stats=stats,
            preserved=preserved,
        )
