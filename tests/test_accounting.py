from __future__ import annotations

import pytest

from tide_agent.accounting import (
    ContextAccountant,
    build_estimated_stats,
    estimate_tokens,
    parse_context_output,
    parse_usage_output,
)
from tide_agent.core.events import ModelUsage, StandardEvent, TokenUsage

CONTEXT_OUTPUT = """## Context Usage

**Model:** claude-opus-4
**Tokens:** 19.6k / 200.0k (10%)

| Category | Tokens | Percentage |
|----------|--------|------------|
| System prompt | 3.1k | 1.6% |
| Messages | 850 | 0.4% |
| Free space | 135.4k | 67.7% |
"""

USAGE_OUTPUT = """## Usage

| Limit | Used | Resets |
|-------|------|--------|
| Current Session | 12% | 3pm (Europe/Berlin) |
| Current Week (All Models) | 40% | Oct 21, 9am |
| Current Week (Sonnet Only) | 5.5% | Oct 21, 9am |
"""


def _step(**tokens) -> StandardEvent:
    return StandardEvent(type="step_complete", tokens=TokenUsage(**tokens))


@pytest.fixture
def accountant() -> ContextAccountant:
    return ContextAccountant()


def test_estimate_tokens() -> None:
    assert estimate_tokens(None) == 0
    assert estimate_tokens("   ") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens(" abcde ") == 2


def test_claude_usage_is_authoritative(accountant) -> None:
    event = _step(
        input_tokens=10, output_tokens=200, cache_read_input_tokens=40_000, cache_creation_input_tokens=90
    )

    reading = accountant.record_step("a1", event, provider="claude")

    assert reading.context_used == 40_300
    assert reading.context_limit == 200_000
    assert reading.tokens_delta == 210
    assert reading.stats is None
    assert not reading.preserved


def test_claude_model_usage_sets_the_window(accountant) -> None:
    event = _step(input_tokens=5, output_tokens=5)
    event.model_usage = ModelUsage(
        context_window=1_000_000, input_tokens=300_000, output_tokens=1_000, cache_read_input_tokens=50_000
    )

    reading = accountant.record_step("a1", event, provider="claude", previous_limit=200_000)

    assert reading.context_limit == 1_000_000
    assert reading.context_used == 351_000


def test_claude_empty_usage_keeps_previous_reading(accountant) -> None:
    reading = accountant.record_step(
        "a1",
        _step(),
        provider="claude",
        previous_used=42_000,
        previous_limit=200_000,
        last_prompt="continue",
    )

    assert reading.preserved
    assert reading.context_used == 42_000
    assert reading.tokens_delta == 0


def test_claude_empty_usage_after_context_command_is_not_preserved(accountant) -> None:
    reading = accountant.record_step(
        "a1", _step(), provider="claude", previous_used=42_000, last_prompt=" /context "
    )

    assert not reading.preserved
    assert reading.context_used == 0


def test_usage_is_clamped_to_the_window(accountant) -> None:
    reading = accountant.record_step("a1", _step(cache_read_input_tokens=250_000), provider="claude")

    assert reading.context_used == 200_000


def test_codex_rejects_implausible_snapshot(accountant) -> None:
    event = _step(input_tokens=50_000_000, output_tokens=100)

    reading = accountant.record_step("a1", event, provider="codex", last_prompt="fix it")

    assert reading.context_used == 102
    assert reading.context_limit == 200_000
    assert reading.tokens_delta == 50_000_100
    assert reading.stats is not None
    assert reading.stats.model == "codex"
    assert reading.stats.total_tokens == 102


def test_codex_trusts_plausible_snapshot(accountant) -> None:
    event = _step(input_tokens=30_000, output_tokens=500)

    reading = accountant.record_step(
        "a1", event, provider="codex", last_prompt="x" * 400, model="gpt-5"
    )

    assert reading.context_used == 30_500
    assert reading.stats.model == "gpt-5"
    assert reading.stats.used_percent == 15


def test_codex_rolling_estimate_accumulates_and_resets(accountant) -> None:
    huge = _step(input_tokens=90_000_000, output_tokens=1_000)

    first = accountant.record_step("a1", huge, provider="codex")
    second = accountant.record_step("a1", huge, provider="codex")
    other = accountant.record_step("a2", huge, provider="codex")
    accountant.reset("a1")
    after_reset = accountant.record_step("a1", huge, provider="codex")

    assert (first.context_used, second.context_used) == (1_000, 2_000)
    assert other.context_used == 1_000
    assert after_reset.context_used == 1_000


def test_rolling_window_is_bounded() -> None:
    accountant = ContextAccountant(rolling_turns=3)
    huge = _step(input_tokens=90_000_000, output_tokens=10)

    readings = [accountant.record_step("a1", huge, provider="codex") for _ in range(5)]

    assert [r.context_used for r in readings] == [10, 20, 30, 30, 30]


def test_parse_context_output() -> None:
    stats = parse_context_output(CONTEXT_OUTPUT)

    assert stats.model == "claude-opus-4"
    assert stats.total_tokens == 19_600
    assert stats.context_window == 200_000
    assert stats.used_percent == 10
    assert stats.categories["system_prompt"].tokens == 3_100
    assert stats.categories["messages"].tokens == 850
    assert stats.categories["messages"].percent == 0.4
    assert stats.categories["free_space"].tokens == 135_400
    assert stats.categories["system_tools"].tokens == 0
    assert stats.categories["autocompact_buffer"].percent == 0.0


def test_parse_context_output_without_tokens_line() -> None:
    assert parse_context_output("**Model:** opus\nnothing else") is None


def test_parse_usage_output() -> None:
    usage = parse_usage_output(USAGE_OUTPUT)

    assert usage.session.percent_used == 12.0
    assert usage.session.reset_time == "3pm (Europe/Berlin)"
    assert usage.weekly_all_models.percent_used == 40.0
    assert usage.weekly_sonnet.percent_used == 5.5


def test_parse_usage_output_requires_every_row() -> None:
    partial = "\n".join(USAGE_OUTPUT.splitlines()[:-1])

    assert parse_usage_output(partial) is None


def test_build_estimated_stats() -> None:
    stats = build_estimated_stats(50_000, 0, None)

    assert stats.context_window == 200_000
    assert stats.used_percent == 25
    assert stats.categories["messages"].percent == 25.0
    assert stats.categories["free_space"].tokens == 150_000
