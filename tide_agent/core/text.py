"""Text helpers for prompts and previews."""

from __future__ import annotations


def sanitize_unicode(text: str) -> str:
    """Replace unpaired UTF-16 surrogates with U+FFFD.

    Paired surrogates are recombined into their code point, so valid text
    round-trips unchanged.
    """
    return text.encode("utf-16-le", "surrogatepass").decode("utf-16-le", "replace")


def truncate(text: str, max_chars: int, suffix: str = "...") -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + suffix
