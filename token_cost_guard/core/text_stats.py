"""
Tokenizer-free text statistics.
"""

import math
from dataclasses import dataclass

WORDS_PER_MINUTE = 200

# Rough chars-per-token: ASCII text vs. everything else (CJK, Hangul, ...)
ASCII_CHARS_PER_TOKEN = 4.0
NON_ASCII_CHARS_PER_TOKEN = 2.5


@dataclass(frozen=True)
class TextStats:
    character_count: int
    word_count: int
    line_count: int
    estimated_tokens_simple: int
    estimated_reading_time_minutes: int


def estimate_tokens_simple(text: str) -> int:
    """Estimate tokens from character classes without loading an encoder."""
    if not text:
        return 0
    ascii_chars = sum(1 for ch in text if ord(ch) < 128)
    other_chars = len(text) - ascii_chars
    return math.ceil(ascii_chars / ASCII_CHARS_PER_TOKEN + other_chars / NON_ASCII_CHARS_PER_TOKEN)


def text_stats(text: str) -> TextStats:
    """Character, word and line counts plus a simple token and reading-time estimate."""
    text = text or ""
    word_count = len(text.split())
    return TextStats(
        character_count=len(text),
        word_count=word_count,
        line_count=len(text.splitlines()),
        estimated_tokens_simple=estimate_tokens_simple(text),
        estimated_reading_time_minutes=max(1, word_count // WORDS_PER_MINUTE),
    )
