"""Text utility functions for narration processing."""

# This module is part of scene_pipeline.utils package

import re

# Split after terminal punctuation unless a digit follows ("15.5%" stays whole).
# Runs such as "...", "?!" and "!!" stay attached to their sentence.
SENTENCE_SPLIT_PATTERN = re.compile(r"(?<=[.!?。！？])(?![0-9.!?…])\s*")
PUNCTUATION_ONLY_PATTERN = re.compile(r"^[.!?…。！？\s]+$")
TERMINAL_MARK_PATTERN = re.compile(r"[.!?:。！？]")
COMMA_PATTERN = re.compile(r"[,，、]")

MIN_SENTENCE_CHARS = 2


def split_sentences(text: str) -> list[str]:
    """
    Split narration into sentences on terminal punctuation.

    Args:
        text: Narration text.

    Returns:
        Sentences with empty, punctuation-only and single-character pieces dropped.
        Falls back to the whole trimmed narration when nothing survives.
    """
    if not text or not text.strip():
        return []

    sentences = []
    for part in SENTENCE_SPLIT_PATTERN.split(text.strip()):
        part = part.strip()
        if not part or PUNCTUATION_ONLY_PATTERN.match(part) or len(part) < MIN_SENTENCE_CHARS:
            continue
        sentences.append(part)

    if not sentences:
        trimmed = text.strip()
        if len(trimmed) >= MIN_SENTENCE_CHARS and not PUNCTUATION_ONLY_PATTERN.match(trimmed):
            sentences.append(trimmed)
    return sentences


def count_spoken_chars(text: str) -> int:
    """Count non-whitespace characters."""
    return len(re.sub(r"\s", "", text))


def estimate_spoken_duration(text: str, chars_per_second: float = 4.5) -> float:
    """
    Estimate how long a sentence takes to speak, including the trailing pause.

    Args:
        text: Sentence text.
        chars_per_second: Average speaking rate (default 4.5 chars/sec).

    Returns:
        Estimated duration in seconds.
    """
    seconds = max(1, count_spoken_chars(text)) / chars_per_second
    if TERMINAL_MARK_PATTERN.search(text):
        seconds += 0.5
    elif COMMA_PATTERN.search(text):
        seconds += 0.2
    return seconds
