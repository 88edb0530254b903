"""Fill-in-middle prompt envelopes.

Each model family wraps the prefix and suffix in its own sentinel tokens
and must be stopped on those same tokens, otherwise the model keeps
generating past the hole.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class FillFormat(str, Enum):
    """Supported fill-in-middle prompt formats."""

    QWEN = "qwen"
    DEEPSEEK = "deepseek"


_QWEN_PREFIX = "<|fim_prefix|>"
_QWEN_SUFFIX = "<|fim_suffix|>"
_QWEN_MIDDLE = "<|fim_middle|>"
_QWEN_EOT = "<|endoftext|>"

# DeepSeek-Coder sentinels use fullwidth bars and the U+2581 block.
_DEEPSEEK_BEGIN = "<｜fim▁begin｜>"
_DEEPSEEK_HOLE = "<｜fim▁hole｜>"
_DEEPSEEK_END = "<｜fim▁end｜>"


@dataclass(frozen=True)
class FimPrompt:
    """A rendered prompt plus the stop sequences its format requires."""

    prompt: str
    stop: tuple[str, ...]


def format_stop_sequences(fill_format: FillFormat) -> tuple[str, ...]:
    """Return the delimiter tokens a format must stop on."""
    if fill_format == FillFormat.DEEPSEEK:
        return (_DEEPSEEK_BEGIN, _DEEPSEEK_HOLE, _DEEPSEEK_END)
    return (_QWEN_EOT, _QWEN_PREFIX, _QWEN_SUFFIX, _QWEN_MIDDLE)


def adapt_prompt(prefix: str, suffix: str, fill_format: FillFormat) -> FimPrompt:
    """Wrap prefix and suffix in the format's fill-in-middle envelope."""
    if fill_format == FillFormat.DEEPSEEK:
        prompt = f"{_DEEPSEEK_BEGIN}{prefix}{_DEEPSEEK_HOLE}{suffix}{_DEEPSEEK_END}"
    else:
        prompt = f"{_QWEN_PREFIX}{prefix}{_QWEN_SUFFIX}{suffix}{_QWEN_MIDDLE}"
    return FimPrompt(prompt=prompt, stop=format_stop_sequences(fill_format))


def build_stop_sequences(
    fill_format: FillFormat, extra: Iterable[str] = (),
) -> list[str]:
    """Format delimiters followed by caller stops, deduplicated in order."""
    merged: list[str] = []
    for token in (*format_stop_sequences(fill_format), *extra):
        if token and token not in merged:
            merged.append(token)
    return merged


def infer_fill_format(model: str) -> FillFormat:
    """Guess the fill format from a model name; Qwen is the default."""
    name = (model or "").strip().lower()
    if name.startswith("deepseek-coder") or "/deepseek-coder" in name:
        return FillFormat.DEEPSEEK
    return FillFormat.QWEN
