"""Token estimation and context-window budgeting.

Token counts are estimated from per-family characters-per-token ratios
instead of loading tokenizer vocabularies. Code tokenizes into shorter
tokens than prose, so the ratios are conservative.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from infill.prompts.fim import FillFormat

_CHARS_PER_TOKEN: dict[FillFormat, float] = {
    FillFormat.QWEN: 3.5,  # ~151k vocabulary
    FillFormat.DEEPSEEK: 3.2,  # ~32k vocabulary
}
_DEFAULT_CHARS_PER_TOKEN = 3.0

_DEFAULT_CONTEXT_WINDOW: dict[FillFormat, int] = {
    FillFormat.QWEN: 32768,
    FillFormat.DEEPSEEK: 16384,
}
_FALLBACK_CONTEXT_WINDOW = 8192

RESPONSE_SHARE = 0.15
OVERHEAD_SHARE = 0.05
PREFIX_SHARE = 0.75


@dataclass(frozen=True)
class TokenEstimate:
    tokens: int
    is_exact: bool


class Tokenizer(Protocol):
    def count_tokens(self, text: str) -> TokenEstimate: ...

    def truncate_to_tokens(
        self, text: str, max_tokens: int, from_end: bool = False,
    ) -> str: ...

    @property
    def chars_per_token(self) -> float: ...


class EstimationTokenizer:
    """Character-ratio tokenizer for a model family."""

    def __init__(self, fill_format: FillFormat | None = None):
        self._chars_per_token = _CHARS_PER_TOKEN.get(fill_format, _DEFAULT_CHARS_PER_TOKEN)

    @property
    def chars_per_token(self) -> float:
        return self._chars_per_token

    def count_tokens(self, text: str) -> TokenEstimate:
        if not text:
            return TokenEstimate(tokens=0, is_exact=True)
        return TokenEstimate(
            tokens=math.ceil(len(text) / self._chars_per_token),
            is_exact=False,
        )

    def truncate_to_tokens(
        self, text: str, max_tokens: int, from_end: bool = False,
    ) -> str:
        """Cut ``text`` to roughly ``max_tokens``.

        ``from_end=True`` keeps the end of the text (drops the beginning);
        ``from_end=False`` keeps the beginning.
        """
        if not text:
            return ""
        if self.count_tokens(text).tokens <= max_tokens:
            return text

        max_chars = math.floor(max(0, max_tokens) * self._chars_per_token)
        if max_chars <= 0:
            return ""
        if from_end:
            return text[-max_chars:]
        return text[:max_chars]


class LineAwareTokenizer:
    """Wraps a tokenizer so truncation never keeps a partial line."""

    def __init__(self, base: Tokenizer):
        self._base = base

    @property
    def chars_per_token(self) -> float:
        return self._base.chars_per_token

    def count_tokens(self, text: str) -> TokenEstimate:
        return self._base.count_tokens(text)

    def truncate_to_tokens(
        self, text: str, max_tokens: int, from_end: bool = False,
    ) -> str:
        if not text:
            return ""
        truncated = self._base.truncate_to_tokens(text, max_tokens, from_end)
        if truncated == text or not truncated:
            return truncated

        if from_end:
            cut = len(text) - len(truncated)
            if text[cut - 1] == "\n":
                return truncated
            newline = truncated.find("\n")
            if newline < 0:
                return ""
            return truncated[newline + 1:]

        if text[len(truncated)] == "\n":
            return truncated
        newline = truncated.rfind("\n")
        if newline > 0:
            return truncated[:newline]
        return truncated


@dataclass(frozen=True)
class TokenBudget:
    """Partition of a context window; the parts always sum to ``total``."""

    total: int
    prefix: int
    suffix: int
    response: int
    overhead: int

    def __post_init__(self) -> None:
        if self.prefix + self.suffix + self.response + self.overhead != self.total:
            raise ValueError(
                f"Token budget parts do not sum to total {self.total}: "
                f"prefix={self.prefix} suffix={self.suffix} "
                f"response={self.response} overhead={self.overhead}"
            )


def create_token_budget(total_tokens: int, response_tokens: int | None = None) -> TokenBudget:
    """Allocate a context window.

    Response (15%) and overhead (5%) are carved off first; what remains
    is split 75/25 between prefix and suffix.
    """
    response = response_tokens if response_tokens is not None else round(
        total_tokens * RESPONSE_SHARE
    )
    overhead = round(total_tokens * OVERHEAD_SHARE)
    available = total_tokens - response - overhead
    prefix = math.floor(available * PREFIX_SHARE)
    suffix = available - prefix
    return TokenBudget(
        total=total_tokens,
        prefix=prefix,
        suffix=suffix,
        response=response,
        overhead=overhead,
    )


def create_tokenizer(
    fill_format: FillFormat | None, line_aware: bool = True,
) -> Tokenizer:
    base = EstimationTokenizer(fill_format)
    return LineAwareTokenizer(base) if line_aware else base


def budget_for_format(
    fill_format: FillFormat | None,
    max_context_tokens: int | None = None,
    max_response_tokens: int | None = None,
) -> TokenBudget:
    """Budget for a model family, using its typical window when none is given."""
    if not max_context_tokens:
        max_context_tokens = _DEFAULT_CONTEXT_WINDOW.get(
            fill_format, _FALLBACK_CONTEXT_WINDOW,
        )
    return create_token_budget(max_context_tokens, max_response_tokens)
