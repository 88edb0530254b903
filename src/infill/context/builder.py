"""Assemble prefix, suffix and auxiliary context within a token budget.

Priority order when space runs out:
1. Prefix lines closest to the cursor
2. Suffix lines closest to the cursor
3. Imports, then definitions, then related files (by piece priority)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

from infill.context.tokenizer import (
    TokenBudget,
    TokenEstimate,
    budget_for_format,
    create_tokenizer,
)
from infill.prompts.fim import FillFormat

# A piece is only worth truncating into the prompt if this much room is left.
MIN_TRUNCATED_PIECE_TOKENS = 50


class ContextPieceType(str, Enum):
    IMPORTS = "imports"
    DEFINITIONS = "definitions"
    RELATED = "related"


@dataclass(frozen=True)
class ContextPiece:
    """A piece of auxiliary context; higher priority is kept first."""

    type: ContextPieceType
    content: str
    priority: int
    file_path: str | None = None


@dataclass(frozen=True)
class TokenCounts:
    prefix: int = 0
    suffix: int = 0
    additional: int = 0
    total: int = 0


@dataclass(frozen=True)
class BuiltContext:
    """Context ready for prompt assembly."""

    prefix: str
    suffix: str
    additional: list[ContextPiece] = field(default_factory=list)
    token_counts: TokenCounts = field(default_factory=TokenCounts)
    was_truncated: bool = False


class ContextBuilder:
    """Builds fill-in-middle context that fits a model's window."""

    def __init__(
        self,
        fill_format: FillFormat,
        budget: TokenBudget | None = None,
        max_context_tokens: int | None = None,
        max_response_tokens: int | None = None,
    ):
        self._tokenizer = create_tokenizer(fill_format)
        self._budget = budget or budget_for_format(
            fill_format, max_context_tokens, max_response_tokens,
        )
        self._prefix = ""
        self._suffix = ""
        self._pieces: list[ContextPiece] = []

    @property
    def budget(self) -> TokenBudget:
        return self._budget

    def set_prefix(self, content: str) -> ContextBuilder:
        self._prefix = content
        return self

    def set_suffix(self, content: str) -> ContextBuilder:
        self._suffix = content
        return self

    def add_imports(
        self, content: str, file_path: str | None = None, priority: int = 80,
    ) -> ContextBuilder:
        return self.add_piece(ContextPiece(
            type=ContextPieceType.IMPORTS,
            content=content,
            priority=priority,
            file_path=file_path,
        ))

    def add_definitions(
        self, content: str, file_path: str | None = None, priority: int = 70,
    ) -> ContextBuilder:
        return self.add_piece(ContextPiece(
            type=ContextPieceType.DEFINITIONS,
            content=content,
            priority=priority,
            file_path=file_path,
        ))

    def add_related(
        self, content: str, file_path: str, priority: int = 50,
    ) -> ContextBuilder:
        return self.add_piece(ContextPiece(
            type=ContextPieceType.RELATED,
            content=content,
            priority=priority,
            file_path=file_path,
        ))

    def add_piece(self, piece: ContextPiece) -> ContextBuilder:
        """Add a piece; whitespace-only content is dropped."""
        if piece.content.strip():
            self._pieces.append(piece)
        return self

    def reset(self) -> ContextBuilder:
        self._prefix = ""
        self._suffix = ""
        self._pieces = []
        return self

    def estimate_tokens(self) -> dict[str, TokenEstimate | int]:
        """Estimate the untruncated size of every section."""
        prefix = self._tokenizer.count_tokens(self._prefix)
        suffix = self._tokenizer.count_tokens(self._suffix)
        additional = sum(
            self._tokenizer.count_tokens(p.content).tokens for p in self._pieces
        )
        return {
            "prefix": prefix,
            "suffix": suffix,
            "additional": TokenEstimate(tokens=additional, is_exact=False),
            "total": prefix.tokens + suffix.tokens + additional,
        }

    def build(self) -> BuiltContext:
        was_truncated = False

        # Prefix keeps its tail and suffix keeps its head: both ends touch the cursor.
        prefix = self._prefix
        if self._tokenizer.count_tokens(prefix).tokens > self._budget.prefix:
            prefix = self._tokenizer.truncate_to_tokens(
                prefix, self._budget.prefix, from_end=True,
            )
            was_truncated = True

        suffix = self._suffix
        if self._tokenizer.count_tokens(suffix).tokens > self._budget.suffix:
            suffix = self._tokenizer.truncate_to_tokens(
                suffix, self._budget.suffix, from_end=False,
            )
            was_truncated = True

        prefix_tokens = self._tokenizer.count_tokens(prefix).tokens
        suffix_tokens = self._tokenizer.count_tokens(suffix).tokens
        used = prefix_tokens + suffix_tokens + self._budget.overhead
        available = max(0, self._budget.total - self._budget.response - used)

        selected, pieces_truncated = self._select_pieces(available)
        if pieces_truncated or len(selected) < len(self._pieces):
            was_truncated = True

        additional_tokens = sum(
            self._tokenizer.count_tokens(p.content).tokens for p in selected
        )
        return BuiltContext(
            prefix=prefix,
            suffix=suffix,
            additional=selected,
            token_counts=TokenCounts(
                prefix=prefix_tokens,
                suffix=suffix_tokens,
                additional=additional_tokens,
                total=prefix_tokens + suffix_tokens + additional_tokens,
            ),
            was_truncated=was_truncated,
        )

    def _select_pieces(self, available: int) -> tuple[list[ContextPiece], bool]:
        """Greedy selection by priority; at most one trailing piece is truncated."""
        if available <= 0 or not self._pieces:
            return [], False

        ordered = sorted(self._pieces, key=lambda p: p.priority, reverse=True)
        selected: list[ContextPiece] = []
        remaining = available

        for piece in ordered:
            tokens = self._tokenizer.count_tokens(piece.content).tokens
            if tokens <= remaining:
                selected.append(piece)
                remaining -= tokens
            elif remaining >= MIN_TRUNCATED_PIECE_TOKENS:
                truncated = self._tokenizer.truncate_to_tokens(
                    piece.content, remaining, from_end=False,
                )
                if truncated:
                    selected.append(replace(piece, content=truncated))
                    return selected, True
                return selected, False

        return selected, False
