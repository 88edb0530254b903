"""Context shaping: token estimation, budget truncation and scope detection."""

from __future__ import annotations

from infill.context.builder import BuiltContext, ContextBuilder, ContextPiece, ContextPieceType
from infill.context.scope import ScopeDetector, ScopeInfo, ScopeType
from infill.context.tokenizer import (
    EstimationTokenizer,
    LineAwareTokenizer,
    TokenBudget,
    create_token_budget,
    create_tokenizer,
)

__all__ = [
    "BuiltContext",
    "ContextBuilder",
    "ContextPiece",
    "ContextPieceType",
    "EstimationTokenizer",
    "LineAwareTokenizer",
    "ScopeDetector",
    "ScopeInfo",
    "ScopeType",
    "TokenBudget",
    "create_token_budget",
    "create_tokenizer",
]
