"""Heuristic scope detection from the text before the cursor.

No parsing: strings and comments are stripped, brackets are counted and
the last few hundred characters are matched against shape patterns.
Brackets inside constructs the cleaner does not know about (``#``
comments, regex literals, heredocs) are still counted, so results are
best effort and callers treat them as hints.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum


class ScopeType(str, Enum):
    GLOBAL = "global"
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    BLOCK = "block"
    OBJECT = "object"
    ARRAY = "array"


@dataclass
class BracketBalance:
    curly: int = 0
    paren: int = 0
    square: int = 0


@dataclass
class ScopeInfo:
    type: ScopeType
    depth: int
    at_statement_boundary: bool
    in_string: bool
    in_comment: bool
    balance: BracketBalance = field(default_factory=BracketBalance)
    container_name: str | None = None


_RECENT_CHARS = 500
_NAME_SEARCH_CHARS = 300

_CLASS_BODY_RE = re.compile(r"class\s+\w+[^{]*\{\s*\Z")
_CLASS_ANYWHERE_RE = re.compile(r"class\s+\w+[^{]*\{")
_FUNCTION_BODY_RES = (
    re.compile(r"(?:function\s+\w*|=>\s*)\s*\{[^}]*\Z"),
    re.compile(
        r"(?:async\s+)?(?:function\s*\*?\s*\w*|\w+\s*)\([^)]*\)\s*(?::\s*\w+)?\s*\{[^}]*\Z"
    ),
)
_OBJECT_LITERAL_RE = re.compile(r"[{,]\s*\w+\s*:\s*[^,}]*\Z")

_FUNCTION_NAME_RE = re.compile(
    r"(?:function\s+(\w+)|(\w+)\s*[=:]\s*(?:async\s+)?(?:function|\([^)]*\)\s*=>))"
)
_CLASS_NAME_RE = re.compile(r"class\s+(\w+)")
_METHOD_NAME_RE = re.compile(r"(\w+)\s*\([^)]*\)\s*\{[^}]*\Z")

_MAX_LINES_BY_SCOPE = {
    ScopeType.GLOBAL: 20,
    ScopeType.CLASS: 15,
    ScopeType.BLOCK: 5,
    ScopeType.OBJECT: 3,
    ScopeType.ARRAY: 3,
}


class ScopeDetector:
    """Classifies the cursor position using bracket balance heuristics."""

    def detect(self, prefix: str, suffix: str = "") -> ScopeInfo:
        cleaned, in_string, in_comment = _strip_strings_and_comments(prefix)
        balance = _count_brackets(cleaned)
        scope_type = _classify(cleaned, balance)
        return ScopeInfo(
            type=scope_type,
            depth=balance.curly,
            at_statement_boundary=_at_statement_boundary(cleaned, suffix),
            in_string=in_string,
            in_comment=in_comment,
            balance=balance,
            container_name=_container_name(cleaned, scope_type),
        )

    def is_top_level(self, prefix: str) -> bool:
        scope = self.detect(prefix)
        return scope.depth == 0 and scope.type == ScopeType.GLOBAL

    def is_in_function(self, prefix: str) -> bool:
        return self.detect(prefix).type in (ScopeType.FUNCTION, ScopeType.METHOD)

    def recommended_max_lines(self, prefix: str) -> int:
        """How many lines a completion at this position should be allowed."""
        scope = self.detect(prefix)
        if scope.in_string or scope.in_comment:
            return 1
        if scope.type in (ScopeType.FUNCTION, ScopeType.METHOD):
            return 10 if scope.depth <= 1 else 5
        return _MAX_LINES_BY_SCOPE.get(scope.type, 5)


def _strip_strings_and_comments(code: str) -> tuple[str, bool, bool]:
    """Drop string and comment content; report whether the text ends inside one."""
    cleaned: list[str] = []
    in_string = False
    in_comment = False
    quote = ""
    i = 0
    length = len(code)

    while i < length:
        char = code[i]
        nxt = code[i + 1] if i + 1 < length else ""

        if not in_string and not in_comment and char == "/" and nxt == "*":
            in_comment = True
            i += 2
            continue
        if in_comment and char == "*" and nxt == "/":
            in_comment = False
            i += 2
            continue
        if not in_string and not in_comment and char == "/" and nxt == "/":
            while i < length and code[i] != "\n":
                i += 1
            continue

        if not in_comment and char in ("'", '"', "`"):
            if not in_string:
                in_string = True
                quote = char
            elif char == quote and code[i - 1] != "\\":
                in_string = False
                quote = ""
            i += 1
            continue

        if not in_string and not in_comment:
            cleaned.append(char)
        i += 1

    return "".join(cleaned), in_string, in_comment


def _count_brackets(code: str) -> BracketBalance:
    balance = BracketBalance()
    for char in code:
        if char == "{":
            balance.curly += 1
        elif char == "}":
            balance.curly -= 1
        elif char == "(":
            balance.paren += 1
        elif char == ")":
            balance.paren -= 1
        elif char == "[":
            balance.square += 1
        elif char == "]":
            balance.square -= 1
    return balance


def _classify(code: str, balance: BracketBalance) -> ScopeType:
    if balance.square > 0:
        return ScopeType.ARRAY
    if balance.curly <= 0:
        return ScopeType.GLOBAL

    recent = code[-_RECENT_CHARS:]
    if _CLASS_BODY_RE.search(recent):
        return ScopeType.CLASS
    if any(pattern.search(recent) for pattern in _FUNCTION_BODY_RES):
        if _CLASS_ANYWHERE_RE.search(code):
            return ScopeType.METHOD
        return ScopeType.FUNCTION
    if _OBJECT_LITERAL_RE.search(recent):
        return ScopeType.OBJECT
    return ScopeType.BLOCK


def _at_statement_boundary(prefix: str, suffix: str) -> bool:
    # Only horizontal whitespace is trimmed so a trailing newline still counts.
    trimmed_prefix = prefix.rstrip(" \t")
    if trimmed_prefix.strip() == "" or trimmed_prefix.endswith((";", "{", "}", "\n")):
        return True
    return suffix.lstrip().startswith(("{", ";", "}"))


def _container_name(code: str, scope_type: ScopeType) -> str | None:
    if scope_type == ScopeType.GLOBAL:
        return None

    recent = code[-_NAME_SEARCH_CHARS:]
    match = _FUNCTION_NAME_RE.search(recent)
    if match:
        return match.group(1) or match.group(2)
    match = _CLASS_NAME_RE.search(recent)
    if match:
        return match.group(1)
    match = _METHOD_NAME_RE.search(recent)
    if match:
        return match.group(1)
    return None
