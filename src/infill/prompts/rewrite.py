"""Instruction prompt for code rewrite streams."""

from __future__ import annotations

from enum import Enum

REWRITE_SYSTEM_PROMPT = (
    "You are a code rewriting assistant. Follow instructions precisely "
    "and return only the requested format."
)


class RewriteFormat(str, Enum):
    JSON = "json"
    TAGGED = "tagged"


_JSON_INSTRUCTIONS = """Respond with JSON in this exact format:
{
  "rewritten": "<the rewritten code>",
  "changes": ["<description of change 1>", "<description of change 2>"]
}"""

_TAGGED_INSTRUCTIONS = """Respond in this exact format:
<REWRITTEN>
<the rewritten code>
</REWRITTEN>
<CHANGES>
- <description of change 1>
- <description of change 2>
</CHANGES>"""


def build_rewrite_prompt(
    selected_text: str,
    instruction: str,
    context: str,
    output_format: RewriteFormat = RewriteFormat.TAGGED,
) -> str:
    """Render the rewrite instruction prompt shared by every backend."""
    response_spec = (
        _JSON_INSTRUCTIONS if output_format == RewriteFormat.JSON else _TAGGED_INSTRUCTIONS
    )
    return (
        "You are a code rewriting assistant. Given a code snippet and an "
        "instruction, rewrite the code according to the instruction.\n\n"
        f"Context:\n```\n{context}\n```\n\n"
        f"Original code:\n```\n{selected_text}\n```\n\n"
        f"Instruction: {instruction}\n\n"
        f"{response_spec}"
    )
