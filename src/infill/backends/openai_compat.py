"""vLLM backend over the OpenAI-compatible chat completions API.

Responses are server-sent events: ``data: {json}`` lines terminated by a
literal ``data: [DONE]``.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncGenerator

from infill.backends.base import (
    BackendCapabilities,
    CompletionRequest,
    HTTPBackend,
    RewriteRequest,
)
from infill.exceptions import BackendError
from infill.prompts.fim import adapt_prompt, build_stop_sequences
from infill.prompts.rewrite import REWRITE_SYSTEM_PROMPT, build_rewrite_prompt

logger = logging.getLogger(__name__)

SSE_PREFIX = "data: "
SSE_DONE = "[DONE]"

_CAPABILITIES = BackendCapabilities(
    supports_fim=True,
    supports_streaming=True,
    supports_kv_cache=True,
    supports_model_download=False,
    max_context_tokens=32768,
    default_model="Qwen/Qwen2.5-Coder-7B-Instruct",
)


class VLLMBackend(HTTPBackend):
    """Backend for vLLM (or any OpenAI-compatible server)."""

    label = "vLLM"

    async def check_model(self, model_name: str) -> bool:
        try:
            data = await self._get_json("/v1/models")
        except BackendError as e:
            logger.info("Model check failed: %s", e)
            return False

        models = data.get("data") or []
        exists = any(isinstance(m, dict) and m.get("id") == model_name for m in models)
        logger.info("Model %s served: %s", model_name, exists)
        return exists

    def stream_completion(self, request: CompletionRequest) -> AsyncGenerator[str, None]:
        fim = adapt_prompt(request.prefix, request.suffix, request.fill_format)
        payload = {
            "model": request.model,
            "messages": [{"role": "user", "content": fim.prompt}],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stop": build_stop_sequences(request.fill_format, request.stop),
            "stream": True,
        }
        logger.debug(
            "Streaming completion: model=%s, format=%s",
            request.model, request.fill_format.value,
        )
        return self._stream_tokens(
            "/v1/chat/completions", payload, request.cancel, request.timeout,
        )

    def stream_rewrite(self, request: RewriteRequest) -> AsyncGenerator[str, None]:
        prompt = build_rewrite_prompt(
            request.selected_text, request.instruction, request.context,
            request.output_format,
        )
        payload = {
            "model": request.model,
            "messages": [
                {"role": "system", "content": REWRITE_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "stream": True,
        }
        return self._stream_tokens(
            "/v1/chat/completions", payload, request.cancel, request.timeout,
            kind="rewrite",
        )

    def capabilities(self) -> BackendCapabilities:
        return _CAPABILITIES

    def _parse_line(self, line: str) -> tuple[str, bool] | None:
        if not line.startswith(SSE_PREFIX):
            return None
        data = line[len(SSE_PREFIX):].strip()
        if data == SSE_DONE:
            return "", True

        try:
            event = json.loads(data)
        except json.JSONDecodeError:
            logger.debug("Skipping malformed SSE line: %s", line[:200])
            return None

        choices = event.get("choices") if isinstance(event, dict) else None
        if not choices or not isinstance(choices[0], dict):
            logger.debug("Skipping SSE event without choices: %s", line[:200])
            return None
        choice = choices[0]
        delta = choice.get("delta") or {}
        content = (delta.get("content") or "") if isinstance(delta, dict) else ""
        return content, bool(choice.get("finish_reason"))
