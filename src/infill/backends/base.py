"""Abstract inference backend interface.

Backends are the closed set of wire protocols Infill can speak (Ollama,
vLLM/OpenAI-compatible, llama.cpp). Each exposes the same streaming API;
``HTTPBackend`` holds the transport logic they share.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx

from infill.backends.lines import iter_lines
from infill.exceptions import (
    BackendConnectionError,
    BackendHTTPError,
    BackendTimeoutError,
    UnsupportedOperationError,
)
from infill.prompts.fim import FillFormat
from infill.prompts.rewrite import RewriteFormat
from infill.utils.cancellation import CancellationToken, run_cancellable

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 300.0


@dataclass(frozen=True)
class BackendCapabilities:
    """What a backend supports; produced once per instance."""

    supports_fim: bool
    supports_streaming: bool
    supports_kv_cache: bool
    supports_model_download: bool
    max_context_tokens: int
    default_model: str


@dataclass
class CompletionRequest:
    """Fill-in-middle generation parameters."""

    model: str
    prefix: str
    suffix: str
    fill_format: FillFormat = FillFormat.QWEN
    max_tokens: int = 256
    temperature: float = 0.2
    stop: list[str] = field(default_factory=list)
    timeout: float | None = None
    cancel: CancellationToken | None = None


@dataclass
class RewriteRequest:
    """Instruction-driven rewrite of a selection."""

    model: str
    selected_text: str
    instruction: str
    context: str = ""
    max_tokens: int = 1024
    temperature: float = 0.2
    output_format: RewriteFormat = RewriteFormat.TAGGED
    timeout: float | None = None
    cancel: CancellationToken | None = None


class InferenceBackend(ABC):
    """Abstract base class for all inference backends."""

    @abstractmethod
    async def check_model(self, model_name: str) -> bool:
        """Return True if the server can serve ``model_name``."""
        ...

    async def download_model(
        self,
        model_name: str,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        """Fetch a model onto the server. Only some backends support this."""
        raise UnsupportedOperationError(
            f"{type(self).__name__} does not support model download"
        )

    @abstractmethod
    def stream_completion(self, request: CompletionRequest) -> AsyncIterator[str]:
        """Stream fill-in-middle tokens as they are generated."""
        ...

    @abstractmethod
    def stream_rewrite(self, request: RewriteRequest) -> AsyncIterator[str]:
        """Stream the rewritten text for an instruction."""
        ...

    @abstractmethod
    def capabilities(self) -> BackendCapabilities:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the backend, terminating any in-flight request."""
        ...


class HTTPBackend(InferenceBackend):
    """Shared httpx transport for the line-oriented streaming protocols."""

    label = "backend"

    def __init__(
        self,
        endpoint: str,
        bearer_token: str = "",
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self._endpoint = endpoint.rstrip("/")
        headers: dict[str, str] = {}
        token = (bearer_token or "").strip()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=self._endpoint,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )
        self._inflight: set[CancellationToken] = set()
        self._closed = False

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @staticmethod
    async def _http_error_body(response: httpx.Response, limit: int = 500) -> str:
        """Safely extract an HTTP error body from normal or streaming responses."""
        try:
            body = await response.aread()
            if body:
                return body.decode("utf-8", errors="replace")[:limit]
        except Exception:
            pass

        try:
            return str(response.text)[:limit]
        except Exception:
            return "<response body unavailable>"

    def _connection_error(self, error: httpx.HTTPError) -> BackendConnectionError:
        if isinstance(error, httpx.TimeoutException):
            return BackendTimeoutError(
                f"{self.label} request timed out at {self._endpoint}: {error}",
                original=error,
            )
        return BackendConnectionError(
            f"Unable to connect to {self.label} at {self._endpoint}: {error}",
            original=error,
        )

    async def _get_json(self, path: str) -> dict:
        """GET a JSON document, mapping transport and status failures."""
        try:
            response = await self._client.get(path)
        except httpx.TransportError as e:
            raise self._connection_error(e) from e
        if response.is_error:
            raise BackendHTTPError(response.status_code, await self._http_error_body(response))
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise BackendHTTPError(response.status_code, f"invalid JSON: {e}") from e
        return data if isinstance(data, dict) else {}

    @asynccontextmanager
    async def _track(self, cancel: CancellationToken | None):
        """Link the caller's token to one that ``close()`` can also fire."""
        token = cancel.child() if cancel is not None else CancellationToken()
        if self._closed:
            token.cancel(f"{self.label} is closed")
        self._inflight.add(token)
        try:
            yield token
        finally:
            self._inflight.discard(token)
            token.detach()

    async def _post_lines(
        self,
        path: str,
        payload: dict,
        cancel: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> AsyncGenerator[str, None]:
        """POST ``payload`` and yield the response body line by line.

        Both waiting for the response headers and every body read are raced
        against ``cancel`` and against ``close()``.
        """
        logger.debug(
            "POST %s%s (bearer=%s, keys=%s)",
            self._endpoint, path, "Authorization" in self._client.headers,
            sorted(payload),
        )
        request_kwargs: dict = {"json": payload}
        if timeout is not None:
            request_kwargs["timeout"] = httpx.Timeout(timeout)
        request = self._client.build_request("POST", path, **request_kwargs)

        async with self._track(cancel) as token:
            try:
                response = await run_cancellable(
                    self._client.send(request, stream=True), token,
                )
            except httpx.TransportError as e:
                raise self._connection_error(e) from e

            try:
                if response.is_error:
                    body = await self._http_error_body(response)
                    logger.warning(
                        "%s returned HTTP %d: %s", self.label, response.status_code, body,
                    )
                    raise BackendHTTPError(response.status_code, body)
                async for line in iter_lines(response.aiter_bytes(), token):
                    yield line
            except httpx.TransportError as e:
                raise self._connection_error(e) from e
            finally:
                await response.aclose()

    @abstractmethod
    def _parse_line(self, line: str) -> tuple[str, bool] | None:
        """Decode one wire line into ``(text, done)``; None skips the line."""
        ...

    async def _stream_tokens(
        self,
        path: str,
        payload: dict,
        cancel: CancellationToken | None,
        timeout: float | None,
        kind: str = "completion",
    ) -> AsyncGenerator[str, None]:
        token_count = 0
        async for line in self._post_lines(path, payload, cancel, timeout):
            if not line.strip():
                continue
            parsed = self._parse_line(line)
            if parsed is None:
                continue
            text, done = parsed
            token_count += 1
            if text:
                yield text
            if done:
                logger.debug("%s %s stream ended after %d tokens", self.label, kind, token_count)
                return

    async def close(self) -> None:
        self._closed = True
        for token in list(self._inflight):
            token.cancel(f"{self.label} closed")
        await self._client.aclose()
        logger.debug("%s disposed", self.label)
