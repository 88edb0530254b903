"""Completion orchestrator.

Ties the pipeline together for one request: cache lookup, session
tracking, backend selection, context truncation, scope-bounded streaming
with bracket tracking, and post-processing of the generated text.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from infill.backends.base import (
    CompletionRequest,
    InferenceBackend,
    RewriteRequest,
)
from infill.backends.factory import BackendType, create_backend, detect_backend_type
from infill.backends.retry import RetryPolicy
from infill.config import Config, InferenceConfig
from infill.context.builder import BuiltContext, ContextBuilder, ContextPiece
from infill.context.scope import ScopeDetector
from infill.prompts.fim import build_stop_sequences
from infill.prompts.rewrite import RewriteFormat
from infill.state.cache import CacheKey, CacheStats, SemanticCache
from infill.state.sessions import SessionManager, SessionStats
from infill.utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

_CLOSING = {")": "(", "]": "[", "}": "{"}
_OPENING = frozenset(_CLOSING.values())

BackendFactory = Callable[[BackendType, str, str], InferenceBackend]


def strip_stop_suffix(text: str, stop: Iterable[str]) -> str:
    """Remove one trailing stop sequence, the first in ``stop`` that matches."""
    for token in stop:
        if token and text.endswith(token):
            return text[: -len(token)]
    return text


def trim_line_ends(text: str) -> str:
    return "\n".join(line.rstrip() for line in text.split("\n"))


def _join_context(context: BuiltContext) -> str:
    """Prepend the selected context pieces to the (truncated) prefix."""
    if not context.additional:
        return context.prefix
    header = "".join(piece.content.rstrip("\n") + "\n\n" for piece in context.additional)
    return header + context.prefix


class CompletionService:
    """Runs fill-in-middle completions against a configured backend.

    Collaborators are injected so their lifetime is owned by the caller;
    anything not supplied gets a default instance.
    """

    def __init__(
        self,
        cache: SemanticCache[str] | None = None,
        sessions: SessionManager | None = None,
        scope_detector: ScopeDetector | None = None,
        retry_policy: RetryPolicy | None = None,
        backend_factory: BackendFactory = create_backend,
    ):
        self._cache: SemanticCache[str] = cache if cache is not None else SemanticCache()
        self._sessions = sessions if sessions is not None else SessionManager()
        self._scope = scope_detector or ScopeDetector()
        self._retry = retry_policy or RetryPolicy.for_network_operations()
        self._backend_factory = backend_factory
        self._backend: InferenceBackend | None = None
        self._backend_key: tuple[str, BackendType] | None = None

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> CompletionService:
        """Build a service whose cache, sessions and retries follow ``config``."""
        kwargs.setdefault("cache", SemanticCache(
            max_size=config.cache.max_size,
            ttl_seconds=config.cache.ttl_seconds,
            enable_normalization=config.cache.enable_normalization,
            min_prefix_length=config.cache.min_prefix_length,
        ))
        kwargs.setdefault("sessions", SessionManager(
            session_ttl_seconds=config.sessions.session_ttl_seconds,
            max_sessions=config.sessions.max_sessions,
            prune_interval_seconds=config.sessions.prune_interval_seconds,
        ))
        kwargs.setdefault("retry_policy", RetryPolicy.from_config(config.retry))
        return cls(**kwargs)

    @property
    def backend(self) -> InferenceBackend | None:
        return self._backend

    async def complete(
        self,
        prefix: str,
        suffix: str,
        config: InferenceConfig,
        file_path: str | None = None,
        cancel: CancellationToken | None = None,
        context_pieces: Iterable[ContextPiece] = (),
    ) -> str:
        """Generate the text that belongs between ``prefix`` and ``suffix``.

        Raises ``OperationCancelledError`` when ``cancel`` fires; a
        cancelled completion is never cached. Backend failures propagate.
        """
        cache_key = CacheKey(prefix=prefix, suffix=suffix, file_path=file_path, model=config.model)
        cached = self._cache_get(cache_key)
        if cached is not None:
            logger.debug("Returning cached completion (%d chars)", len(cached))
            return cached

        if file_path:
            self._track_session(file_path, prefix, suffix)

        backend = await self._resolve_backend(config)
        fill_format = config.resolved_fill_format

        max_lines = min(config.max_lines, self._scope.recommended_max_lines(prefix))
        context = self._build_context(prefix, suffix, config, backend, context_pieces)
        if context.was_truncated:
            logger.debug("Context truncated to %d tokens", context.token_counts.total)

        request = CompletionRequest(
            model=config.model,
            prefix=_join_context(context),
            suffix=context.suffix,
            fill_format=fill_format,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
            stop=list(config.stop),
            timeout=config.timeout_seconds,
            cancel=cancel,
        )
        logger.debug(
            "Completion request: model=%s, format=%s, max_lines=%d",
            config.model, fill_format.value, max_lines,
        )

        result = await self._collect(backend, request, max_lines, cancel)
        result = strip_stop_suffix(result, build_stop_sequences(fill_format, config.stop))
        result = trim_line_ends(result)

        if result.strip():
            self._cache_set(cache_key, result)
        return result

    async def rewrite(
        self,
        selected_text: str,
        instruction: str,
        config: InferenceConfig,
        context: str = "",
        output_format: RewriteFormat = RewriteFormat.TAGGED,
        max_tokens: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> str:
        """Stream an instruction-driven rewrite and return the raw model output."""
        backend = await self._resolve_backend(config)
        request = RewriteRequest(
            model=config.model,
            selected_text=selected_text,
            instruction=instruction,
            context=context,
            max_tokens=max_tokens or max(config.max_tokens, 1024),
            temperature=config.temperature,
            output_format=output_format,
            timeout=config.timeout_seconds,
            cancel=cancel,
        )
        parts: list[str] = []

        def _start_attempt():
            parts.clear()
            return backend.stream_rewrite(request)

        stream = self._retry.execute_generator(_start_attempt, cancel)
        try:
            async for token in stream:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                parts.append(token)
        finally:
            await stream.aclose()
        return "".join(parts)

    async def check_model(self, config: InferenceConfig) -> bool:
        backend = await self._resolve_backend(config)
        return await backend.check_model(config.model)

    async def download_model(
        self,
        config: InferenceConfig,
        on_progress: Callable[[float], None] | None = None,
    ) -> None:
        """Pull ``config.model`` onto the server; raises if unsupported."""
        backend = await self._resolve_backend(config)
        await backend.download_model(config.model, on_progress)

    def invalidate_cache(self, file_path: str) -> int:
        return self._cache.invalidate_file(file_path)

    def end_session(self, file_path: str) -> None:
        self._sessions.end_session(file_path)
        self._cache.invalidate_file(file_path)

    def cache_stats(self) -> CacheStats:
        return self._cache.stats()

    def session_stats(self) -> SessionStats:
        return self._sessions.stats()

    async def close(self) -> None:
        """Dispose the backend, stop session pruning and clear the cache."""
        backend, self._backend, self._backend_key = self._backend, None, None
        if backend is not None:
            await backend.close()
        await self._sessions.close()
        self._cache.clear()

    async def _collect(
        self,
        backend: InferenceBackend,
        request: CompletionRequest,
        max_lines: int,
        cancel: CancellationToken | None,
    ) -> str:
        """Accumulate streamed tokens until a bracket or line stop fires."""
        parts: list[str] = []
        stack: list[str] = []
        lines = 1
        token_count = 0

        def _start_attempt():
            # A retried attempt replays the stream from its first token.
            nonlocal lines, token_count
            parts.clear()
            stack.clear()
            lines = 1
            token_count = 0
            return backend.stream_completion(request)

        stream = self._retry.execute_generator(_start_attempt, cancel)
        try:
            async for token in stream:
                token_count += 1
                if cancel is not None:
                    cancel.raise_if_cancelled()

                kept, mismatched = _track_brackets(token, stack)
                parts.append(kept)
                if mismatched:
                    logger.debug("Bracket mismatch after %d tokens, stopping", token_count)
                    break

                lines += token.count("\n")
                if lines > max_lines and not stack:
                    logger.debug("Line limit %d reached after %d tokens", max_lines, token_count)
                    break
        finally:
            await stream.aclose()

        return "".join(parts)

    async def _resolve_backend(self, config: InferenceConfig) -> InferenceBackend:
        """Reuse the current backend unless the endpoint or protocol changed."""
        backend_type = (
            BackendType(config.backend_type)
            if config.backend_type
            else detect_backend_type(config.endpoint)
        )
        key = (config.endpoint, backend_type)
        if self._backend is not None and self._backend_key == key:
            return self._backend

        if self._backend is not None:
            logger.info("Backend configuration changed, recreating backend")
            await self._backend.close()
        self._backend = self._backend_factory(backend_type, config.endpoint, config.bearer_token)
        self._backend_key = key
        return self._backend

    def _build_context(
        self,
        prefix: str,
        suffix: str,
        config: InferenceConfig,
        backend: InferenceBackend,
        pieces: Iterable[ContextPiece],
    ) -> BuiltContext:
        window = config.max_context_tokens or backend.capabilities().max_context_tokens
        builder = ContextBuilder(
            config.resolved_fill_format,
            max_context_tokens=window,
            max_response_tokens=min(config.max_tokens, window // 2),
        )
        builder.set_prefix(prefix).set_suffix(suffix)
        for piece in pieces:
            builder.add_piece(piece)
        return builder.build()

    def _cache_get(self, key: CacheKey) -> str | None:
        try:
            return self._cache.get(key)
        except Exception:
            logger.warning("Cache lookup failed", exc_info=True)
            return None

    def _cache_set(self, key: CacheKey, value: str) -> None:
        try:
            self._cache.set(key, value)
        except Exception:
            logger.warning("Cache write failed", exc_info=True)

    def _track_session(self, file_path: str, prefix: str, suffix: str) -> None:
        try:
            self._sessions.update_context(file_path, prefix, suffix)
            self._sessions.start_pruning()
        except Exception:
            logger.warning("Session update failed for %s", file_path, exc_info=True)


def _track_brackets(token: str, stack: list[str]) -> tuple[str, bool]:
    """Update ``stack`` for ``token``.

    Returns the part of the token to keep and whether a closing bracket
    failed to match; the mismatched character and anything after it are
    dropped.
    """
    for i, char in enumerate(token):
        if char in _OPENING:
            stack.append(char)
        elif char in _CLOSING:
            if stack and stack[-1] == _CLOSING[char]:
                stack.pop()
            else:
                return token[:i], True
    return token, False
