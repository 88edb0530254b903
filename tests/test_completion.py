"""Tests for the completion orchestrator."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from infill.backends.base import (
    BackendCapabilities,
    CompletionRequest,
    InferenceBackend,
    RewriteRequest,
)
from infill.backends.factory import BackendType, create_backend
from infill.config import Config, InferenceConfig
from infill.context.builder import ContextPiece, ContextPieceType
from infill.engine.completion import CompletionService, strip_stop_suffix, trim_line_ends
from infill.exceptions import (
    BackendConnectionError,
    BackendHTTPError,
    OperationCancelledError,
    UnsupportedOperationError,
)
from infill.state.cache import SemanticCache
from infill.utils.cancellation import CancellationToken

PREFIX = "def handler(event):\n"


class FakeBackend(InferenceBackend):
    """Backend that replays scripted token streams."""

    def __init__(self, *streams: list[str | Exception] | Exception, endpoint: str = ""):
        self.streams = list(streams)
        self.endpoint = endpoint
        self.requests: list[CompletionRequest] = []
        self.rewrites: list[RewriteRequest] = []
        self.consumed: list[str] = []
        self.closed = False

    async def check_model(self, model_name: str) -> bool:
        return model_name == "known"

    async def stream_completion(self, request: CompletionRequest):
        self.requests.append(request)
        script = self.streams.pop(0) if len(self.streams) > 1 else self.streams[0]
        if isinstance(script, Exception):
            raise script
        for token in script:
            if isinstance(token, Exception):
                raise token
            self.consumed.append(token)
            yield token
            await asyncio.sleep(0)

    async def stream_rewrite(self, request: RewriteRequest):
        self.rewrites.append(request)
        for token in ("<REWRITTEN>\n", "y = 1\n", "</REWRITTEN>"):
            yield token

    def capabilities(self) -> BackendCapabilities:
        return BackendCapabilities(
            supports_fim=True,
            supports_streaming=True,
            supports_kv_cache=False,
            supports_model_download=False,
            max_context_tokens=4096,
            default_model="fake",
        )

    async def close(self) -> None:
        self.closed = True


class FactoryRecorder:
    def __init__(self, *backends: FakeBackend):
        self.backends = list(backends)
        self.calls: list[tuple[BackendType, str, str]] = []

    def __call__(self, backend_type: BackendType, endpoint: str, bearer_token: str):
        self.calls.append((backend_type, endpoint, bearer_token))
        return self.backends.pop(0)


def _service(backend: FakeBackend, fast_retry, **kwargs) -> CompletionService:
    return CompletionService(
        retry_policy=fast_retry, backend_factory=lambda *_: backend, **kwargs,
    )


CONFIG = InferenceConfig(endpoint="http://localhost:11434", model="qwen2.5-coder:7b")


class TestEndToEnd:
    async def test_ollama_stream_produces_clean_completion(self, fast_retry):
        seen: list[httpx.Request] = []
        body = "".join(json.dumps(o) + "\n" for o in (
            {"model": "qwen2.5-coder:7b", "response": "def ", "done": False},
            {"model": "qwen2.5-coder:7b", "response": "foo", "done": False},
            {"model": "qwen2.5-coder:7b", "response": "", "done": True},
        )).encode()

        async def _handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, content=body, request=request)

        transport = httpx.MockTransport(_handler)
        service = CompletionService(
            retry_policy=fast_retry,
            backend_factory=lambda t, e, tok: create_backend(t, e, tok, transport=transport),
        )

        result = await service.complete(
            "# utilities\n", "\n", InferenceConfig(max_lines=10),
        )

        assert result == "def foo"
        assert "<|" not in result
        assert seen[0].url.path == "/api/generate"
        await service.close()

    async def test_shared_token_holds_no_finished_requests(self, fast_retry):
        body = "".join(json.dumps(o) + "\n" for o in (
            {"model": "qwen2.5-coder:7b", "response": "pass", "done": False},
            {"model": "qwen2.5-coder:7b", "response": "", "done": True},
        )).encode()

        async def _handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=body, request=request)

        transport = httpx.MockTransport(_handler)
        service = CompletionService(
            retry_policy=fast_retry,
            backend_factory=lambda t, e, tok: create_backend(t, e, tok, transport=transport),
        )
        editor_token = CancellationToken()

        for i in range(50):
            result = await service.complete(
                f"def handler_{i}():\n    ", "\n", InferenceConfig(), cancel=editor_token,
            )
            assert result == "pass"

        assert editor_token._callbacks == []
        await service.close()


class TestStreamingRules:
    async def test_strips_one_trailing_stop_sequence(self, fast_retry):
        backend = FakeBackend(["return event", "<|endoftext|>"])
        service = _service(backend, fast_retry)
        assert await service.complete(PREFIX, "", CONFIG) == "return event"

    async def test_caller_stop_sequence_stripped(self, fast_retry):
        backend = FakeBackend(["return 1", "END"])
        service = _service(backend, fast_retry)
        config = InferenceConfig(stop=("END",))
        assert await service.complete(PREFIX, "", config) == "return 1"
        assert backend.requests[0].stop == ["END"]

    async def test_trailing_whitespace_trimmed_per_line(self, fast_retry):
        backend = FakeBackend(["  a = 1  \n", "  b = 2\t"])
        service = _service(backend, fast_retry)
        assert await service.complete(PREFIX, "", CONFIG) == "  a = 1\n  b = 2"

    async def test_mismatched_bracket_stops_cleanly(self, fast_retry):
        backend = FakeBackend(["foo(", "a)", ") + 1", "never"])
        service = _service(backend, fast_retry)
        assert await service.complete(PREFIX, "", CONFIG) == "foo(a)"
        assert "never" not in backend.consumed

    async def test_line_cap_stops_at_top_level(self, fast_retry):
        backend = FakeBackend(["a\n", "b\n", "c\n", "d\n"])
        service = _service(backend, fast_retry)
        config = InferenceConfig(max_lines=2)
        assert await service.complete(PREFIX, "", config) == "a\nb\n"
        assert backend.consumed == ["a\n", "b\n"]

    async def test_line_cap_waits_for_open_brackets(self, fast_retry):
        backend = FakeBackend(["xs = [\n", "1,\n", "2,\n", "]\n", "y\n"])
        service = _service(backend, fast_retry)
        config = InferenceConfig(max_lines=2)
        assert await service.complete(PREFIX, "", config) == "xs = [\n1,\n2,\n]\n"

    async def test_scope_caps_lines_inside_string(self, fast_retry):
        backend = FakeBackend(["abc\n", "def\n"])
        service = _service(backend, fast_retry)
        assert await service.complete('message = "hello', "", CONFIG) == "abc\n"

    async def test_context_pieces_prepended(self, fast_retry):
        backend = FakeBackend(["x"])
        service = _service(backend, fast_retry)
        piece = ContextPiece(type=ContextPieceType.IMPORTS, content="import os", priority=80)
        await service.complete(PREFIX, "", CONFIG, context_pieces=[piece])
        assert backend.requests[0].prefix == "import os\n\n" + PREFIX


class TestCaching:
    async def test_second_identical_request_is_served_from_cache(self, fast_retry):
        backend = FakeBackend(["return event"])
        service = _service(backend, fast_retry)

        first = await service.complete(PREFIX, "", CONFIG, file_path="a.py")
        second = await service.complete(PREFIX, "", CONFIG, file_path="a.py")

        assert first == second == "return event"
        assert len(backend.requests) == 1
        assert service.cache_stats().hits == 1
        await service.close()

    async def test_empty_result_not_cached(self, fast_retry):
        backend = FakeBackend(["   "])
        service = _service(backend, fast_retry)
        await service.complete(PREFIX, "", CONFIG)
        await service.complete(PREFIX, "", CONFIG)
        assert len(backend.requests) == 2

    async def test_cache_failures_do_not_fail_completion(self, fast_retry):
        class BrokenCache(SemanticCache):
            def get(self, key):
                raise RuntimeError("cache offline")

            def set(self, key, value):
                raise RuntimeError("cache offline")

        backend = FakeBackend(["ok"])
        service = _service(backend, fast_retry, cache=BrokenCache())
        assert await service.complete(PREFIX, "", CONFIG) == "ok"

    async def test_end_session_invalidates_file_cache(self, fast_retry):
        backend = FakeBackend(["return event"])
        service = _service(backend, fast_retry)
        await service.complete(PREFIX, "", CONFIG, file_path="a.py")
        assert service.session_stats().active_count == 1

        service.end_session("a.py")

        assert service.session_stats().active_count == 0
        await service.complete(PREFIX, "", CONFIG, file_path="a.py")
        assert len(backend.requests) == 2
        await service.close()


class TestCancellationAndErrors:
    async def test_cancel_mid_stream_raises_and_skips_cache(self, fast_retry):
        token = CancellationToken()

        class CancellingBackend(FakeBackend):
            async def stream_completion(self, request):
                self.requests.append(request)
                yield "return "
                token.cancel("new keystroke")
                yield "event"

        backend = CancellingBackend(["unused"])
        service = _service(backend, fast_retry)

        with pytest.raises(OperationCancelledError, match="new keystroke"):
            await service.complete(PREFIX, "", CONFIG, cancel=token)
        assert service.cache_stats().size == 0

    async def test_connection_error_is_retried(self, fast_retry):
        backend = FakeBackend(BackendConnectionError("Unable to connect"), ["ok"])
        service = _service(backend, fast_retry)
        assert await service.complete(PREFIX, "", CONFIG) == "ok"
        assert len(backend.requests) == 2

    async def test_client_error_propagates(self, fast_retry):
        backend = FakeBackend(BackendHTTPError(404, "model not found"))
        service = _service(backend, fast_retry)
        with pytest.raises(BackendHTTPError):
            await service.complete(PREFIX, "", CONFIG)
        assert len(backend.requests) == 1

    async def test_retry_after_partial_stream_starts_clean(self, fast_retry):
        backend = FakeBackend(
            ["foo(", BackendConnectionError("Unable to connect")],
            ["foo(", "a)", ") + 1"],
        )
        service = _service(backend, fast_retry)

        assert await service.complete(PREFIX, "", CONFIG, file_path="a.py") == "foo(a)"
        assert len(backend.requests) == 2
        assert await service.complete(PREFIX, "", CONFIG, file_path="a.py") == "foo(a)"
        await service.close()

    async def test_retry_after_partial_stream_resets_line_count(self, fast_retry):
        backend = FakeBackend(
            ["a\n", BackendConnectionError("Unable to connect")],
            ["a\n", "b\n", "c\n"],
        )
        service = _service(backend, fast_retry)
        config = InferenceConfig(max_lines=2)
        assert await service.complete(PREFIX, "", config) == "a\nb\n"
        assert len(backend.requests) == 2


class TestBackendLifecycle:
    async def test_backend_reused_until_endpoint_changes(self, fast_retry):
        first, second = FakeBackend(["a"]), FakeBackend(["b"])
        factory = FactoryRecorder(first, second)
        service = CompletionService(retry_policy=fast_retry, backend_factory=factory)

        await service.complete(PREFIX, "", CONFIG)
        await service.complete(PREFIX + "x", "", CONFIG)
        assert len(factory.calls) == 1

        other = InferenceConfig(endpoint="http://gpu:8000", bearer_token="t")
        assert await service.complete(PREFIX, "", other) == "b"

        assert first.closed
        assert factory.calls[1] == (BackendType.VLLM, "http://gpu:8000", "t")
        await service.close()
        assert second.closed

    async def test_explicit_backend_type_overrides_detection(self, fast_retry):
        factory = FactoryRecorder(FakeBackend(["a"]))
        service = CompletionService(retry_policy=fast_retry, backend_factory=factory)
        config = InferenceConfig(endpoint="http://localhost:11434", backend_type="llamacpp")
        await service.complete(PREFIX, "", config)
        assert factory.calls[0][0] == BackendType.LLAMACPP

    async def test_download_unsupported(self, fast_retry):
        service = _service(FakeBackend(["a"]), fast_retry)
        with pytest.raises(UnsupportedOperationError):
            await service.download_model(CONFIG)

    async def test_check_model(self, fast_retry):
        service = _service(FakeBackend(["a"]), fast_retry)
        assert await service.check_model(InferenceConfig(model="known"))
        assert not await service.check_model(InferenceConfig(model="unknown"))

    async def test_rewrite_collects_stream(self, fast_retry):
        backend = FakeBackend(["a"])
        service = _service(backend, fast_retry)
        result = await service.rewrite("x = 1", "rename x to y", CONFIG, context="# mod")
        assert result == "<REWRITTEN>\ny = 1\n</REWRITTEN>"
        assert backend.rewrites[0].context == "# mod"

    def test_from_config(self):
        service = CompletionService.from_config(Config())
        assert service.backend is None


class TestHelpers:
    def test_strip_stop_suffix_removes_only_one(self):
        assert strip_stop_suffix("x<|endoftext|><|endoftext|>", ["<|endoftext|>"]) == (
            "x<|endoftext|>"
        )
        assert strip_stop_suffix("x", ["<|endoftext|>"]) == "x"

    def test_trim_line_ends_keeps_indentation(self):
        assert trim_line_ends("    a  \n\tb\t\n") == "    a\n\tb\n"
