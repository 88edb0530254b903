"""Line splitting over a streamed HTTP body.

All three wire protocols are line oriented (NDJSON or SSE), so every
backend reads its response through ``iter_lines``.
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator

from infill.utils.cancellation import CancellationToken, run_cancellable


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def iter_lines(
    chunks: AsyncIterable[bytes],
    cancel: CancellationToken | None = None,
) -> AsyncGenerator[str, None]:
    """Yield complete ``\\n``-terminated lines, then any trailing partial line.

    Bytes are decoded incrementally so multi-byte characters split across
    chunks survive. Each read is raced against ``cancel``.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    iterator = chunks.__aiter__()
    pending = ""

    while True:
        chunk = await run_cancellable(_next_chunk(iterator), cancel)
        if chunk is None:
            break
        pending += decoder.decode(chunk)
        while "\n" in pending:
            line, pending = pending.split("\n", 1)
            yield line.removesuffix("\r")

    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending
