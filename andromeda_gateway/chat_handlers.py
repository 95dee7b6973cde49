"""HTTP helpers for the chat endpoints: SSE responses and error payloads."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, AsyncGenerator

from fastapi import Request
from fastapi.responses import JSONResponse, StreamingResponse

from .errors import GatewayError, RateLimitError
from .sse_frames import sse_comment

LOG = logging.getLogger(__name__)


def build_sse_response(stream: AsyncGenerator[bytes, None]) -> StreamingResponse:
    """Build standard SSE response with consistent proxy-safe headers."""
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def build_error_payload(message: str) -> dict[str, Any]:
    return {"error": message}


def error_response(exc: GatewayError) -> JSONResponse:
    """Map a gateway error to its JSON response, with Retry-After when limited."""
    headers: dict[str, str] | None = None
    if isinstance(exc, RateLimitError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        build_error_payload(exc.public_message()),
        status_code=exc.status_code,
        headers=headers,
    )


async def stream_with_keepalive(
    source: AsyncGenerator[bytes, None],
    *,
    keepalive_seconds: float,
    request: Request | None = None,
) -> AsyncGenerator[bytes, None]:
    """Forward stream chunks, emit SSE heartbeats while waiting, stop on disconnect.

    When the client goes away the pending read is cancelled and `source` is
    closed, which in turn closes the upstream stream.
    """
    started = time.monotonic()
    emit_keepalive = keepalive_seconds > 0
    poll_seconds = keepalive_seconds if emit_keepalive else 0.5

    async def _client_gone() -> bool:
        return request is not None and await request.is_disconnected()

    iterator = source.__aiter__()
    try:
        while True:
            next_item = asyncio.ensure_future(iterator.__anext__())
            try:
                while True:
                    done, _ = await asyncio.wait({next_item}, timeout=poll_seconds)
                    if done:
                        break
                    if await _client_gone():
                        LOG.info("client disconnected, stopping stream elapsed=%.3fs", time.monotonic() - started)
                        next_item.cancel()
                        with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                            await next_item
                        return
                    if emit_keepalive:
                        yield sse_comment("keepalive")
                try:
                    item = next_item.result()
                except StopAsyncIteration:
                    return
                yield item
            except BaseException:
                if not next_item.done():
                    next_item.cancel()
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_item
                raise
    finally:
        cleanup_cancelled = False
        try:
            await asyncio.shield(source.aclose())
        except asyncio.CancelledError:
            cleanup_cancelled = True
        except Exception as exc:
            LOG.debug("stream source close failed error=%s", exc)
        LOG.debug("stream wrapper closed elapsed=%.3fs", time.monotonic() - started)
        if cleanup_cancelled:
            raise asyncio.CancelledError
