"""Client wrapper for the upstream OpenAI-compatible completion API."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncGenerator
from urllib.parse import urlparse

import httpx

from .config import GatewayConfig
from .errors import UpstreamTransportError
from .json_helpers import to_bounded_json
from .tool_registry import ToolRegistry

LOG = logging.getLogger(__name__)

COMPLETIONS_PATH = "/v1/chat/completions"
_HOSTS_REQUIRING_KEY = {"api.openai.com"}
_MAX_ERROR_BODY_BYTES = 4000


@dataclass
class UpstreamResponse:
    """Decoded buffered completion: the first choice's message."""

    model: str | None
    message: dict[str, Any]
    raw: dict[str, Any]

    @property
    def tool_calls(self) -> list[dict[str, Any]]:
        calls = self.message.get("tool_calls")
        return [call for call in calls if isinstance(call, dict)] if isinstance(calls, list) else []

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @property
    def content(self) -> str:
        content = self.message.get("content")
        return content if isinstance(content, str) else ""


class UpstreamClient:
    """Thin async HTTP client for the completion endpoint.

    Buffered and streamed calls carry separate timeouts; an expired timeout
    aborts the in-flight request and raises UpstreamTransportError.
    """

    def __init__(
        self,
        cfg: GatewayConfig,
        registry: ToolRegistry,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cfg = cfg
        self.registry = registry
        self._base_url = cfg.upstream_base_url.rstrip("/")
        self._timeout = httpx.Timeout(
            connect=min(10.0, cfg.upstream_timeout_seconds),
            read=cfg.upstream_stream_timeout_seconds,
            write=cfg.upstream_timeout_seconds,
            pool=10.0,
        )
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=transport)

    async def close(self) -> None:
        """Close underlying HTTP resources."""
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        """Build authorization headers for upstream calls."""
        headers = {"Content-Type": "application/json"}
        if self.cfg.upstream_api_key:
            headers["Authorization"] = f"Bearer {self.cfg.upstream_api_key}"
        return headers

    def _require_credentials(self) -> None:
        """Fail before any network call when the hosted API has no key."""
        host = urlparse(self._base_url).hostname or ""
        if host in _HOSTS_REQUIRING_KEY and not self.cfg.upstream_api_key:
            raise UpstreamTransportError("Missing upstream API key.")

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        stream: bool,
        tool_choice: str = "auto",
    ) -> dict[str, Any]:
        """Build the completion request with the system turn prepended."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": [{"role": "system", "content": self.cfg.system_prompt}, *messages],
            "temperature": self.cfg.temperature,
            "stream": stream,
        }
        if tool_choice != "none":
            payload["tools"] = self.registry.openai_tools()
            payload["tool_choice"] = tool_choice or "auto"
        return payload

    @staticmethod
    async def _error_from_response(response: httpx.Response) -> UpstreamTransportError:
        """Build an upstream error carrying a bounded response body.

        Streamed responses are read only up to the bound.
        """
        raw = bytearray()
        try:
            async for chunk in response.aiter_bytes():
                raw.extend(chunk)
                if len(raw) >= _MAX_ERROR_BODY_BYTES:
                    break
        except httpx.HTTPError as exc:
            LOG.debug("reading upstream error body failed error=%s", exc)
        body = bytes(raw[:_MAX_ERROR_BODY_BYTES]).decode("utf-8", errors="replace")
        return UpstreamTransportError(
            body or "Upstream request failed.",
            status_code=response.status_code,
            body=body,
        )

    async def chat_completion(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tool_choice: str = "auto",
    ) -> UpstreamResponse:
        """Run one buffered completion call."""
        self._require_credentials()
        payload = self.build_payload(messages, model=model, stream=False, tool_choice=tool_choice)
        timeout = self.cfg.upstream_timeout_seconds
        LOG.debug(
            "forwarding upstream request method=POST path=%s stream=false payload=%s",
            COMPLETIONS_PATH,
            to_bounded_json(payload),
        )
        started = time.monotonic()
        try:
            response = await asyncio.wait_for(
                self._client.post(COMPLETIONS_PATH, headers=self._headers(), json=payload),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise UpstreamTransportError(f"Upstream request timed out after {timeout:.1f}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(f"Upstream request failed: {exc}") from exc

        if not response.is_success:
            raise await self._error_from_response(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamTransportError("Upstream returned a non-JSON response.") from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise UpstreamTransportError("Upstream response carried no choices.", body=to_bounded_json(data))
        message = choices[0].get("message")
        if not isinstance(message, dict):
            raise UpstreamTransportError("Upstream response carried no message.", body=to_bounded_json(data))

        LOG.debug(
            "upstream buffered response elapsed=%.3fs tool_calls=%s",
            time.monotonic() - started,
            bool(message.get("tool_calls")),
        )
        model_name = data.get("model")
        return UpstreamResponse(
            model=model_name if isinstance(model_name, str) and model_name else None,
            message=message,
            raw=data,
        )

    async def stream_chat_completion(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        tool_choice: str = "none",
    ) -> AsyncGenerator[bytes, None]:
        """Run one streamed completion call and yield raw body chunks.

        The stream timeout is a deadline for the whole response. Closing the
        generator early releases the upstream connection.
        """
        self._require_credentials()
        payload = self.build_payload(messages, model=model, stream=True, tool_choice=tool_choice)
        timeout = self.cfg.upstream_stream_timeout_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        started = time.monotonic()
        LOG.debug(
            "upstream stream start method=POST path=%s payload=%s",
            COMPLETIONS_PATH,
            to_bounded_json(payload),
        )

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise UpstreamTransportError(f"Upstream stream timed out after {timeout:.1f}s")
            return left

        response: httpx.Response | None = None
        chunk_count = 0
        try:
            request = self._client.build_request("POST", COMPLETIONS_PATH, headers=self._headers(), json=payload)
            try:
                response = await asyncio.wait_for(self._client.send(request, stream=True), timeout=remaining())
            except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                raise UpstreamTransportError(f"Upstream stream timed out after {timeout:.1f}s") from exc
            except httpx.HTTPError as exc:
                raise UpstreamTransportError(f"Upstream stream failed: {exc}") from exc

            if not response.is_success:
                raise await self._error_from_response(response)

            iterator = response.aiter_bytes().__aiter__()
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=remaining())
                except StopAsyncIteration:
                    break
                except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
                    raise UpstreamTransportError(f"Upstream stream timed out after {timeout:.1f}s") from exc
                except httpx.HTTPError as exc:
                    raise UpstreamTransportError(f"Upstream stream broke off: {exc}") from exc
                chunk_count += 1
                yield chunk
        except asyncio.CancelledError:
            LOG.debug(
                "upstream stream cancelled elapsed=%.3fs chunks=%s",
                time.monotonic() - started,
                chunk_count,
            )
            raise
        finally:
            cleanup_cancelled = False
            if response is not None:
                try:
                    await asyncio.shield(response.aclose())
                except asyncio.CancelledError:
                    cleanup_cancelled = True
                except Exception as exc:
                    LOG.debug("upstream stream close failed error=%s", exc)
            LOG.debug(
                "upstream stream closed elapsed=%.3fs chunks=%s",
                time.monotonic() - started,
                chunk_count,
            )
            if cleanup_cancelled:
                raise asyncio.CancelledError
