"""HTTP application for the andromeda chat gateway.

Endpoints:
- `POST /api/chat`: buffered chat turn,
- `POST /api/chat/stream`: chat turn streamed as server-sent events,
- `POST /api/memory/clear`: drop a session,
- `GET /api/health`: liveness.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .chat_handlers import build_error_payload, build_sse_response, error_response, stream_with_keepalive
from .config import GatewayConfig, load_config, resolve_config_path
from .config_reload import ConfigFileWatcher
from .errors import GENERIC_UPSTREAM_MESSAGE, GatewayError, InputValidationError
from .gateway_service import GatewayService, client_key, parse_chat_request
from .json_helpers import to_bounded_json
from .logging_utils import setup_logging
from .tool_registry import ToolRegistry

LOG = logging.getLogger(__name__)


async def _read_json_body(request: Request) -> Any:
    """Decode the request body; malformed JSON is a validation error."""
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise InputValidationError("Request body must be valid JSON.") from exc


def _request_client_key(request: Request, cfg: GatewayConfig) -> str:
    peer = getattr(getattr(request, "client", None), "host", None)
    return client_key(
        peer,
        request.headers.get("x-forwarded-for"),
        trust_forwarded_for=cfg.trust_forwarded_for,
    )


def create_app(
    cfg: GatewayConfig | None = None,
    *,
    config_path: str | None = None,
    registry: ToolRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    watch_config: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application instance."""
    if cfg is None:
        cfg = load_config(config_path)
        setup_logging(cfg.logging)
    service = GatewayService(cfg, registry=registry, transport=transport)
    watch_task: asyncio.Task[None] | None = None

    async def apply_config(path: Path) -> None:
        new_cfg = load_config(str(path))
        setup_logging(new_cfg.logging)
        await service.reload(new_cfg)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        """Application startup/shutdown lifecycle."""
        nonlocal watch_task
        if watch_config:
            watcher = ConfigFileWatcher(
                config_file=Path(resolve_config_path(config_path)),
                on_change=apply_config,
                logger=LOG,
            )
            watch_task = asyncio.create_task(watcher.run_forever())
        try:
            yield
        finally:
            if watch_task:
                watch_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await watch_task
            await service.close()

    app = FastAPI(title="andromeda-gateway", version="0.1.0", lifespan=lifespan)
    app.state.service = service

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_request: Request, exc: GatewayError) -> JSONResponse:
        if exc.status_code >= 500:
            LOG.warning("chat request failed error=%s", exc)
        return error_response(exc)

    @app.get("/api/health")
    async def health() -> JSONResponse:
        """Liveness only."""
        return JSONResponse(service.health())

    @app.post("/api/memory/clear")
    async def memory_clear(request: Request) -> JSONResponse:
        """Delete a session; always succeeds."""
        try:
            body = await _read_json_body(request)
        except InputValidationError:
            body = {}
        session_id = body.get("sessionId") if isinstance(body, dict) else None
        return JSONResponse(service.clear_memory(session_id))

    @app.post("/api/chat")
    async def chat(request: Request) -> JSONResponse:
        """Buffered chat turn."""
        body = await _read_json_body(request)
        chat_request = parse_chat_request(body, service.cfg)
        service.admit(_request_client_key(request, service.cfg))
        LOG.debug("incoming chat request payload=%s", to_bounded_json(body))
        try:
            result = await service.chat(chat_request)
        except GatewayError:
            raise
        except Exception:
            LOG.exception("chat request failed unexpectedly")
            return JSONResponse(build_error_payload(GENERIC_UPSTREAM_MESSAGE), status_code=500)
        return JSONResponse(result)

    @app.post("/api/chat/stream")
    async def chat_stream(request: Request):
        """Chat turn streamed as server-sent events."""
        body = await _read_json_body(request)
        chat_request = parse_chat_request(body, service.cfg)
        service.admit(_request_client_key(request, service.cfg))
        LOG.debug("incoming chat stream request payload=%s", to_bounded_json(body))
        stream = stream_with_keepalive(
            service.stream_chat(chat_request),
            keepalive_seconds=service.cfg.stream_keepalive_seconds,
            request=request,
        )
        return build_sse_response(stream)

    return app


def main() -> None:
    """CLI entry point that loads configuration and runs uvicorn."""

    def fail(message: str, exit_code: int = 2) -> None:
        """Print startup error and terminate process."""
        print(f"ERROR: {message}", file=sys.stderr)
        raise SystemExit(exit_code)

    parser = argparse.ArgumentParser(description="andromeda chat gateway")
    parser.add_argument("--config", default=None, help="Path to config YAML")
    parser.add_argument("--no-watch", action="store_true", help="Disable config file hot reload")
    args = parser.parse_args()

    import uvicorn
    from pydantic import ValidationError

    try:
        cfg = load_config(args.config)
    except ValidationError as exc:
        fail(f"Invalid configuration: {exc}")
    except Exception as exc:
        fail(f"Failed to load configuration: {exc}")

    setup_logging(cfg.logging)
    if not cfg.upstream_api_key:
        LOG.warning("no upstream API key configured; set OPENAI_API_KEY or ANDROMEDA_UPSTREAM_API_KEY")

    try:
        app = create_app(cfg, config_path=args.config, watch_config=not args.no_watch)
    except Exception as exc:
        fail(f"Failed to create app: {exc}")

    try:
        host, port = cfg.bind_address()
        LOG.info("andromeda gateway listening on http://%s:%s", host, port)
        uvicorn.run(app, host=host, port=port, log_config=None)
    except Exception as exc:
        fail(f"Server failed to start: {exc}", exit_code=1)


if __name__ == "__main__":
    main()
