"""The single shared HTTP listener.

Bindings register a path at startup; each route answers 503 until its
binding has finished starting and the path is marked ready. ``GET /health``
always answers, independent of readiness.
"""

from __future__ import annotations

import asyncio
import socket
import time
import traceback
from uuid import uuid4

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from relay.channels.protocol import RequestHandler
from relay.config import APP_VERSION, HOST, PORT, SHUTDOWN_TIMEOUT_SECONDS
from relay.core.errors import GatewayError, RelayError
from relay.core.logging import get_logger, get_request_id, reset_request_id, set_request_id

_log = get_logger("gateway")

HEALTH_PATH = "/health"
_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


class Gateway:
    def __init__(self, *, host: str = HOST) -> None:
        self.host = host
        self.port: int | None = None
        self._routes: dict[str, RequestHandler] = {}
        self._ready: set[str] = set()
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self.app = self._build_app()

    # ── Route table ─────────────────────────────────────────

    def register(self, path: str, handler: RequestHandler) -> None:
        """Add a route in the not-ready state. Each path registers once."""
        if path == HEALTH_PATH or path in self._routes:
            raise ValueError(f"Route already registered: {path}")
        self._routes[path] = handler
        _log.debug("GATEWAY route registered", path=path)

    def mark_ready(self, path: str) -> None:
        if path not in self._routes:
            raise KeyError(path)
        self._ready.add(path)
        _log.info("GATEWAY route ready", path=path)

    def is_ready(self, path: str) -> bool:
        return path in self._ready

    @property
    def routes(self) -> list[str]:
        return list(self._routes)

    @property
    def is_serving(self) -> bool:
        return self._server is not None and self._server.started

    # ── Request handling ────────────────────────────────────

    def _build_app(self) -> FastAPI:
        app = FastAPI(
            title="relay gateway",
            version=APP_VERSION,
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

        @app.middleware("http")
        async def request_id_middleware(request: Request, call_next):
            req_id = request.headers.get("X-Request-ID") or uuid4().hex[:12]
            token = set_request_id(req_id)
            t0 = time.perf_counter()
            try:
                response = await call_next(request)
            finally:
                reset_request_id(token)
            _log.debug(
                "GATEWAY request",
                method=request.method,
                path=request.url.path,
                status=response.status_code,
                dur_ms=round((time.perf_counter() - t0) * 1000, 1),
            )
            response.headers["X-Request-ID"] = req_id
            return response

        @app.exception_handler(RelayError)
        async def relay_error_handler(request: Request, exc: RelayError):
            _log.warning(
                "GATEWAY handler rejected",
                path=request.url.path,
                code=exc.code,
                status=exc.http_status,
                error=exc.message,
            )
            return JSONResponse(
                status_code=exc.http_status,
                content={
                    "error": type(exc).__name__,
                    "code": exc.code,
                    "message": exc.message,
                    "is_retryable": exc.is_retryable,
                    "request_id": get_request_id(),
                },
            )

        @app.api_route("/{path:path}", methods=_ALL_METHODS)
        async def dispatch(request: Request) -> Response:
            return await self.dispatch(request)

        return app

    async def dispatch(self, request: Request) -> Response:
        path = request.url.path
        method = request.method

        if path == HEALTH_PATH:
            if method == "GET":
                return PlainTextResponse("ok")
            return PlainTextResponse("Method not allowed", status_code=405)

        handler = self._routes.get(path)
        if handler is None:
            return PlainTextResponse("Not found", status_code=404)
        if method != "POST":
            return PlainTextResponse("Method not allowed", status_code=405)
        if path not in self._ready:
            return PlainTextResponse("Binding not ready", status_code=503)

        try:
            return await handler(request)
        except RelayError:
            raise
        except Exception as e:
            _log.error(
                "GATEWAY handler failed",
                path=path,
                error_type=type(e).__name__,
                error=str(e),
                traceback=traceback.format_exc(),
            )
            return PlainTextResponse("Internal error", status_code=500)

    # ── Lifecycle ───────────────────────────────────────────

    async def start(self, port: int = PORT) -> None:
        """Bind the listener and start serving.

        A bind failure raises GatewayError; it is the one startup error
        that should end the process.
        """
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, port))
        except OSError as e:
            sock.close()
            _log.critical("GATEWAY bind failed", host=self.host, port=port, error=str(e))
            raise GatewayError(f"Cannot bind {self.host}:{port}: {e}", port=port) from e

        self.port = sock.getsockname()[1]
        config = uvicorn.Config(self.app, log_level="warning", lifespan="off", access_log=False)
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[sock]), name="gateway"
        )
        while not self._server.started:
            if self._serve_task.done():
                exc = self._serve_task.exception()
                raise GatewayError(f"Gateway failed to start: {exc}", port=self.port)
            await asyncio.sleep(0.01)
        _log.info("GATEWAY listening", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._server is None or self._serve_task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._serve_task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            _log.warning("GATEWAY stop timed out")
            self._serve_task.cancel()
        self._server = None
        self._serve_task = None
        _log.info("GATEWAY stopped")
