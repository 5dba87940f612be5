import json
import logging
import time
import uuid

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import (
    FILE_TTL,
    HOST,
    PORT,
    PUBLIC_BASE_URL,
    RENDER_TIMEOUT_SECONDS,
    TEMP_DIR,
    WORKERS,
    configure_logging,
)
from .errors import ConversionError
from .handler import ConversionHandler, ErrorResponse
from .render import ChromiumRenderer, Renderer
from .store import ArtifactStore


configure_logging()
_logger = logging.getLogger("pdf_api")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Content-Type",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
}

# OPTIONS never reaches the route; the CORS middleware answers it.
CONVERT_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]


def _base_url(request: Request) -> str:
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    scheme = request.headers.get("x-forwarded-proto") or request.url.scheme
    host = request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}"


def create_app(store: ArtifactStore | None = None, renderer: Renderer | None = None) -> FastAPI:
    store = store or ArtifactStore(TEMP_DIR, FILE_TTL)
    renderer = renderer or ChromiumRenderer()
    handler = ConversionHandler(store, renderer)

    # StaticFiles refuses to mount a directory that does not exist yet.
    store.ensure_directory()

    app = FastAPI(title="PDF API", version=__version__)
    app.state.store = store
    app.state.renderer = renderer

    @app.on_event("startup")
    def _sweep_leftover_artifacts():
        store.sweep_expired()

    @app.on_event("shutdown")
    def _shutdown_renderer():
        renderer.shutdown()

    @app.exception_handler(ConversionError)
    async def conversion_error_handler(request: Request, exc: ConversionError):
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(error=exc.message).model_dump(),
        )

    @app.exception_handler(StarletteHTTPException)
    async def method_not_allowed_handler(request: Request, exc: StarletteHTTPException):
        # Verbs the /convert route does not list still get the JSON envelope.
        if exc.status_code == 405 and request.url.path == "/convert":
            return JSONResponse(
                status_code=405,
                content=ErrorResponse(error="POST only").model_dump(),
                headers=exc.headers,
            )
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        _logger.exception(
            json.dumps({"event": "unhandled_error", "method": request.method, "path": request.url.path})
        )
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="internal server error").model_dump(),
        )

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        req_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        started = time.time()
        response: Response
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = int((time.time() - started) * 1000)
            _logger.info(
                json.dumps(
                    {
                        "event": "http_request",
                        "request_id": req_id,
                        "method": request.method,
                        "path": request.url.path,
                        "elapsed_ms": elapsed_ms,
                    }
                )
            )

        response.headers["X-Request-Id"] = req_id
        return response

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/version")
    def version():
        return {
            "service": "pdf-api",
            "version": __version__,
            "file_ttl_seconds": int(store.ttl.total_seconds()),
            "render_timeout_seconds": RENDER_TIMEOUT_SECONDS,
            "workers": WORKERS,
        }

    @app.api_route("/convert", methods=CONVERT_METHODS)
    async def convert(request: Request):
        started = time.perf_counter()
        body = await request.body() if request.method == "POST" else b""
        result = await run_in_threadpool(
            handler.handle,
            request.method,
            body,
            _base_url(request),
            started,
        )
        return JSONResponse(content=result.model_dump(mode="json"))

    app.mount("/files", StaticFiles(directory=str(store.directory)), name="files")

    _logger.info(
        json.dumps(
            {
                "event": "app_ready",
                "directory": str(store.directory),
                "file_ttl_seconds": int(store.ttl.total_seconds()),
            }
        )
    )
    return app


app = create_app()


def run() -> None:
    _logger.info(json.dumps({"event": "server_start", "host": HOST, "port": PORT}))
    uvicorn.run("pdf_api.main:app", host=HOST, port=PORT)


if __name__ == "__main__":
    run()
