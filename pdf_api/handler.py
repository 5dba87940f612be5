"""
Conversion request handling.

Takes a raw request (method and body), validates it, renders the HTML, stores
the PDF and answers with a link that stays valid for the store's TTL.
"""

import json
import logging
import time
from datetime import datetime

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .errors import ConversionError, MethodNotAllowedError, ValidationError
from .render import DEFAULT_OPTIONS, Renderer, RenderOptions
from .store import ArtifactStore, public_url


_logger = logging.getLogger("pdf_api.handler")


class ConversionRequest(BaseModel):
    html: str | None = None
    prefix: str | None = None


class SuccessResponse(BaseModel):
    success: bool = True
    link: str
    expires_at: datetime
    time_elapsed: int  # ms


class ErrorResponse(BaseModel):
    success: bool = False
    error: str


class ConversionHandler:
    def __init__(
        self,
        store: ArtifactStore,
        renderer: Renderer,
        options: RenderOptions = DEFAULT_OPTIONS,
    ):
        self.store = store
        self.renderer = renderer
        self.options = options

    def handle(self, method: str, body: bytes, base_url: str, started: float | None = None) -> SuccessResponse:
        """
        Run one conversion end to end.

        `started` is a time.perf_counter() reading taken when the request
        reached the endpoint; the reported time_elapsed covers parsing and
        validation as well as rendering. Raises ConversionError subclasses.
        """
        started = time.perf_counter() if started is None else started

        if method.upper() != "POST":
            raise MethodNotAllowedError("POST only")

        request = self.parse(body)
        if not request.html:
            raise ValidationError("html is required")

        filename = self.store.allocate_name(request.prefix)

        try:
            pdf_bytes = self.renderer.render(request.html, self.options)
            artifact = self.store.persist(filename, pdf_bytes)
        except ConversionError as exc:
            self._log_failure(filename, exc)
            raise
        except Exception as exc:
            failure = ConversionError(f"could not generate pdf: {exc}")
            self._log_failure(filename, failure)
            raise failure from exc

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        _logger.info(
            json.dumps(
                {
                    "event": "convert_pdf",
                    "filename": artifact.filename,
                    "html_bytes": len(request.html.encode("utf-8")),
                    "pdf_bytes": len(pdf_bytes),
                    "elapsed_ms": elapsed_ms,
                }
            )
        )

        return SuccessResponse(
            link=public_url(base_url, artifact.filename),
            expires_at=artifact.expires_at,
            time_elapsed=elapsed_ms,
        )

    @staticmethod
    def parse(body: bytes) -> ConversionRequest:
        try:
            data = json.loads(body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ValidationError("invalid json body") from exc

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValidationError("invalid json body")

        try:
            request = ConversionRequest.model_validate(data, strict=True)
        except PydanticValidationError as exc:
            raise ValidationError("invalid json body") from exc

        # JSON may carry lone surrogates ("\ud800") that no encoder accepts.
        if request.html:
            request.html = request.html.encode("utf-8", "replace").decode("utf-8")
        return request

    @staticmethod
    def _log_failure(filename: str, exc: ConversionError) -> None:
        _logger.warning(
            json.dumps(
                {
                    "event": "convert_pdf_failed",
                    "filename": filename,
                    "error_type": type(exc).__name__,
                    "error": exc.message,
                }
            )
        )
