import json
import logging
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError
from pathlib import Path

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright
from pydantic import BaseModel

from .config import RENDER_TIMEOUT_SECONDS, WORKERS
from .errors import RenderError


_logger = logging.getLogger("pdf_api.render")


class RenderOptions(BaseModel):
    margin_top_mm: float = 6
    margin_bottom_mm: float = 6
    margin_left_mm: float = 6
    margin_right_mm: float = 6
    page_size: str = "A4"
    # Lets the HTML reference local files (images, stylesheets) by path.
    local_file_access: bool = True

    def pdf_kwargs(self) -> dict[str, object]:
        return {
            "format": self.page_size,
            "print_background": True,
            "margin": {
                "top": f"{self.margin_top_mm:g}mm",
                "bottom": f"{self.margin_bottom_mm:g}mm",
                "left": f"{self.margin_left_mm:g}mm",
                "right": f"{self.margin_right_mm:g}mm",
            },
        }


DEFAULT_OPTIONS = RenderOptions()


class Renderer:
    """Turns an HTML document into PDF bytes or raises RenderError."""

    def render(self, html: str, options: RenderOptions = DEFAULT_OPTIONS) -> bytes:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


class ChromiumRenderer(Renderer):
    def __init__(
        self,
        timeout_seconds: float = RENDER_TIMEOUT_SECONDS,
        workers: int = WORKERS,
    ):
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max(1, workers))

    def render(self, html: str, options: RenderOptions = DEFAULT_OPTIONS) -> bytes:
        future = self._executor.submit(self._render_chromium, html, options)
        try:
            return future.result(timeout=self.timeout_seconds + 15.0)
        except TimeoutError as exc:
            future.cancel()
            _logger.warning(json.dumps({"event": "render_pdf_timeout", "timeout_seconds": self.timeout_seconds}))
            raise RenderError("timeout rendering pdf") from exc

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _render_chromium(self, html: str, options: RenderOptions) -> bytes:
        t0 = time.perf_counter()
        timeout_ms = int(self.timeout_seconds * 1000)
        try:
            with tempfile.TemporaryDirectory(prefix="pdf-render-") as tmpdir, sync_playwright() as p:
                args = ["--no-sandbox", "--disable-dev-shm-usage"]
                if options.local_file_access:
                    args.append("--allow-file-access-from-files")

                t_launch0 = time.perf_counter()
                browser = p.chromium.launch(headless=True, args=args)
                t_launch1 = time.perf_counter()
                _logger.info(
                    json.dumps(
                        {
                            "event": "render_pdf_chromium_stage",
                            "stage": "browser_launch_ready",
                            "ms": int((t_launch1 - t_launch0) * 1000),
                        }
                    )
                )

                page = None
                try:
                    page = browser.new_page()
                    if options.local_file_access:
                        # A file:// origin is required before Chromium will load file:// resources.
                        document = Path(tmpdir) / "document.html"
                        document.write_text(html, encoding="utf-8")
                        page.goto(document.as_uri(), wait_until="domcontentloaded", timeout=timeout_ms)
                    else:
                        page.set_content(html, wait_until="domcontentloaded", timeout=timeout_ms)

                    t_content = time.perf_counter()
                    self._wait_until_ready(page)
                    t_ready = time.perf_counter()

                    pdf = page.pdf(**options.pdf_kwargs())
                    t_pdf = time.perf_counter()
                    _logger.info(
                        json.dumps(
                            {
                                "event": "render_pdf_chromium",
                                "page_size": options.page_size,
                                "ms_content": int((t_content - t_launch1) * 1000),
                                "ms_ready": int((t_ready - t_content) * 1000),
                                "ms_pdf": int((t_pdf - t_ready) * 1000),
                                "ms_total": int((t_pdf - t0) * 1000),
                            }
                        )
                    )
                finally:
                    if page is not None:
                        page.close()
                    browser.close()
        except PlaywrightError as exc:
            raise RenderError(str(exc)) from exc
        except (OSError, UnicodeError) as exc:
            raise RenderError(f"could not prepare document: {exc}") from exc

        if not pdf:
            raise RenderError("renderer returned an empty document")
        return pdf

    @staticmethod
    def _wait_until_ready(page) -> None:
        # Best effort: a page that never settles still gets printed.
        waits = [
            lambda: page.wait_for_load_state("load", timeout=2000),
            lambda: page.wait_for_load_state("networkidle", timeout=2000),
            lambda: page.wait_for_function(
                "document.fonts && document.fonts.status === 'loaded'",
                timeout=2000,
            ),
            lambda: page.wait_for_function(
                "Array.from(document.images || []).every(i => i.complete)",
                timeout=5000,
            ),
        ]
        for wait in waits:
            try:
                wait()
            except PlaywrightTimeoutError:
                continue
