"""
Shared fixtures for the PDF API tests.

Chromium is never launched here: endpoint and handler tests use fake
renderers, and the Chromium binding is tested against a mocked Playwright.
"""

import os
import tempfile
import time
from datetime import timedelta

import pytest

# Keep the module-level app from creating ./temp in the working directory.
os.environ.setdefault("PDF_TEMP_DIR", tempfile.mkdtemp(prefix="pdf-api-tests-"))

from pdf_api.errors import RenderError  # noqa: E402
from pdf_api.render import Renderer  # noqa: E402
from pdf_api.store import ArtifactStore  # noqa: E402


FAKE_PDF = b"%PDF-1.4 fake pdf content"


class FakeRenderer(Renderer):
    def __init__(self, pdf: bytes = FAKE_PDF):
        self.pdf = pdf
        self.calls = []

    def render(self, html, options=None):
        self.calls.append((html, options))
        return self.pdf


class FailingRenderer(Renderer):
    def __init__(self, message: str = "Exit with code 1 due to network error: ContentNotFoundError"):
        self.message = message

    def render(self, html, options=None):
        raise RenderError(self.message)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def store(tmp_path):
    artifact_store = ArtifactStore(tmp_path / "temp")
    artifact_store.ensure_directory()
    return artifact_store


@pytest.fixture
def short_lived_store(tmp_path):
    artifact_store = ArtifactStore(tmp_path / "short", ttl=timedelta(milliseconds=300))
    artifact_store.ensure_directory()
    return artifact_store
