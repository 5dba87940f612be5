import logging
import os
from datetime import timedelta


TEMP_DIR = os.getenv("PDF_TEMP_DIR", "./temp")
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
RENDER_TIMEOUT_SECONDS = float(os.getenv("RENDER_TIMEOUT_SECONDS", "90"))
WORKERS = int(os.getenv("WORKERS", "2"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Every artifact lives exactly this long; there is no per-request override.
FILE_TTL = timedelta(minutes=5)

DEFAULT_PREFIX = "file"


def configure_logging() -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(level=LOG_LEVEL)
