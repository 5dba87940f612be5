import hashlib
import heapq
import itertools
import json
import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel

from .config import DEFAULT_PREFIX, FILE_TTL
from .errors import StorageError


_logger = logging.getLogger("pdf_api.store")

FINGERPRINT_LENGTH = 10
_UNSAFE_PREFIX_CHARS = re.compile(r"[^A-Za-z0-9._-]")

# Mixed into every fingerprint so two calls in the same clock tick still differ.
_sequence = itertools.count()


class Artifact(BaseModel):
    filename: str
    path: Path
    created_at: datetime
    expires_at: datetime


def fingerprint(prefix: str, seed: str) -> str:
    digest = hashlib.sha1(f"{prefix}_{seed}".encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH]


def sanitize_prefix(prefix: str | None) -> str:
    cleaned = _UNSAFE_PREFIX_CHARS.sub("_", prefix or "").lstrip(".")
    return cleaned or DEFAULT_PREFIX


def expires_at(now: datetime, ttl: timedelta) -> datetime:
    return now + ttl


def public_url(base_url: str, filename: str) -> str:
    return f"{base_url.rstrip('/')}/files/{filename}"


class ExpiryScheduler:
    """
    Runs deletions at their deadline from one background thread.

    Deadlines sit in a heap; the thread sleeps until the earliest is due, so
    the number of pending artifacts never shows up as a number of threads.
    The thread is started on first use and is never joined.
    """

    def __init__(self, callback):
        self._callback = callback
        self._heap: list[tuple[float, int, str]] = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self._thread: threading.Thread | None = None

    def schedule(self, path: str | Path, delay: float) -> float:
        deadline = time.monotonic() + max(delay, 0.0)
        with self._condition:
            self._ensure_thread()
            heapq.heappush(self._heap, (deadline, next(self._counter), str(path)))
            self._condition.notify()
        return deadline

    def pending(self) -> int:
        with self._condition:
            return len(self._heap)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _ensure_thread(self) -> None:
        if self.is_alive():
            return
        thread = threading.Thread(target=self._run, name="artifact-expiry", daemon=True)
        thread.start()
        self._thread = thread

    def _run(self) -> None:
        while True:
            with self._condition:
                while True:
                    now = time.monotonic()
                    if self._heap and self._heap[0][0] <= now:
                        break
                    timeout = self._heap[0][0] - now if self._heap else None
                    self._condition.wait(timeout)
                _, _, path = heapq.heappop(self._heap)
            try:
                self._callback(path)
            except Exception:
                _logger.exception(json.dumps({"event": "artifact_expiry_failed", "path": path}))


class ArtifactStore:
    """
    Owns the directory generated PDFs are written to.

    Each artifact gets a unique name, is written once, and is deleted by the
    shared expiry scheduler once its TTL has passed. The filesystem is the
    only registry: a file that is gone is simply expired.
    """

    def __init__(self, directory: str | Path, ttl: timedelta = FILE_TTL):
        self.directory = Path(directory)
        self.ttl = ttl
        self.scheduler = ExpiryScheduler(self.remove)

    def ensure_directory(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        return self.directory

    def allocate_name(self, prefix: str | None, now: datetime | None = None) -> str:
        safe_prefix = sanitize_prefix(prefix)
        now = now or datetime.now(timezone.utc)
        stamp = now.strftime("%Y%m%d_%H%M%S")
        seed = f"{time.time_ns()}_{next(_sequence)}"
        return f"{safe_prefix}_{stamp}_{fingerprint(safe_prefix, seed)}.pdf"

    def path_for(self, filename: str) -> Path:
        return self.directory / filename

    def write(self, filename: str, data: bytes) -> Path:
        path = self.path_for(filename)
        try:
            # "xb" refuses to clobber an existing artifact on a name collision.
            with open(path, "xb") as fh:
                fh.write(data)
        except FileExistsError as exc:
            raise StorageError(f"artifact already exists: {filename}") from exc
        except OSError as exc:
            path.unlink(missing_ok=True)
            raise StorageError(f"could not write artifact: {exc}") from exc
        return path

    def remove(self, path: str | Path) -> bool:
        try:
            Path(path).unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            _logger.warning(
                json.dumps(
                    {
                        "event": "artifact_delete_failed",
                        "path": str(path),
                        "error": str(exc),
                    }
                )
            )
            return False

        _logger.info(json.dumps({"event": "artifact_deleted", "path": str(path)}))
        return True

    def schedule_expiry(self, path: str | Path, ttl: timedelta | None = None) -> float:
        delay = (ttl if ttl is not None else self.ttl).total_seconds()
        return self.scheduler.schedule(path, delay)

    def persist(self, filename: str, data: bytes, now: datetime | None = None) -> Artifact:
        path = self.write(filename, data)
        created = now or datetime.now(timezone.utc)
        try:
            self.schedule_expiry(path)
        except RuntimeError as exc:
            # An artifact nobody will delete is never handed out.
            self.remove(path)
            raise StorageError(f"could not schedule artifact expiry: {exc}") from exc
        return Artifact(
            filename=filename,
            path=path,
            created_at=created,
            expires_at=expires_at(created, self.ttl),
        )

    def sweep_expired(self, now: float | None = None) -> int:
        """
        Reclaim artifacts left behind by a previous process.

        Pending deletions do not survive a restart, so files older than the TTL
        are deleted right away and younger ones are scheduled for what is left
        of their lifetime. Returns the number of files removed.
        """
        if not self.directory.is_dir():
            return 0

        now = time.time() if now is None else now
        ttl_seconds = self.ttl.total_seconds()
        removed = 0
        rescheduled = 0
        for path in self.directory.glob("*.pdf"):
            try:
                age = now - path.stat().st_mtime
            except FileNotFoundError:
                continue
            if age >= ttl_seconds:
                if self.remove(path):
                    removed += 1
            else:
                self.schedule_expiry(path, timedelta(seconds=ttl_seconds - age))
                rescheduled += 1

        _logger.info(
            json.dumps(
                {
                    "event": "artifact_sweep",
                    "directory": str(self.directory),
                    "removed": removed,
                    "rescheduled": rescheduled,
                }
            )
        )
        return removed
