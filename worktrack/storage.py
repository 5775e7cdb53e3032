"""
Blob storage for uploaded documents.

Bytes live here; metadata lives in the database (``worktrack.models.document``).
Objects are addressed by (bucket, path).

Backends (``STORAGE_BACKEND``):
    local   — files under ``STORAGE_ROOT/<bucket>/<path>``
    memory  — process-local dict, used by the test suite

Usage:
    from worktrack.storage import get_blob_store

    store = get_blob_store()
    store.upload("step-documents", "12/34/1700000000_invoice.pdf", data, "application/pdf")
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Protocol

from flask import current_app

from worktrack.core.exceptions import BackendUnavailableError, NotFoundError

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Persistence contract for uploaded file bytes."""

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None: ...

    def download(self, bucket: str, path: str) -> bytes: ...

    def remove(self, bucket: str, paths: list[str]) -> None: ...

    def exists(self, bucket: str, path: str) -> bool: ...


class InMemoryBlobStore:
    """Dict-backed store for tests and throwaway dev runs."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._objects[(bucket, path)] = (bytes(data), content_type)

    def download(self, bucket: str, path: str) -> bytes:
        with self._lock:
            obj = self._objects.get((bucket, path))
        if obj is None:
            raise NotFoundError("Blob", f"{bucket}/{path}")
        return obj[0]

    def remove(self, bucket: str, paths: list[str]) -> None:
        with self._lock:
            for path in paths:
                self._objects.pop((bucket, path), None)

    def exists(self, bucket: str, path: str) -> bool:
        with self._lock:
            return (bucket, path) in self._objects

    def reset(self) -> None:
        with self._lock:
            self._objects.clear()


class LocalBlobStore:
    """Filesystem-backed store rooted at ``root``; one directory per bucket."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def _resolve(self, bucket: str, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, bucket, path))
        if not full.startswith(os.path.join(self.root, bucket) + os.sep):
            raise NotFoundError("Blob", f"{bucket}/{path}")
        return full

    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        full = self._resolve(bucket, path)
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            logger.error("Blob upload failed bucket=%s path=%s: %s", bucket, path, exc)
            raise BackendUnavailableError(f"Storage upload failed: {exc}") from exc

    def download(self, bucket: str, path: str) -> bytes:
        full = self._resolve(bucket, path)
        if not os.path.isfile(full):
            raise NotFoundError("Blob", f"{bucket}/{path}")
        try:
            with open(full, "rb") as fh:
                return fh.read()
        except OSError as exc:
            logger.error("Blob download failed bucket=%s path=%s: %s", bucket, path, exc)
            raise BackendUnavailableError(f"Storage download failed: {exc}") from exc

    def remove(self, bucket: str, paths: list[str]) -> None:
        for path in paths:
            full = self._resolve(bucket, path)
            try:
                os.remove(full)
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.error("Blob remove failed bucket=%s path=%s: %s", bucket, path, exc)
                raise BackendUnavailableError(f"Storage remove failed: {exc}") from exc

    def exists(self, bucket: str, path: str) -> bool:
        return os.path.isfile(self._resolve(bucket, path))


def init_storage(app) -> BlobStore:
    """Create the configured blob store and register it on the app."""
    backend = app.config.get("STORAGE_BACKEND", "local")
    if backend == "memory":
        store = InMemoryBlobStore()
    elif backend == "local":
        store = LocalBlobStore(app.config["STORAGE_ROOT"])
    else:
        raise RuntimeError(f"Unknown STORAGE_BACKEND: {backend!r}")
    app.extensions["blob_store"] = store
    app.logger.info("Blob storage configured: backend=%s", backend)
    return store


def get_blob_store() -> BlobStore:
    return current_app.extensions["blob_store"]
