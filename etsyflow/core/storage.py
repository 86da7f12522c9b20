"""
Preview Storage Abstraction - The Bridge Pattern

Each normalized asset owns one revocable preview resource. The store hands
out opaque handles and must be told explicitly when a handle is released
(asset removal or batch reset); otherwise the preview leaks.

InMemoryPreviewStore is the default for a single in-process session;
LocalPreviewStore keeps previews on disk for larger batches.
"""

import uuid
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from etsyflow.core.config import Settings
from etsyflow.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class PreviewHandle:
    """Opaque reference to a renderable preview."""
    key: str
    content_type: str


class PreviewStore(ABC):
    """Interface for preview resources - The Bridge"""

    @abstractmethod
    def create(self, data: bytes, content_type: str = "image/jpeg") -> PreviewHandle:
        """Allocate a preview resource and return its handle."""
        pass

    @abstractmethod
    def read(self, handle: PreviewHandle) -> bytes:
        """
        Return the preview bytes.

        Raises:
            KeyError: if the handle was released or never existed
        """
        pass

    @abstractmethod
    def release(self, handle: PreviewHandle) -> bool:
        """
        Release a preview resource.

        Returns:
            True if the resource existed and was released, False otherwise
        """
        pass

    @abstractmethod
    def active_count(self) -> int:
        """Number of allocated, unreleased previews."""
        pass

    @staticmethod
    def _new_key() -> str:
        return uuid.uuid4().hex


class InMemoryPreviewStore(PreviewStore):
    """Previews held in process memory for the lifetime of the session."""

    def __init__(self):
        self._items: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def create(self, data: bytes, content_type: str = "image/jpeg") -> PreviewHandle:
        handle = PreviewHandle(key=self._new_key(), content_type=content_type)
        with self._lock:
            self._items[handle.key] = data
        return handle

    def read(self, handle: PreviewHandle) -> bytes:
        with self._lock:
            return self._items[handle.key]

    def release(self, handle: PreviewHandle) -> bool:
        with self._lock:
            return self._items.pop(handle.key, None) is not None

    def active_count(self) -> int:
        with self._lock:
            return len(self._items)


class LocalPreviewStore(PreviewStore):
    """Local filesystem preview storage."""

    _EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}

    def __init__(self, base_path: str = "./data/previews"):
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _path(self, handle: PreviewHandle) -> Path:
        return self.base_path / f"{handle.key}{self._EXTENSIONS.get(handle.content_type, '.bin')}"

    def create(self, data: bytes, content_type: str = "image/jpeg") -> PreviewHandle:
        handle = PreviewHandle(key=self._new_key(), content_type=content_type)
        with open(self._path(handle), "wb") as f:
            f.write(data)
        return handle

    def read(self, handle: PreviewHandle) -> bytes:
        path = self._path(handle)
        if not path.exists():
            raise KeyError(handle.key)
        return path.read_bytes()

    def release(self, handle: PreviewHandle) -> bool:
        path = self._path(handle)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False

    def active_count(self) -> int:
        return sum(1 for _ in self.base_path.iterdir())


class PreviewStoreFactory:
    """Factory for creating the configured preview store."""

    _instance: Optional[PreviewStore] = None

    @classmethod
    def get_store(cls, settings: Settings) -> PreviewStore:
        if cls._instance is None:
            backend = settings.PREVIEW_STORAGE_BACKEND.lower()
            if backend == "local":
                cls._instance = LocalPreviewStore(base_path=settings.LOCAL_PREVIEW_PATH)
            else:
                if backend != "memory":
                    logger.warning("unknown_preview_backend", backend=backend, fallback="memory")
                cls._instance = InMemoryPreviewStore()

        return cls._instance

    @classmethod
    def reset(cls):
        """Reset the singleton instance (useful for testing)."""
        cls._instance = None
