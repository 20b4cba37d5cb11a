"""Object storage for uploaded ingredient images."""

import logging
import os
import uuid
from pathlib import Path
from typing import Protocol, runtime_checkable

from pantrychef.config import get_settings
from pantrychef.exceptions import StorageError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


@runtime_checkable
class ObjectStore(Protocol):
    """Minimal object store contract used by the pipeline."""

    def put(self, data: bytes, content_type: str) -> str:
        """Store bytes and return an opaque reference."""
        ...

    def get(self, ref: str) -> bytes: ...

    def delete(self, ref: str) -> bool: ...


class FileSystemObjectStore:
    """Object store writing one file per image under a root directory."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or get_settings().image_storage_dir)

    def _path(self, ref: str) -> Path:
        # References are flat file names; anything else is not ours
        if not ref or Path(ref).name != ref:
            raise StorageError(f"Invalid image reference: {ref!r}")
        return self.root / ref

    def put(self, data: bytes, content_type: str) -> str:
        ref = f"{uuid.uuid4().hex}{EXTENSIONS.get(content_type, '.bin')}"
        path = self._path(ref)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to store image {ref}: {e}")
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to store image: {e}") from e
        logger.debug(f"Stored image {ref} ({len(data)} bytes)")
        return ref

    def get(self, ref: str) -> bytes:
        try:
            return self._path(ref).read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read image {ref}: {e}") from e

    def delete(self, ref: str) -> bool:
        try:
            self._path(ref).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Failed to delete image {ref}: {e}") from e
        return True
