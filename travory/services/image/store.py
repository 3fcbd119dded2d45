"""
Image Side Channel Store

Images are not stored inside records. A record only carries the file name
of its image; the bytes live in a document-scoped directory on disk.

DESIGN DECISION: The side channel is not transactional with the entity
store. A crash between writing an image and saving the record (or between
deleting a record and removing its image) can leave an orphaned file.
`ImageService.sweep_orphans()` cleans those up on request.
"""

import os
import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog


logger = structlog.get_logger(__name__)


# Generated names look like travelPlan_<UUID>.jpg
VALID_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,199}$")


class ImagePersistenceError(Exception):
    """Base exception for image side-channel failures."""
    pass


class InvalidImageError(ImagePersistenceError):
    """The bytes are not a readable image."""
    pass


class ImageTooLargeError(ImagePersistenceError):
    """The image exceeds the configured size limit."""
    pass


class ImageStoreInterface(ABC):
    """
    Abstract interface for the image side channel.

    Names are opaque, flat file names; they never contain a path.
    """

    @abstractmethod
    def save(self, data: bytes, name: str) -> None:
        """
        Store bytes under `name`, replacing any previous content.

        Raises:
            ImagePersistenceError: If the bytes could not be written
        """
        pass

    @abstractmethod
    def load(self, name: str) -> Optional[bytes]:
        """Bytes stored under `name`, or None if there are none."""
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove `name`. Removing a missing name is a no-op."""
        pass

    @abstractmethod
    def list_names(self) -> list[str]:
        """Every stored name."""
        pass


class DocumentImageStore(ImageStoreInterface):
    """Image store backed by one local directory."""

    def __init__(self, directory: str):
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)

    @property
    def directory(self) -> Path:
        return self._directory

    def _path(self, name: str) -> Path:
        if not VALID_NAME.match(name) or ".." in name:
            raise ImagePersistenceError(f"Invalid image name: {name!r}")
        return self._directory / name

    def save(self, data: bytes, name: str) -> None:
        path = self._path(name)
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=".tmp_", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise ImagePersistenceError(f"Failed to write image {name}: {e}") from e
        logger.debug("image_written", name=name, size_bytes=len(data))

    def load(self, name: str) -> Optional[bytes]:
        path = self._path(name)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ImagePersistenceError(f"Failed to read image {name}: {e}") from e

    def remove(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise ImagePersistenceError(f"Failed to remove image {name}: {e}") from e
        logger.debug("image_removed", name=name)

    def list_names(self) -> list[str]:
        return sorted(
            entry.name
            for entry in self._directory.iterdir()
            if entry.is_file() and not entry.name.startswith(".")
        )
