"""
Image Service

Turns raw user images into stored side-channel files and releases them again.

This service handles:
1. Validation and JPEG normalisation (Pillow)
2. Generating a fresh, unique name per saved image
3. Releasing images that records no longer reference
4. Sweeping orphaned files left behind by interrupted flows

Every method is blocking file I/O; the record flows call them through
`asyncio.to_thread`.
"""

from io import BytesIO
from typing import Iterable, Optional
from uuid import uuid4

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from travory.config import ImageSettings
from travory.services.image.store import (
    ImagePersistenceError,
    ImageStoreInterface,
    ImageTooLargeError,
    InvalidImageError,
)


logger = structlog.get_logger(__name__)


def generate_image_name(prefix: str) -> str:
    """Fresh side-channel name such as ``travelPlan_<UUID>.jpg``."""
    return f"{prefix}_{str(uuid4()).upper()}.jpg"


def normalise_to_jpeg(image_bytes: bytes, quality: int) -> bytes:
    """
    Re-encode any Pillow-readable image as an RGB JPEG.

    EXIF orientation is applied first, transparent areas become white.

    Raises:
        InvalidImageError: If the bytes are not an image, exceed Pillow's
            pixel limit or cannot be converted to JPEG
    """
    try:
        img = Image.open(BytesIO(image_bytes))
        img.load()
    except Image.DecompressionBombError as e:
        raise InvalidImageError(f"Image dimensions too large: {e}") from e
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise InvalidImageError(f"Not a readable image: {e}") from e

    try:
        img = ImageOps.exif_transpose(img)
        if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[-1])
            img = background
        elif img.mode != "RGB":
            img = img.convert("RGB")

        output = BytesIO()
        img.save(output, format="JPEG", quality=quality, optimize=True)
    except (OSError, ValueError) as e:
        raise InvalidImageError(f"Cannot convert image to JPEG: {e}") from e
    return output.getvalue()


class ImageService:
    """
    Saves, loads and releases record images.

    Flow for a new image:
    1. Check the size limit
    2. Normalise to JPEG at the configured quality
    3. Store under a freshly generated name
    4. Return the name for the record to reference
    """

    def __init__(
        self,
        store: ImageStoreInterface,
        settings: Optional[ImageSettings] = None,
    ):
        self._store = store
        self._settings = settings or ImageSettings()

    @property
    def store(self) -> ImageStoreInterface:
        return self._store

    def save_new(self, image_bytes: bytes, prefix: str) -> tuple[str, int]:
        """
        Store a new image.

        Returns:
            (name, stored size in bytes)

        Raises:
            ImagePersistenceError: If the image is unusable or cannot be written
        """
        if not image_bytes:
            raise InvalidImageError("Image is empty")
        if len(image_bytes) > self._settings.max_size_bytes:
            raise ImageTooLargeError(
                f"Image is {len(image_bytes)} bytes; limit is {self._settings.max_size_mb} MB"
            )

        jpeg = normalise_to_jpeg(image_bytes, self._settings.jpeg_quality)
        name = generate_image_name(prefix)
        self._store.save(jpeg, name)
        logger.info("image_saved", name=name, size_bytes=len(jpeg))
        return name, len(jpeg)

    def load(self, name: str) -> Optional[bytes]:
        return self._store.load(name)

    def release(self, name: str) -> None:
        """Remove an image no record references any more."""
        self._store.remove(name)
        logger.info("image_released", name=name)

    def sweep_orphans(self, referenced: Iterable[str]) -> list[str]:
        """
        Remove every stored image that is not in `referenced`.

        Files that fail to delete are logged and left for the next sweep.

        Returns:
            Names that were removed
        """
        keep = set(referenced)
        removed = []
        for name in self._store.list_names():
            if name in keep:
                continue
            try:
                self._store.remove(name)
            except ImagePersistenceError as e:
                logger.warning("orphan_image_remove_failed", name=name, error=str(e))
                continue
            removed.append(name)
        if removed:
            logger.info("orphan_images_swept", count=len(removed))
        return removed
