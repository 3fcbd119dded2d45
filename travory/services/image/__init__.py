"""Image side-channel package."""

from travory.services.image.store import (
    DocumentImageStore,
    ImagePersistenceError,
    ImageStoreInterface,
    ImageTooLargeError,
    InvalidImageError,
)
from travory.services.image.service import (
    ImageService,
    generate_image_name,
    normalise_to_jpeg,
)

__all__ = [
    "DocumentImageStore",
    "ImagePersistenceError",
    "ImageService",
    "ImageStoreInterface",
    "ImageTooLargeError",
    "InvalidImageError",
    "generate_image_name",
    "normalise_to_jpeg",
]
