"""Image hosting.

Uploads go to Cloudinary under the ``holohaven`` folder, limited to
1024px wide. ``FakeImageHost`` hands out deterministic URLs in tests.
"""

from abc import ABC, abstractmethod
from typing import Any, BinaryIO, List, Optional

import cloudinary
import cloudinary.uploader
import structlog
from cloudinary.exceptions import Error as CloudinaryError

from errors import UpstreamFailure
from settings import Settings

logger = structlog.get_logger(__name__)

UPLOAD_FOLDER = "holohaven"
ALLOWED_FORMATS = ["jpg", "png", "webp"]


class ImageHost(ABC):
    @abstractmethod
    def upload(self, file: BinaryIO, filename: Optional[str] = None) -> str:
        """Store the image and return its public URL."""
        ...


class CloudinaryImageHost(ImageHost):
    def __init__(self, settings: Settings):
        cloudinary.config(
            cloud_name=settings.cloudinary_name,
            api_key=settings.cloudinary_api_key,
            api_secret=settings.cloudinary_api_secret,
            secure=True,
        )

    def upload(self, file: BinaryIO, filename: Optional[str] = None) -> str:
        try:
            result = cloudinary.uploader.upload(
                file,
                folder=UPLOAD_FOLDER,
                allowed_formats=ALLOWED_FORMATS,
                transformation=[{"width": 1024, "crop": "limit"}],
            )
        except CloudinaryError as exc:
            logger.error("Image upload failed", filename=filename, error=str(exc))
            raise UpstreamFailure(f"Image upload failed: {exc}")
        logger.info("Image uploaded", filename=filename, public_id=result.get("public_id"))
        return result["secure_url"]


class FakeImageHost(ImageHost):
    def __init__(self, base_url: str = "https://images.test/holohaven"):
        self.base_url = base_url
        self.uploads: List[Any] = []
        self.fail = False

    def upload(self, file: BinaryIO, filename: Optional[str] = None) -> str:
        if self.fail:
            raise UpstreamFailure("Image upload failed")
        self.uploads.append((filename, file.read()))
        return f"{self.base_url}/{len(self.uploads)}-{filename or 'upload'}"
