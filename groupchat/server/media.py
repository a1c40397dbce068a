"""Image uploads for group avatars and message attachments.

Clients send images as base64 ``data:image/...`` URIs. The core checks the
URI shape before anything else happens; the uploader decodes it, shrinks it
to fit a bounding box and stores it under ``media_root``, returning the
public URL the file will be served from.
"""
import asyncio
import base64
import binascii
import io
import os
import re
import uuid

from PIL import Image, UnidentifiedImageError

from .errors import InvalidInput, UpstreamFailure
from ..utils.logger import setup_logger

logger = setup_logger('groupchat.media')

_DATA_URI_RE = re.compile(r"^data:image/(?P<subtype>[a-zA-Z0-9.+-]+);base64,(?P<data>.+)$", re.DOTALL)

# Upload presets (folder, max width, max height)
MESSAGE_FOLDER = "chat_app"
GROUP_FOLDER = "chat_app/groups"
USER_FOLDER = "chat_app/users"
MESSAGE_IMAGE_BOX = (800, 600)
AVATAR_BOX = (400, 400)


class UploadError(Exception):
    """The media collaborator could not store an image."""


def validate_image_data_uri(value: str) -> bytes:
    """Check ``value`` is a base64 image data URI and return the raw bytes.

    Raises:
        InvalidInput: If the value is not an image data URI or not valid base64
    """
    if not isinstance(value, str) or not value.startswith("data:image/"):
        raise InvalidInput("Invalid image format")
    m = _DATA_URI_RE.match(value)
    if not m:
        raise InvalidInput("Invalid image format")
    try:
        return base64.b64decode(m.group("data"), validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInput("Invalid image data")


class LocalMediaUploader:
    """Stores images on the local filesystem through Pillow.

    Images larger than the requested box are shrunk keeping their aspect
    ratio; smaller images are stored as they are.
    """

    def __init__(self, media_root: str, base_url: str):
        self.media_root = media_root
        self.base_url = base_url.rstrip("/")

    async def upload(self, data_uri: str, folder: str, max_width: int, max_height: int) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._store, data_uri, folder, max_width, max_height)

    def _store(self, data_uri: str, folder: str, max_width: int, max_height: int) -> str:
        """Decode, shrink and save one image.

        Raises:
            InvalidInput: If the data is not an image Pillow can decode
            UploadError: If the decoded image cannot be written
        """
        raw = validate_image_data_uri(data_uri)
        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            logger.warning(f"Rejected undecodable image for {folder}: {e}")
            raise InvalidInput("Invalid image data") from e

        with img:
            fmt = img.format or "PNG"
            img.thumbnail((max_width, max_height))
            name = f"{uuid.uuid4().hex}.{fmt.lower()}"
            target_dir = os.path.join(self.media_root, *folder.split("/"))
            try:
                os.makedirs(target_dir, exist_ok=True)
                img.save(os.path.join(target_dir, name), format=fmt)
            except (OSError, ValueError) as e:
                logger.error(f"Image upload to {folder} failed: {e}")
                raise UploadError(str(e)) from e

        url = f"{self.base_url}/{folder}/{name}"
        logger.info(f"Stored image {url}")
        return url


async def upload_image(uploader, data_uri: str, folder: str, box) -> str:
    """Validate and upload an image, for use inside a larger operation.

    Validation runs before the uploader is touched; any uploader failure
    aborts the enclosing operation as an upstream failure.

    Raises:
        InvalidInput: If ``data_uri`` is not an image data URI or the image
            cannot be decoded
        UpstreamFailure: If the uploader fails
    """
    validate_image_data_uri(data_uri)
    max_width, max_height = box
    try:
        return await uploader.upload(data_uri, folder, max_width, max_height)
    except UploadError as e:
        raise UpstreamFailure(f"Image upload failed: {e}") from e
