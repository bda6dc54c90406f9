import base64
import binascii
import io
import logging
from typing import Optional

from PIL import Image, UnidentifiedImageError

import config
from sanitize import sanitize_page_text

logger = logging.getLogger(__name__)


def expected_mode(first_page: str, page_index: int) -> str:
    """Modes alternate from the room's first page, whatever the client claims."""
    return first_page if page_index % 2 == 0 else other_mode(first_page)


def other_mode(mode: str) -> str:
    return config.DRAW if mode == config.WRITE else config.WRITE


def image_size(data_uri: str) -> Optional[tuple[int, int]]:
    """Return (width, height) of a PNG data URI, or None if it isn't one."""
    if not data_uri.startswith(config.IMAGE_DATA_PREFIX):
        logger.warning("Unexpected image format: %r", data_uri[:len(config.IMAGE_DATA_PREFIX)])
        return None
    try:
        raw = base64.b64decode(data_uri[len(config.IMAGE_DATA_PREFIX):], validate=True)
        with Image.open(io.BytesIO(raw)) as img:
            if img.format != "PNG":
                logger.warning("Image payload decoded as %s, not PNG", img.format)
                return None
            return img.size
    except (binascii.Error, UnidentifiedImageError, ValueError) as e:
        logger.warning("Could not decode image payload: %s", e)
        return None


def validate_drawing(data_uri: str) -> Optional[str]:
    size = image_size(data_uri)
    if size is None:
        return None
    width, height = size
    if (abs(width - config.IMAGE_WIDTH) < config.IMAGE_WIDTH_TOLERANCE
            and abs(height - config.IMAGE_HEIGHT) < config.IMAGE_HEIGHT_TOLERANCE):
        return data_uri
    logger.warning("Unexpected image size %dx%d", width, height)
    return None


def page_value(mode: str, value: str, expected: str) -> Optional[str]:
    """Validate a submitted page. None means the page is discarded and shown blank."""
    if mode != expected:
        logger.warning("Unexpected page mode: received %r, expected %r", mode, expected)
        return None
    if mode == config.WRITE:
        return sanitize_page_text(value)
    return validate_drawing(value)
