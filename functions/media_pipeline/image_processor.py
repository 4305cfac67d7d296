# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

from __future__ import annotations

import io
import logging
import secrets
import string
import time
from dataclasses import dataclass
from typing import Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from shared.errors import ProcessingError

logger = logging.getLogger(__name__)

# Lets Image.open decode the image/heic uploads the gate admits.
register_heif_opener()

FULL_MAX_SIZE: Tuple[int, int] = (1200, 1200)
FULL_QUALITY = 82
THUMBNAIL_SIZE: Tuple[int, int] = (300, 300)
THUMBNAIL_QUALITY = 70
OUTPUT_FORMAT = "WEBP"
OUTPUT_EXTENSION = "webp"

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class ProcessedImage:
    """The two renditions derived from one upload."""

    full: bytes
    thumbnail: bytes
    filename: str
    original_name: Optional[str]
    width: int
    height: int


def generate_filename(extension: str = OUTPUT_EXTENSION) -> str:
    """
    Builds a storage key of the form `{epoch_millis}-{suffix}.{ext}`.

    The uploaded filename never takes part, so it cannot collide with or
    escape the entity directory.
    """
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"{int(time.time() * 1000)}-{suffix}.{extension}"


def _normalize_mode(img: Image.Image) -> Image.Image:
    has_alpha = img.mode in ("RGBA", "LA", "PA") or (
        img.mode == "P" and "transparency" in img.info
    )
    target = "RGBA" if has_alpha else "RGB"
    if img.mode != target:
        img = img.convert(target)
    return img


def _encode(img: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    img.save(buffer, format=OUTPUT_FORMAT, quality=quality)
    return buffer.getvalue()


def decode_image(data: bytes) -> Image.Image:
    """Decodes a buffer fully, raising ProcessingError on anything unreadable."""
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
        raise ProcessingError(
            "File is not a decodable image", details={"error": str(e)}
        ) from e
    return img


def render_full(img: Image.Image) -> Image.Image:
    """Fits inside FULL_MAX_SIZE keeping aspect ratio; never upscales."""
    full = img.copy()
    full.thumbnail(FULL_MAX_SIZE, Image.Resampling.LANCZOS)
    return full


def render_thumbnail(img: Image.Image) -> Image.Image:
    """Cover-fits to exactly THUMBNAIL_SIZE, cropping the overflow around the center."""
    return ImageOps.fit(img, THUMBNAIL_SIZE, Image.Resampling.LANCZOS)


def process_image(data: bytes, original_name: Optional[str] = None) -> ProcessedImage:
    """
    Derives the full and thumbnail renditions for one uploaded image.

    Args:
        data: Raw bytes as uploaded.
        original_name: Client-side filename, kept only as metadata.

    Returns:
        ProcessedImage with both WEBP renditions and a fresh storage filename.

    Raises:
        ProcessingError: If the buffer is not an image Pillow can decode.
    """
    img = _normalize_mode(decode_image(data))
    try:
        full = render_full(img)
        thumbnail = render_thumbnail(img)
        full_bytes = _encode(full, FULL_QUALITY)
        thumbnail_bytes = _encode(thumbnail, THUMBNAIL_QUALITY)
    except (OSError, ValueError) as e:
        raise ProcessingError(
            "Could not re-encode image", details={"error": str(e)}
        ) from e

    filename = generate_filename()
    logger.debug(
        "Processed %s -> %s (%dx%d)", original_name, filename, full.width, full.height
    )
    return ProcessedImage(
        full=full_bytes,
        thumbnail=thumbnail_bytes,
        filename=filename,
        original_name=original_name,
        width=full.width,
        height=full.height,
    )
