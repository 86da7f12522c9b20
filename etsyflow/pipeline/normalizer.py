"""
Asset Normalizer

Turns an uploaded file into a safe, memory-bounded asset:
1. Size limit enforced before any decoding
2. HEIC/HEIF containers converted to PNG (detected by extension / media type)
3. Images larger than the safe bound downsampled (LANCZOS) and re-encoded as JPEG
4. One preview resource allocated per normalized asset
"""

from __future__ import annotations

import base64
import io
from dataclasses import dataclass
from pathlib import PurePath
from typing import Optional, Tuple

import pillow_heif
from PIL import Image, ImageOps, UnidentifiedImageError

from etsyflow.core.config import Settings
from etsyflow.core.exceptions import DecodeFailure, SizeLimitExceeded, UnsupportedContainerFormat
from etsyflow.core.logging import get_logger, with_logging
from etsyflow.core.storage import PreviewHandle, PreviewStore

pillow_heif.register_heif_opener()

logger = get_logger(__name__)

HEIF_EXTENSIONS = (".heic", ".heif")
HEIF_MEDIA_TYPES = {"image/heic", "image/heif"}
HEIF_SEQUENCE_MEDIA_TYPES = {"image/heic-sequence", "image/heif-sequence"}

# Formats every browser and remote service can decode as-is
WEB_SAFE_FORMATS = {"JPEG": "image/jpeg", "PNG": "image/png", "WEBP": "image/webp"}

EXIF_ORIENTATION = 0x0112


@dataclass(frozen=True)
class RawFile:
    """An uploaded file as received at the ingestion boundary."""
    filename: str
    media_type: str
    data: bytes


@dataclass(frozen=True)
class NormalizedAsset:
    filename: str
    media_type: str
    data: bytes
    base64: str
    width: int
    height: int
    original_width: int
    original_height: int
    preview: PreviewHandle
    converted_from: Optional[str] = None
    downsampled: bool = False


def is_heif_container(filename: str, media_type: str) -> bool:
    """Detect HEIC/HEIF by extension and declared media type only."""
    media_type = (media_type or "").lower()
    return (
        filename.lower().endswith(HEIF_EXTENSIONS)
        or media_type in HEIF_MEDIA_TYPES
        or media_type in HEIF_SEQUENCE_MEDIA_TYPES
    )


def compute_resize_dims(width: int, height: int, max_long_edge: int) -> Tuple[int, int]:
    """Preserve aspect ratio while constraining the longest edge."""
    long_edge = max(width, height)
    if max_long_edge <= 0 or long_edge <= max_long_edge:
        return width, height
    scale = max_long_edge / long_edge
    new_w = min(max_long_edge, max(1, round(width * scale)))
    new_h = min(max_long_edge, max(1, round(height * scale)))
    return new_w, new_h


def _with_extension(filename: str, ext: str) -> str:
    return str(PurePath(filename).with_suffix(ext)) if PurePath(filename).suffix else filename + ext


def _flatten_to_rgb(img: Image.Image) -> Image.Image:
    """Composite transparency onto white so the image can be saved as JPEG."""
    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _encode(img: Image.Image, fmt: str, quality: int) -> bytes:
    buffer = io.BytesIO()
    if fmt == "JPEG":
        _flatten_to_rgb(img).save(buffer, format="JPEG", quality=quality, optimize=True)
    else:
        if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        img.save(buffer, format="PNG")
    return buffer.getvalue()


class AssetNormalizer:
    """Decode, convert and bound uploaded images."""

    def __init__(
        self,
        preview_store: PreviewStore,
        max_bytes: int = 10485760,
        max_dimension: int = 2048,
        jpeg_quality: int = 85
    ):
        self.preview_store = preview_store
        self.max_bytes = max_bytes
        self.max_dimension = max_dimension
        self.jpeg_quality = jpeg_quality

    @classmethod
    def from_settings(cls, settings: Settings, preview_store: PreviewStore) -> "AssetNormalizer":
        return cls(
            preview_store,
            max_bytes=settings.MAX_IMAGE_SIZE_BYTES,
            max_dimension=settings.MAX_SAFE_DIMENSION,
            jpeg_quality=settings.NORMALIZE_JPEG_QUALITY,
        )

    @with_logging("normalize")
    def normalize(self, raw: RawFile) -> NormalizedAsset:
        """
        Normalize one uploaded file.

        Raises:
            SizeLimitExceeded: file larger than the upload limit (no decode attempted)
            UnsupportedContainerFormat: HEIC/HEIF that cannot be converted
            DecodeFailure: bytes are not a decodable image
        """
        if len(raw.data) > self.max_bytes:
            raise SizeLimitExceeded(len(raw.data), self.max_bytes)

        heif = is_heif_container(raw.filename, raw.media_type)
        image = self._open_heif(raw) if heif else self._open(raw)

        needs_reencode = heif or image.format not in WEB_SAFE_FORMATS
        if image.getexif().get(EXIF_ORIENTATION, 1) != 1:
            needs_reencode = True
        source_format = image.format
        image = ImageOps.exif_transpose(image)

        original_width, original_height = image.size
        new_size = compute_resize_dims(original_width, original_height, self.max_dimension)
        downsampled = new_size != image.size
        filename = raw.filename

        if downsampled:
            image = image.resize(new_size, Image.Resampling.LANCZOS)
            data = _encode(image, "JPEG", self.jpeg_quality)
            media_type = "image/jpeg"
            filename = _with_extension(filename, ".jpg")
        elif needs_reencode:
            data = _encode(image, "PNG", self.jpeg_quality)
            media_type = "image/png"
            filename = _with_extension(filename, ".png")
        else:
            data = raw.data
            media_type = WEB_SAFE_FORMATS[source_format]

        width, height = image.size
        preview = self.preview_store.create(data, media_type)

        logger.info(
            "asset_normalized",
            filename=raw.filename,
            source_format=source_format,
            original_size=(original_width, original_height),
            final_size=(width, height),
            downsampled=downsampled,
            converted=heif,
            output_bytes=len(data)
        )

        return NormalizedAsset(
            filename=filename,
            media_type=media_type,
            data=data,
            base64=base64.b64encode(data).decode("ascii"),
            width=width,
            height=height,
            original_width=original_width,
            original_height=original_height,
            preview=preview,
            converted_from="heif" if heif else None,
            downsampled=downsampled,
        )

    def _open(self, raw: RawFile) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(raw.data))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
            raise DecodeFailure(f"Could not decode '{raw.filename}': {exc}") from exc
        return image

    def _open_heif(self, raw: RawFile) -> Image.Image:
        if (raw.media_type or "").lower() in HEIF_SEQUENCE_MEDIA_TYPES:
            raise UnsupportedContainerFormat(
                f"'{raw.filename}' is a HEIF image sequence, which cannot be converted."
            )
        try:
            image = Image.open(io.BytesIO(raw.data))
            frames = getattr(image, "n_frames", 1)
            if frames > 1:
                raise UnsupportedContainerFormat(
                    f"'{raw.filename}' holds {frames} images (Live Photo or burst), "
                    f"which cannot be converted."
                )
            image.load()
        except UnsupportedContainerFormat:
            raise
        except (UnidentifiedImageError, OSError, ValueError, RuntimeError) as exc:
            raise UnsupportedContainerFormat(
                f"Could not convert HEIC/HEIF photo '{raw.filename}': {exc}."
            ) from exc
        return image
