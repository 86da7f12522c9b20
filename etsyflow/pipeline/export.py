"""
Export Packager

Bundles completed assets into one downloadable ZIP archive. Each entry is
named ``optimized-<original stem>.png``; results are decoded from data URIs
or fetched over HTTP and re-encoded to PNG when needed.
"""

import asyncio
import base64
import binascii
import io
import zipfile
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Iterable, List, Optional

import httpx
from PIL import Image, UnidentifiedImageError

from etsyflow.core.exceptions import MalformedResponse, NothingToExportError
from etsyflow.core.logging import get_logger
from etsyflow.modules.batch.models import Asset, AssetState

logger = get_logger(__name__)

ARCHIVE_FILENAME = "etsyflow-optimized-assets.zip"
ENTRY_PREFIX = "optimized-"
ENTRY_EXTENSION = ".png"


@dataclass
class ExportArchive:
    filename: str
    data: bytes
    entries: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def archive_entry_names(filenames: Iterable[str]) -> List[str]:
    """
    Deterministic entry names in batch order; a name already taken gets the
    next free -2, -3... suffix.

    >>> archive_entry_names(["mug.jpg", "mug.heic", "vase.png"])
    ['optimized-mug.png', 'optimized-mug-2.png', 'optimized-vase.png']
    """
    used = set()
    names = []
    for filename in filenames:
        stem = PurePath(filename).stem or "asset"
        name = f"{ENTRY_PREFIX}{stem}{ENTRY_EXTENSION}"
        n = 1
        while name in used:
            n += 1
            name = f"{ENTRY_PREFIX}{stem}-{n}{ENTRY_EXTENSION}"
        used.add(name)
        names.append(name)
    return names


def decode_data_uri(reference: str) -> bytes:
    try:
        _, encoded = reference.split(",", 1)
        return base64.b64decode(encoded, validate=True)
    except (ValueError, binascii.Error) as exc:
        raise MalformedResponse("Result data URI could not be decoded", "export") from exc


def to_png(data: bytes) -> bytes:
    """Re-encode to PNG unless the bytes already are one."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return data
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                img = img.convert("RGB")
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
            return buffer.getvalue()
    except (UnidentifiedImageError, OSError) as exc:
        raise MalformedResponse("Result is not a decodable image", "export") from exc


class ExportPackager:
    """Builds the archive of completed results."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: float = 30.0):
        self._http_client = http_client
        self.timeout = timeout

    async def fetch_result(self, reference: str) -> bytes:
        if reference.startswith("data:"):
            return decode_data_uri(reference)

        if self._http_client is not None:
            response = await self._http_client.get(reference, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(reference)
        response.raise_for_status()
        return response.content

    async def build_archive(self, assets: Iterable[Asset]) -> ExportArchive:
        """
        Package every completed asset. A result that cannot be fetched or
        decoded is left out and reported in ``skipped``.

        Raises:
            NothingToExportError: nothing completed to export
        """
        completed = [a for a in assets if a.state == AssetState.COMPLETED and a.result_handle]
        if not completed:
            raise NothingToExportError()

        archive = ExportArchive(filename=ARCHIVE_FILENAME, data=b"")
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            for asset, entry in zip(completed, archive_entry_names(a.filename for a in completed)):
                try:
                    raw = await self.fetch_result(asset.result_handle)
                    png = await asyncio.to_thread(to_png, raw)
                except (httpx.HTTPError, MalformedResponse) as exc:
                    logger.warning("export_entry_skipped", asset_id=asset.id, error=str(exc))
                    archive.skipped.append(asset.id)
                    continue
                zf.writestr(entry, png)
                archive.entries.append(entry)

        archive.data = buffer.getvalue()
        logger.info("export_built", entries=len(archive.entries), skipped=len(archive.skipped))
        return archive
