import io
import zipfile

import httpx
import pytest
from PIL import Image

from etsyflow.core.exceptions import NothingToExportError
from etsyflow.modules.batch.models import Asset, AssetState
from etsyflow.pipeline.export import ARCHIVE_FILENAME, ExportPackager, archive_entry_names, to_png
from tests.helpers import make_image_bytes, png_data_uri


def completed_asset(filename, reference):
    return Asset(
        filename=filename,
        media_type="image/jpeg",
        source_bytes=b"x",
        state=AssetState.COMPLETED,
        result_handle=reference,
    )


def test_entry_names_are_deterministic():
    names = archive_entry_names(["mug.jpg", "vase.heic", "mug.png", "mug"])
    assert names == ["optimized-mug.png", "optimized-vase.png", "optimized-mug-2.png", "optimized-mug-3.png"]


@pytest.mark.parametrize(
    "filenames,expected",
    [
        (["mug.jpg", "mug-2.jpg", "mug.png"], ["optimized-mug.png", "optimized-mug-2.png", "optimized-mug-3.png"]),
        (["mug.jpg", "mug.png", "mug-2.jpg"], ["optimized-mug.png", "optimized-mug-2.png", "optimized-mug-2-2.png"]),
    ],
)
def test_generated_suffix_never_collides_with_real_name(filenames, expected):
    names = archive_entry_names(filenames)
    assert names == expected
    assert len(set(names)) == len(names)


@pytest.mark.asyncio
async def test_archive_has_one_member_per_asset_with_clashing_names():
    assets = [completed_asset(name, png_data_uri()) for name in ("mug.jpg", "mug-2.jpg", "mug.png")]

    archive = await ExportPackager().build_archive(assets)

    with zipfile.ZipFile(io.BytesIO(archive.data)) as zf:
        assert len(set(zf.namelist())) == 3


def test_to_png_converts_jpeg_and_keeps_png():
    png = make_image_bytes(10, 10, fmt="PNG")
    assert to_png(png) is png

    converted = to_png(make_image_bytes(10, 10, fmt="JPEG"))
    with Image.open(io.BytesIO(converted)) as img:
        assert img.format == "PNG"


@pytest.mark.asyncio
async def test_archive_contains_completed_assets_only():
    def handler(request):
        if request.url.path == "/missing.png":
            return httpx.Response(404)
        return httpx.Response(200, content=make_image_bytes(20, 20, fmt="JPEG"))

    assets = [
        completed_asset("mug.jpg", png_data_uri()),
        completed_asset("vase.jpg", "https://cdn.test/vase.png"),
        completed_asset("lamp.jpg", "https://cdn.test/missing.png"),
        Asset(filename="bowl.jpg", media_type="image/jpeg", source_bytes=b"x", state=AssetState.READY),
    ]
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        archive = await ExportPackager(http_client=client).build_archive(assets)

    assert archive.filename == ARCHIVE_FILENAME
    assert archive.entries == ["optimized-mug.png", "optimized-vase.png"]
    assert archive.skipped == [assets[2].id]
    with zipfile.ZipFile(io.BytesIO(archive.data)) as zf:
        assert zf.namelist() == archive.entries
        assert zf.read("optimized-vase.png").startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_nothing_to_export():
    with pytest.raises(NothingToExportError):
        await ExportPackager().build_archive([])
