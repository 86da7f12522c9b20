import base64
import io

import pillow_heif
import pytest
from PIL import Image

from etsyflow.core.exceptions import DecodeFailure, SizeLimitExceeded, UnsupportedContainerFormat
from etsyflow.pipeline.normalizer import AssetNormalizer, RawFile, compute_resize_dims, is_heif_container
from tests.helpers import TrackingPreviewStore, make_image_bytes


@pytest.fixture
def store():
    return TrackingPreviewStore()


@pytest.fixture
def normalizer(store):
    return AssetNormalizer(store, max_bytes=10 * 1024 * 1024, max_dimension=2048)


def test_small_jpeg_passes_through_unchanged(normalizer, store):
    data = make_image_bytes(800, 600)
    result = normalizer.normalize(RawFile("mug.jpg", "image/jpeg", data))

    assert result.data == data
    assert (result.width, result.height) == (800, 600)
    assert result.media_type == "image/jpeg"
    assert not result.downsampled
    assert base64.b64decode(result.base64) == data
    assert store.created == [result.preview]


@pytest.mark.parametrize("size", [(4000, 3000), (3000, 6000), (2049, 100)])
def test_large_images_are_bounded(normalizer, size):
    result = normalizer.normalize(RawFile("big.png", "image/png", make_image_bytes(*size, fmt="PNG")))

    assert max(result.width, result.height) <= 2048
    assert result.downsampled
    assert result.media_type == "image/jpeg"
    assert result.filename == "big.jpg"
    assert (result.original_width, result.original_height) == size
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.format == "JPEG"
        assert img.size == (result.width, result.height)


def test_downsampling_keeps_aspect_ratio():
    assert compute_resize_dims(4000, 3000, 2048) == (2048, 1536)
    assert compute_resize_dims(1000, 500, 2048) == (1000, 500)


def test_transparent_image_flattened_when_downsampled(normalizer):
    data = make_image_bytes(3000, 3000, fmt="PNG", color=(0, 0, 0, 0), mode="RGBA")
    result = normalizer.normalize(RawFile("glass.png", "image/png", data))

    with Image.open(io.BytesIO(result.data)) as img:
        assert img.mode == "RGB"
        assert img.getpixel((10, 10)) == (255, 255, 255)


def test_size_limit_checked_before_decoding(store):
    normalizer = AssetNormalizer(store, max_bytes=1000)

    with pytest.raises(SizeLimitExceeded) as exc_info:
        normalizer.normalize(RawFile("huge.jpg", "image/jpeg", b"\x00" * 1001))

    assert exc_info.value.code == 413
    assert store.created == []


def test_undecodable_bytes_raise_decode_failure(normalizer, store):
    with pytest.raises(DecodeFailure):
        normalizer.normalize(RawFile("notes.jpg", "image/jpeg", b"definitely not an image"))
    assert store.created == []


def test_non_web_format_reencoded_to_png(normalizer):
    data = make_image_bytes(300, 200, fmt="TIFF")
    result = normalizer.normalize(RawFile("scan.tiff", "image/tiff", data))

    assert result.media_type == "image/png"
    assert result.filename == "scan.png"
    assert result.data.startswith(b"\x89PNG")


@pytest.mark.parametrize(
    "filename,media_type,expected",
    [
        ("IMG_0001.HEIC", "", True),
        ("photo.heif", "application/octet-stream", True),
        ("photo.bin", "image/heic", True),
        ("photo.bin", "image/heif-sequence", True),
        ("photo.jpg", "image/jpeg", False),
    ],
)
def test_heif_detection_uses_name_and_media_type(filename, media_type, expected):
    assert is_heif_container(filename, media_type) is expected


def test_heif_named_file_is_converted_to_png(normalizer):
    data = make_image_bytes(640, 480, fmt="PNG")
    result = normalizer.normalize(RawFile("IMG_0042.HEIC", "image/heic", data))

    assert result.converted_from == "heif"
    assert result.media_type == "image/png"
    assert result.filename == "IMG_0042.png"


def test_heif_sequence_is_unsupported(normalizer, store):
    with pytest.raises(UnsupportedContainerFormat) as exc_info:
        normalizer.normalize(RawFile("live.heic", "image/heic-sequence", b"\x00" * 64))

    assert "Live Photo" in exc_info.value.message
    assert store.created == []


def test_broken_heif_is_unsupported_not_decode_failure(normalizer):
    with pytest.raises(UnsupportedContainerFormat):
        normalizer.normalize(RawFile("broken.heic", "image/heic", b"ftypheic-garbage"))


def make_heif_bytes(*colors, size=(640, 480)) -> bytes:
    heif = pillow_heif.from_pillow(Image.new("RGB", size, colors[0]))
    for color in colors[1:]:
        heif.add_from_pillow(Image.new("RGB", size, color))
    buffer = io.BytesIO()
    heif.save(buffer)
    return buffer.getvalue()


def test_real_heif_photo_is_decoded_and_converted(normalizer, store):
    data = make_heif_bytes((180, 90, 40))
    result = normalizer.normalize(RawFile("IMG_1001.HEIC", "image/heic", data))

    assert result.converted_from == "heif"
    assert result.media_type == "image/png"
    assert (result.width, result.height) == (640, 480)
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.format == "PNG"
    assert store.created == [result.preview]


def test_multi_image_heif_is_unsupported(normalizer, store):
    data = make_heif_bytes((180, 90, 40), (40, 90, 180), size=(64, 64))

    with pytest.raises(UnsupportedContainerFormat) as exc_info:
        normalizer.normalize(RawFile("burst.heic", "image/heic", data))

    assert "holds 2 images" in exc_info.value.message
    assert store.created == []
