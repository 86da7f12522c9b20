"""Shared test doubles: in-memory images, a tracking preview store and a fake AI service."""

import base64
import io
import json
from collections import Counter
from typing import Callable, Dict, List

import httpx
from PIL import Image

from etsyflow.core.storage import InMemoryPreviewStore, PreviewHandle
from etsyflow.pipeline.normalizer import RawFile

ANALYSIS_URL = "http://ai.test/v1/analyze"
ENHANCEMENT_URL = "http://ai.test/v1/enhance"

METADATA = {
    "title": "Handmade Ceramic Mug - Speckled Stoneware Coffee Cup",
    "tags": ["ceramic mug", "stoneware", "coffee cup", "handmade", "pottery"],
    "category": "Home & Living",
    "visualDescription": "Speckled matte glaze over warm stoneware",
}


def make_image_bytes(
    width: int,
    height: int,
    fmt: str = "JPEG",
    color=(200, 120, 40),
    mode: str = "RGB"
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, (width, height), color).save(buffer, format=fmt)
    return buffer.getvalue()


def make_raw_file(name: str, width: int = 800, height: int = 600, color=(200, 120, 40)) -> RawFile:
    return RawFile(filename=name, media_type="image/jpeg", data=make_image_bytes(width, height, color=color))


def png_data_uri(width: int = 64, height: int = 64) -> str:
    encoded = base64.b64encode(make_image_bytes(width, height, fmt="PNG")).decode("ascii")
    return f"data:image/png;base64,{encoded}"


class TrackingPreviewStore(InMemoryPreviewStore):
    """Counts every release call per handle."""

    def __init__(self):
        super().__init__()
        self.created: List[PreviewHandle] = []
        self.release_calls: Counter = Counter()

    def create(self, data: bytes, content_type: str = "image/jpeg") -> PreviewHandle:
        handle = super().create(data, content_type)
        self.created.append(handle)
        return handle

    def release(self, handle: PreviewHandle) -> bool:
        self.release_calls[handle.key] += 1
        return super().release(handle)


Handler = Callable[[dict, int], httpx.Response]


class FakeAIService:
    """MockTransport handler standing in for both remote services.

    Handlers receive the decoded JSON payload and the 1-based call number
    for that service.
    """

    def __init__(self):
        self.analysis_calls: List[dict] = []
        self.enhancement_calls: List[dict] = []
        self.headers: List[Dict[str, str]] = []
        self.analysis_handler: Handler = lambda payload, n: httpx.Response(200, json=METADATA)
        self.enhancement_handler: Handler = lambda payload, n: httpx.Response(
            200, json={"data": {"image": {"url": f"https://cdn.test/result-{n}.png"}}}
        )

    def handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content) if request.content else {}
        self.headers.append(dict(request.headers))
        if request.url.path.endswith("/analyze"):
            self.analysis_calls.append(payload)
            return self.analysis_handler(payload, len(self.analysis_calls))
        if request.url.path.endswith("/enhance"):
            self.enhancement_calls.append(payload)
            return self.enhancement_handler(payload, len(self.enhancement_calls))
        return httpx.Response(200, content=make_image_bytes(32, 32, fmt="PNG"))

