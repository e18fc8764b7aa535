"""
Shared fixtures: synthetic images and a fake upstream image server.
"""

import asyncio
import io

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from imgproxy.core.config import Settings
from imgproxy.core.metrics import reset_proxy_metrics
from imgproxy.main import create_app


def _image_bytes(width=100, height=100, color=(128, 64, 32), fmt="PNG", mode="RGB", **save_kwargs):
    """Return raw bytes of a solid image."""
    img = Image.new(mode, (width, height), color)
    buf = io.BytesIO()
    img.save(buf, format=fmt, **save_kwargs)
    return buf.getvalue()


class TrackingStream(httpx.AsyncByteStream):
    """Response body that records whether it was closed."""

    def __init__(self, chunks, delay=0.0):
        self.chunks = list(chunks)
        self.delay = delay
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.sent += 1
            yield chunk

    async def aclose(self):
        self.closed = True


class ImageServer:
    """Fake upstream: canned responses or handlers keyed by URL path."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, path, content=b"", status_code=200, content_type="image/png", headers=None):
        all_headers = {"content-type": content_type}
        all_headers.update(headers or {})
        self.routes[path] = lambda request: httpx.Response(status_code, headers=all_headers, content=content)

    def add_stream(self, path, stream, content_type="image/png", headers=None):
        all_headers = {"content-type": content_type}
        all_headers.update(headers or {})
        self.routes[path] = lambda request: httpx.Response(200, headers=all_headers, stream=stream)

    def add_handler(self, path, handler):
        self.routes[path] = handler

    def handler(self, request):
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, headers={"content-type": "text/plain"}, content=b"not found")
        return route(request)

    @property
    def transport(self):
        return httpx.MockTransport(self.handler)


@pytest.fixture(autouse=True)
def _clean_metrics():
    reset_proxy_metrics()
    yield


@pytest.fixture
def image_bytes():
    return _image_bytes


@pytest.fixture
def tracking_stream():
    return TrackingStream


@pytest.fixture
def make_settings():
    def _make(**overrides):
        overrides.setdefault("_env_file", None)
        return Settings(**overrides)
    return _make


@pytest.fixture
def upstream():
    return ImageServer()


@pytest.fixture
def make_client(upstream, make_settings):
    def _make(**overrides):
        return TestClient(create_app(make_settings(**overrides), transport=upstream.transport))
    return _make


@pytest.fixture
def client(make_client):
    return make_client()
