import os
from io import BytesIO

# Keep tests hermetic: no exporters, no instrumentation
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest
from aiohttp import ClientConnectionError
from PIL import Image


class FakeResponse:
    """Minimal stand-in for an aiohttp response used as an async context manager."""

    def __init__(self, status=200, body=b""):
        self.status = status
        self.body = body.encode("utf-8") if isinstance(body, str) else body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def read(self):
        return self.body

    async def text(self, errors="strict"):
        return self.body.decode("utf-8", errors)


class FakeSession:
    """Routes GET requests to canned responses and records every call.

    Route values may be bytes/str (200), a FakeResponse, or an exception
    instance to raise. Unknown URLs return 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self.closed = False

    def get(self, url, **kwargs):
        self.calls.append(url)
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(404, b"not found")
        if isinstance(route, BaseException):
            raise route
        if isinstance(route, FakeResponse):
            return route
        return FakeResponse(200, route)

    async def close(self):
        self.closed = True


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def connection_error():
    return ClientConnectionError("connection refused")


def make_image_bytes(width, height, fmt="PNG", color=(200, 30, 30)):
    buf = BytesIO()
    Image.new("RGB", (width, height), color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def image_bytes():
    return make_image_bytes


@pytest.fixture
def fake_response():
    return FakeResponse
