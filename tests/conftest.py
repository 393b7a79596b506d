"""Shared test fixtures for poster search tests."""

import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import numpy as np
import cv2
import pytest
import requests


def solid_image(rgb, size=(120, 80)):
    """Generate an RGB image of one colour, shape (height, width, 3)."""
    height, width = size
    img = np.zeros((height, width, 3), dtype=np.uint8)
    img[:, :] = rgb
    return img


def encode_png(image_rgb):
    """Encode an RGB image as PNG bytes (lossless, so means survive)."""
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(image_rgb, cv2.COLOR_RGB2BGR))
    assert ok
    return buffer.tobytes()


def write_poster(directory, name, rgb):
    """Write a solid-colour PNG poster and return its path as a string."""
    path = directory / name
    path.write_bytes(encode_png(solid_image(rgb)))
    return str(path)


class FakeResponse:
    """Minimal stand-in for a streamed requests.Response."""

    def __init__(self, content=b"", status_code=200, chunks=None):
        self.status_code = status_code
        self._chunks = chunks if chunks is not None else [content]
        self.closed = False

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        for chunk in self._chunks:
            if callable(chunk):
                chunk = chunk()
            yield chunk

    def close(self):
        self.closed = True


class FakeSession:
    """
    Routes URLs to canned responses.

    A route value may be bytes, a FakeResponse, an exception instance
    to raise from get(), or a callable returning one of those.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, timeout=None, stream=False):
        with self._lock:
            self.calls.append(url)
        value = self.routes.get(url)
        if value is None:
            raise requests.exceptions.ConnectionError(f"no route to {url}")
        if callable(value):
            value = value()
        if isinstance(value, Exception):
            raise value
        if isinstance(value, FakeResponse):
            return value
        return FakeResponse(value)


@pytest.fixture
def red_poster():
    """A 120x80 pure red poster."""
    return solid_image((200, 0, 0))


@pytest.fixture
def blue_circle_image():
    """Generate a 200x200 blue circle on white background."""
    img = np.ones((200, 200, 3), dtype=np.uint8) * 255
    cv2.circle(img, (100, 100), 60, (30, 30, 200), -1)
    return img


@pytest.fixture
def noise_image():
    """Generate a 200x200 random noise image."""
    rng = np.random.RandomState(42)
    return rng.randint(0, 255, (200, 200, 3), dtype=np.uint8)


@pytest.fixture
def poster_dir(tmp_path):
    """Directory of solid-colour PNG posters keyed by name."""
    colours = {
        "grey": (10, 10, 10),
        "red": (200, 0, 0),
        "grey_warm": (10, 10, 11),
        "green": (0, 150, 0),
        "blue": (0, 0, 180),
    }
    return {name: write_poster(tmp_path, f"{name}.png", rgb)
            for name, rgb in colours.items()}


class StallingHandler(BaseHTTPRequestHandler):
    """Accepts a request, then goes quiet before or during the body."""

    def do_GET(self):
        self.server.requests += 1
        if self.server.stall_before_headers:
            time.sleep(self.server.stall_seconds)
            return
        self.send_response(200)
        self.send_header("Content-Type", "image/png")
        self.send_header("Content-Length", "1000")
        self.end_headers()
        self.wfile.write(b"\x89PNG" + b"\x00" * 36)
        self.wfile.flush()
        time.sleep(self.server.stall_seconds)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def stalling_server():
    """
    Start local HTTP servers that stall; yields a factory returning
    (server, url). ``server.requests`` counts requests received.
    """
    servers = []

    def start(stall_before_headers=False, stall_seconds=2.0):
        server = ThreadingHTTPServer(("127.0.0.1", 0), StallingHandler)
        server.block_on_close = False
        server.stall_before_headers = stall_before_headers
        server.stall_seconds = stall_seconds
        server.requests = 0
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server, f"http://127.0.0.1:{server.server_address[1]}/cover.png"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()
