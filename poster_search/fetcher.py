"""
Cover image retrieval.

Fetches raw poster bytes from an HTTP(S) URL or a local path, decodes
them with OpenCV and hands back a normalized RGB buffer. HTTP requests
go through a shared requests.Session with a bounded urllib3 retry
policy; each fetch also honors an overall deadline and an optional
cancellation event checked between downloaded chunks.
"""

import os
import time
import socket
import logging
import threading
from typing import Optional, Tuple

import cv2
import numpy as np
import urllib3
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import FetchCancelled, FetchError, FetchErrorKind, InvalidArgument
from .preprocessing import normalize_cover

logger = logging.getLogger(__name__)

DEFAULT_FETCH_TIMEOUT = float(os.environ.get("POSTER_FETCH_TIMEOUT", "10"))
DEFAULT_FETCH_RETRIES = int(os.environ.get("POSTER_FETCH_RETRIES", "2"))

CHUNK_SIZE = 8192
RETRY_STATUS_CODES = (429, 500, 502, 503, 504)
BACKOFF_FACTOR = 0.5

TIMEOUT_ERRORS = (
    requests.exceptions.Timeout,
    urllib3.exceptions.TimeoutError,
    socket.timeout,
    TimeoutError,
)


def build_session(retries: int = DEFAULT_FETCH_RETRIES,
                  pool_size: int = 10) -> requests.Session:
    """
    Create a session with a retry policy mounted for http and https.

    Failed connections and retryable statuses are retried. Read timeouts
    are not: a server that accepted the request and then stalled gets one
    read timeout, not one per retry. Retry-After headers are ignored so
    backoff stays bounded.
    """
    session = requests.Session()
    retry_strategy = Retry(
        total=retries,
        connect=retries,
        read=0,
        status=retries,
        backoff_factor=BACKOFF_FACTOR,
        status_forcelist=RETRY_STATUS_CODES,
        allowed_methods=["GET"],
        respect_retry_after_header=False,
    )
    adapter = HTTPAdapter(max_retries=retry_strategy,
                          pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def is_remote(reference: str) -> bool:
    return reference.lower().startswith(("http://", "https://"))


class ImageFetcher:
    """
    Turns image references into normalized pixel buffers.

    One fetcher is shared by all pipeline workers; it holds no per-fetch
    state beyond the HTTP connection pool.

    Time limits for an HTTP fetch:

    - connection attempts, retries included, share one ``timeout``
      budget (each attempt gets ``timeout / (retries + 1)``);
    - each wait for response data is bounded by ``timeout`` and a
      stalled read is not retried;
    - the body must be complete ``timeout`` seconds after the fetch
      started, checked as each chunk arrives.

    A fetch therefore gives up within about ``2 * timeout`` plus retry
    backoff (at most ``BACKOFF_FACTOR * 2 ** retries`` seconds).
    """

    def __init__(self,
                 timeout: float = None,
                 retries: int = None,
                 target_size: Tuple[int, int] = None,
                 session: requests.Session = None,
                 pool_size: int = 10):
        """
        Args:
            timeout: Seconds allowed per fetch; see the class docstring
                for how it bounds connect, read and download. Defaults to
                DEFAULT_FETCH_TIMEOUT.
            retries: Retries per HTTP fetch. Defaults to DEFAULT_FETCH_RETRIES.
            target_size: (width, height) for normalization. Defaults to
                preprocessing.TARGET_RESOLUTION.
            session: Pre-configured session (tests inject a fake one).
            pool_size: HTTP connection pool size; match the pipeline's
                concurrency limit.
        """
        self.timeout = DEFAULT_FETCH_TIMEOUT if timeout is None else timeout
        self.retries = DEFAULT_FETCH_RETRIES if retries is None else retries
        if self.timeout <= 0:
            raise InvalidArgument(f"fetch timeout must be positive, got {self.timeout}")
        if self.retries < 0:
            raise InvalidArgument(f"retries must be >= 0, got {self.retries}")
        self.request_timeout = (self.timeout / (self.retries + 1), self.timeout)
        self.target_size = target_size
        self.session = session or build_session(self.retries, pool_size)

    def fetch(self, reference: str,
              cancel_event: Optional[threading.Event] = None) -> np.ndarray:
        """
        Retrieve, decode and normalize one cover.

        Cancellation is checked before the request, as soon as response
        headers arrive and between downloaded chunks. A fetch blocked in
        connect or waiting for headers sees it only when that wait ends,
        which the timeouts above bound.

        Returns:
            RGB uint8 image at the target resolution.

        Raises:
            InvalidArgument: Empty reference.
            FetchError: Unreachable, timed out, empty or undecodable.
            FetchCancelled: cancel_event was set during the fetch.
        """
        data = self.fetch_bytes(reference, cancel_event)
        image = self.decode(data, reference)
        return normalize_cover(image, self.target_size)

    def fetch_bytes(self, reference: str,
                    cancel_event: Optional[threading.Event] = None) -> bytes:
        if not reference or not reference.strip():
            raise InvalidArgument("image reference must be non-empty")
        reference = reference.strip()
        _check_cancelled(reference, cancel_event)

        if is_remote(reference):
            data = self._download(reference, cancel_event)
        else:
            data = self._read_file(reference)

        if not data:
            raise FetchError(FetchErrorKind.EMPTY, reference, "zero-byte payload")
        logger.debug(f"Fetched {len(data)} bytes from {reference}")
        return data

    @staticmethod
    def decode(data: bytes, reference: str = "") -> np.ndarray:
        """Decode encoded image bytes to an RGB uint8 array."""
        try:
            buffer = np.frombuffer(data, dtype=np.uint8)
            image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        except cv2.error as e:
            raise FetchError(FetchErrorKind.DECODE_FAILED, reference, str(e)) from e
        if image is None or image.size == 0:
            raise FetchError(FetchErrorKind.DECODE_FAILED, reference,
                             "unsupported or malformed image data")
        return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)

    def _download(self, url: str,
                  cancel_event: Optional[threading.Event]) -> bytes:
        deadline = time.monotonic() + self.timeout
        try:
            response = self.session.get(url, timeout=self.request_timeout, stream=True)
        except requests.exceptions.RequestException as e:
            raise _request_error(url, e) from e

        try:
            _check_cancelled(url, cancel_event)
            response.raise_for_status()
            chunks = []
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                _check_cancelled(url, cancel_event)
                if time.monotonic() > deadline:
                    raise FetchError(FetchErrorKind.TIMEOUT, url,
                                     f"download exceeded {self.timeout}s")
                if chunk:
                    chunks.append(chunk)
            return b"".join(chunks)
        except requests.exceptions.RequestException as e:
            raise _request_error(url, e) from e
        finally:
            response.close()

    @staticmethod
    def _read_file(reference: str) -> bytes:
        path = reference[len("file://"):] if reference.startswith("file://") else reference
        if not os.path.isfile(path):
            raise FetchError(FetchErrorKind.UNREACHABLE, reference, "no such file")
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise FetchError(FetchErrorKind.UNREACHABLE, reference, str(e)) from e


def _check_cancelled(reference: str,
                     cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise FetchCancelled(reference)


def is_timeout(error: BaseException) -> bool:
    """
    True when a timeout appears anywhere in an exception's cause chain.

    requests reports a read timeout hit mid-stream, or one that exhausted
    the retry policy, as a ConnectionError wrapping urllib3's
    ReadTimeoutError, so the exception type alone is not enough.
    """
    pending = [error]
    seen = set()
    while pending:
        current = pending.pop()
        if not isinstance(current, BaseException) or id(current) in seen:
            continue
        seen.add(id(current))
        if isinstance(current, TIMEOUT_ERRORS):
            return True
        pending.extend(current.args)
        pending.append(getattr(current, "reason", None))
        pending.append(current.__cause__)
        pending.append(current.__context__)
    return False


def _request_error(url: str, error: requests.exceptions.RequestException) -> FetchError:
    kind = FetchErrorKind.TIMEOUT if is_timeout(error) else FetchErrorKind.UNREACHABLE
    return FetchError(kind, url, str(error))
