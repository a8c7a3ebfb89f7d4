from __future__ import annotations

import base64
import logging
import os
import socket
import time
from dataclasses import dataclass
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from .errors import ErrorCode, FetchError
from .utils import log_event

TRANSPORT_HTTP = "HTTP"
TRANSPORT_AUTH_URL = "AUTH_URL"
TRANSPORT_FILE = "FILE"


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


def fetch_feed(
    locator: str,
    transport: str,
    credentials: Credentials | None = None,
    timeout: int = 60,
    max_retries: int = 2,
    backoff_seconds: int = 2,
    user_agent: str = "FeedSentry/0.1",
    drop_dir: str | None = None,
) -> bytes:
    """Return the raw feed payload or raise FetchError.

    Network errors and 5xx responses are retried with linear backoff; a timeout on the
    final attempt surfaces as TIMEOUT_ERROR.
    """
    logger = logging.getLogger("feedsentry.fetch")
    if transport == TRANSPORT_FILE:
        return _read_drop_file(locator, drop_dir)
    if transport not in (TRANSPORT_HTTP, TRANSPORT_AUTH_URL):
        raise FetchError(f"unsupported transport: {transport}")

    headers = {"User-Agent": user_agent}
    if transport == TRANSPORT_AUTH_URL:
        if credentials is None:
            raise FetchError("AUTH_URL transport requires credentials")
        token = base64.b64encode(
            f"{credentials.username}:{credentials.password}".encode("utf-8")
        ).decode("ascii")
        headers["Authorization"] = f"Basic {token}"

    attempt = 0
    while True:
        try:
            request = Request(locator, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                content = response.read()
            if not content:
                raise FetchError("empty response")
            return content
        except HTTPError as exc:
            if exc.code < 500 or attempt >= max_retries:
                raise FetchError(f"HTTP {exc.code} fetching {locator}") from exc
            error = f"HTTP {exc.code}"
            code = ErrorCode.FETCH_ERROR
        except (socket.timeout, TimeoutError) as exc:
            if attempt >= max_retries:
                raise FetchError(f"timed out after {timeout}s", ErrorCode.TIMEOUT_ERROR) from exc
            error = "timeout"
            code = ErrorCode.TIMEOUT_ERROR
        except URLError as exc:
            timed_out = isinstance(exc.reason, (socket.timeout, TimeoutError))
            if attempt >= max_retries:
                if timed_out:
                    raise FetchError(
                        f"timed out after {timeout}s", ErrorCode.TIMEOUT_ERROR
                    ) from exc
                raise FetchError(str(exc.reason)) from exc
            error = str(exc.reason)
            code = ErrorCode.TIMEOUT_ERROR if timed_out else ErrorCode.FETCH_ERROR
        log_event(
            logger,
            logging.WARNING,
            "fetch_retry",
            locator=locator,
            attempt=attempt + 1,
            code=code,
            error=error,
        )
        time.sleep(backoff_seconds * (attempt + 1))
        attempt += 1


def _read_drop_file(locator: str, drop_dir: str | None) -> bytes:
    parsed = urlparse(locator)
    path = parsed.path if parsed.scheme == "file" else locator
    if drop_dir and not os.path.isabs(path):
        path = os.path.join(drop_dir, path)
    try:
        with open(path, "rb") as handle:
            content = handle.read()
    except FileNotFoundError as exc:
        raise FetchError(f"drop file not found: {path}") from exc
    except OSError as exc:
        raise FetchError(f"drop file unreadable: {exc}") from exc
    if not content:
        raise FetchError(f"drop file is empty: {path}")
    return content
