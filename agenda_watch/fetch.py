from __future__ import annotations

import http.client
import json
import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, BinaryIO, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .ratelimit import Deadline, TokenBucket


logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "agenda-watch/0.1"

_CHUNK = 64 * 1024


class FetchError(RuntimeError):
    pass


@dataclass(frozen=True)
class ResponseMeta:
    url: str
    status: int
    content_type: str
    size: int
    last_modified: Optional[datetime]
    etag: Optional[str]

    @property
    def media_type(self) -> str:
        return self.content_type.split(";", 1)[0].strip().lower()


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 1123 header date; unparseable values are treated as absent."""
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


class HttpClient:
    """Sequential HTTP client gated by one shared rate limiter.

    Every request waits on `limiter` first. Timeouts are clamped to whatever is
    left of `deadline`, so cancelling the run also cuts in-flight requests
    short.
    """

    def __init__(
        self,
        *,
        limiter: Optional[TokenBucket] = None,
        deadline: Optional[Deadline] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout_s: float = 60.0,
    ):
        self.limiter = limiter
        self.deadline = deadline or Deadline()
        self.user_agent = user_agent
        self.timeout_s = float(timeout_s)

    def _request(self, req: Request, timeout_s: Optional[float]):
        if self.limiter is not None:
            self.limiter.wait(self.deadline)
        timeout = self.deadline.bound(timeout_s if timeout_s is not None else self.timeout_s)
        if timeout <= 0:
            raise FetchError(f"{req.get_method()} {req.full_url}: run deadline exceeded")
        logger.debug("%s %s (timeout %.0fs)", req.get_method(), req.full_url, timeout)
        try:
            resp = urlopen(req, timeout=timeout)
        except HTTPError as e:
            e.close()
            raise FetchError(f"{req.get_method()} {req.full_url}: bad status {e.code}") from e
        except (URLError, ConnectionError, socket.timeout, ValueError) as e:
            raise FetchError(f"{req.get_method()} {req.full_url}: {e}") from e
        if resp.status != 200:
            resp.close()
            raise FetchError(f"{req.get_method()} {req.full_url}: bad status {resp.status}")
        return resp

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if extra:
            headers.update(extra)
        return headers

    def get_text(self, url: str, *, timeout_s: Optional[float] = None) -> str:
        req = Request(url, headers=self._headers(), method="GET")
        with self._request(req, timeout_s) as resp:
            try:
                raw = resp.read()
            except (OSError, socket.timeout, http.client.HTTPException) as e:
                raise FetchError(f"GET {url}: reading body: {e}") from e
            charset = resp.headers.get_content_charset() or "utf-8"
        return raw.decode(charset, errors="replace")

    def post_json(self, url: str, payload: Any, *, timeout_s: Optional[float] = None) -> Any:
        req = Request(
            url,
            data=json.dumps(payload).encode("utf-8"),
            headers=self._headers({"Content-Type": "application/json"}),
            method="POST",
        )
        with self._request(req, timeout_s) as resp:
            try:
                raw = resp.read()
            except (OSError, socket.timeout, http.client.HTTPException) as e:
                raise FetchError(f"POST {url}: reading body: {e}") from e
        try:
            return json.loads(raw.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            raise FetchError(f"POST {url}: decoding JSON response: {e}") from e

    def download(self, url: str, out: BinaryIO, *, timeout_s: Optional[float] = None) -> ResponseMeta:
        """Stream a GET response body into `out` and return its metadata."""

        req = Request(url, headers=self._headers(), method="GET")
        size = 0
        with self._request(req, timeout_s) as resp:
            try:
                for chunk in iter(lambda: resp.read(_CHUNK), b""):
                    out.write(chunk)
                    size += len(chunk)
            except (OSError, socket.timeout, http.client.HTTPException) as e:
                raise FetchError(f"GET {url}: reading body: {e}") from e
            headers = resp.headers
            status = resp.status
        out.flush()

        declared = headers.get("Content-Length")
        if declared and declared.strip().isdigit() and size != int(declared):
            raise FetchError(f"GET {url}: short body {size} of {int(declared)} bytes")

        return ResponseMeta(
            url=url,
            status=int(status),
            content_type=str(headers.get("Content-Type") or ""),
            size=size,
            last_modified=parse_http_date(headers.get("Last-Modified")),
            etag=(headers.get("ETag") or None),
        )
