"""HTTP retrieval of remote ActivityPub objects.

Every failure is raised as a classified CacheError subclass so the queue can
decide whether the reference is worth another attempt.
"""

import json
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx

from .config import Settings
from .errors import (
    AppConfigError,
    RequestContentError,
    RequestNetworkError,
    RequestResultNotJsonError,
    RequestResultSizeError,
    RequestServerError,
)

logger = logging.getLogger(__name__)

ACCEPT = 'application/activity+json, application/ld+json; profile="https://www.w3.org/ns/activitystreams"'


class ObjectFetcher:
    def __init__(self, settings: Settings, client: Optional[httpx.Client] = None):
        self.settings = settings
        self.headers = {"User-Agent": settings.user_agent, "Accept": ACCEPT}
        self.client = client or httpx.Client(timeout=settings.fetch_timeout, follow_redirects=True)

    def close(self):
        self.client.close()

    def fetch(self, url: str) -> bytes:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise RequestContentError(f"not a remote url: {url}")

        limit = self.settings.max_response_bytes
        try:
            with self.client.stream("GET", url, headers=self.headers) as response:
                self._check_status(url, response.status_code)
                length = response.headers.get("Content-Length")
                if length and length.isdigit() and int(length) > limit:
                    raise RequestResultSizeError(f"{url} announced {length} bytes")
                body = bytearray()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if len(body) > limit:
                        raise RequestResultSizeError(f"{url} exceeded {limit} bytes")
        except httpx.ProxyError as e:
            raise AppConfigError(f"proxy configuration rejected {url}: {e}") from e
        except httpx.TransportError as e:
            raise RequestNetworkError(f"{url}: {e}") from e

        logger.debug("fetched %s (%d bytes)", url, len(body))
        return bytes(body)

    def retrieve_object(self, url: str) -> Dict[str, Any]:
        body = self.fetch(url)
        if not body.strip():
            raise RequestContentError(f"{url} returned an empty body")
        try:
            data = json.loads(body)
        except ValueError as e:
            raise RequestResultNotJsonError(f"{url}: {e}") from e
        if not isinstance(data, dict):
            raise RequestResultNotJsonError(f"{url} did not return a JSON object")
        return data

    @staticmethod
    def _check_status(url: str, code: int):
        if 200 <= code < 300:
            return
        if 400 <= code < 500:
            raise RequestContentError(f"{url} returned {code}")
        raise RequestServerError(f"{url} returned {code}")
