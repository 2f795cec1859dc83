"""App icon lookup via the iTunes Search API.

Looks up the bundle id, then fetches the 60px artwork. Responses are cached
per resolver for its lifetime and lookups run one at a time, so the API is
hit at most once per bundle id. Unknown apps get a grey placeholder.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Callable

import aprv.config as config

log = logging.getLogger(__name__)

_BUNDLE_ID_RE = re.compile(r"[A-Za-z0-9.-]+")


@dataclass(frozen=True)
class IconResponse:
    status: int
    content_type: str
    body: bytes


NOT_FOUND_ICON = IconResponse(
    status=200,
    content_type="image/svg+xml",
    body=b'<svg xmlns="http://www.w3.org/2000/svg" width="60" height="60">'
         b'<rect width="100%" height="100%" fill="#cccccc" /></svg>',
)

# (status, content type, body)
Fetch = Callable[[str], tuple[int, str, bytes]]


def clean_bundle_id(bundle_id: str) -> str:
    # seen: terminusd/com.apple.podcasts for a subset of podcast requests
    for prefix in config.ICON_PREFIXES_STRIPPED:
        if bundle_id.startswith(prefix):
            return bundle_id[len(prefix):]
    return bundle_id


def http_get(url: str) -> tuple[int, str, bytes]:
    """GET a URL. HTTP error statuses are returned, not raised."""
    req = urllib.request.Request(url, headers={"User-Agent": "aprv"})
    try:
        with urllib.request.urlopen(req, timeout=config.ICON_FETCH_TIMEOUT) as resp:
            return resp.status, resp.headers.get_content_type(), resp.read()
    except urllib.error.HTTPError as e:
        return e.code, "", b""


class IconResolver:
    """Resolves bundle ids to icon images, memoizing every definitive answer.

    Network failures are logged and answered with the placeholder but not
    cached, so a later call may still succeed.
    """

    def __init__(self, fetch: Fetch = http_get,
                 max_concurrency: int = config.ICON_MAX_CONCURRENCY):
        self._fetch = fetch
        self._cache: dict[str, IconResponse] = {}
        self._limiter = threading.BoundedSemaphore(max_concurrency)

    def resolve(self, bundle_id: str) -> IconResponse:
        bundle_id = clean_bundle_id(bundle_id)
        if not _BUNDLE_ID_RE.fullmatch(bundle_id):
            return NOT_FOUND_ICON
        cached = self._cache.get(bundle_id)
        if cached is not None:
            return cached
        with self._limiter:
            # another caller may have filled it while we waited
            cached = self._cache.get(bundle_id)
            if cached is not None:
                return cached
            try:
                response = self._lookup(bundle_id)
            except (urllib.error.URLError, OSError, ValueError):
                log.exception("icon lookup failed for %s", bundle_id)
                return NOT_FOUND_ICON
            self._cache[bundle_id] = response
            return response

    def _lookup(self, bundle_id: str) -> IconResponse:
        query = urllib.parse.urlencode({"bundleId": bundle_id})
        log.info("looking up %s...", bundle_id)
        start = time.monotonic()
        status, _, body = self._fetch(f"{config.ITUNES_LOOKUP_URL}?{query}")
        log.info("looked up %s in %.0fms", bundle_id, (time.monotonic() - start) * 1000)
        if status != 200:
            return NOT_FOUND_ICON
        lookup = json.loads(body)
        results = lookup.get("results") if isinstance(lookup, dict) else None
        if not isinstance(results, list) or not results or not isinstance(results[0], dict):
            return NOT_FOUND_ICON
        artwork = results[0].get("artworkUrl60")
        if not isinstance(artwork, str) or not artwork:
            return NOT_FOUND_ICON

        start = time.monotonic()
        status, content_type, image = self._fetch(artwork)
        if status != 200:
            return NOT_FOUND_ICON
        log.info("fetched artworkUrl60 (1 of %d) for %s in %.0fms",
                 len(results), bundle_id, (time.monotonic() - start) * 1000)
        return IconResponse(status=status, content_type=content_type, body=image)
