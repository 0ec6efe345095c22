"""
HTTPS endpoint listing with aiohttp.

``listing`` mode GETs ``base_url + path``. A JSON body (a list of entries, or
an object with a ``files`` list) is read as a directory listing; anything
else is treated as a single file living at that URL.

``probe`` mode sends one HEAD request for ``base_url + path + filename`` and
needs a literal filename pattern.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import unquote, urlsplit

import aiohttp

from filepoll.connections.base import ListingRequest, ProtocolAdapter, bound_results
from filepoll.core.models import DiscoveredFile, ProtocolType, WebAuthMode, WebListingMode, WebSettings, utcnow
from filepoll.exceptions import (
    AdapterError,
    AuthenticationFailedError,
    NetworkError,
    NotFoundError,
    ProtocolError,
)
from filepoll.utils.logging import get_logger

logger = get_logger("filepoll.connections.web")

_GLOB_CHARS = frozenset("*?[")


class WebAdapter(ProtocolAdapter):
    """Lists files published behind an HTTPS endpoint."""

    protocol = ProtocolType.WEB

    settings: WebSettings

    async def list_files(self, request: ListingRequest) -> list[DiscoveredFile]:
        url = combine_url(self.settings.base_url, request.path)
        try:
            async with self._session(request) as session:
                if self.settings.listing_mode == WebListingMode.PROBE:
                    files = await self._probe(session, url, request)
                else:
                    files = await self._listing(session, url, request)
        except AdapterError:
            raise
        except aiohttp.TooManyRedirects as e:
            raise ProtocolError(f"Too many redirects fetching {url}") from e
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, asyncio.TimeoutError) as e:
            raise NetworkError(f"Request to {url} failed: {e or type(e).__name__}") from e
        except aiohttp.ClientError as e:
            raise ProtocolError(f"Request to {url} failed: {e}") from e

        logger.info(f"HTTPS listing found {len(files)} matching file(s) at {self.settings.base_url}")
        return bound_results(files, request.max_results, source=url)

    def _session(self, request: ListingRequest) -> aiohttp.ClientSession:
        headers = {"Accept": "application/json, */*;q=0.5"}
        auth = None
        secret = request.credentials.get("secret")
        mode = self.settings.auth_mode

        if mode == WebAuthMode.BASIC:
            auth = aiohttp.BasicAuth(self.settings.username or "", secret or "")
        elif mode == WebAuthMode.BEARER and secret:
            headers["Authorization"] = f"Bearer {secret}"
        elif mode == WebAuthMode.API_KEY and secret:
            headers[self.settings.api_key_header] = secret

        return aiohttp.ClientSession(
            headers=headers,
            auth=auth,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        )

    def _redirect_kwargs(self) -> dict[str, Any]:
        if not self.settings.follow_redirects or self.settings.max_redirects == 0:
            return {"allow_redirects": False}
        return {"allow_redirects": True, "max_redirects": self.settings.max_redirects}

    async def _listing(self, session: aiohttp.ClientSession, url: str, request: ListingRequest) -> list[DiscoveredFile]:
        logger.debug(f"GET {url}")
        async with session.get(url, **self._redirect_kwargs()) as resp:
            raise_for_status(resp.status, url)
            content_type = resp.headers.get("Content-Type", "")

            if "json" in content_type.lower():
                body = await resp.text()
                return self._parse_listing(body, url, request)

            # Not a listing: the URL itself is the file
            name = filename_from_url(str(resp.url)) or filename_from_url(url)
            if not name or not request.accepts(name):
                return []
            return [
                DiscoveredFile(
                    filename=name,
                    locator=url,
                    size=resp.content_length,
                    last_modified=parse_http_date(resp.headers.get("Last-Modified")),
                    discovered_at=utcnow(),
                    content_type=content_type.split(";", 1)[0] or None,
                    etag=resp.headers.get("ETag"),
                )
            ]

    def _parse_listing(self, body: str, url: str, request: ListingRequest) -> list[DiscoveredFile]:
        try:
            document = json.loads(body)
        except ValueError as e:
            raise ProtocolError(f"Malformed JSON listing from {url}: {e}") from e

        if isinstance(document, dict):
            document = document.get("files")
        if not isinstance(document, list):
            raise ProtocolError(f"JSON listing from {url} is neither a list nor an object with a 'files' list")

        files: list[DiscoveredFile] = []
        for raw in document:
            if not isinstance(raw, dict):
                continue
            entry = {str(k).lower().replace("_", ""): v for k, v in raw.items()}
            file_url = entry.get("url")
            name = entry.get("name") or (filename_from_url(file_url) if file_url else None)
            if not name or not request.accepts(str(name)):
                continue
            size = entry.get("size")
            files.append(
                DiscoveredFile(
                    filename=str(name),
                    locator=str(file_url) if file_url else combine_url(url, str(name)),
                    size=int(size) if isinstance(size, int | float) and size >= 0 else None,
                    last_modified=_parse_iso(entry.get("lastmodified")),
                    discovered_at=utcnow(),
                    content_type=entry.get("contenttype"),
                    etag=entry.get("etag"),
                )
            )
        return files

    async def _probe(self, session: aiohttp.ClientSession, url: str, request: ListingRequest) -> list[DiscoveredFile]:
        name = request.name_pattern
        if not name or _GLOB_CHARS & set(name):
            raise ProtocolError(f"Probe mode needs a literal filename, got pattern {name!r}")
        if not request.accepts(name):
            return []

        target = combine_url(url, name)
        logger.debug(f"HEAD {target}")
        async with session.head(target, **self._redirect_kwargs()) as resp:
            raise_for_status(resp.status, target)
            content_type = resp.headers.get("Content-Type", "")
            return [
                DiscoveredFile(
                    filename=name,
                    locator=target,
                    size=resp.content_length,
                    last_modified=parse_http_date(resp.headers.get("Last-Modified")),
                    discovered_at=utcnow(),
                    content_type=content_type.split(";", 1)[0] or None,
                    etag=resp.headers.get("ETag"),
                )
            ]


def raise_for_status(status: int, url: str) -> None:
    """Translate an HTTP status into the adapter error taxonomy."""
    if status < 300:
        return
    if status in (401, 403):
        raise AuthenticationFailedError(f"HTTP {status} from {url}")
    if status == 404:
        raise NotFoundError(f"HTTP 404 from {url}")
    if status in (408, 429) or status >= 500:
        raise NetworkError(f"HTTP {status} from {url}")
    # 3xx only reaches here when redirects are disabled
    raise ProtocolError(f"HTTP {status} from {url}")


def combine_url(base: str, path: str) -> str:
    if not path:
        return base
    return base.rstrip("/") + "/" + path.lstrip("/")


def filename_from_url(url: str) -> str:
    path = urlsplit(url).path
    return unquote(path.rstrip("/").rsplit("/", 1)[-1]) if path else ""


def parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def _parse_iso(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)
