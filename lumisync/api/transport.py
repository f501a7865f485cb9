"""
Thin request/response layer over aiohttp.

Login and API calls only ever need a fully buffered response, so everything
above this module deals in ``HttpResponse`` values and never holds an aiohttp
response open. Connection-level failures surface as ``NetworkError``.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Protocol

import aiohttp

from lumisync.exceptions import NetworkError, ProtocolError

log = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0"
)


@dataclass(frozen=True)
class HttpResponse:
    status: int
    url: str
    body: bytes = b""
    headers: Mapping[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return self.status in (301, 302, 303, 307, 308)

    @property
    def location(self) -> Optional[str]:
        return self.headers.get("Location") or self.headers.get("location")

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        """Decodes the body as JSON, raising ``ProtocolError`` when it is not."""
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError) as e:
            raise ProtocolError(
                f"Unable to decode JSON response from {self.url} (HTTP {self.status})"
            ) from e


class Transport(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_redirects: bool = True,
    ) -> HttpResponse: ...

    async def close(self) -> None: ...


class AiohttpTransport:
    """
    Owns the aiohttp ``ClientSession`` (and with it the cookie jar the login
    flow depends on). The same session is lent to the downloader so file
    transfers share the connection pool.
    """

    def __init__(self, max_connections: int = 16):
        self._max_connections = max_connections
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        """The underlying session, created on first use."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(
                limit=self._max_connections * 2,
                limit_per_host=self._max_connections,
                ttl_dns_cache=300,
                enable_cleanup_closed=True,
            )
            self._session = aiohttp.ClientSession(
                connector=connector,
                cookie_jar=aiohttp.CookieJar(),
                headers={"User-Agent": USER_AGENT},
                timeout=aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=60),
            )
        return self._session

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        data: Optional[Mapping[str, str]] = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_redirects: bool = True,
    ) -> HttpResponse:
        try:
            async with self.session.request(
                method,
                url,
                params=params,
                data=data,
                headers=headers,
                allow_redirects=allow_redirects,
            ) as r:
                body = await r.read()
                return HttpResponse(
                    status=r.status,
                    url=str(r.url),
                    body=body,
                    headers=dict(r.headers),
                )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            # Only the method and host are logged; query strings can carry codes
            log.debug(f"{method} {url.split('?', 1)[0]} failed: {type(e).__name__}")
            raise NetworkError(f"Request to {url.split('?', 1)[0]} failed: {e}") from e

    async def close(self) -> None:
        """Gracefully closes the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
