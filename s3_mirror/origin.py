from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import quote

import httpx

from .codec import Reply
from .errors import OriginUnavailable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping

    from .settings import OriginSettings

LOG = logging.getLogger("s3_mirror.origin")

HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Never forwarded upstream: compression would change byte lengths and break
# range arithmetic, and host belongs to the origin.
DROPPED_REQUEST_HEADERS = HOP_BY_HOP | {"host", "accept-encoding", "content-length"}


def encode_plus(url: str) -> str:
    """Percent-encode literal ``+`` in the path; the origin reads it as a space."""
    path, sep, query = url.partition("?")
    return path.replace("+", "%2B") + sep + query


def prepare_outgoing_headers(headers: Mapping[str, str]) -> dict[str, str]:
    prepared: dict[str, str] = {}
    for key, value in headers.items():
        lowered = key.lower()
        if lowered in DROPPED_REQUEST_HEADERS:
            continue
        prepared[lowered] = value
    return prepared


def prepare_response_headers(headers: Iterable[tuple[bytes, bytes]]) -> dict[str, str]:
    prepared: dict[str, str] = {}
    for key_bytes, value_bytes in headers:
        key = key_bytes.decode("latin-1").lower()
        if key in HOP_BY_HOP:
            continue
        prepared[key] = value_bytes.decode("latin-1")
    return prepared


class OriginClient:
    """HTTP access to the origin object store."""

    def __init__(
        self,
        settings: OriginSettings,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return self._settings.url

    async def startup(self) -> None:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.timeout, read=self._settings.read_timeout),
            limits=httpx.Limits(max_connections=self._settings.max_connections),
            transport=self._transport,
            trust_env=False,
        )
        self._client.headers.pop("accept-encoding", None)

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def object_url(self, key: str) -> str:
        return f"{self._settings.url}{quote(key, safe='/+')}"

    async def fetch(
        self,
        key: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        range_header: str | None = None,
    ) -> httpx.Response:
        """Send a streamed request for ``key`` to the origin.

        The caller owns the returned response and must close it.
        """
        if self._client is None:
            message = "origin client not initialised"
            raise RuntimeError(message)

        url = encode_plus(self.object_url(key))
        outgoing = prepare_outgoing_headers(headers or {})
        if range_header is not None:
            outgoing["range"] = range_header
        if "range" in outgoing:
            LOG.debug("fetching %s from origin %s", outgoing["range"], url)
        else:
            LOG.debug("fetching whole object from origin %s (%s)", url, method)

        request = self._client.build_request(method, url, headers=outgoing)
        try:
            return await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            msg = f"origin request failed for {url}: {exc}"
            raise OriginUnavailable(msg) from exc

    async def head(
        self, key: str, *, headers: Mapping[str, str] | None = None
    ) -> httpx.Response:
        response = await self.fetch(key, method="HEAD", headers=headers)
        await response.aclose()
        return response

    async def passthrough(
        self,
        key: str,
        *,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        range_header: str | None = None,
    ) -> Reply:
        if method == "HEAD":
            response = await self.head(key, headers=headers)
            return Reply(
                status=response.status_code,
                headers=prepare_response_headers(response.headers.raw),
                body=None,
            )
        response = await self.fetch(
            key, method=method, headers=headers, range_header=range_header
        )
        return self.to_reply(response)

    def to_reply(self, response: httpx.Response) -> Reply:
        return Reply(
            status=response.status_code,
            headers=prepare_response_headers(response.headers.raw),
            body=iter_response(response),
        )


async def iter_response(response: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    finally:
        await response.aclose()
