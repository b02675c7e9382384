from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from . import metrics
from .codec import (
    Reply,
    etag_matches,
    is_satisfiable,
    resolve_range,
    unsatisfiable_reply,
)
from .streams import collect, guarded, tee

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .context import RequestContext
    from .settings import CacheSettings
    from .store import PrimaryStore

LOG = logging.getLogger("s3_mirror.cache")

CACHE_ERRORS = (RedisError, OSError)


class CacheEntry(BaseModel):
    """A cached whole-object 200 response."""

    model_config = ConfigDict(
        frozen=True, ser_json_bytes="base64", val_json_bytes="base64"
    )

    key: str
    headers: dict[str, str]
    body: bytes
    etag: str


class CacheBackend(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class MemoryBackend:
    """Process-local backend with per-entry expiry.

    Expired entries are purged on every write and at most ``max_entries``
    are held; beyond that the least recently used entry is evicted.
    """

    def __init__(self, max_entries: int = 1024) -> None:
        if max_entries < 1:
            msg = "max_entries must be at least 1"
            raise ValueError(msg)
        self._max_entries = max_entries
        self._entries: OrderedDict[str, tuple[float, bytes]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> bytes | None:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if time.monotonic() >= expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return value

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        now = time.monotonic()
        self._purge_expired(now)
        self._entries[key] = (now + ttl, value)
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            LOG.debug("evicted %s from memory cache", evicted)

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def close(self) -> None:
        self._entries.clear()


class RedisBackend:
    def __init__(self, client: Redis, prefix: str = "s3-mirror:") -> None:
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> RedisBackend:
        return cls(Redis.from_url(url, decode_responses=False))

    async def get(self, key: str) -> bytes | None:
        return await self._client.get(f"{self._prefix}{key}")

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self._client.setex(f"{self._prefix}{key}", ttl, value)

    async def delete(self, key: str) -> None:
        await self._client.delete(f"{self._prefix}{key}")

    async def close(self) -> None:
        await self._client.aclose()


def build_backend(settings: CacheSettings) -> CacheBackend:
    if settings.backend == "redis":
        return RedisBackend.from_url(settings.redis_url)
    return MemoryBackend(max_entries=settings.memory_max_entries)


class EdgeCache:
    """Response cache validated against the primary store on every hit."""

    def __init__(
        self,
        settings: CacheSettings,
        backend: CacheBackend,
        store: PrimaryStore,
    ) -> None:
        self._settings = settings
        self._backend = backend
        self._store = store

    @property
    def enabled(self) -> bool:
        return self._settings.enabled

    async def close(self) -> None:
        await self._backend.close()

    async def lookup(self, cache_key: str, object_key: str) -> CacheEntry | None:
        try:
            raw = await self._backend.get(cache_key)
        except CACHE_ERRORS as exc:
            LOG.warning("cache read failed for %s: %s", cache_key, exc)
            metrics.CACHE_LOOKUPS.labels(result="error").inc()
            return None
        if raw is None:
            LOG.debug("cache miss for %s", cache_key)
            metrics.CACHE_LOOKUPS.labels(result="miss").inc()
            return None

        try:
            entry = CacheEntry.model_validate_json(raw)
        except ValidationError:
            LOG.warning("discarding unreadable cache entry for %s", cache_key)
            await self._forget(cache_key)
            metrics.CACHE_LOOKUPS.labels(result="miss").inc()
            return None

        # The primary store is the source of truth for freshness.
        current = await self._store.head(object_key)
        if current is None or current.etag != entry.etag:
            LOG.debug("cache stale for %s", cache_key)
            await self._forget(cache_key)
            metrics.CACHE_LOOKUPS.labels(result="stale").inc()
            return None

        LOG.debug("cache hit for %s", cache_key)
        metrics.CACHE_LOOKUPS.labels(result="hit").inc()
        return entry

    def maybe_store(self, ctx: RequestContext, reply: Reply) -> Reply:
        """Arrange for ``reply`` to be cached if it is a cacheable whole object.

        The body is teed so the caller streams immediately while the cache
        write happens in the background.
        """
        if not self._eligible(reply):
            return reply

        reply.headers["cache-control"] = self._settings.cache_control
        headers = dict(reply.headers)
        etag = headers["etag"]
        if isinstance(reply.body, bytes):
            ctx.wait_until(
                self._write(ctx.cache_key, headers, etag, _single(reply.body)),
                name="cache",
            )
            return reply

        client_branch, cache_branch = tee(reply.body)
        ctx.wait_until(
            self._write(ctx.cache_key, headers, etag, cache_branch), name="cache"
        )
        reply.body = guarded(client_branch)
        return reply

    def _eligible(self, reply: Reply) -> bool:
        if not self.enabled or reply.status != 200 or reply.body is None:
            return False
        if not reply.headers.get("etag"):
            return False
        length = reply.headers.get("content-length")
        if length is None or not length.isdigit():
            return False
        return int(length) <= self._settings.max_entry_size

    async def _write(
        self,
        cache_key: str,
        headers: dict[str, str],
        etag: str,
        stream: AsyncIterator[bytes],
    ) -> None:
        body = await collect(stream, limit=self._settings.max_entry_size)
        if body is None:
            LOG.debug("response for %s exceeded cache entry limit", cache_key)
            return
        if str(len(body)) != headers.get("content-length"):
            LOG.warning("not caching truncated response for %s", cache_key)
            return

        entry = CacheEntry(key=cache_key, headers=headers, body=body, etag=etag)
        try:
            await self._backend.set(
                cache_key, entry.model_dump_json().encode(), self._settings.ttl
            )
        except CACHE_ERRORS as exc:
            LOG.warning("cache write failed for %s: %s", cache_key, exc)
            return
        LOG.debug("cached %s (%d bytes)", cache_key, len(body))

    async def _forget(self, cache_key: str) -> None:
        try:
            await self._backend.delete(cache_key)
        except CACHE_ERRORS as exc:
            LOG.warning("cache delete failed for %s: %s", cache_key, exc)


def serve_entry(entry: CacheEntry, ctx: RequestContext) -> Reply:
    """Answer a request from a fresh cache entry, honouring range and ETag."""
    headers = dict(entry.headers)
    if etag_matches(ctx.headers.get("if-none-match"), entry.etag):
        headers.pop("content-length", None)
        return Reply(status=304, headers=headers, body=None)

    spec = ctx.range_spec
    if spec is None:
        return Reply(status=200, headers=headers, body=entry.body)

    size = len(entry.body)
    if not is_satisfiable(spec, size):
        return unsatisfiable_reply(size)
    start, end = resolve_range(spec, size)
    headers["content-length"] = str(end - start + 1)
    headers["content-range"] = f"bytes {start}-{end}/{size}"
    return Reply(status=206, headers=headers, body=entry.body[start : end + 1])


async def _single(body: bytes) -> AsyncIterator[bytes]:
    yield body
