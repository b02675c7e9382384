from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from litestar.enums import MediaType
from litestar.response import Response, Stream

from .cache import CacheBackend, EdgeCache, build_backend, serve_entry
from .codec import Reply, build_reply, etag_matches, object_headers
from .context import BackgroundSupervisor, RequestContext, object_key_from_path
from .errors import OriginUnavailable, StoreRejected
from .mirror import CopyOnReadEngine
from .origin import OriginClient
from .settings import GatewayConfig
from .store import PrimaryStore

if TYPE_CHECKING:
    import httpx
    from litestar import Request

LOG = logging.getLogger("s3_mirror.gateway")

ALLOWED_METHODS = ("GET", "HEAD", "OPTIONS")
ALLOW_HEADER = ", ".join(ALLOWED_METHODS)


class MirrorGateway:
    """Routes every read to the edge cache, the primary store or the origin."""

    def __init__(
        self,
        config: GatewayConfig,
        *,
        store_client: Any | None = None,
        origin_transport: httpx.AsyncBaseTransport | None = None,
        cache_backend: CacheBackend | None = None,
    ) -> None:
        self._config = config
        self._supervisor = BackgroundSupervisor()
        self._store = PrimaryStore(config.store, client=store_client)
        self._origin = OriginClient(config.origin, transport=origin_transport)
        self._cache = EdgeCache(
            config.cache,
            cache_backend if cache_backend is not None else build_backend(config.cache),
            self._store,
        )
        self._engine = CopyOnReadEngine(config.mirror, self._origin, self._store)

    @classmethod
    def from_env(cls) -> MirrorGateway:
        """Create a MirrorGateway from environment variables.

        Returns:
            MirrorGateway configured from environment variables.
        """
        return cls(GatewayConfig.from_env())

    @property
    def config(self) -> GatewayConfig:
        return self._config

    @property
    def supervisor(self) -> BackgroundSupervisor:
        return self._supervisor

    @property
    def engine(self) -> CopyOnReadEngine:
        return self._engine

    async def startup(self) -> None:
        await self._origin.startup()
        LOG.info(
            "S3 mirror ready (store=%s/%s, origin=%s, cache=%s)",
            self._config.store.endpoint or "aws",
            self._store.bucket,
            self._origin.base_url,
            self._config.cache.backend if self._cache.enabled else "disabled",
        )

    async def shutdown(self) -> None:
        await self._supervisor.drain(self._config.gateway.shutdown_grace_period)
        await self._origin.shutdown()
        await self._cache.close()

    async def handle(self, request: Request, path: str) -> Response:
        ctx = self._context(request, path)
        LOG.debug("handle method=%s key=%s", ctx.method, ctx.object_key)
        try:
            reply = await self.dispatch(ctx)
        except StoreRejected as error:
            reply = Reply(status=error.status_code, headers={}, body=str(error).encode())
        except OriginUnavailable as error:
            LOG.warning("origin unavailable for %s: %s", ctx.object_key, error)
            reply = Reply(status=error.status_code, headers={}, body=b"Bad Gateway")
        return to_response(reply)

    async def passthrough(self, request: Request, path: str) -> Response:
        """Forward the request to origin untouched by mirroring or caching."""
        reply = await self._origin.passthrough(
            object_key_from_path(path),
            method=request.method.upper(),
            headers=request.headers,
        )
        return to_response(reply)

    async def dispatch(self, ctx: RequestContext) -> Reply:
        if ctx.method == "OPTIONS":
            return Reply(status=200, headers={"allow": ALLOW_HEADER}, body=b"")
        if ctx.method == "HEAD":
            return await self._head(ctx)
        if ctx.method == "GET":
            return await self._get(ctx)
        return Reply(
            status=405, headers={"allow": ALLOW_HEADER}, body=b"Method Not Allowed"
        )

    async def _head(self, ctx: RequestContext) -> Reply:
        key = ctx.object_key
        metadata = await self._store.head(key) if key else None
        if metadata is None:
            LOG.debug("HEAD miss for %s, asking origin", key)
            return await self._origin.passthrough(key, method="HEAD", headers=ctx.headers)
        if etag_matches(ctx.headers.get("if-none-match"), metadata.etag):
            return build_reply(metadata, None, None)
        return Reply(status=200, headers=object_headers(metadata), body=None)

    async def _get(self, ctx: RequestContext) -> Reply:
        key = ctx.object_key
        if not key:
            return await self._origin.passthrough(key, headers=ctx.headers)

        if self._cache.enabled and _cache_can_answer(ctx):
            entry = await self._cache.lookup(ctx.cache_key, key)
            if entry is not None:
                return serve_entry(entry, ctx)

        # Unparseable ranges are not sent to the store, which then serves
        # the whole object just as it would for an ignored Range header.
        range_header = ctx.range_header if ctx.range_spec is not None else None
        stored = await self._store.get(
            key, range_header=range_header, conditional=ctx.conditional_headers
        )
        if stored is not None:
            LOG.debug("serving %s from primary store", key)
            body = stored.iter_body() if stored.body is not None else None
            reply = build_reply(stored.metadata, ctx.range_spec, body)
            return self._cache.maybe_store(ctx, reply)

        LOG.debug("serving %s from origin", key)
        reply = await self._engine.copy_read(ctx)
        return self._cache.maybe_store(ctx, reply)

    def _context(self, request: Request, path: str) -> RequestContext:
        return RequestContext.build(
            method=request.method,
            path=path,
            url=str(request.url),
            headers=request.headers,
            supervisor=self._supervisor,
        )


def _cache_can_answer(ctx: RequestContext) -> bool:
    if ctx.range_header is not None and ctx.range_spec is None:
        return False
    return set(ctx.conditional_headers) <= {"if-none-match"}


def to_response(reply: Reply) -> Response:
    if reply.body is None or isinstance(reply.body, bytes):
        return Response(
            content=reply.body or b"",
            status_code=reply.status,
            headers=reply.headers,
            media_type=MediaType.TEXT,
        )
    return Stream(
        content=reply.body,
        status_code=reply.status,
        headers=reply.headers,
        media_type="application/octet-stream",
    )
