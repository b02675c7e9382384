"""Copy-on-read mirroring of origin objects into the primary store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import TYPE_CHECKING

import anyio
import httpx
from botocore.exceptions import BotoCoreError, ClientError

from . import metrics
from .codec import OffsetLength, StoredObjectMetadata, metadata_from_headers
from .errors import MirrorError, OriginUnavailable, PartTransferFailed, StoreWriteFailed
from .origin import iter_response
from .pool import run_bounded
from .streams import collect, guarded, tee

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .codec import Reply
    from .context import RequestContext
    from .origin import OriginClient
    from .settings import MirrorSettings
    from .store import MultipartSession, PartResult, PrimaryStore

LOG = logging.getLogger("s3_mirror.mirror")

# Failures contained at the mirror boundary.
MIRROR_FAILURES = (MirrorError, httpx.HTTPError, ClientError, BotoCoreError)


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


@dataclass(frozen=True)
class PartPlan:
    part_size: int
    part_count: int


def plan_parts(size: int, settings: MirrorSettings) -> PartPlan | None:
    """Choose an aligned part size for a multipart mirror of ``size`` bytes.

    Returns ``None`` when even the largest allowed part would need more than
    ``max_parts`` parts.
    """
    if size <= 0:
        msg = "cannot plan parts for an empty object"
        raise ValueError(msg)
    alignment = settings.chunk_alignment
    num_chunks = _ceil_div(size, alignment)
    candidate = _ceil_div(num_chunks, settings.max_parts) * alignment
    part_size = min(max(candidate, settings.min_chunk_size), settings.max_chunk_size)
    part_count = _ceil_div(size, part_size)
    if part_count > settings.max_parts:
        return None
    return PartPlan(part_size=part_size, part_count=part_count)


def part_ranges(plan: PartPlan, size: int) -> list[tuple[int, int]]:
    """Inclusive byte ranges of every part, in part-number order."""
    return [
        (index * plan.part_size, min((index + 1) * plan.part_size - 1, size - 1))
        for index in range(plan.part_count)
    ]


class CopyOnReadEngine:
    def __init__(
        self,
        settings: MirrorSettings,
        origin: OriginClient,
        store: PrimaryStore,
    ) -> None:
        self._settings = settings
        self._origin = origin
        self._store = store

    async def copy_read(self, ctx: RequestContext) -> Reply:
        """Answer a primary-store miss from origin, mirroring on the side."""
        key = ctx.object_key
        if ctx.range_header is not None:
            return await self._ranged_read(ctx)

        head = await self._origin.head(key)
        if head.status_code != 200:
            LOG.debug("origin HEAD %s for %s, passing through", head.status_code, key)
            return await self._origin.passthrough(key, headers=ctx.headers)

        size = metadata_from_headers(head.headers).size
        if not self._settings.enabled or size == 0:
            LOG.debug("not mirroring %s (size=%d)", key, size)
            return await self._origin.passthrough(key, headers=ctx.headers)

        if size < self._settings.single_shot_threshold:
            return await self._single_shot(ctx)

        plan = plan_parts(size, self._settings)
        if plan is None:
            LOG.info("object %s too large to mirror (size=%d)", key, size)
            metrics.MIRROR_OPERATIONS.labels(strategy="multipart", outcome="skipped").inc()
            return await self._origin.passthrough(key, headers=ctx.headers)

        metadata = metadata_from_headers(head.headers)
        ctx.wait_until(self._mirror_multipart(key, metadata, plan), name="mirror")
        return await self._origin.passthrough(key, headers=ctx.headers)

    async def _ranged_read(self, ctx: RequestContext) -> Reply:
        reply = await self._origin.passthrough(ctx.object_key, headers=ctx.headers)
        spec = ctx.range_spec
        starts_at_zero = isinstance(spec, OffsetLength) and spec.offset == 0
        if self._settings.enabled and starts_at_zero and reply.status in {200, 206}:
            LOG.debug("range at offset 0 for %s, mirroring in background", ctx.object_key)
            ctx.wait_until(self.mirror(ctx.object_key), name="mirror")
        return reply

    async def _single_shot(self, ctx: RequestContext) -> Reply:
        key = ctx.object_key
        response = await self._origin.fetch(key, headers=ctx.headers)
        reply = self._origin.to_reply(response)
        if response.status_code != 200 or reply.body is None:
            return reply

        metadata = metadata_from_headers(response.headers)
        client_branch, store_branch = tee(reply.body)
        ctx.wait_until(self._write_single(key, metadata, store_branch), name="mirror")
        reply.body = guarded(client_branch)
        return reply

    async def mirror(self, key: str) -> bool:
        """Mirror ``key`` from origin without serving it to anyone."""
        try:
            head = await self._origin.head(key)
        except OriginUnavailable:
            LOG.warning("origin unavailable while mirroring %s", key, exc_info=True)
            return False
        if head.status_code != 200:
            LOG.debug("origin HEAD %s for %s, nothing to mirror", head.status_code, key)
            return False

        metadata = metadata_from_headers(head.headers)
        if metadata.size == 0:
            return False
        if metadata.size < self._settings.single_shot_threshold:
            try:
                response = await self._origin.fetch(key)
            except OriginUnavailable:
                LOG.warning("origin unavailable while mirroring %s", key, exc_info=True)
                return False
            if response.status_code != 200:
                await response.aclose()
                LOG.warning("origin GET %s for %s during mirror", response.status_code, key)
                return False
            metadata = metadata_from_headers(response.headers)
            return await self._write_single(key, metadata, iter_response(response))

        plan = plan_parts(metadata.size, self._settings)
        if plan is None:
            LOG.info("object %s too large to mirror (size=%d)", key, metadata.size)
            return False
        return await self._mirror_multipart(key, metadata, plan)

    async def _write_single(
        self,
        key: str,
        metadata: StoredObjectMetadata,
        stream: AsyncIterator[bytes],
    ) -> bool:
        try:
            body = await collect(stream)
            if body is None or len(body) != metadata.size:
                received = 0 if body is None else len(body)
                msg = f"expected {metadata.size} bytes from origin, got {received}"
                raise StoreWriteFailed(msg)
            await self._store.put(key, body, metadata)
        except MIRROR_FAILURES:
            metrics.MIRROR_OPERATIONS.labels(strategy="single", outcome="failure").inc()
            LOG.warning("failed to mirror s3://%s/%s (non-fatal)", self._store.bucket, key, exc_info=True)
            return False
        metrics.MIRROR_OPERATIONS.labels(strategy="single", outcome="success").inc()
        LOG.info("mirrored s3://%s/%s (%d bytes)", self._store.bucket, key, len(body))
        return True

    async def _mirror_multipart(
        self, key: str, metadata: StoredObjectMetadata, plan: PartPlan
    ) -> bool:
        try:
            session = await self._store.create_multipart_upload(
                key, metadata, part_size=plan.part_size, part_count=plan.part_count
            )
        except StoreWriteFailed:
            metrics.MIRROR_OPERATIONS.labels(strategy="multipart", outcome="failure").inc()
            LOG.warning("could not start multipart mirror of %s", key, exc_info=True)
            return False

        LOG.info(
            "mirroring %s in %d parts of %d bytes (upload %s)",
            key,
            plan.part_count,
            plan.part_size,
            session.upload_id,
        )
        tasks = [
            partial(self._transfer_part, session, number, start, end)
            for number, (start, end) in enumerate(part_ranges(plan, metadata.size), start=1)
        ]
        completed = False
        try:
            await run_bounded(self._settings.concurrency, tasks)
            await session.complete()
            completed = True
        except MIRROR_FAILURES:
            LOG.warning("multipart mirror of %s failed, aborting", key, exc_info=True)
            metrics.MIRROR_OPERATIONS.labels(strategy="multipart", outcome="failure").inc()
            return False
        finally:
            # The upload never outlives this call, cancellation included.
            if not completed:
                with anyio.CancelScope(shield=True):
                    await session.abort()

        metrics.MIRROR_OPERATIONS.labels(strategy="multipart", outcome="success").inc()
        LOG.info(
            "mirrored s3://%s/%s (%d bytes, %d parts)",
            self._store.bucket,
            key,
            metadata.size,
            plan.part_count,
        )
        return True

    async def _transfer_part(
        self, session: MultipartSession, part_number: int, start: int, end: int
    ) -> PartResult:
        expected = end - start + 1
        try:
            response = await self._origin.fetch(
                session.object_key, range_header=f"bytes={start}-{end}"
            )
        except OriginUnavailable as exc:
            raise PartTransferFailed(part_number, str(exc)) from exc

        if response.status_code != 206:
            await response.aclose()
            msg = f"expected 206 from origin for bytes={start}-{end}, got {response.status_code}"
            raise PartTransferFailed(part_number, msg)

        try:
            body = await collect(iter_response(response))
        except httpx.HTTPError as exc:
            raise PartTransferFailed(part_number, str(exc)) from exc
        if not body or len(body) != expected:
            received = len(body) if body else 0
            msg = f"expected {expected} bytes for bytes={start}-{end}, got {received}"
            raise PartTransferFailed(part_number, msg)

        try:
            return await session.upload_part(part_number, body)
        except (ClientError, BotoCoreError) as exc:
            raise PartTransferFailed(part_number, str(exc)) from exc
