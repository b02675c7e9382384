from __future__ import annotations

from collections import deque
from typing import TYPE_CHECKING

import anyio

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class StreamTee:
    """Split one async byte stream into independent readers.

    Each branch keeps its own cursor over chunks buffered from the shared
    source, so a slow reader never holds back a fast one. The source is read
    once and closed when it is exhausted or every branch has been closed.
    """

    def __init__(self, source: AsyncIterator[bytes], branches: int = 2) -> None:
        if branches < 1:
            msg = "a tee needs at least one branch"
            raise ValueError(msg)
        self._source = source
        self._buffers: list[deque[bytes]] = [deque() for _ in range(branches)]
        self._open = [True] * branches
        self._lock = anyio.Lock()
        self._exhausted = False
        self._closed = False
        self._error: BaseException | None = None
        self._branches = tuple(TeeBranch(self, index) for index in range(branches))

    @property
    def branches(self) -> tuple[TeeBranch, ...]:
        return self._branches

    async def _next(self, index: int) -> bytes:
        buffer = self._buffers[index]
        if not self._open[index]:
            raise StopAsyncIteration
        if not buffer:
            async with self._lock:
                if not buffer:
                    await self._pull()
        if buffer:
            return buffer.popleft()
        await self._release(index)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    async def _pull(self) -> None:
        if self._exhausted or self._error is not None:
            return
        try:
            chunk = await self._source.__anext__()
        except StopAsyncIteration:
            self._exhausted = True
            return
        except Exception as exc:
            self._error = exc
            return
        for index, buffer in enumerate(self._buffers):
            if self._open[index]:
                buffer.append(chunk)

    async def _release(self, index: int) -> None:
        self._open[index] = False
        self._buffers[index].clear()
        if not any(self._open):
            await self._close_source()

    async def _close_source(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            await aclose()


class TeeBranch:
    """One reader of a :class:`StreamTee`."""

    def __init__(self, tee: StreamTee, index: int) -> None:
        self._tee = tee
        self._index = index

    def __aiter__(self) -> TeeBranch:
        return self

    async def __anext__(self) -> bytes:
        return await self._tee._next(self._index)

    async def aclose(self) -> None:
        await self._tee._release(self._index)


def tee(source: AsyncIterator[bytes], branches: int = 2) -> tuple[TeeBranch, ...]:
    return StreamTee(source, branches).branches


async def guarded(branch: TeeBranch) -> AsyncIterator[bytes]:
    """Yield from ``branch`` and release it however iteration ends."""
    try:
        async for chunk in branch:
            yield chunk
    finally:
        await branch.aclose()


async def collect(stream: AsyncIterator[bytes], limit: int | None = None) -> bytes | None:
    """Read ``stream`` fully; return ``None`` once more than ``limit`` bytes arrive."""
    parts: list[bytes] = []
    total = 0
    async for chunk in stream:
        total += len(chunk)
        if limit is not None and total > limit:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            return None
        parts.append(chunk)
    return b"".join(parts)
