from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from . import metrics
from .codec import RangeSpec, parse_range

if TYPE_CHECKING:
    from collections.abc import Coroutine, Mapping

LOG = logging.getLogger("s3_mirror.context")


class BackgroundSupervisor:
    """Owns fire-and-forget work that must outlive the response.

    Tasks are never awaited by the request that started them. Failures are
    logged and counted; ``drain`` gives outstanding work a grace period at
    shutdown and cancels whatever is left.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(self._guard(coro, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Coroutine[Any, Any, Any], name: str) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            LOG.warning("background task %s cancelled", name)
            raise
        except Exception:
            metrics.BACKGROUND_FAILURES.labels(task=name.split(":", 1)[0]).inc()
            LOG.warning("background task %s failed", name, exc_info=True)

    async def join(self) -> None:
        """Wait for every task currently registered, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self, timeout: float) -> None:
        if not self._tasks:
            return
        LOG.info("waiting for %d background task(s)", len(self._tasks))
        _, still_running = await asyncio.wait(list(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            LOG.warning("abandoned %d background task(s) at shutdown", len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)


@dataclass
class RequestContext:
    """Values derived once per request and shared by every component."""

    method: str
    object_key: str
    cache_key: str
    headers: Mapping[str, str]
    supervisor: BackgroundSupervisor
    range_header: str | None = None
    range_spec: RangeSpec | None = field(default=None)

    @classmethod
    def build(
        cls,
        *,
        method: str,
        path: str,
        url: str,
        headers: Mapping[str, str],
        supervisor: BackgroundSupervisor,
    ) -> RequestContext:
        range_header = headers.get("range")
        return cls(
            method=method.upper(),
            object_key=object_key_from_path(path),
            cache_key=url,
            headers=headers,
            supervisor=supervisor,
            range_header=range_header,
            range_spec=parse_range(range_header),
        )

    @property
    def conditional_headers(self) -> dict[str, str]:
        return {
            name: value
            for name in (
                "if-none-match",
                "if-match",
                "if-modified-since",
                "if-unmodified-since",
            )
            if (value := self.headers.get(name))
        }

    def wait_until(self, coro: Coroutine[Any, Any, Any], *, name: str) -> None:
        """Run ``coro`` after the response without the caller awaiting it."""
        self.supervisor.spawn(coro, name=f"{name}:{self.object_key}")


def object_key_from_path(path: str) -> str:
    trimmed = path.lstrip("/")
    if trimmed.endswith("/"):
        trimmed = trimmed.rstrip("/")
    return trimmed
