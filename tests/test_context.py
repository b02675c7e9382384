"""Tests for per-request context and background work supervision."""

from __future__ import annotations

import asyncio
import logging

import pytest
from prometheus_client import REGISTRY
from s3_mirror.codec import OffsetLength
from s3_mirror.context import BackgroundSupervisor, RequestContext, object_key_from_path


def background_failures(task: str) -> float:
    value = REGISTRY.get_sample_value("s3_mirror_background_failures_total", {"task": task})
    return value or 0.0


class TestRequestContext:
    """Test values derived from the incoming request."""

    def test_build(self):
        ctx = RequestContext.build(
            method="get",
            path="/photos/2024/a+b.jpg",
            url="https://gateway.test/photos/2024/a+b.jpg",
            headers={"range": "bytes=0-99", "if-none-match": '"abc"', "accept": "*/*"},
            supervisor=BackgroundSupervisor(),
        )
        assert ctx.method == "GET"
        assert ctx.object_key == "photos/2024/a+b.jpg"
        assert ctx.cache_key == "https://gateway.test/photos/2024/a+b.jpg"
        assert ctx.range_spec == OffsetLength(offset=0, length=100)
        assert ctx.conditional_headers == {"if-none-match": '"abc"'}

    @pytest.mark.parametrize(
        ("path", "key"),
        [("/a.txt", "a.txt"), ("/dir/sub/", "dir/sub"), ("/", ""), ("//a", "a")],
    )
    def test_object_key_from_path(self, path, key):
        assert object_key_from_path(path) == key


@pytest.mark.anyio
class TestBackgroundSupervisor:
    """Test fire-and-forget task handling."""

    async def test_failure_is_logged_and_counted(self, caplog):
        supervisor = BackgroundSupervisor()

        async def boom():
            msg = "store unreachable"
            raise RuntimeError(msg)

        before = background_failures("mirror")
        with caplog.at_level(logging.WARNING, logger="s3_mirror.context"):
            supervisor.spawn(boom(), name="mirror:a.txt")
            await supervisor.join()

        assert supervisor.pending == 0
        assert "background task mirror:a.txt failed" in caplog.text
        assert background_failures("mirror") == before + 1

    async def test_drain_waits_for_short_tasks(self):
        supervisor = BackgroundSupervisor()
        finished = []

        async def work():
            await asyncio.sleep(0.01)
            finished.append(True)

        supervisor.spawn(work(), name="cache:a.txt")
        await supervisor.drain(timeout=5)
        assert finished == [True]
        assert supervisor.pending == 0

    async def test_drain_cancels_after_grace_period(self, caplog):
        """Test that work still running after the grace period is abandoned."""
        supervisor = BackgroundSupervisor()
        started = asyncio.Event()

        async def forever():
            started.set()
            await asyncio.sleep(3600)

        supervisor.spawn(forever(), name="mirror:big.bin")
        await started.wait()
        with caplog.at_level(logging.WARNING, logger="s3_mirror.context"):
            await supervisor.drain(timeout=0.01)

        assert supervisor.pending == 0
        assert "abandoned 1 background task(s)" in caplog.text

    async def test_wait_until_names_task_after_key(self):
        supervisor = BackgroundSupervisor()
        ctx = RequestContext.build(
            method="GET", path="/a.txt", url="u", headers={}, supervisor=supervisor
        )

        async def noop():
            return None

        ctx.wait_until(noop(), name="mirror")
        names = [task.get_name() for task in asyncio.all_tasks()]
        assert "mirror:a.txt" in names
        await supervisor.join()
