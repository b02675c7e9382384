from __future__ import annotations

import hashlib
import io
import threading
import uuid
from datetime import UTC, datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote

import httpx
import pytest
import respx
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from litestar import Request
from litestar.response import Stream

from s3_mirror import (
    CacheSettings,
    GatewayConfig,
    GatewaySettings,
    MirrorGateway,
    MirrorSettings,
    OriginSettings,
    StoreSettings,
)
from s3_mirror.cache import MemoryBackend

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Generator

    from litestar.response import Response

MIB = 1024 * 1024
ORIGIN_URL = "https://origin.test/pub/"
BUCKET = "mirror"
LAST_MODIFIED = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _client_error(status: int, code: str, operation: str, message: str = "") -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": message or code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


def _etag(data: bytes) -> str:
    return f'"{hashlib.md5(data).hexdigest()}"'  # noqa: S324


def _slice(data: bytes, header: str) -> tuple[int, int] | None:
    """Resolve a single ``bytes=`` range the way S3 does; ``None`` if ignored."""
    unit, _, spec = header.partition("=")
    if unit.strip() != "bytes" or "," in spec or "-" not in spec:
        return None
    start_str, end_str = spec.split("-", 1)
    size = len(data)
    if not start_str:
        start, end = max(size - int(end_str), 0), size - 1
    else:
        start = int(start_str)
        end = min(int(end_str), size - 1) if end_str else size - 1
    return start, end


class FakeS3Client:
    """In-memory stand-in for the subset of a boto3 S3 client the gateway uses."""

    def __init__(self, buckets: set[str] | None = None) -> None:
        self.buckets = set(buckets or {BUCKET})
        self.objects: dict[tuple[str, str], dict[str, Any]] = {}
        self.uploads: dict[str, dict[str, Any]] = {}
        self.aborted: list[str] = []
        self.calls: list[str] = []
        self.fail_part_numbers: set[int] = set()
        self.fail_puts = False
        self.fail_abort = False
        self._lock = threading.Lock()

    def _record(self, name: str) -> None:
        with self._lock:
            self.calls.append(name)

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def add_object(self, key: str, data: bytes, **fields: Any) -> None:
        self.objects[(BUCKET, key)] = {
            "data": data,
            "ETag": _etag(data),
            "LastModified": LAST_MODIFIED,
            "ContentType": fields.pop("ContentType", "application/octet-stream"),
            "Metadata": fields.pop("Metadata", {}),
            **fields,
        }

    def _lookup(self, bucket: str, key: str, operation: str) -> dict[str, Any]:
        if bucket not in self.buckets:
            raise _client_error(404, "NoSuchBucket", operation)
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            code = "404" if operation == "HeadObject" else "NoSuchKey"
            raise _client_error(404, code, operation) from None

    @staticmethod
    def _fields(obj: dict[str, Any]) -> dict[str, Any]:
        return {name: value for name, value in obj.items() if name != "data"}

    def head_bucket(self, Bucket: str) -> dict[str, Any]:
        self._record("head_bucket")
        if Bucket not in self.buckets:
            raise _client_error(404, "404", "HeadBucket")
        return {}

    def create_bucket(self, Bucket: str, **_: Any) -> dict[str, Any]:
        self._record("create_bucket")
        self.buckets.add(Bucket)
        return {}

    def head_object(self, Bucket: str, Key: str) -> dict[str, Any]:
        self._record("head_object")
        obj = self._lookup(Bucket, Key, "HeadObject")
        return {**self._fields(obj), "ContentLength": len(obj["data"])}

    def get_object(
        self,
        Bucket: str,
        Key: str,
        Range: str | None = None,
        IfNoneMatch: str | None = None,
        IfMatch: str | None = None,
        **_: Any,
    ) -> dict[str, Any]:
        self._record("get_object")
        obj = self._lookup(Bucket, Key, "GetObject")
        if IfMatch is not None and IfMatch != obj["ETag"]:
            raise _client_error(412, "PreconditionFailed", "GetObject")
        if IfNoneMatch is not None and IfNoneMatch in {obj["ETag"], "*"}:
            raise _client_error(304, "304", "GetObject", "Not Modified")

        data = obj["data"]
        result = self._fields(obj)
        bounds = _slice(data, Range) if Range else None
        if bounds is not None:
            start, end = bounds
            if start >= len(data):
                raise _client_error(416, "InvalidRange", "GetObject", "The requested range is not satisfiable")
            result["ContentRange"] = f"bytes {start}-{end}/{len(data)}"
            data = data[start : end + 1]
        result["ContentLength"] = len(data)
        result["Body"] = StreamingBody(io.BytesIO(data), len(data))
        return result

    def put_object(self, Bucket: str, Key: str, Body: bytes, **fields: Any) -> dict[str, Any]:
        self._record("put_object")
        if self.fail_puts:
            raise _client_error(500, "InternalError", "PutObject")
        self.objects[(Bucket, Key)] = {
            "data": Body,
            "ETag": _etag(Body),
            "LastModified": LAST_MODIFIED,
            **fields,
        }
        return {"ETag": _etag(Body)}

    def create_multipart_upload(self, Bucket: str, Key: str, **fields: Any) -> dict[str, Any]:
        self._record("create_multipart_upload")
        upload_id = uuid.uuid4().hex
        with self._lock:
            self.uploads[upload_id] = {"bucket": Bucket, "key": Key, "fields": fields, "parts": {}}
        return {"UploadId": upload_id}

    def upload_part(
        self, Bucket: str, Key: str, UploadId: str, PartNumber: int, Body: bytes
    ) -> dict[str, Any]:
        self._record("upload_part")
        if PartNumber in self.fail_part_numbers:
            raise _client_error(500, "InternalError", "UploadPart")
        with self._lock:
            self.uploads[UploadId]["parts"][PartNumber] = Body
        return {"ETag": _etag(Body)}

    def complete_multipart_upload(
        self, Bucket: str, Key: str, UploadId: str, MultipartUpload: dict[str, Any]
    ) -> dict[str, Any]:
        self._record("complete_multipart_upload")
        upload = self.uploads.pop(UploadId)
        parts = MultipartUpload["Parts"]
        numbers = [part["PartNumber"] for part in parts]
        if numbers != sorted(numbers):
            raise _client_error(400, "InvalidPartOrder", "CompleteMultipartUpload")
        for part in parts:
            if _etag(upload["parts"][part["PartNumber"]]) != part["ETag"]:
                raise _client_error(400, "InvalidPart", "CompleteMultipartUpload")
        data = b"".join(upload["parts"][number] for number in numbers)
        etag = f'"{hashlib.md5(data).hexdigest()}-{len(parts)}"'  # noqa: S324
        self.objects[(Bucket, Key)] = {
            "data": data,
            "ETag": etag,
            "LastModified": LAST_MODIFIED,
            **upload["fields"],
        }
        return {"ETag": etag}

    def abort_multipart_upload(self, Bucket: str, Key: str, UploadId: str) -> dict[str, Any]:
        self._record("abort_multipart_upload")
        if self.fail_abort:
            raise _client_error(500, "InternalError", "AbortMultipartUpload")
        self.uploads.pop(UploadId, None)
        self.aborted.append(UploadId)
        return {}


class FakeOrigin:
    """respx side effect serving objects with HEAD and single-range support."""

    def __init__(self, prefix: str = "/pub/") -> None:
        self.prefix = prefix
        self.objects: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.fail_ranges: set[str] = set()
        self.ignore_ranges = False
        self.error: Exception | None = None

    def add(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    def ranged_requests(self) -> list[str]:
        return [r.headers["range"] for r in self.requests if "range" in r.headers]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        key = unquote(request.url.raw_path.decode("ascii").split("?", 1)[0])
        key = key.removeprefix(self.prefix)
        data = self.objects.get(key)
        if data is None:
            return httpx.Response(404, content=b"" if request.method == "HEAD" else b"NoSuchKey")

        headers = {
            "etag": _etag(data),
            "content-type": "application/octet-stream",
            "last-modified": format_datetime(LAST_MODIFIED, usegmt=True),
            "x-amz-meta-source": "origin",
        }
        if request.method == "HEAD":
            return httpx.Response(200, headers={**headers, "content-length": str(len(data))})

        range_header = request.headers.get("range")
        if range_header in self.fail_ranges:
            return httpx.Response(500, content=b"InternalError")
        bounds = _slice(data, range_header) if range_header and not self.ignore_ranges else None
        if bounds is None:
            return httpx.Response(200, headers=headers, content=data)
        start, end = bounds
        if start >= len(data):
            return httpx.Response(416, headers={"content-range": f"bytes */{len(data)}"})
        headers["content-range"] = f"bytes {start}-{end}/{len(data)}"
        return httpx.Response(206, headers=headers, content=data[start : end + 1])


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def origin() -> Generator[FakeOrigin]:
    fake = FakeOrigin()
    with respx.mock(assert_all_called=False) as router:
        router.route(host="origin.test").mock(side_effect=fake)
        yield fake


@pytest.fixture
def mirror_settings() -> MirrorSettings:
    return MirrorSettings(
        single_shot_threshold=8 * MIB,
        chunk_alignment=8 * MIB,
        min_chunk_size=5 * MIB,
        max_chunk_size=5 * 1024 * MIB,
        max_parts=5,
        concurrency=5,
    )


@pytest.fixture
def config(mirror_settings: MirrorSettings) -> GatewayConfig:
    return GatewayConfig(
        store=StoreSettings(bucket=BUCKET),
        origin=OriginSettings(url=ORIGIN_URL),
        mirror=mirror_settings,
        cache=CacheSettings(enabled=True, ttl=60),
        gateway=GatewaySettings(),
    )


@pytest.fixture
def cache_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
async def gateway(
    config: GatewayConfig,
    fake_s3: FakeS3Client,
    origin: FakeOrigin,
    cache_backend: MemoryBackend,
) -> AsyncGenerator[MirrorGateway]:
    gateway = MirrorGateway(config, store_client=fake_s3, cache_backend=cache_backend)
    await gateway.startup()
    yield gateway
    await gateway.shutdown()


def make_request(
    method: str,
    path: str,
    headers: dict[str, str] | None = None,
) -> Request:
    raw_headers = [(b"host", b"gateway.test")]
    for name, value in (headers or {}).items():
        raw_headers.append((name.lower().encode("latin-1"), value.encode("latin-1")))
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method,
        "scheme": "https",
        "path": path,
        "raw_path": path.encode("utf-8"),
        "root_path": "",
        "query_string": b"",
        "headers": raw_headers,
        "server": ("gateway.test", 443),
    }

    async def receive() -> dict[str, Any]:
        return {"type": "http.request", "body": b""}

    return Request(scope, receive)


async def read_body(response: Response) -> bytes:
    if isinstance(response, Stream):
        return b"".join([chunk async for chunk in response.iterator])
    return response.content


@pytest.fixture
def request_factory():
    return make_request


@pytest.fixture
def body_of():
    return read_body
