"""Translation between stored-object metadata, byte ranges and HTTP replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from email.utils import format_datetime, parsedate_to_datetime
from typing import TYPE_CHECKING, Any, Union

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Mapping


@dataclass(frozen=True)
class OffsetLength:
    """Byte range starting at ``offset``; ``length=None`` runs to the end."""

    offset: int = 0
    length: int | None = None


@dataclass(frozen=True)
class Suffix:
    """The last ``n`` bytes of an object."""

    n: int


RangeSpec = Union[OffsetLength, Suffix]


@dataclass(frozen=True)
class StoredObjectMetadata:
    etag: str
    size: int
    content_type: str | None = None
    last_modified: datetime | None = None
    custom_headers: Mapping[str, str] = field(default_factory=dict)


@dataclass
class Reply:
    """Transport-neutral response produced by the gateway components."""

    status: int
    headers: dict[str, str]
    body: bytes | AsyncIterator[bytes] | None = None


# boto3 response field -> header for headers stored alongside an object.
STORED_HEADER_FIELDS = {
    "cache-control": "CacheControl",
    "content-disposition": "ContentDisposition",
    "content-encoding": "ContentEncoding",
    "content-language": "ContentLanguage",
    "expires": "Expires",
}


def parse_range(header: str | None) -> RangeSpec | None:
    """Parse a single ``bytes=`` range header.

    Anything that is not exactly one well-formed byte range yields ``None``;
    the caller still forwards the raw header so the store or origin can
    answer with its own status.
    """
    if not header:
        return None
    unit, sep, ranges = header.partition("=")
    if not sep or unit.strip().lower() != "bytes" or "," in ranges:
        return None
    start_str, sep, end_str = ranges.strip().partition("-")
    if not sep:
        return None
    start_str, end_str = start_str.strip(), end_str.strip()
    if not start_str.isdigit() and start_str:
        return None
    if not end_str.isdigit() and end_str:
        return None

    if not start_str:
        if not end_str or int(end_str) == 0:
            return None
        return Suffix(int(end_str))

    start = int(start_str)
    if not end_str:
        return OffsetLength(offset=start)
    end = int(end_str)
    if end < start:
        return None
    return OffsetLength(offset=start, length=end - start + 1)


def resolve_range(spec: RangeSpec, size: int) -> tuple[int, int]:
    """Return the inclusive ``(start, end)`` byte positions of ``spec``."""
    if isinstance(spec, Suffix):
        return max(size - spec.n, 0), size - 1
    if spec.length is None:
        return spec.offset, size - 1
    return spec.offset, min(spec.offset + spec.length - 1, size - 1)


def is_satisfiable(spec: RangeSpec, size: int) -> bool:
    if isinstance(spec, Suffix):
        return size > 0
    return spec.offset < size


def content_range(spec: RangeSpec, size: int) -> str:
    start, end = resolve_range(spec, size)
    return f"bytes {start}-{end}/{size}"


def response_status(*, has_body: bool, spec: RangeSpec | None) -> int:
    if not has_body:
        return 304
    if spec is None:
        return 200
    return 206


def format_header_value(value: Any) -> str:
    if isinstance(value, datetime):
        aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        aware = aware.astimezone(UTC)
        return format_datetime(aware, usegmt=True)
    return str(value)


def parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def etag_matches(header: str | None, etag: str | None) -> bool:
    """Weak ETag comparison as used by ``If-None-Match``."""
    if not header or not etag:
        return False
    if header.strip() == "*":
        return True

    def _opaque(tag: str) -> str:
        tag = tag.strip()
        if tag.startswith("W/"):
            tag = tag[2:]
        return tag.strip('"')

    wanted = _opaque(etag)
    return any(_opaque(candidate) == wanted for candidate in header.split(","))


def object_headers(
    metadata: StoredObjectMetadata,
    *,
    spec: RangeSpec | None = None,
    has_body: bool = True,
) -> dict[str, str]:
    headers: dict[str, str] = {
        "etag": metadata.etag,
        "accept-ranges": "bytes",
        "content-length": str(metadata.size),
    }
    if metadata.last_modified is not None:
        headers["last-modified"] = format_header_value(metadata.last_modified)
    if metadata.content_type:
        headers["content-type"] = metadata.content_type
    for name, value in metadata.custom_headers.items():
        headers[name.lower()] = value

    if has_body and spec is not None:
        start, end = resolve_range(spec, metadata.size)
        headers["content-length"] = str(end - start + 1)
        headers["content-range"] = content_range(spec, metadata.size)
    return headers


def build_reply(
    metadata: StoredObjectMetadata,
    spec: RangeSpec | None,
    body: bytes | AsyncIterator[bytes] | None,
) -> Reply:
    has_body = body is not None
    status = response_status(has_body=has_body, spec=spec)
    headers = object_headers(metadata, spec=spec, has_body=has_body)
    if not has_body:
        headers.pop("content-length", None)
    return Reply(status=status, headers=headers, body=body)


def unsatisfiable_reply(size: int) -> Reply:
    return Reply(
        status=416,
        headers={"content-range": f"bytes */{size}"},
        body=b"",
    )


def metadata_from_s3(result: Mapping[str, Any]) -> StoredObjectMetadata:
    """Build metadata from a boto3 ``head_object``/``get_object`` result."""
    size = int(result.get("ContentLength", 0))
    content_range_value = result.get("ContentRange")
    if content_range_value and "/" in content_range_value:
        total = content_range_value.rsplit("/", 1)[1]
        if total.isdigit():
            size = int(total)

    custom: dict[str, str] = {}
    for header, key in STORED_HEADER_FIELDS.items():
        value = result.get(key)
        if value is not None:
            custom[header] = format_header_value(value)
    for meta_key, meta_value in (result.get("Metadata") or {}).items():
        custom[f"x-amz-meta-{meta_key}"] = meta_value

    return StoredObjectMetadata(
        etag=result.get("ETag", ""),
        size=size,
        content_type=result.get("ContentType"),
        last_modified=result.get("LastModified"),
        custom_headers=custom,
    )


def metadata_from_headers(headers: Mapping[str, str]) -> StoredObjectMetadata:
    """Build metadata from HTTP response headers (origin HEAD/GET)."""
    lowered = {key.lower(): value for key, value in headers.items()}
    size = int(lowered.get("content-length") or 0)
    total = lowered.get("content-range", "").rsplit("/", 1)[-1]
    if total.isdigit():
        size = int(total)

    custom = {
        name: value
        for name, value in lowered.items()
        if name in STORED_HEADER_FIELDS or name.startswith("x-amz-meta-")
    }
    return StoredObjectMetadata(
        etag=lowered.get("etag", ""),
        size=size,
        content_type=lowered.get("content-type"),
        last_modified=parse_http_date(lowered.get("last-modified")),
        custom_headers=custom,
    )
