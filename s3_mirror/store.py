from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any

from anyio import to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .codec import (
    STORED_HEADER_FIELDS,
    StoredObjectMetadata,
    metadata_from_s3,
    parse_http_date,
)
from .errors import MalformedRange, StoreRejected, StoreWriteFailed

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Mapping

    from botocore.client import BaseClient

    from .settings import StoreSettings

LOG = logging.getLogger("s3_mirror.store")

MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
MISSING_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}
READ_CHUNK_SIZE = 1024 * 64


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


def error_code(error: ClientError) -> str | None:
    return error.response.get("Error", {}).get("Code")


def error_status(error: ClientError) -> int:
    return int(error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 500))


def put_arguments(metadata: StoredObjectMetadata) -> dict[str, Any]:
    """Translate object metadata into ``put_object``/multipart keyword arguments."""
    kwargs: dict[str, Any] = {}
    user_metadata: dict[str, str] = {}
    if metadata.content_type:
        kwargs["ContentType"] = metadata.content_type
    for header, value in metadata.custom_headers.items():
        if header.startswith("x-amz-meta-"):
            user_metadata[header.removeprefix("x-amz-meta-")] = value
            continue
        field_name = STORED_HEADER_FIELDS.get(header)
        if field_name == "Expires":
            expires = parse_http_date(value)
            if expires is not None:
                kwargs[field_name] = expires
        elif field_name:
            kwargs[field_name] = value
    kwargs["Metadata"] = user_metadata
    return kwargs


@dataclass
class StoredObject:
    """A primary-store read; ``body`` is ``None`` when a precondition matched."""

    metadata: StoredObjectMetadata
    body: Any | None = None

    async def iter_body(self) -> AsyncIterator[bytes]:
        streaming_body = self.body
        if streaming_body is None:
            return
        try:
            while True:
                chunk = await _run_sync(streaming_body.read, READ_CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await _run_sync(streaming_body.close)


@dataclass(frozen=True)
class PartResult:
    part_number: int
    etag: str


@dataclass
class MultipartSession:
    """An open multipart upload owned by a single mirror operation."""

    store: PrimaryStore
    upload_id: str
    object_key: str
    part_size: int
    part_count: int
    completed_parts: list[PartResult] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        numbers = sorted(part.part_number for part in self.completed_parts)
        return numbers == list(range(1, self.part_count + 1))

    async def upload_part(self, part_number: int, body: bytes) -> PartResult:
        if not 1 <= part_number <= self.part_count:
            msg = f"part number {part_number} outside 1..{self.part_count}"
            raise ValueError(msg)
        result = await self.store._call(
            "upload_part",
            Key=self.object_key,
            UploadId=self.upload_id,
            PartNumber=part_number,
            Body=body,
        )
        part = PartResult(part_number=part_number, etag=result["ETag"])
        self.completed_parts.append(part)
        return part

    async def complete(self) -> None:
        if not self.is_complete:
            msg = (
                f"cannot complete s3://{self.store.bucket}/{self.object_key}: "
                f"{len(self.completed_parts)} of {self.part_count} parts recorded"
            )
            raise StoreWriteFailed(msg)
        parts = sorted(self.completed_parts, key=lambda part: part.part_number)
        try:
            await self.store._call(
                "complete_multipart_upload",
                Key=self.object_key,
                UploadId=self.upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": part.part_number, "ETag": part.etag}
                        for part in parts
                    ]
                },
            )
        except (ClientError, BotoCoreError) as exc:
            msg = f"completing multipart upload {self.upload_id} failed: {exc}"
            raise StoreWriteFailed(msg) from exc

    async def abort(self) -> None:
        """Abort the upload; failures are logged and swallowed."""
        try:
            await self.store._call(
                "abort_multipart_upload",
                Key=self.object_key,
                UploadId=self.upload_id,
            )
        except (ClientError, BotoCoreError):
            LOG.warning(
                "failed to abort multipart upload %s for s3://%s/%s",
                self.upload_id,
                self.store.bucket,
                self.object_key,
                exc_info=True,
            )
        else:
            LOG.info(
                "aborted multipart upload %s for s3://%s/%s",
                self.upload_id,
                self.store.bucket,
                self.object_key,
            )


class PrimaryStore:
    """Async facade over a boto3 S3 client bound to one bucket."""

    def __init__(self, settings: StoreSettings, client: Any | None = None) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client()
        self._bucket_ready = False

    @property
    def bucket(self) -> str:
        return self._settings.bucket

    def _build_client(self) -> BaseClient:
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"max_attempts": 3},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )

    async def _call(self, operation: str, **kwargs: Any) -> Any:
        method = getattr(self._client, operation)
        return await _run_sync(partial(method, Bucket=self.bucket, **kwargs))

    async def head(self, key: str) -> StoredObjectMetadata | None:
        try:
            result = await self._call("head_object", Key=key)
        except ClientError as error:
            if error_code(error) in MISSING_CODES | MISSING_BUCKET_CODES:
                return None
            raise
        return metadata_from_s3(result)

    async def get(
        self,
        key: str,
        *,
        range_header: str | None = None,
        conditional: Mapping[str, str] | None = None,
    ) -> StoredObject | None:
        """Fetch ``key``; ``None`` when absent.

        A matching ``If-None-Match``/``If-Modified-Since`` yields a body-less
        object. Other refusals surface as :class:`StoreRejected`.
        """
        kwargs: dict[str, Any] = {"Key": key}
        if range_header:
            kwargs["Range"] = range_header
        kwargs.update(self._conditional_arguments(conditional or {}))

        try:
            result = await self._call("get_object", **kwargs)
        except ClientError as error:
            code = error_code(error)
            status = error_status(error)
            if code in MISSING_CODES | MISSING_BUCKET_CODES:
                return None
            if status == 304 or code == "NotModified":
                metadata = await self.head(key)
                return StoredObject(metadata=metadata) if metadata else None
            message = error.response.get("Error", {}).get("Message", str(error))
            if status == 416 or code == "InvalidRange":
                raise MalformedRange(message, status_code=416) from error
            if status == 412 or code == "PreconditionFailed":
                raise StoreRejected(message, status_code=412) from error
            raise
        return StoredObject(metadata=metadata_from_s3(result), body=result["Body"])

    @staticmethod
    def _conditional_arguments(conditional: Mapping[str, str]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if value := conditional.get("if-none-match"):
            kwargs["IfNoneMatch"] = value
        if value := conditional.get("if-match"):
            kwargs["IfMatch"] = value
        if modified := parse_http_date(conditional.get("if-modified-since")):
            kwargs["IfModifiedSince"] = modified
        if unmodified := parse_http_date(conditional.get("if-unmodified-since")):
            kwargs["IfUnmodifiedSince"] = unmodified
        return kwargs

    async def put(self, key: str, body: bytes, metadata: StoredObjectMetadata) -> None:
        try:
            await self.ensure_bucket()
            await self._call("put_object", Key=key, Body=body, **put_arguments(metadata))
        except (ClientError, BotoCoreError) as exc:
            msg = f"put_object failed for s3://{self.bucket}/{key}: {exc}"
            raise StoreWriteFailed(msg) from exc

    async def create_multipart_upload(
        self,
        key: str,
        metadata: StoredObjectMetadata,
        *,
        part_size: int,
        part_count: int,
    ) -> MultipartSession:
        try:
            await self.ensure_bucket()
            result = await self._call(
                "create_multipart_upload", Key=key, **put_arguments(metadata)
            )
        except (ClientError, BotoCoreError) as exc:
            msg = f"create_multipart_upload failed for s3://{self.bucket}/{key}: {exc}"
            raise StoreWriteFailed(msg) from exc
        return MultipartSession(
            store=self,
            upload_id=result["UploadId"],
            object_key=key,
            part_size=part_size,
            part_count=part_count,
        )

    async def ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        try:
            await _run_sync(partial(self._client.head_bucket, Bucket=self.bucket))
        except ClientError as error:
            if error_code(error) not in MISSING_BUCKET_CODES:
                raise
            create_kwargs: dict[str, Any] = {"Bucket": self.bucket}
            location = self._settings.bucket_location
            if location and location != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": location
                }
            await _run_sync(partial(self._client.create_bucket, **create_kwargs))
            LOG.info("created primary bucket %s", self.bucket)
        self._bucket_ready = True
