from botocore.config import Config
from botocore.exceptions import BotoCoreError
from botocore.exceptions import ClientError
from dataclasses import dataclass
from kodo_storagedriver import auth
from kodo_storagedriver.config import MIN_PART_SIZE
from kodo_storagedriver.context import check
from kodo_storagedriver.errors import ChecksumMismatchError
from kodo_storagedriver.errors import error_code
from kodo_storagedriver.errors import InvalidSegmentError
from kodo_storagedriver.errors import KodoOperationError
from kodo_storagedriver.errors import PathNotFoundError
from kodo_storagedriver.errors import translate
from kodo_storagedriver.interfaces import IBackendClient
from kodo_storagedriver.transport import install_request_logging
from typing import Any
from typing import NamedTuple
from urllib.parse import quote
from zope.interface import implementer

import boto3
import io
import logging
import math
import zlib


logger = logging.getLogger(__name__)

DEFAULT_EXPIRY = 3600
LIST_MAX = 1000
READ_CHUNK = 64 * 1024
MAX_COPY_PART_SIZE = 5 * 1024 * 1024 * 1024


class ListItem(NamedTuple):
    key: str
    size: int
    put_time: Any
    etag: str = ""


class ListPage(NamedTuple):
    items: tuple
    prefixes: tuple
    marker: str


@dataclass(frozen=True)
class CopySegment:
    """Byte range ``[start, end)`` of an already stored object; ``end == -1`` is EOF."""

    key: str
    start: int = 0
    end: int = -1

    def __post_init__(self):
        if self.start < 0 or not (self.end == -1 or self.end > self.start):
            raise InvalidSegmentError(
                f"invalid copy range [{self.start}, {self.end}) for key={self.key}"
            )


@dataclass(frozen=True)
class DirectSegment:
    """Fresh bytes read from ``stream`` until EOF."""

    stream: Any
    crc32: int = None


def _endpoint(host):
    if host is None or "://" in host:
        return host
    return f"https://{host}"


@implementer(IBackendClient)
class KodoClient:
    """boto3 wrapper speaking the S3-compatible API of a Kodo bucket."""

    def __init__(self, params):
        self.params = params
        self.bucket_name = params.bucket
        self.part_size = params.part_size

        self._client = self._make_client(params.resolved_endpoint_url)
        self._io = self._client
        self._up = self._client
        if params.io_host:
            self._io = self._make_client(_endpoint(params.io_host))
        if params.up_hosts:
            self._up = self._make_client(_endpoint(params.up_hosts[0]))

    def _make_client(self, endpoint_url):
        params = self.params
        config = Config(
            connect_timeout=params.connect_timeout,
            read_timeout=params.read_timeout,
            # retries are decided by the driver, not botocore
            retries={"max_attempts": 0, "mode": "standard"},
        )
        kwargs = {
            "config": config,
            "aws_access_key_id": params.access_key,
            "aws_secret_access_key": params.secret_key,
        }
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if params.resolved_region:
            kwargs["region_name"] = params.resolved_region
        client = boto3.client("s3", **kwargs)
        if params.debug:
            install_request_logging(client)
        return client

    def put_small(self, key, data, ctx=None):
        check(ctx)
        try:
            self._up.put_object(Bucket=self.bucket_name, Key=key, Body=bytes(data))
        except (ClientError, BotoCoreError) as e:
            raise translate(e, "put", key) from e

    def put_segmented(self, key, segments, ctx=None):
        upload = _SegmentedUpload(self, key, ctx)
        try:
            for segment in segments:
                if isinstance(segment, CopySegment):
                    upload.add_copy(segment)
                else:
                    upload.add_direct(segment)
            upload.finish()
        except BaseException:
            upload.abort()
            raise

    def get_range(self, key, offset=0, ctx=None):
        check(ctx)
        kwargs = {"Bucket": self.bucket_name, "Key": key}
        if offset > 0:
            kwargs["Range"] = f"bytes={offset}-"
        try:
            response = self._io.get_object(**kwargs)
        except ClientError as e:
            if error_code(e) == "InvalidRange":
                # reading at or past the end yields no bytes
                return io.BytesIO(b"")
            raise translate(e, "get", key) from e
        except BotoCoreError as e:
            raise translate(e, "get", key) from e
        return response["Body"]

    def head(self, key, ctx=None):
        check(ctx)
        try:
            response = self._client.head_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise translate(e, "head", key) from e
        return ListItem(
            key=key,
            size=response["ContentLength"],
            put_time=response.get("LastModified"),
            etag=response.get("ETag", "").strip('"'),
        )

    def delete_one(self, key, ctx=None):
        check(ctx)
        try:
            self._client.delete_object(Bucket=self.bucket_name, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise translate(e, "delete", key) from e

    def move_one(self, src_key, dst_key, overwrite=True, ctx=None):
        check(ctx)
        if not overwrite:
            try:
                self.head(dst_key, ctx)
            except PathNotFoundError:
                pass
            else:
                raise KodoOperationError(f"Kodo move failed: key={dst_key} exists")
        try:
            self._client.copy(
                CopySource={"Bucket": self.bucket_name, "Key": src_key},
                Bucket=self.bucket_name,
                Key=dst_key,
            )
        except (ClientError, BotoCoreError) as e:
            raise translate(e, "move", src_key) from e
        self.delete_one(src_key, ctx)

    def list_page(self, prefix, delimiter="", marker="", limit=LIST_MAX, ctx=None):
        check(ctx)
        kwargs = {"Bucket": self.bucket_name, "Prefix": prefix, "MaxKeys": limit}
        if delimiter:
            kwargs["Delimiter"] = delimiter
        if marker:
            kwargs["Marker"] = marker
        try:
            response = self._client.list_objects(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate(e, "list", prefix, retryable=True) from e

        items = tuple(
            ListItem(
                key=obj["Key"],
                size=obj["Size"],
                put_time=obj.get("LastModified"),
                etag=obj.get("ETag", "").strip('"'),
            )
            for obj in response.get("Contents", [])
        )
        prefixes = tuple(p["Prefix"] for p in response.get("CommonPrefixes", []))

        next_marker = ""
        if response.get("IsTruncated"):
            next_marker = response.get("NextMarker") or ""
            if not next_marker:
                # NextMarker is only guaranteed when a delimiter is given
                candidates = []
                if items:
                    candidates.append(items[-1].key)
                if prefixes:
                    candidates.append(prefixes[-1])
                next_marker = max(candidates, default="")
        return ListPage(items, prefixes, next_marker)

    def sign_private_url(self, key, expires=DEFAULT_EXPIRY, base_url=None):
        base_url = base_url or self.params.base_url
        url = base_url + quote(key, safe="/~")
        return auth.private_url(
            self.params.access_key, self.params.secret_key, url, expires
        )


class _SegmentedUpload:
    """One multipart upload assembled from copy and direct segments.

    Parts are cut at ``part_size``; S3 rejects non-final parts smaller than
    MIN_PART_SIZE, so a short copy range is read back and sent as bytes.
    """

    def __init__(self, client, key, ctx):
        self._client = client
        self.key = key
        self._ctx = ctx
        self._buffer = bytearray()
        self._parts = []
        self._upload_id = None

    def _call(self, operation, func, **kwargs):
        check(self._ctx)
        try:
            return func(Bucket=self._client.bucket_name, Key=self.key, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise translate(e, operation, self.key) from e

    def _start(self):
        if self._upload_id is None:
            response = self._call("upload", self._client._up.create_multipart_upload)
            self._upload_id = response["UploadId"]
            logger.debug(
                "Started multipart upload %s for key=%s", self._upload_id, self.key
            )

    def _upload_part(self, body):
        self._start()
        number = len(self._parts) + 1
        response = self._call(
            "upload",
            self._client._up.upload_part,
            UploadId=self._upload_id,
            PartNumber=number,
            Body=body,
        )
        self._parts.append({"PartNumber": number, "ETag": response["ETag"]})

    def _flush(self):
        part_size = self._client.part_size
        while len(self._buffer) >= part_size:
            self._upload_part(bytes(self._buffer[:part_size]))
            del self._buffer[:part_size]

    def add_copy(self, segment):
        end = segment.end
        if end == -1:
            end = self._client.head(segment.key, self._ctx).size
        length = end - segment.start
        if length <= 0:
            return

        if not self._buffer and length >= MIN_PART_SIZE:
            count = math.ceil(length / MAX_COPY_PART_SIZE)
            step = math.ceil(length / count)
            for first in range(segment.start, end, step):
                last = min(first + step, end) - 1
                self._copy_part(segment.key, first, last)
            return

        body = self._client.get_range(segment.key, segment.start, self._ctx)
        try:
            remaining = length
            while remaining > 0:
                check(self._ctx)
                chunk = body.read(min(READ_CHUNK, remaining))
                if not chunk:
                    raise KodoOperationError(
                        f"Kodo copy of key={segment.key} ended {remaining} bytes short"
                    )
                self._buffer.extend(chunk)
                remaining -= len(chunk)
                self._flush()
        finally:
            body.close()

    def _copy_part(self, source_key, first, last):
        self._start()
        number = len(self._parts) + 1
        response = self._call(
            "upload",
            self._client._up.upload_part_copy,
            UploadId=self._upload_id,
            PartNumber=number,
            CopySource={"Bucket": self._client.bucket_name, "Key": source_key},
            CopySourceRange=f"bytes={first}-{last}",
        )
        etag = response["CopyPartResult"]["ETag"]
        self._parts.append({"PartNumber": number, "ETag": etag})

    def add_direct(self, segment):
        crc = 0
        while True:
            check(self._ctx)
            chunk = segment.stream.read(READ_CHUNK)
            if not chunk:
                break
            crc = zlib.crc32(chunk, crc)
            self._buffer.extend(chunk)
            self._flush()
        if segment.crc32 is not None and segment.crc32 != crc:
            raise ChecksumMismatchError(
                f"crc32 mismatch for key={self.key}: "
                f"expected {segment.crc32:08x}, got {crc:08x}"
            )

    def finish(self):
        if self._upload_id is None:
            self._client.put_small(self.key, self._buffer, self._ctx)
            return
        if self._buffer or not self._parts:
            self._upload_part(bytes(self._buffer))
            self._buffer.clear()
        self._call(
            "upload",
            self._client._up.complete_multipart_upload,
            UploadId=self._upload_id,
            MultipartUpload={"Parts": self._parts},
        )
        logger.debug(
            "Completed multipart upload of %d parts for key=%s",
            len(self._parts),
            self.key,
        )

    def abort(self):
        if self._upload_id is None:
            return
        try:
            self._client._up.abort_multipart_upload(
                Bucket=self._client.bucket_name, Key=self.key, UploadId=self._upload_id
            )
        except Exception:
            logger.warning(
                "Failed to abort multipart upload %s for key=%s",
                self._upload_id,
                self.key,
                exc_info=True,
            )
