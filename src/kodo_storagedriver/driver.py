"""Kodo implementation of the registry storage driver contract.

Kodo is a key/value store, so directories only exist as key prefixes:
``stat`` cannot report a modification time for them.
"""

from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from kodo_storagedriver import lister
from kodo_storagedriver.backend import DEFAULT_EXPIRY
from kodo_storagedriver.backend import KodoClient
from kodo_storagedriver.backend import LIST_MAX
from kodo_storagedriver.config import from_parameters
from kodo_storagedriver.context import check
from kodo_storagedriver.errors import DRIVER_NAME
from kodo_storagedriver.errors import error_info
from kodo_storagedriver.errors import PathNotFoundError
from kodo_storagedriver.interfaces import IStorageDriver
from kodo_storagedriver.invalidator import CacheInvalidator
from kodo_storagedriver.invalidator import CdnRefresher
from kodo_storagedriver.invalidator import NullInvalidator
from kodo_storagedriver.writer import FileWriter
from typing import Any
from zope.interface import implementer

import logging


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileInfo:
    path: str
    size: int = 0
    mod_time: Any = None
    is_dir: bool = False


@implementer(IStorageDriver)
class KodoDriver:
    """Registry storage driver backed by a Kodo bucket."""

    def __init__(self, params, client=None, invalidator=None, list_limit=LIST_MAX):
        self.params = params
        self._client = client if client is not None else KodoClient(params)
        if invalidator is None:
            invalidator = self._make_invalidator(params)
        self._invalidator = invalidator
        self.list_limit = list_limit

    @classmethod
    def from_parameters(cls, parameters, **kwargs):
        return cls(from_parameters(parameters), **kwargs)

    @staticmethod
    def _make_invalidator(params):
        if not params.refresh_enabled:
            return NullInvalidator()
        refresher = CdnRefresher(
            user_uid=params.user_uid,
            bucket=params.bucket,
            refresh_url=params.refresh_url,
            admin_access_key=params.admin_access_key,
            admin_secret_key=params.admin_secret_key,
            debug=params.debug,
        )
        return CacheInvalidator(refresher).start()

    @property
    def name(self):
        return DRIVER_NAME

    def __repr__(self):
        return (
            f"<KodoDriver bucket={self.params.bucket!r} "
            f"root={self.params.root_directory!r}>"
        )

    def close(self):
        self._invalidator.close()

    # -- keys --

    def _key(self, path):
        return (self.params.root_directory + path).lstrip("/")

    def _root_prefix(self):
        # with an empty root there is nothing to strip, so results need a
        # leading "/" to stay valid registry paths
        return "/" if self._key("") == "" else ""

    def _to_path(self, key):
        return key.replace(self._key(""), self._root_prefix(), 1)

    # -- content --

    def get_content(self, path, ctx=None):
        body = self.reader(path, 0, ctx)
        try:
            return body.read()
        finally:
            body.close()

    def put_content(self, path, content, ctx=None):
        writer = self.writer(path, append=False, ctx=ctx)
        try:
            writer.write(content)
            writer.commit()
        except BaseException:
            if not writer.committed:
                writer._stop_upload()
            raise

    def reader(self, path, offset=0, ctx=None):
        try:
            return self._client.get_range(self._key(path), offset, ctx=ctx)
        except PathNotFoundError as e:
            raise PathNotFoundError(path) from e

    def writer(self, path, append=False, ctx=None):
        offset = 0
        if append:
            try:
                info = self.stat(path, ctx)
            except PathNotFoundError:
                # appending to nothing is a fresh write
                pass
            else:
                offset = info.size
        return FileWriter(self._client, self._invalidator, self._key(path), offset, ctx)

    # -- metadata --

    def stat(self, path, ctx=None):
        key = self._key(path)
        page = lister.list_page_with_retry(self._client, key, limit=1, ctx=ctx)
        if not page.items:
            raise PathNotFoundError(path)

        item = page.items[0]
        if item.key == key:
            return FileInfo(path=path, size=item.size, mod_time=item.put_time)
        if key and not item.key.startswith(_dir_prefix(key)):
            # a sibling such as "ab" sorted first; look under "a/" itself
            page = lister.list_page_with_retry(
                self._client, _dir_prefix(key), limit=1, ctx=ctx
            )
            if not page.items:
                raise PathNotFoundError(path)
        return FileInfo(path=path, is_dir=True)

    def list(self, path, ctx=None):
        opath = path
        if path != "/" and not path.endswith("/"):
            path += "/"

        listing = lister.list_all(
            self._client, self._key(path), "/", self.list_limit, ctx
        )
        files = [self._to_path(item.key) for item in listing.entries]
        directories = [
            self._to_path(prefix.removesuffix("/")) for prefix in listing.prefixes
        ]

        if opath != "/" and not files and not directories:
            raise PathNotFoundError(opath)
        return list(dict.fromkeys(files + directories))

    # -- mutation --

    def move(self, source_path, dest_path, ctx=None):
        try:
            self._client.move_one(
                self._key(source_path), self._key(dest_path), overwrite=True, ctx=ctx
            )
        except PathNotFoundError as e:
            raise PathNotFoundError(source_path) from e
        except Exception as e:
            logger.error(
                "move %s -> %s failed: %s", source_path, dest_path, error_info(e)
            )
            raise

    def delete(self, path, ctx=None):
        key = self._key(path)
        matched = 0
        for page in lister.iter_pages(self._client, key, "", self.list_limit, ctx):
            for item in page.items:
                if key and item.key != key:
                    if not item.key.startswith(_dir_prefix(key)):
                        continue
                matched += 1
                check(ctx)
                try:
                    self._client.delete_one(item.key, ctx=ctx)
                except PathNotFoundError:
                    # removed concurrently
                    continue
                self._invalidator.enqueue(item.key)
        if matched == 0:
            raise PathNotFoundError(path)

    # -- urls --

    def url_for(self, path, options=None):
        options = options or {}
        expires = DEFAULT_EXPIRY
        expiry = options.get("expiry")
        if isinstance(expiry, datetime):
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)
            seconds = int((expiry - datetime.now(timezone.utc)).total_seconds())
            if seconds > 0:
                expires = seconds

        key = self._key(path)
        host = options.get("host")
        if isinstance(host, str):
            for match, base_url in self.params.redirect_map.items():
                if match in host:
                    logger.info("url_for redirect %s -> %s", match, base_url)
                    return self._client.sign_private_url(key, expires, base_url)
        return self._client.sign_private_url(key, expires)


def _dir_prefix(key):
    return key if key.endswith("/") else key + "/"
