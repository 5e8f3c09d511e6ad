from kodo_storagedriver.auth import QBoxAuth
from kodo_storagedriver.interfaces import ICacheInvalidator
from kodo_storagedriver.transport import httpx_event_hooks
from zope.interface import implementer

import base64
import httpx
import logging
import queue
import threading


logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 10
DEFAULT_CAPACITY = 100

_STOP = object()


def base36(number):
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


class CdnRefresher:
    """Asks the Kodo IO cache to drop its copy of one key."""

    def __init__(
        self,
        user_uid,
        bucket,
        refresh_url,
        admin_access_key,
        admin_secret_key,
        transport=None,
        timeout=10.0,
        debug=False,
    ):
        self.user_uid = user_uid
        self.bucket = bucket
        self.refresh_url = refresh_url.rstrip("/")
        kwargs = {
            "auth": QBoxAuth(admin_access_key, admin_secret_key),
            "timeout": timeout,
        }
        if transport is not None:
            kwargs["transport"] = transport
        if debug:
            kwargs["event_hooks"] = httpx_event_hooks()
        self._http = httpx.Client(**kwargs)

    def cache_key(self, key):
        memcache_key = f"io:{base36(self.user_uid)}:{self.bucket}:{key}"
        return base64.urlsafe_b64encode(memcache_key.encode("utf-8")).decode("ascii")

    def __call__(self, key):
        response = self._http.get(f"{self.refresh_url}/{self.cache_key(key)}")
        response.raise_for_status()

    def close(self):
        self._http.close()


@implementer(ICacheInvalidator)
class CacheInvalidator:
    """Fixed pool of daemon threads draining one bounded queue of keys.

    ``enqueue`` blocks while the queue is full. Each key is refreshed at
    most once; failures are logged and never reach the producer.
    """

    def __init__(
        self,
        refresh,
        workers=DEFAULT_WORKERS,
        capacity=DEFAULT_CAPACITY,
        work_queue=None,
    ):
        self._refresh = refresh
        self.workers = workers
        self._queue = work_queue if work_queue is not None else queue.Queue(capacity)
        self._threads = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def queue(self):
        return self._queue

    def start(self):
        with self._lock:
            if self._threads:
                return self
            for i in range(self.workers):
                t = threading.Thread(
                    target=self._work, name=f"kodo-refresh-{i}", daemon=True
                )
                self._threads.append(t)
                t.start()
        return self

    def enqueue(self, key):
        """Queue ``key`` and return True, or return False once closed."""
        # close() sends its stop sentinels under the same lock, so an
        # accepted key always sits ahead of them
        with self._lock:
            if self._closed:
                logger.warning("Invalidator closed, not refreshing key=%s", key)
                return False
            self._queue.put(key)
        return True

    def _work(self):
        while True:
            key = self._queue.get()
            try:
                if key is _STOP:
                    return
                self._refresh(key)
            except Exception:
                logger.warning("refresh failed for key=%s", key, exc_info=True)
            finally:
                self._queue.task_done()

    def join(self):
        """Wait until every queued key was processed. For testing."""
        self._queue.join()

    def close(self, timeout=10):
        with self._lock:
            if self._closed:
                return
            self._closed = True
            threads = list(self._threads)
            for _t in threads:
                self._queue.put(_STOP)
        for t in threads:
            t.join(timeout=timeout)
        close_refresh = getattr(self._refresh, "close", None)
        if close_refresh is not None:
            close_refresh()


@implementer(ICacheInvalidator)
class NullInvalidator:
    """Used when no CDN refresh endpoint is configured."""

    def enqueue(self, key):
        logger.debug("CDN refresh disabled, skipping key=%s", key)
        return False

    def join(self):
        pass

    def close(self):
        pass
