from kodo_storagedriver.backend import CopySegment
from kodo_storagedriver.backend import DirectSegment
from kodo_storagedriver.context import Context
from kodo_storagedriver.errors import ContextCancelledError
from kodo_storagedriver.errors import error_info
from kodo_storagedriver.errors import KodoOperationError
from kodo_storagedriver.errors import PathNotFoundError
from kodo_storagedriver.errors import SessionFinalizedError
from kodo_storagedriver.interfaces import IFileWriter
from kodo_storagedriver.pipe import DEFAULT_CAPACITY
from kodo_storagedriver.pipe import Pipe
from kodo_storagedriver.pipe import PipeClosedError
from zope.interface import implementer

import logging
import threading


logger = logging.getLogger(__name__)


@implementer(IFileWriter)
class FileWriter:
    """Single-use write session streaming into one segmented upload.

    The first ``write`` starts a background thread that uploads a copy of
    the already stored ``[0, offset)`` range (when resuming) followed by
    everything written to the pipe. ``close``, ``commit`` and ``cancel``
    all join that thread before returning.
    """

    def __init__(
        self,
        client,
        invalidator,
        key,
        offset=0,
        ctx=None,
        pipe_capacity=DEFAULT_CAPACITY,
    ):
        self._client = client
        self._invalidator = invalidator
        self.key = key
        self.offset = offset
        self._size = offset
        self._ctx = Context(parent=ctx)
        self._pipe_capacity = pipe_capacity
        self._pipe = None
        self._thread = None
        self._error = None

        self.closed = False
        self.committed = False
        self.cancelled = False

    def __repr__(self):
        return f"<FileWriter key={self.key!r} size={self._size}>"

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self.closed or self.committed or self.cancelled:
            return
        if exc_type is not None:
            self.cancel()
        else:
            self.close()

    @property
    def size(self):
        return self._size

    def _check_open(self):
        if self.closed:
            raise SessionFinalizedError("closed")
        if self.committed:
            raise SessionFinalizedError("committed")
        if self.cancelled:
            raise SessionFinalizedError("cancelled")

    def _raise_captured(self):
        # already logged once by _background
        if self._error is not None:
            raise self._error

    def write(self, data):
        self._check_open()
        self._raise_captured()
        if self._pipe is None:
            self._start()
        try:
            n = self._pipe.write(data)
        except PipeClosedError:
            self._join()
            self._raise_captured()
            raise KodoOperationError(
                f"upload of key={self.key} stopped before all bytes were written"
            ) from None
        self._size += n
        return n

    def _start(self):
        self._pipe = Pipe(self._pipe_capacity)
        segments = []
        if self.offset > 0:
            segments.append(CopySegment(self.key, 0, self.offset))
        segments.append(DirectSegment(self._pipe))
        self._thread = threading.Thread(
            target=self._background,
            args=(segments,),
            name=f"kodo-writer-{self.key}",
            daemon=True,
        )
        self._thread.start()

    def _background(self, segments):
        try:
            self._client.put_segmented(self.key, segments, ctx=self._ctx)
        except Exception as e:
            self._error = e
            logger.warning(
                "writer background put_segmented for key=%s: %s",
                self.key,
                error_info(e),
            )
        finally:
            self._pipe.close_reader()
            logger.debug(
                "writer background done for key=%s, size=%d", self.key, self._size
            )

    def _join(self):
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _finish(self):
        logger.debug("closing writer for key=%s with size=%d", self.key, self._size)
        if self._pipe is not None:
            self._pipe.close_writer()
        self._join()

    def close(self):
        self._check_open()
        self._finish()
        self._raise_captured()
        self.closed = True

    def commit(self):
        self._check_open()
        self._finish()
        self._raise_captured()
        if self._pipe is None and self.offset == 0:
            # nothing was streamed: the result is an empty object
            self._client.put_small(self.key, b"", ctx=self._ctx)
        self.committed = True
        self._invalidator.enqueue(self.key)

    def cancel(self):
        self._check_open()
        self._stop_upload()
        self.cancelled = True
        try:
            self._client.delete_one(self.key)
        except PathNotFoundError:
            return
        except Exception:
            logger.warning(
                "writer cancel could not remove key=%s", self.key, exc_info=True
            )
            return
        self._invalidator.enqueue(self.key)

    def _stop_upload(self):
        """Stop the background upload without finishing it."""
        self._ctx.cancel()
        if self._pipe is not None:
            self._pipe.close_writer(ContextCancelledError("writer cancelled"))
        self._join()
