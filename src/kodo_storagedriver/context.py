from kodo_storagedriver.errors import ContextCancelledError
from kodo_storagedriver.errors import DeadlineExceededError

import threading
import time


class Context:
    """Cancellation signal and optional deadline threaded through backend calls.

    A child context is cancelled when its parent is, but cancelling the
    child leaves the parent untouched.
    """

    def __init__(self, deadline=None, timeout=None, parent=None):
        if timeout is not None:
            limit = time.monotonic() + timeout
            deadline = limit if deadline is None else min(deadline, limit)
        self.deadline = deadline
        self._parent = parent
        self._event = threading.Event()

    def child(self, timeout=None):
        return Context(timeout=timeout, parent=self)

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self):
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self):
        """Seconds left before the nearest deadline, or None."""
        deadlines = []
        ctx = self
        while ctx is not None:
            if ctx.deadline is not None:
                deadlines.append(ctx.deadline)
            ctx = ctx._parent
        if not deadlines:
            return None
        return min(deadlines) - time.monotonic()

    def check(self):
        if self.cancelled:
            raise ContextCancelledError("context cancelled")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise DeadlineExceededError("context deadline exceeded")


def check(ctx):
    """Check ``ctx`` when one was supplied."""
    if ctx is not None:
        ctx.check()
