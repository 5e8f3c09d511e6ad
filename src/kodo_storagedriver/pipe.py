from collections import deque

import threading


DEFAULT_CAPACITY = 4 * 1024 * 1024


class PipeClosedError(Exception):
    pass


class Pipe:
    """Bounded in-memory byte channel between one writer and one reader.

    ``write`` blocks while ``capacity`` bytes are buffered; ``read`` blocks
    until data arrives or the write side is closed. Byte order is preserved.
    A chunk bigger than the capacity is accepted once the buffer is empty.
    """

    def __init__(self, capacity=DEFAULT_CAPACITY):
        self.capacity = capacity
        self._chunks = deque()
        self._head_offset = 0
        self._buffered = 0
        self._cond = threading.Condition()
        self._write_closed = False
        self._write_error = None
        self._read_closed = False

    @property
    def buffered(self):
        with self._cond:
            return self._buffered

    def write(self, data):
        data = bytes(data)
        if not data:
            return 0
        with self._cond:
            while (
                not self._read_closed
                and self._buffered
                and self._buffered + len(data) > self.capacity
            ):
                self._cond.wait()
            if self._read_closed:
                raise PipeClosedError("read side of pipe closed")
            if self._write_closed:
                raise PipeClosedError("write side of pipe closed")
            self._chunks.append(data)
            self._buffered += len(data)
            self._cond.notify_all()
        return len(data)

    def read(self, size=-1):
        with self._cond:
            while not self._chunks and not self._write_closed:
                self._cond.wait()
            if not self._chunks:
                if self._write_error is not None:
                    raise self._write_error
                return b""
            if size is None or size < 0:
                size = self._buffered
            out = bytearray()
            while self._chunks and len(out) < size:
                # the head chunk is consumed in place from _head_offset
                chunk = self._chunks[0]
                end = min(len(chunk), self._head_offset + size - len(out))
                out += memoryview(chunk)[self._head_offset : end]
                if end == len(chunk):
                    self._chunks.popleft()
                    self._head_offset = 0
                else:
                    self._head_offset = end
            self._buffered -= len(out)
            self._cond.notify_all()
            return bytes(out)

    def close_writer(self, error=None):
        """End of input. Readers see EOF, or ``error`` once drained."""
        with self._cond:
            self._write_closed = True
            if error is not None:
                self._write_error = error
                self._chunks.clear()
                self._head_offset = 0
                self._buffered = 0
            self._cond.notify_all()

    def close_reader(self):
        """Reader is gone; pending and future writes fail."""
        with self._cond:
            self._read_closed = True
            self._chunks.clear()
            self._head_offset = 0
            self._buffered = 0
            self._cond.notify_all()

