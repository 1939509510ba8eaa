"""Fixed-size circular byte buffer."""

from __future__ import annotations


class CircularBuffer:
    """Byte ring of fixed capacity; writes stop when full, reads when empty."""

    def __init__(self, size: int) -> None:
        if size < 0:
            raise ValueError("buffer size must not be negative")
        self.size = size
        self._buf = bytearray(size)
        self._head = 0  # total bytes written
        self._tail = 0  # total bytes read

    def used(self) -> int:
        """Number of bytes waiting to be read."""
        return self._head - self._tail

    def free(self) -> int:
        """Number of bytes that can still be written."""
        return self.size - self.used()

    def __len__(self) -> int:
        return self.used()

    def write(self, data) -> int:
        """Store as much of ``data`` as fits; return the number of bytes stored."""
        view = memoryview(bytes(data))
        count = min(len(view), self.free())
        if count <= 0:
            return 0
        start = self._head % self.size
        first = min(count, self.size - start)
        self._buf[start:start + first] = view[:first]
        self._buf[:count - first] = view[first:count]
        self._head += count
        return count

    def read(self, size: int) -> bytes:
        """Remove and return up to ``size`` bytes."""
        if size < 0:
            raise ValueError("read size must not be negative")
        count = min(size, self.used())
        if count <= 0:
            return b""
        start = self._tail % self.size
        first = min(count, self.size - start)
        out = bytes(self._buf[start:start + first]) + bytes(self._buf[:count - first])
        self._tail += count
        return out