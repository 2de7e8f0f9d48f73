"""A stream connection carried over a tunnel."""

from __future__ import annotations

import contextlib
import queue
import threading
import time
from collections import deque
from typing import Any, Deque, Optional

from .packets import Data, Packet, PacketType

# How long to wait for CLOSE_RSP after sending CLOSE_REQ.
CLOSE_TIMEOUT = 10.0
READ_BUFFER_PACKETS = 10


class TunnelClosedError(ConnectionError):
    """The tunnel finished before the connection close was acknowledged."""

    def __init__(self, message: str = "tunnel closed") -> None:
        super().__init__(message)


class CloseTimeoutError(TimeoutError):
    """No close response arrived in time."""

    def __init__(self, message: str = "close timeout") -> None:
        super().__init__(message)


class _Channel:
    """Bounded FIFO that can be closed; readers drain it and then see None."""

    def __init__(self, capacity: int) -> None:
        self._capacity = capacity
        self._items: Deque[bytes] = deque()
        self._closed = False
        self._cond = threading.Condition()

    def put(self, item: bytes, timeout: Optional[float] = None) -> bool:
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._closed or len(self._items) < self._capacity, timeout
            ):
                return False
            if self._closed:
                raise RuntimeError("send on closed channel")
            self._items.append(item)
            self._cond.notify_all()
            return True

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def get(self) -> Optional[bytes]:
        with self._cond:
            self._cond.wait_for(lambda: self._items or self._closed)
            item = self._items.popleft() if self._items else None
            self._cond.notify_all()
            return item


class Conn:
    """A connection whose bytes travel as DATA packets through a tunnel."""

    def __init__(
        self,
        tunnel: Any,
        random: int,
        conn_id: int = 0,
        *,
        close_timeout: float = CLOSE_TIMEOUT,
    ) -> None:
        self.tunnel = tunnel
        self.random = random
        self.conn_id = conn_id
        self.close_timeout = close_timeout
        self._reads = _Channel(READ_BUFFER_PACKETS)
        self._close_results: "queue.Queue[str]" = queue.Queue(maxsize=1)
        self._pending = b""
        self._eof = False
        self._closing = False
        self._closing_lock = threading.Lock()

    def write(self, data: bytes) -> int:
        """Send data to the remote end; returns the number of bytes sent."""
        data = bytes(data)
        self.tunnel.send(Packet(PacketType.DATA, Data(self.conn_id, data)))
        return len(data)

    def read(self, size: int) -> bytes:
        """Read up to size bytes; returns b'' once the connection is closed."""
        if size <= 0:
            return b""
        if not self._pending:
            if self._eof:
                return b""
            chunk = self._reads.get()
            while chunk is not None and not chunk:
                chunk = self._reads.get()
            if chunk is None:
                self._eof = True
                return b""
            self._pending = chunk
        result, self._pending = self._pending[:size], self._pending[size:]
        return result

    def close(self) -> None:
        """Ask the far end to close and wait for its answer; a repeat call does nothing."""
        with self._closing_lock:
            if self._closing:
                return
            self._closing = True
        try:
            # Best effort: the answer, or lack of one, is what decides the outcome.
            with contextlib.suppress(Exception):
                if self.conn_id:
                    self.tunnel.send_close_request(self.conn_id)
                else:
                    self.tunnel.send_dial_close(self.random)
            self._await_close()
        finally:
            self.tunnel.close_tunnel()

    def _await_close(self) -> None:
        deadline = time.monotonic() + self.close_timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                message = self._close_results.get(timeout=max(0.0, min(0.01, remaining)))
            except queue.Empty:
                if self.tunnel.done.is_set():
                    raise TunnelClosedError() from None
                if remaining <= 0:
                    raise CloseTimeoutError() from None
                continue
            if message:
                raise ConnectionError(message)
            return

    def __enter__(self) -> "Conn":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # Used by the tunnel that owns this connection.

    def _deliver(self, data: bytes, timeout: Optional[float] = None) -> bool:
        """Queue received data for readers; False if the buffer stayed full."""
        return self._reads.put(bytes(data), timeout)

    def _close_reads(self) -> None:
        """Mark the read side finished; readers drain buffered data then see EOF."""
        self._reads.close()

    def _finish(self, error_message: str = "") -> None:
        """Record the close response and end the read side."""
        self._close_reads()
        with contextlib.suppress(queue.Full):
            self._close_results.put_nowait(error_message)