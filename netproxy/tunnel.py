"""A single-use tunnel that dials one connection through a proxy server stream."""

from __future__ import annotations

import contextlib
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, Tuple

from .conn import CLOSE_TIMEOUT, Conn
from .metrics import (
    METRICS,
    ClientConnectionStatus,
    ClientMetrics,
    DialFailureReason,
    Segment,
)
from .packets import (
    CloseDial,
    CloseRequest,
    CloseResponse,
    Data,
    DialRequest,
    DialResponse,
    Packet,
    PacketType,
)

log = logging.getLogger(__name__)

# Backstop for a dial that never gets an answer.
DIAL_TIMEOUT = 30.0
# The tunnel closes if received data is not read within this many seconds.
READ_TIMEOUT = 10.0
_POLL = 0.01


class PacketStream(Protocol):
    """A bidirectional packet stream to the proxy server."""

    def send(self, packet: Packet) -> None: ...

    def recv(self) -> Optional[Packet]: ...


class DialFailure(Exception):
    """A dial through the tunnel did not produce a connection."""

    def __init__(self, message: str, reason: DialFailureReason) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason


def get_dial_failure_reason(error: BaseException) -> Tuple[bool, DialFailureReason]:
    """Whether an error (or one it was raised from) is a dial failure, and why."""
    seen = set()
    current: Optional[BaseException] = error
    while current is not None and id(current) not in seen:
        if isinstance(current, DialFailure):
            return True, current.reason
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False, DialFailureReason.UNKNOWN


@dataclass(frozen=True)
class _DialResult:
    conn_id: int = 0
    failure: Optional[DialFailure] = None


class _PendingDial:
    """Hand-off point for a dial result; refuses results once withdrawn."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._result: Optional[_DialResult] = None
        self._withdrawn = False

    def offer(self, result: _DialResult) -> bool:
        with self._cond:
            if self._withdrawn or self._result is not None:
                return False
            self._result = result
            self._cond.notify_all()
            return True

    def wait(self, timeout: float) -> Optional[_DialResult]:
        with self._cond:
            self._cond.wait_for(lambda: self._result is not None, timeout)
            return self._result

    def withdraw(self) -> Optional[_DialResult]:
        with self._cond:
            self._withdrawn = True
            return self._result


class _NoConnection:
    def close(self) -> None:
        pass


class Tunnel:
    """Carries exactly one dialed connection over a packet stream."""

    def __init__(
        self,
        stream: PacketStream,
        connection: Any = None,
        *,
        read_timeout: float = READ_TIMEOUT,
        dial_timeout: float = DIAL_TIMEOUT,
        close_timeout: float = CLOSE_TIMEOUT,
        metrics: ClientMetrics = METRICS,
    ) -> None:
        self.stream = stream
        self.connection = connection if connection is not None else _NoConnection()
        self.read_timeout = read_timeout
        self.dial_timeout = dial_timeout
        self.close_timeout = close_timeout
        self.metrics = metrics
        self.done = threading.Event()

        self._send_lock = threading.Lock()
        self._recv_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._conns_lock = threading.Lock()
        self._pending: Dict[int, _PendingDial] = {}
        self._conns: Dict[int, Conn] = {}
        self._started = False
        self._closing = False
        self._status = ClientConnectionStatus.CREATED
        metrics.client_connections.inc(ClientConnectionStatus.CREATED)

    # Metrics

    def _update_metric(self, status: ClientConnectionStatus) -> None:
        if self.done.is_set():
            return
        with self._state_lock:
            previous, self._status = self._status, status
        gauge = self.metrics.client_connections
        gauge.dec(previous)
        gauge.inc(status)

    def _close_metric(self) -> None:
        if self.done.is_set():
            return
        with self._state_lock:
            previous = self._status
        self.metrics.client_connections.dec(previous)

    # Serving

    def serve(self, stop: Optional[threading.Event] = None) -> None:
        """Read packets and dispatch them until the tunnel has no more work."""
        try:
            while True:
                try:
                    packet = self.recv()
                except EOFError:
                    return
                except Exception as exc:
                    if not self.is_closing():
                        log.error("stream read failure: %s", exc)
                    return
                if packet is None:
                    if not self.is_closing():
                        log.error("stream read failure: empty packet")
                    return
                if self.is_closing():
                    return
                log.debug("[tracing] recv packet type=%s", packet.type.value)
                if not self._dispatch(packet, stop):
                    return
        finally:
            with contextlib.suppress(Exception):
                self.connection.close()
            # Connections still registered never got a CLOSE_RSP.
            with self._conns_lock:
                remaining = list(self._conns.values())
            for conn in remaining:
                conn._close_reads()
            self._close_metric()
            self.done.set()

    def _dispatch(self, packet: Packet, stop: Optional[threading.Event]) -> bool:
        payload = packet.payload
        if packet.type is PacketType.DIAL_RSP:
            return self._handle_dial_response(payload)
        if packet.type is PacketType.DIAL_CLS:
            self._handle_dial_close(payload)
            return False
        if packet.type is PacketType.DATA:
            return self._handle_data(payload, stop)
        if packet.type is PacketType.CLOSE_RSP:
            return self._handle_close_response(payload)
        return True

    def _pending_dial(self, dial_id: int) -> Optional[_PendingDial]:
        with self._pending_lock:
            return self._pending.get(dial_id)

    def _handle_dial_response(self, response: DialResponse) -> bool:
        pending = self._pending_dial(response.random)
        if pending is None:
            log.info(
                "DialResp not recognized; dropped dialID=%s connectionID=%s error=%r",
                response.random,
                response.connect_id,
                response.error,
            )
            return False
        if response.error:
            result = _DialResult(
                response.connect_id,
                DialFailure(response.error, DialFailureReason.ENDPOINT),
            )
        else:
            result = _DialResult(response.connect_id)
            self._update_metric(ClientConnectionStatus.OK)
        if not pending.offer(result):
            log.info(
                "Pending dial has been cancelled; dropped connectionID=%s dialID=%s",
                response.connect_id,
                response.random,
            )
            return False
        # A failed dial leaves nothing to serve.
        return not response.error

    def _handle_dial_close(self, close: CloseDial) -> None:
        pending = self._pending_dial(close.random)
        if pending is None:
            log.info("DIAL_CLS after dial finished dialID=%s", close.random)
            return
        pending.offer(_DialResult(failure=DialFailure("dial closed", DialFailureReason.DIAL_CLOSED)))

    def _handle_data(self, data: Data, stop: Optional[threading.Event]) -> bool:
        if data.connect_id == 0:
            log.error("Received packet missing ConnectID packetType=DATA")
            return True
        with self._conns_lock:
            conn = self._conns.get(data.connect_id)
        if conn is None:
            log.error("Connection not recognized connectionID=%s packetType=DATA", data.connect_id)
            with contextlib.suppress(Exception):
                self.send_close_request(data.connect_id)
            return True
        deadline = time.monotonic() + self.read_timeout
        while True:
            remaining = max(0.0, deadline - time.monotonic())
            if conn._deliver(data.data, timeout=min(_POLL, remaining)):
                return True
            if stop is not None and stop.is_set():
                log.info("Tunnel has been closed connectionID=%s", conn.conn_id)
                return True
            if time.monotonic() >= deadline:
                log.error(
                    "readTimeout has been reached, the connection to the proxy server "
                    "will be closed connectionID=%s readTimeoutSeconds=%s",
                    conn.conn_id,
                    self.read_timeout,
                )
                return False

    def _handle_close_response(self, response: CloseResponse) -> bool:
        with self._conns_lock:
            conn = self._conns.get(response.connect_id)
        if conn is None:
            log.info("Connection not recognized connectionID=%s packetType=CLOSE_RSP", response.connect_id)
            return True
        conn._finish(response.error)
        with self._conns_lock:
            self._conns.pop(response.connect_id, None)
        return False

    # Dialing

    def dial(
        self,
        protocol: str,
        address: str,
        cancel: Optional[threading.Event] = None,
    ) -> Conn:
        """Open the tunnel's one connection to address; only "tcp" is supported."""
        try:
            return self._dial(protocol, address, cancel)
        except Exception as exc:
            _, reason = get_dial_failure_reason(exc)
            self.metrics.observe_dial_failure(reason)
            raise

    def _dial(self, protocol: str, address: str, cancel: Optional[threading.Event]) -> Conn:
        with self._state_lock:
            already, self._started = self._started, True
        if already:
            raise DialFailure("single-use dialer already dialed", DialFailureReason.ALREADY_STARTED)
        if self.done.is_set():
            raise ConnectionError("tunnel is closed")
        if protocol != "tcp":
            raise ValueError("protocol not supported")

        self._update_metric(ClientConnectionStatus.DIALING)
        dial_id = random.getrandbits(63)
        pending = _PendingDial()
        with self._pending_lock:
            self._pending[dial_id] = pending
        try:
            self.send(Packet(PacketType.DIAL_REQ, DialRequest(protocol, address, dial_id)))
            log.debug("DIAL_REQ sent to proxy server")
            result, failure = self._await_dial(pending, cancel)
        finally:
            late = pending.withdraw()
            with self._pending_lock:
                self._pending.pop(dial_id, None)

        if result is None and late is not None:
            result, failure = late, None
        if failure is not None:
            if failure.reason in (DialFailureReason.TIMEOUT, DialFailureReason.CONTEXT):
                threading.Thread(target=self._abandon_dial, args=(dial_id,), daemon=True).start()
            raise failure
        assert result is not None
        if result.failure is not None:
            raise result.failure

        conn = Conn(self, dial_id, result.conn_id, close_timeout=self.close_timeout)
        with self._conns_lock:
            self._conns[result.conn_id] = conn
        return conn

    def _await_dial(
        self, pending: _PendingDial, cancel: Optional[threading.Event]
    ) -> Tuple[Optional[_DialResult], Optional[DialFailure]]:
        deadline = time.monotonic() + self.dial_timeout
        while True:
            result = pending.wait(_POLL)
            if result is not None:
                return result, None
            if time.monotonic() >= deadline:
                log.debug("Timed out waiting for DialResp")
                return None, DialFailure("dial timeout, backstop", DialFailureReason.TIMEOUT)
            if cancel is not None and cancel.is_set():
                log.debug("Cancelled while waiting for DialResp")
                return None, DialFailure("dial timeout, context", DialFailureReason.CONTEXT)
            if self.done.is_set():
                log.debug("Tunnel closed while waiting for DialResp")
                return None, DialFailure("tunnel closed", DialFailureReason.TUNNEL_CLOSED)

    def _abandon_dial(self, dial_id: int) -> None:
        try:
            with contextlib.suppress(Exception):
                self.send_dial_close(dial_id)
        finally:
            self.close_tunnel()

    # Stream access

    def send(self, packet: Packet) -> None:
        """Send one packet to the proxy server."""
        with self._send_lock:
            self.metrics.observe_packet(Segment.FROM_CLIENT, packet.type)
            try:
                self.stream.send(packet)
            except EOFError:
                raise
            except Exception as exc:
                self.metrics.observe_stream_error(Segment.FROM_CLIENT, exc, packet.type)
                raise

    def recv(self) -> Optional[Packet]:
        """Receive one packet from the proxy server."""
        with self._recv_lock:
            try:
                packet = self.stream.recv()
            except EOFError:
                raise
            except Exception as exc:
                self.metrics.observe_stream_error_no_packet(Segment.TO_CLIENT, exc)
                raise
            if packet is not None:
                self.metrics.observe_packet(Segment.TO_CLIENT, packet.type)
            return packet

    def send_close_request(self, conn_id: int) -> None:
        """Ask the proxy server to close an established connection."""
        log.debug("[tracing] send req type=CLOSE_REQ")
        self.send(Packet(PacketType.CLOSE_REQ, CloseRequest(conn_id)))

    def send_dial_close(self, dial_id: int) -> None:
        """Tell the proxy server a pending dial is abandoned."""
        log.debug("[tracing] send req type=DIAL_CLS")
        self.send(Packet(PacketType.DIAL_CLS, CloseDial(dial_id)))

    def close_tunnel(self) -> None:
        """Mark the tunnel as closing and close the underlying connection."""
        with self._state_lock:
            self._closing = True
        self.connection.close()

    def is_closing(self) -> bool:
        with self._state_lock:
            return self._closing