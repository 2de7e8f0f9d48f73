import queue
import threading
import time

import pytest

from netproxy.conn import CloseTimeoutError
from netproxy.metrics import (
    ClientConnectionStatus,
    ClientMetrics,
    DialFailureReason,
    Segment,
)
from netproxy.packets import (
    CloseDial,
    CloseResponse,
    Data,
    DialResponse,
    Packet,
    PacketType,
)
from netproxy.tunnel import DialFailure, Tunnel, get_dial_failure_reason

WAIT = 5.0


class FakeStream:
    def __init__(self, inbox, outbox, done):
        self._inbox = inbox
        self._outbox = outbox
        self._done = done
        self.closed = threading.Event()

    def send(self, packet):
        if packet is None:
            return
        while True:
            if self._done.is_set():
                raise RuntimeError("Send on cancelled stream")
            if self.closed.is_set():
                raise RuntimeError("Send on closed stream")
            try:
                self._outbox.put(packet, timeout=0.01)
                return
            except queue.Full:
                pass

    def recv(self):
        deadline = time.monotonic() + 30
        while True:
            if self._done.is_set():
                raise RuntimeError("Recv on cancelled stream")
            if self.closed.is_set():
                raise RuntimeError("Recv on closed stream")
            try:
                return self._inbox.get(timeout=0.01)
            except queue.Empty:
                if time.monotonic() > deadline:
                    raise TimeoutError("timeout recv")

    def close(self):
        self.closed.set()


class FakeConn:
    def __init__(self, stream=None):
        self.stream = stream
        self.closed = False

    def close(self):
        self.closed = True
        if self.stream is not None:
            self.stream.close()


class SlowSend:
    def __init__(self, stream):
        self.stream = stream

    def send(self, packet):
        self.stream.send(packet)
        time.sleep(0.2)

    def recv(self):
        return self.stream.recv()


class EOFStream:
    def send(self, packet):
        pass

    def recv(self):
        raise EOFError


class ProxyServer:
    def __init__(self, stream, connid):
        self.stream = stream
        self.connid = connid
        self.data = bytearray()
        self.packets = []
        self._lock = threading.Lock()
        self.handlers = {
            PacketType.CLOSE_REQ: self.handle_close,
            PacketType.DIAL_REQ: self.handle_dial,
            PacketType.DATA: self.handle_data,
        }

    def serve(self):
        while True:
            try:
                packet = self.stream.recv()
            except Exception:
                return
            if packet is None:
                return
            with self._lock:
                self.packets.append(packet)
            handler = self.handlers.get(packet.type)
            if handler is not None:
                reply = handler(packet)
                if reply is not None:
                    try:
                        self.stream.send(reply)
                    except Exception:
                        return

    def packet(self, index):
        with self._lock:
            return self.packets[index]

    def wait_for_packets(self, count):
        deadline = time.monotonic() + WAIT
        while time.monotonic() < deadline:
            with self._lock:
                if len(self.packets) >= count:
                    return list(self.packets)
            time.sleep(0.01)
        with self._lock:
            return list(self.packets)

    def handle_dial(self, packet):
        return Packet(
            PacketType.DIAL_RSP,
            DialResponse(random=packet.payload.random, connect_id=self.connid),
        )

    def handle_close(self, packet):
        return Packet(PacketType.CLOSE_RSP, CloseResponse(packet.payload.connect_id))

    def handle_data(self, packet):
        self.data.extend(packet.payload.data)
        return Packet(
            PacketType.DATA,
            Data(packet.payload.connect_id, b"echo: " + packet.payload.data),
        )


def spawn(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


@pytest.fixture
def make_pipe():
    streams = []

    def build(done=None):
        done = done if done is not None else threading.Event()
        a, b = queue.Queue(2), queue.Queue(2)
        client_side = FakeStream(a, b, done)
        server_side = FakeStream(b, a, done)
        streams.extend([client_side, server_side])
        return client_side, server_side

    yield build
    for stream in streams:
        stream.close()


def connections(metrics):
    return {
        status: metrics.client_connections.value(status)
        for status in (
            ClientConnectionStatus.CREATED,
            ClientConnectionStatus.DIALING,
            ClientConnectionStatus.OK,
        )
    }


def test_dial(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    assert metrics.client_connections.value(ClientConnectionStatus.CREATED) == 1

    spawn(tunnel.serve)
    spawn(ts.serve)

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert conn.conn_id == 100

    first = ts.packet(0)
    assert first.type is PacketType.DIAL_REQ
    assert first.payload.address == "127.0.0.1:80"

    assert connections(metrics) == {
        ClientConnectionStatus.CREATED: 0,
        ClientConnectionStatus.DIALING: 0,
        ClientConnectionStatus.OK: 1,
    }
    assert metrics.dial_failures.samples() == {}
    assert metrics.stream_packets.value(Segment.FROM_CLIENT, PacketType.DIAL_REQ) == 1
    assert metrics.stream_packets.value(Segment.TO_CLIENT, PacketType.DIAL_RSP) == 1


def test_dial_race(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(SlowSend(s), FakeConn(), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert conn.conn_id == 100
    assert ts.packet(0).type is PacketType.DIAL_REQ
    assert ts.packet(0).payload.address == "127.0.0.1:80"
    assert metrics.dial_failures.samples() == {}


def test_already_dialed(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(SlowSend(s), FakeConn(), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    tunnel.dial("tcp", "127.0.0.1:80")
    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert info.value.reason is DialFailureReason.ALREADY_STARTED
    assert metrics.dial_failures.samples() == {("tunnelstarted",): 1}


def test_data(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    chunks = [b"hello", b", ", b"world."]
    for chunk in chunks:
        assert conn.write(chunk) == len(chunk)

    for chunk in chunks:
        assert conn.read(64) == b"echo: " + chunk

    assert bytes(ts.data) == b"hello, world."


def test_close(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    conn = tunnel.dial("tcp", "127.0.0.1:80")
    assert connections(metrics)[ClientConnectionStatus.OK] == 1

    conn.close()

    second = ts.packet(1)
    assert second.type is PacketType.CLOSE_REQ
    assert second.payload.connect_id == 100

    assert tunnel.done.wait(WAIT)
    assert connections(metrics) == {
        ClientConnectionStatus.CREATED: 0,
        ClientConnectionStatus.DIALING: 0,
        ClientConnectionStatus.OK: 0,
    }


def test_close_timeout(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    ts.handlers[PacketType.CLOSE_REQ] = lambda packet: None
    tunnel = Tunnel(s, FakeConn(s), close_timeout=0.3, metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    conn = tunnel.dial("tcp", "127.0.0.1:80")

    reads = []
    reader = spawn(lambda: reads.append(conn.read(10)))

    with pytest.raises(CloseTimeoutError):
        conn.close()

    assert tunnel.done.wait(WAIT)
    reader.join(WAIT)
    assert reads == [b""]
    assert connections(metrics) == {
        ClientConnectionStatus.CREATED: 0,
        ClientConnectionStatus.DIALING: 0,
        ClientConnectionStatus.OK: 0,
    }


def test_dial_after_tunnel_cancelled(make_pipe):
    metrics = ClientMetrics()
    cancelled = threading.Event()
    cancelled.set()
    s, ps = make_pipe(cancelled)
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    spawn(tunnel.serve, cancelled)
    spawn(ts.serve)

    with pytest.raises((RuntimeError, ConnectionError)):
        tunnel.dial("tcp", "127.0.0.1:80", cancelled)
    assert metrics.dial_failures.samples() == {("unknown",): 1}
    assert tunnel.done.wait(WAIT)


def test_dial_request_cancelled(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    request_cancel = threading.Event()
    dial_closed = threading.Event()

    def on_dial(packet):
        request_cancel.set()
        return None

    def on_dial_close(packet):
        dial_closed.set()
        return None

    ts.handlers[PacketType.DIAL_REQ] = on_dial
    ts.handlers[PacketType.DIAL_CLS] = on_dial_close
    spawn(ts.serve)

    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    spawn(tunnel.serve)

    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80", request_cancel)

    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.CONTEXT)
    assert metrics.dial_failures.samples() == {("context",): 1}
    assert ts.packet(0).type is PacketType.DIAL_REQ

    assert dial_closed.wait(WAIT)
    assert ts.packet(1).type is PacketType.DIAL_CLS
    assert tunnel.done.wait(WAIT)


def test_dial_backend_error(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    ts.handlers[PacketType.DIAL_REQ] = lambda packet: Packet(
        PacketType.DIAL_RSP,
        DialResponse(random=packet.payload.random, error="fake backend error"),
    )
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    with pytest.raises(DialFailure, match="fake backend error") as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.ENDPOINT)
    assert ts.packet(0).type is PacketType.DIAL_REQ
    assert metrics.dial_failures.samples() == {("endpoint",): 1}


def test_dial_closed(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    ts.handlers[PacketType.DIAL_REQ] = lambda packet: Packet(
        PacketType.DIAL_CLS, CloseDial(packet.payload.random)
    )
    spawn(ts.serve)

    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    spawn(tunnel.serve)

    with pytest.raises(DialFailure) as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert get_dial_failure_reason(info.value) == (True, DialFailureReason.DIAL_CLOSED)
    assert ts.packet(0).type is PacketType.DIAL_REQ
    assert metrics.dial_failures.samples() == {("dialclosed",): 1}
    assert tunnel.done.wait(WAIT)


def test_dial_timeout_sends_dial_close(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    dial_closed = threading.Event()
    ts.handlers[PacketType.DIAL_REQ] = lambda packet: None

    def on_dial_close(packet):
        dial_closed.set()
        return None

    ts.handlers[PacketType.DIAL_CLS] = on_dial_close
    spawn(ts.serve)

    tunnel = Tunnel(s, FakeConn(s), dial_timeout=0.2, metrics=metrics)
    spawn(tunnel.serve)

    with pytest.raises(DialFailure, match="dial timeout, backstop") as info:
        tunnel.dial("tcp", "127.0.0.1:80")
    assert info.value.reason is DialFailureReason.TIMEOUT
    assert dial_closed.wait(WAIT)
    assert tunnel.done.wait(WAIT)
    assert metrics.dial_failures.samples() == {("timeout",): 1}


def test_unsupported_protocol(make_pipe):
    metrics = ClientMetrics()
    s, _ = make_pipe()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    with pytest.raises(ValueError, match="protocol not supported"):
        tunnel.dial("udp", "127.0.0.1:80")
    assert metrics.dial_failures.samples() == {("unknown",): 1}


def test_data_for_unknown_connection_is_closed(make_pipe):
    metrics = ClientMetrics()
    s, ps = make_pipe()
    ts = ProxyServer(ps, 100)
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)

    spawn(tunnel.serve)
    spawn(ts.serve)

    tunnel.dial("tcp", "127.0.0.1:80")
    ps.send(Packet(PacketType.DATA, Data(999, b"stray")))

    packets = ts.wait_for_packets(2)
    close_requests = [p for p in packets if p.type is PacketType.CLOSE_REQ]
    assert [p.payload.connect_id for p in close_requests] == [999]
    assert not tunnel.done.is_set()


def test_stream_error_ends_serving(make_pipe):
    metrics = ClientMetrics()
    s, _ = make_pipe()
    tunnel = Tunnel(s, FakeConn(s), metrics=metrics)
    thread = spawn(tunnel.serve)
    s.close()
    thread.join(WAIT)

    assert tunnel.done.is_set()
    assert metrics.stream_errors.value(Segment.TO_CLIENT, "Unknown", "Unknown") == 1
    assert metrics.client_connections.value(ClientConnectionStatus.CREATED) == 0


def test_eof_ends_serving_without_error():
    metrics = ClientMetrics()
    connection = FakeConn()
    tunnel = Tunnel(EOFStream(), connection, metrics=metrics)
    tunnel.serve()

    assert tunnel.done.is_set()
    assert connection.closed is True
    assert metrics.stream_errors.samples() == {}


def test_close_tunnel_marks_closing():
    connection = FakeConn()
    tunnel = Tunnel(EOFStream(), connection, metrics=ClientMetrics())
    assert tunnel.is_closing() is False
    tunnel.close_tunnel()
    assert tunnel.is_closing() is True
    assert connection.closed is True


def test_get_dial_failure_reason_for_other_errors():
    assert get_dial_failure_reason(RuntimeError("boom")) == (False, DialFailureReason.UNKNOWN)


def test_get_dial_failure_reason_follows_cause():
    try:
        try:
            raise DialFailure("tunnel closed", DialFailureReason.TUNNEL_CLOSED)
        except DialFailure as inner:
            raise RuntimeError("wrapped") from inner
    except RuntimeError as outer:
        assert get_dial_failure_reason(outer) == (True, DialFailureReason.TUNNEL_CLOSED)