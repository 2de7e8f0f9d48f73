"""Counters and gauges describing tunnel traffic, exposed in Prometheus text format."""

from __future__ import annotations

import threading
from enum import Enum
from typing import Any, Dict, Iterable, Tuple

NAMESPACE = "konnectivity_network_proxy"
SUBSYSTEM = "client"

LabelKey = Tuple[str, ...]


class Segment(str, Enum):
    """One of the four tunnel segments a packet can travel on."""

    FROM_CLIENT = "from_client"
    TO_CLIENT = "to_client"
    FROM_AGENT = "from_agent"
    TO_AGENT = "to_agent"


class DialFailureReason(str, Enum):
    """Why a dial through the tunnel failed."""

    UNKNOWN = "unknown"
    # The hard 30 second backstop timeout was hit.
    TIMEOUT = "timeout"
    # The caller cancelled before the dial response arrived.
    CONTEXT = "context"
    # The agent could not reach the backend endpoint.
    ENDPOINT = "endpoint"
    # A close-dial arrived before the dial completed.
    DIAL_CLOSED = "dialclosed"
    # The tunnel closed before the dial completed.
    TUNNEL_CLOSED = "tunnelclosed"
    # A single-use tunnel was dialed a second time.
    ALREADY_STARTED = "tunnelstarted"


class ClientConnectionStatus(str, Enum):
    """Lifecycle state of a client tunnel."""

    CREATED = "created"
    DIALING = "dialing"
    OK = "ok"
    CLOSING = "closing"


def _label(value: Any) -> str:
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _fq_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_number(number: float) -> str:
    if float(number).is_integer():
        return str(int(number))
    return repr(float(number))


def _render(
    name: str,
    help: str,
    kind: str,
    label_names: Tuple[str, ...],
    samples: Dict[LabelKey, float],
) -> str:
    ordered = sorted(samples.items())
    if not ordered:
        return ""
    lines = [f"# HELP {name} {help}", f"# TYPE {name} {kind}"]
    for key, number in ordered:
        labels = ",".join(
            f'{label}="{_escape(value)}"' for label, value in zip(label_names, key)
        )
        suffix = "{" + labels + "}" if labels else ""
        lines.append(f"{name}{suffix} {_format_number(number)}")
    return "\n".join(lines) + "\n"


class _MetricVec:
    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: Dict[LabelKey, float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Tuple[Any, ...]) -> LabelKey:
        if len(labels) != len(self.label_names):
            raise ValueError(
                f"{self.name} expects {len(self.label_names)} label values, got {len(labels)}"
            )
        return tuple(_label(value) for value in labels)

    def _add(self, labels: Tuple[Any, ...], amount: float) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0) + amount


class CounterVec(_MetricVec):
    """A monotonically increasing counter partitioned by labels."""

    kind = "counter"

    def inc(self, *args: Any) -> None:
        """Add one to the sample for the given label values."""
        self._add(args, 1)

    def value(self, *args: Any) -> float:
        """Current value for the given label values; 0 if never touched."""
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0)

    def samples(self) -> Dict[LabelKey, float]:
        """A snapshot of every labelled sample."""
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        """Drop every sample."""
        with self._lock:
            self._values.clear()

    def expose(self) -> str:
        """Render the samples in Prometheus text format; empty when there are none."""
        return _render(self.name, self.help, self.kind, self.label_names, self.samples())


class GaugeVec(_MetricVec):
    """A gauge partitioned by labels."""

    kind = "gauge"

    def inc(self, *args: Any) -> None:
        """Add one to the sample for the given label values."""
        self._add(args, 1)

    def dec(self, *args: Any) -> None:
        """Subtract one from the sample for the given label values."""
        self._add(args, -1)

    def value(self, *args: Any) -> float:
        """Current value for the given label values; 0 if never touched."""
        key = self._key(args)
        with self._lock:
            return self._values.get(key, 0)

    def samples(self) -> Dict[LabelKey, float]:
        """A snapshot of every labelled sample."""
        with self._lock:
            return dict(self._values)

    def reset(self) -> None:
        """Drop every sample."""
        with self._lock:
            self._values.clear()

    def expose(self) -> str:
        """Render the samples in Prometheus text format; empty when there are none."""
        return _render(self.name, self.help, self.kind, self.label_names, self.samples())


def make_stream_packets_total_metric(namespace: str, subsystem: str) -> CounterVec:
    """Counter of packets processed, by segment and packet type."""
    return CounterVec(
        _fq_name(namespace, subsystem, "stream_packets_total"),
        "Count of packets processed, by segment and packet type (example: from_client, DIAL_REQ)",
        ("segment", "packet_type"),
    )


def make_stream_errors_total_metric(namespace: str, subsystem: str) -> CounterVec:
    """Counter of stream errors, by segment, status code and packet type."""
    return CounterVec(
        _fq_name(namespace, subsystem, "stream_errors_total"),
        "Count of gRPC stream errors, by segment, grpc Code, packet type. "
        "(example: from_agent, Code.Unavailable, DIAL_RSP)",
        ("segment", "code", "packet_type"),
    )


def status_code(error: BaseException | None) -> str:
    """The status code name carried by an error: OK for none, Unknown if it has none."""
    if error is None:
        return "OK"
    code = getattr(error, "grpc_code", None)
    if code is None:
        return "Unknown"
    return _label(code)


class ClientMetrics:
    """All metrics recorded by the tunnel client."""

    def __init__(self, namespace: str = NAMESPACE, subsystem: str = SUBSYSTEM) -> None:
        self.stream_packets = make_stream_packets_total_metric(namespace, subsystem)
        self.stream_errors = make_stream_errors_total_metric(namespace, subsystem)
        self.dial_failures = CounterVec(
            _fq_name(namespace, subsystem, "dial_failure_total"),
            "Number of dial failures observed, by reason (example: remote endpoint error)",
            ("reason",),
        )
        self.client_connections = GaugeVec(
            _fq_name(namespace, subsystem, "client_connections"),
            "Number of open client connections, by status (Example: dialing)",
            ("status",),
        )

    def reset(self) -> None:
        """Clear every metric."""
        for metric in (
            self.stream_packets,
            self.stream_errors,
            self.dial_failures,
            self.client_connections,
        ):
            metric.reset()

    def observe_dial_failure(self, reason: DialFailureReason) -> None:
        self.dial_failures.inc(reason)

    def observe_packet(self, segment: Segment, packet_type: Any) -> None:
        self.stream_packets.inc(segment, packet_type)

    def observe_stream_error(
        self, segment: Segment, error: BaseException | None, packet_type: Any
    ) -> None:
        self.stream_errors.inc(segment, status_code(error), packet_type)

    def observe_stream_error_no_packet(
        self, segment: Segment, error: BaseException | None
    ) -> None:
        self.stream_errors.inc(segment, status_code(error), "Unknown")


METRICS = ClientMetrics()