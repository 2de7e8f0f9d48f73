# netproxy

Client-side building blocks for a network proxy. The proxy carries
connections through a tunnel: a proxy server sits in front, and agents on the
far side reach the destination hosts.

## What is in the package

- **`netproxy.tunnel`**: `Tunnel` dials exactly one connection over a packet
  stream that you supply. The stream is any object with `send(packet)` and
  `recv()` methods. Run `Tunnel.serve(stop)` in a thread so that it reads and
  dispatches incoming packets. `Tunnel.dial("tcp", address, cancel)` sends a
  dial request and returns a `netproxy.conn.Conn`. Only `"tcp"` is accepted.
  A second dial on the same tunnel fails. A failed dial raises `DialFailure`.
  `get_dial_failure_reason(error)` reports whether an error is a dial failure
  and gives its `DialFailureReason`: timeout, context (cancelled), endpoint,
  dial closed, tunnel closed, already started, or unknown. `Tunnel.done` is an
  event that is set once the tunnel has stopped serving.
- **`netproxy.conn`**: `Conn.write(data)` sends data as DATA packets.
  `Conn.read(size)` returns up to `size` bytes, and `b""` once the connection
  has ended. `Conn.close()` sends a close request and waits for the answer.
  It raises `CloseTimeoutError` if no answer arrives in time, and
  `TunnelClosedError` if the tunnel stops first. `Conn` also works as a
  context manager.
- **`netproxy.packets`**: the packet model. It holds `Packet`, `PacketType`
  and the payloads `DialRequest`, `DialResponse`, `CloseRequest`,
  `CloseResponse`, `CloseDial` and `Data`. A `Packet` refuses a payload that
  does not match its type.
- **`netproxy.metrics`**: `ClientMetrics` keeps four counts:
  - packets, by `Segment` and packet type;
  - stream errors, by status code;
  - dial failures, by reason;
  - client connections, by `ClientConnectionStatus`.

  `CounterVec` and `GaugeVec` are the underlying metrics. Their `expose()`
  method renders them in Prometheus text format. The tunnel records into the
  shared `METRICS` instance by default.
- **`netproxy.server_options`**: `ProxyRunOptions` holds the proxy server
  settings and their defaults. `validate()` raises `ServerOptionsError` for
  bad ports, missing certificate files, inconsistent UDS or authentication
  settings, unknown proxy strategies, and cipher suites that are not allowed.
  `accepted_ciphers()` lists the allowed cipher suites.
- **`netproxy.agent_options`**: `AgentOptions` holds the agent settings and
  their defaults. `validate()` raises `OptionsError`.
  `validate_agent_identifiers()` checks a URL-encoded identifier list.
- **`netproxy.client_options`**: `ClientOptions` holds the settings for
  sending test requests through the proxy. `validate()` raises
  `ClientOptionsError`. The module also provides `join_host_port()`, plus
  `read_idle_timeout_seconds()` and `ping_timeout_seconds()`, which read the
  `HTTP2_READ_IDLE_TIMEOUT_SECONDS` and `HTTP2_PING_TIMEOUT_SECONDS`
  environment variables.

Each options class has `add_arguments(parser)`, which registers its flags on
an `argparse` parser, and `describe()`, which returns one line per setting.
`parse_server_args`, `parse_agent_args` and `parse_client_args` build a
filled-in options object from an argument list.

## Example

```python
import threading
from netproxy.tunnel import Tunnel

tunnel = Tunnel(stream)          # stream: an object with send() and recv()
threading.Thread(target=tunnel.serve, daemon=True).start()

with tunnel.dial("tcp", "127.0.0.1:80") as conn:
    conn.write(b"GET / HTTP/1.0\r\n\r\n")
    print(conn.read(4096))
```

## What the package does not do

- It opens no network connections of its own. The tunnel runs over whatever
  packet stream you give it.
- It contains no proxy server and no agent. It contains no HTTP test server
  and no command-line test client.
- It installs no commands. The options classes only parse and validate
  settings.

## Installation

```
pip install .
```

Python 3.10 or newer is needed. The package has no third-party dependencies.

## Tests

```
pip install .[test]
pytest
```