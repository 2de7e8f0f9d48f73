"""Command-line options for the proxy agent and their validation."""

from __future__ import annotations

import argparse
import os
import re
import string
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import unquote_plus


class OptionsError(ValueError):
    """The agent options are not usable."""


class IdentifierType(str, Enum):
    """Kinds of identifier an agent can advertise to the server."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    CIDR = "cidr"
    HOST = "host"
    DEFAULT_ROUTE = "default-route"


_IDENTIFIER_TYPES = frozenset(kind.value for kind in IdentifierType)


def default_agent_id() -> str:
    """The PROXY_AGENT_ID environment variable, or a fresh UUID when it is unset."""
    agent_id = os.environ.get("PROXY_AGENT_ID", "")
    return agent_id or str(uuid.uuid4())


# Durations

_NS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_DURATION_PART = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1h30m", "1.5s" or "250ms"."""
    original = text
    sign = 1
    if text[:1] in "+-" and text:
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise argparse.ArgumentTypeError(f"invalid duration {original!r}")
    total = Decimal(0)
    position = 0
    while position < len(text):
        match = _DURATION_PART.match(text, position)
        if match is None:
            raise argparse.ArgumentTypeError(f"invalid duration {original!r}")
        total += Decimal(match.group(1)) * _NS_PER_UNIT[match.group(2)]
        position = match.end()
    microseconds = int((total / 1000).to_integral_value())
    return timedelta(microseconds=sign * microseconds)


def _nanoseconds(duration: timedelta) -> int:
    return (
        (duration.days * 86400 + duration.seconds) * 1_000_000_000
        + duration.microseconds * 1000
    )


def _fraction(value: int, unit: int) -> str:
    whole, rest = divmod(value, unit)
    if not rest:
        return str(whole)
    digits = len(str(unit)) - 1
    return f"{whole}." + str(rest).rjust(digits, "0").rstrip("0")


def _format_duration(duration: timedelta) -> str:
    """Render a duration the way the agent's logs show it, e.g. "1h0m0s" or "10s"."""
    total = _nanoseconds(duration)
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1_000:
        return f"{sign}{total}ns"
    if total < 1_000_000:
        return f"{sign}{_fraction(total, 1_000)}µs"
    if total < 1_000_000_000:
        return f"{sign}{_fraction(total, 1_000_000)}ms"
    hours, rest = divmod(total, 3600 * 1_000_000_000)
    minutes, rest = divmod(rest, 60 * 1_000_000_000)
    seconds = _fraction(rest, 1_000_000_000) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return f"{sign}{seconds}"


# Flag value helpers

_TRUE = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE = {"0", "f", "F", "FALSE", "false", "False"}


def _parse_bool(text: str) -> bool:
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise argparse.ArgumentTypeError(f"invalid boolean value {text!r}")


class _StringListAction(argparse.Action):
    """Comma separated values; the first use replaces the default, later uses append."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._seen: set = set()

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: Optional[str] = None,
    ) -> None:
        items = [item for item in str(values).split(",")] if values else []
        key = id(namespace)
        if key in self._seen:
            current = list(getattr(namespace, self.dest, None) or [])
        else:
            current = []
            self._seen.add(key)
        setattr(namespace, self.dest, current + items)


def _quote(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


# Agent identifiers

_HEX = set(string.hexdigits)


def _query_unescape(text: str) -> str:
    for index, char in enumerate(text):
        if char == "%":
            escape = text[index + 1 : index + 3]
            if len(escape) < 2 or not set(escape) <= _HEX:
                bad = text[index : index + 3]
                raise OptionsError(f'invalid URL escape "{bad}"')
    return unquote_plus(text)


def _parse_query(query: str) -> Dict[str, List[str]]:
    decoded: Dict[str, List[str]] = {}
    for part in query.split("&"):
        if not part:
            continue
        if ";" in part:
            raise OptionsError("invalid semicolon separator in query")
        key, _, value = part.partition("=")
        decoded.setdefault(_query_unescape(key), []).append(_query_unescape(value))
    return decoded


def validate_agent_identifiers(agent_identifiers: str) -> None:
    """Check that a URL-encoded identifier list only names known identifier types."""
    for id_type in _parse_query(agent_identifiers):
        if id_type not in _IDENTIFIER_TYPES:
            raise OptionsError(f"unknown address type: {id_type}")


def _missing(path: str) -> Optional[OSError]:
    try:
        os.stat(path)
    except FileNotFoundError as exc:
        return exc
    except OSError:
        return None
    return None


@dataclass
class AgentOptions:
    """Settings for connecting the agent to the proxy server and serving health data."""

    agent_cert: str = ""
    agent_key: str = ""
    ca_cert: str = ""
    proxy_server_host: str = "127.0.0.1"
    proxy_server_port: int = 8091
    alpn_protos: List[str] = field(default_factory=list)
    health_server_host: str = ""
    health_server_port: int = 8093
    admin_bind_address: str = "127.0.0.1"
    admin_server_port: int = 8094
    enable_profiling: bool = False
    enable_contention_profiling: bool = False
    agent_id: str = field(default_factory=default_agent_id)
    agent_identifiers: str = ""
    sync_interval: timedelta = timedelta(seconds=1)
    probe_interval: timedelta = timedelta(seconds=1)
    sync_interval_cap: timedelta = timedelta(seconds=10)
    keepalive_time: timedelta = timedelta(hours=1)
    service_account_token_path: str = ""
    warn_on_channel_limit: bool = False
    sync_forever: bool = False

    def validate(self) -> None:
        """Raise OptionsError describing the first problem found."""
        if self.agent_key:
            err = _missing(self.agent_key)
            if err is not None:
                raise OptionsError(f"error checking agent key {self.agent_key}, got {err}")
            if not self.agent_cert:
                raise OptionsError(
                    f'cannot have agent cert empty when agent key is set to "{self.agent_key}"'
                )
        if self.agent_cert:
            err = _missing(self.agent_cert)
            if err is not None:
                raise OptionsError(f"error checking agent cert {self.agent_cert}, got {err}")
            if not self.agent_key:
                raise OptionsError(
                    f'cannot have agent key empty when agent cert is set to "{self.agent_cert}"'
                )
        if self.ca_cert:
            err = _missing(self.ca_cert)
            if err is not None:
                raise OptionsError(f"error checking agent CA cert {self.ca_cert}, got {err}")
        if self.proxy_server_port <= 0:
            raise OptionsError(
                f"proxy server port {self.proxy_server_port} must be greater than 0"
            )
        if self.health_server_port <= 0:
            raise OptionsError(
                f"health server port {self.health_server_port} must be greater than 0"
            )
        if self.admin_server_port <= 0:
            raise OptionsError(
                f"admin server port {self.admin_server_port} must be greater than 0"
            )
        if self.enable_contention_profiling and not self.enable_profiling:
            raise OptionsError(
                "if --enable-contention-profiling is set, --enable-profiling must also be set"
            )
        if self.sync_interval > self.sync_interval_cap:
            raise OptionsError(
                f"sync interval {_format_duration(self.sync_interval)} must be less than "
                f"sync interval cap {_format_duration(self.sync_interval_cap)}"
            )
        if self.service_account_token_path:
            err = _missing(self.service_account_token_path)
            if err is not None:
                raise OptionsError(
                    f"error checking service account token path "
                    f"{self.service_account_token_path}, got {err}"
                )
        try:
            validate_agent_identifiers(self.agent_identifiers)
        except OptionsError as exc:
            raise OptionsError(f"agent address is invalid: {exc}") from exc

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the agent flags; parse with namespace=self to fill this object."""

        def text(flag: str, dest: str, help: str) -> None:
            parser.add_argument(flag, dest=dest, default=getattr(self, dest), help=help)

        def number(flag: str, dest: str, help: str) -> None:
            parser.add_argument(flag, dest=dest, type=int, default=getattr(self, dest), help=help)

        def boolean(flag: str, dest: str, help: str) -> None:
            parser.add_argument(
                flag,
                dest=dest,
                type=_parse_bool,
                nargs="?",
                const=True,
                default=getattr(self, dest),
                help=help,
            )

        def duration(flag: str, dest: str, help: str) -> None:
            parser.add_argument(
                flag, dest=dest, type=_parse_duration, default=getattr(self, dest), help=help
            )

        text("--agent-cert", "agent_cert", "If non-empty secure communication with this cert.")
        text("--agent-key", "agent_key", "If non-empty secure communication with this key.")
        text("--ca-cert", "ca_cert", "If non-empty the CAs we use to validate clients.")
        text(
            "--proxy-server-host",
            "proxy_server_host",
            "The hostname to use to connect to the proxy-server.",
        )
        number("--proxy-server-port", "proxy_server_port", "The port the proxy server is listening on.")
        parser.add_argument(
            "--alpn-proto",
            dest="alpn_protos",
            action=_StringListAction,
            default=list(self.alpn_protos),
            help="Additional ALPN protocols to be presented when connecting to the server.",
        )
        text(
            "--health-server-host",
            "health_server_host",
            "The host address to listen on, without port.",
        )
        number("--health-server-port", "health_server_port", "The port the health server is listening on.")
        number("--admin-server-port", "admin_server_port", "The port the admin server is listening on.")
        text(
            "--admin-bind-address",
            "admin_bind_address",
            "Bind address for admin connections. If empty, we will bind to all interfaces.",
        )
        boolean("--enable-profiling", "enable_profiling", "enable pprof at host:admin-port/debug/pprof")
        boolean(
            "--enable-contention-profiling",
            "enable_contention_profiling",
            'enable contention profiling at host:admin-port/debug/pprof/block. '
            '"--enable-profiling" must also be set.',
        )
        text(
            "--agent-id",
            "agent_id",
            "The unique ID of this agent. Can also be set by the 'PROXY_AGENT_ID' "
            "environment variable. Default to a generated uuid if not set.",
        )
        duration(
            "--sync-interval",
            "sync_interval",
            "The initial interval by which the agent periodically checks if it has "
            "connections to all instances of the proxy server.",
        )
        duration(
            "--probe-interval",
            "probe_interval",
            "The interval by which the agent periodically checks if its connections "
            "to the proxy server are ready.",
        )
        duration(
            "--sync-interval-cap",
            "sync_interval_cap",
            "The maximum interval for the SyncInterval to back off to when unable to "
            "connect to the proxy server",
        )
        duration("--keepalive-time", "keepalive_time", "Time for gRPC agent server keepalive.")
        text(
            "--service-account-token-path",
            "service_account_token_path",
            "If non-empty proxy agent uses this token to prove its identity to the proxy server.",
        )
        text(
            "--agent-identifiers",
            "agent_identifiers",
            "Identifiers of the agent that will be used by the server when choosing "
            "agent, in URL encoded format, e.g. host=localhost&cidr=127.0.0.1/16"
            "&ipv4=1.2.3.4&default-route=true",
        )
        boolean(
            "--warn-on-channel-limit",
            "warn_on_channel_limit",
            "Turns on a warning if the system is going to push to a full channel.",
        )
        boolean(
            "--sync-forever",
            "sync_forever",
            "If true, the agent continues syncing, in order to support server count changes.",
        )

    def describe(self) -> str:
        """One line per setting, as the agent logs them at start-up."""
        lines = [
            f"AgentCert set to {_quote(self.agent_cert)}.",
            f"AgentKey set to {_quote(self.agent_key)}.",
            f"CACert set to {_quote(self.ca_cert)}.",
            f"ProxyServerHost set to {_quote(self.proxy_server_host)}.",
            f"ProxyServerPort set to {self.proxy_server_port}.",
            f"ALPNProtos set to [{' '.join(self.alpn_protos)}].",
            f"HealthServerHost set to {self.health_server_host}",
            f"HealthServerPort set to {self.health_server_port}.",
            f"Admin bind address set to {_quote(self.admin_bind_address)}.",
            f"AdminServerPort set to {self.admin_server_port}.",
            f"EnableProfiling set to {str(self.enable_profiling).lower()}.",
            "EnableContentionProfiling set to "
            f"{str(self.enable_contention_profiling).lower()}.",
            f"AgentID set to {self.agent_id}.",
            f"SyncInterval set to {_format_duration(self.sync_interval)}.",
            f"ProbeInterval set to {_format_duration(self.probe_interval)}.",
            f"SyncIntervalCap set to {_format_duration(self.sync_interval_cap)}.",
            f"Keepalive time set to {_format_duration(self.keepalive_time)}.",
            f"ServiceAccountTokenPath set to {_quote(self.service_account_token_path)}.",
            f"AgentIdentifiers set to {unquote_plus(self.agent_identifiers)}.",
            f"WarnOnChannelLimit set to {str(self.warn_on_channel_limit).lower()}.",
            f"SyncForever set to {str(self.sync_forever).lower()}.",
        ]
        return "\n".join(lines) + "\n"


def new_agent_options() -> AgentOptions:
    """Agent options holding the documented defaults."""
    return AgentOptions()


def parse_agent_args(argv: Optional[Sequence[str]] = None) -> AgentOptions:
    """Build agent options from command-line arguments."""
    options = new_agent_options()
    parser = argparse.ArgumentParser(prog="proxy-agent")
    options.add_arguments(parser)
    parser.parse_args(argv, namespace=options)
    return options