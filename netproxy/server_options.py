"""Command-line options for the proxy server and their validation."""

from __future__ import annotations

import argparse
import logging
import os
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from .agent_options import (
    _StringListAction,
    _format_duration,
    _missing,
    _parse_bool,
    _parse_duration,
    _quote,
)

log = logging.getLogger(__name__)

MODE_GRPC = "grpc"
MODE_HTTP_CONNECT = "http-connect"

PROXY_STRATEGY_DEST_HOST = "destHost"
PROXY_STRATEGY_DEFAULT = "default"
PROXY_STRATEGY_DEFAULT_ROUTE = "defaultRoute"
_PROXY_STRATEGIES = (PROXY_STRATEGY_DEST_HOST, PROXY_STRATEGY_DEFAULT, PROXY_STRATEGY_DEFAULT_ROUTE)

_WARN_ON_CHANNEL_LIMIT_NOTE = (
    "This behavior is now thread safe and always on. "
    "This flag will be removed in a future release."
)

# Cipher suites considered secure, by name, with their IANA identifiers.
_ACCEPTED_CIPHERS: Dict[str, int] = {
    "TLS_RSA_WITH_AES_128_CBC_SHA": 0x002F,
    "TLS_RSA_WITH_AES_256_CBC_SHA": 0x0035,
    "TLS_RSA_WITH_AES_128_GCM_SHA256": 0x009C,
    "TLS_RSA_WITH_AES_256_GCM_SHA384": 0x009D,
    "TLS_AES_128_GCM_SHA256": 0x1301,
    "TLS_AES_256_GCM_SHA384": 0x1302,
    "TLS_CHACHA20_POLY1305_SHA256": 0x1303,
    "TLS_ECDHE_ECDSA_WITH_AES_128_CBC_SHA": 0xC009,
    "TLS_ECDHE_ECDSA_WITH_AES_256_CBC_SHA": 0xC00A,
    "TLS_ECDHE_RSA_WITH_AES_128_CBC_SHA": 0xC013,
    "TLS_ECDHE_RSA_WITH_AES_256_CBC_SHA": 0xC014,
    "TLS_ECDHE_ECDSA_WITH_AES_128_GCM_SHA256": 0xC02B,
    "TLS_ECDHE_ECDSA_WITH_AES_256_GCM_SHA384": 0xC02C,
    "TLS_ECDHE_RSA_WITH_AES_128_GCM_SHA256": 0xC02F,
    "TLS_ECDHE_RSA_WITH_AES_256_GCM_SHA384": 0xC030,
    "TLS_ECDHE_RSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA8,
    "TLS_ECDHE_ECDSA_WITH_CHACHA20_POLY1305_SHA256": 0xCCA9,
}


class ServerOptionsError(ValueError):
    """The proxy server options are not usable."""


def accepted_ciphers() -> Dict[str, int]:
    """Names of the allowed cipher suites mapped to their identifiers."""
    return dict(_ACCEPTED_CIPHERS)


def default_server_id() -> str:
    """The PROXY_SERVER_ID environment variable, or a fresh UUID when it is unset."""
    server_id = os.environ.get("PROXY_SERVER_ID", "")
    return server_id or str(uuid.uuid4())


def _split_csv(value: str) -> List[str]:
    return value.split(",") if value else []


def _non_negative(text: str) -> int:
    try:
        number = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid unsigned value {text!r}") from None
    if number < 0:
        raise argparse.ArgumentTypeError(f"invalid unsigned value {text!r}")
    return number


class _DeprecatedFlag(argparse.Action):
    """Accepts a value and only reports that the flag is deprecated."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("nargs", "?")
        super().__init__(*args, **kwargs)

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: Any,
        option_string: Optional[str] = None,
    ) -> None:
        log.warning("Flag %s has been deprecated, %s", option_string, _WARN_ON_CHANNEL_LIMIT_NOTE)


@dataclass
class ProxyRunOptions:
    """Settings for the proxy server's frontend, agent, admin and health listeners."""

    server_cert: str = ""
    server_key: str = ""
    server_ca_cert: str = ""
    cluster_cert: str = ""
    cluster_key: str = ""
    cluster_ca_cert: str = ""
    mode: str = MODE_GRPC
    uds_name: str = ""
    delete_uds_file: bool = True
    server_port: int = 8090
    server_bind_address: str = ""
    agent_port: int = 8091
    agent_bind_address: str = ""
    admin_port: int = 8095
    admin_bind_address: str = "127.0.0.1"
    health_port: int = 8092
    health_bind_address: str = ""
    keepalive_time: timedelta = timedelta(hours=1)
    frontend_keepalive_time: timedelta = timedelta(hours=1)
    enable_profiling: bool = False
    enable_contention_profiling: bool = False
    server_id: str = field(default_factory=default_server_id)
    server_count: int = 1
    agent_namespace: str = ""
    agent_service_account: str = ""
    authentication_audience: str = ""
    kubeconfig_path: str = ""
    kubeconfig_qps: float = 0.0
    kubeconfig_burst: int = 0
    proxy_strategies: str = PROXY_STRATEGY_DEFAULT
    cipher_suites: List[str] = field(default_factory=list)

    def set_cipher_suites(self, value: str) -> None:
        """Replace the cipher suites with a comma separated list."""
        self.cipher_suites = _split_csv(value)

    def _check_pair(self, name: str, key: str, cert: str, ca: str) -> None:
        if key:
            err = _missing(key)
            if err is not None:
                raise ServerOptionsError(f"error checking {name} key {key}, got {err}")
            if not cert:
                raise ServerOptionsError(
                    f"cannot have {name} cert empty when {name} key is set to {_quote(key)}"
                )
        if cert:
            err = _missing(cert)
            if err is not None:
                raise ServerOptionsError(f"error checking {name} cert {cert}, got {err}")
            if not key:
                raise ServerOptionsError(
                    f"cannot have {name} key empty when {name} cert is set to {_quote(cert)}"
                )
        if ca:
            err = _missing(ca)
            if err is not None:
                raise ServerOptionsError(f"error checking {name} CA cert {ca}, got {err}")

    def validate(self) -> None:
        """Raise ServerOptionsError describing the first problem found."""
        self._check_pair("server", self.server_key, self.server_cert, self.server_ca_cert)
        self._check_pair("cluster", self.cluster_key, self.cluster_cert, self.cluster_ca_cert)
        if self.mode not in (MODE_GRPC, MODE_HTTP_CONNECT):
            raise ServerOptionsError(
                f"mode must be set to either 'grpc' or 'http-connect' not {_quote(self.mode)}"
            )
        if self.uds_name:
            if self.server_port != 0:
                raise ServerOptionsError(
                    f"server port should be set to 0 not {self.server_port} for UDS"
                )
            if self.server_key:
                raise ServerOptionsError("server key should not be set for UDS")
            if self.server_cert:
                raise ServerOptionsError("server cert should not be set for UDS")
            if self.server_ca_cert:
                raise ServerOptionsError("server ca cert should not be set for UDS")

        ports = (
            ("server", self.server_port),
            ("agent", self.agent_port),
            ("admin", self.admin_port),
            ("health", self.health_port),
        )
        for name, port in ports:
            if port > 49151:
                raise ServerOptionsError(
                    f"please do not try to use ephemeral port {port} for the {name} port"
                )
        for name, port in ports:
            if port < 1024 and not (name == "server" and self.uds_name):
                raise ServerOptionsError(
                    f"please do not try to use reserved port {port} for the {name} port"
                )
        if self.enable_contention_profiling and not self.enable_profiling:
            raise ServerOptionsError(
                "if --enable-contention-profiling is set, --enable-profiling must also be set"
            )

        if (
            self.agent_namespace
            or self.agent_service_account
            or self.authentication_audience
            or self.kubeconfig_path
        ):
            if self.cluster_ca_cert:
                raise ServerOptionsError(
                    "ClusterCaCert can not be used when service account authentication is enabled"
                )
            if not self.agent_namespace:
                raise ServerOptionsError(
                    "AgentNamespace cannot be empty when agent authentication is enabled"
                )
            if not self.agent_service_account:
                raise ServerOptionsError(
                    "AgentServiceAccount cannot be empty when agent authentication is enabled"
                )
            if not self.authentication_audience:
                raise ServerOptionsError(
                    "AuthenticationAudience cannot be empty when agent authentication is enabled"
                )
            if self.kubeconfig_path:
                err = _missing(self.kubeconfig_path)
                if err is not None:
                    raise ServerOptionsError(
                        f"error checking KubeconfigPath {_quote(self.kubeconfig_path)}, got {err}"
                    )

        if self.proxy_strategies:
            for strategy in self.proxy_strategies.split(","):
                if strategy not in _PROXY_STRATEGIES:
                    raise ServerOptionsError(
                        f"unknown proxy strategy: {strategy}, available strategy are: "
                        "default, destHost, defaultRoute"
                    )

        if self.cipher_suites:
            allowed = accepted_ciphers()
            for cipher in self.cipher_suites:
                if cipher not in allowed:
                    raise ServerOptionsError(
                        f"cipher suite {cipher} not supported, doesn't exist or "
                        "considered as insecure"
                    )

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the server flags; parse with namespace=self to fill this object."""

        def text(flag: str, dest: str, help: str) -> None:
            parser.add_argument(flag, dest=dest, default=getattr(self, dest), help=help)

        def number(flag: str, dest: str, help: str, kind: Any = int) -> None:
            parser.add_argument(flag, dest=dest, type=kind, default=getattr(self, dest), help=help)

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

        text("--server-cert", "server_cert", "If non-empty secure communication with this cert.")
        text("--server-key", "server_key", "If non-empty secure communication with this key.")
        text("--server-ca-cert", "server_ca_cert", "If non-empty the CA we use to validate KAS clients.")
        text("--cluster-cert", "cluster_cert", "If non-empty secure communication with this cert.")
        text("--cluster-key", "cluster_key", "If non-empty secure communication with this key.")
        text(
            "--cluster-ca-cert",
            "cluster_ca_cert",
            "If non-empty the CA we use to validate Agent clients.",
        )
        text("--mode", "mode", "mode can be either 'grpc' or 'http-connect'.")
        text("--uds-name", "uds_name", "uds-name should be empty for TCP traffic. For UDS set to its name.")
        boolean(
            "--delete-existing-uds-file",
            "delete_uds_file",
            "If true and if file UdsName already exists, delete the file before listen on "
            "that UDS file. Default is true.",
        )
        number("--server-port", "server_port", "Port we listen for server connections on. Set to 0 for UDS.")
        text(
            "--server-bind-address",
            "server_bind_address",
            "Bind address for server connections. If empty, we will bind to all interfaces.",
        )
        number("--agent-port", "agent_port", "Port we listen for agent connections on.")
        text(
            "--agent-bind-address",
            "agent_bind_address",
            "Bind address for agent connections. If empty, we will bind to all interfaces.",
        )
        number("--admin-port", "admin_port", "Port we listen for admin connections on.")
        text(
            "--admin-bind-address",
            "admin_bind_address",
            "Bind address for admin connections. If empty, we will bind to localhost.",
        )
        number("--health-port", "health_port", "Port we listen for health connections on.")
        text(
            "--health-bind-address",
            "health_bind_address",
            "Bind address for health connections. If empty, we will bind to all interfaces.",
        )
        duration("--keepalive-time", "keepalive_time", "Time for gRPC agent server keepalive.")
        duration(
            "--frontend-keepalive-time",
            "frontend_keepalive_time",
            "Time for gRPC frontend server keepalive.",
        )
        boolean("--enable-profiling", "enable_profiling", "enable pprof at host:admin-port/debug/pprof")
        boolean(
            "--enable-contention-profiling",
            "enable_contention_profiling",
            'enable contention profiling at host:admin-port/debug/pprof/block. '
            '"--enable-profiling" must also be set.',
        )
        text(
            "--server-id",
            "server_id",
            "The unique ID of this server. Can also be set by the 'PROXY_SERVER_ID' "
            "environment variable.",
        )
        number(
            "--server-count",
            "server_count",
            "The number of proxy server instances, should be 1 unless it is an HA server.",
            _non_negative,
        )
        text(
            "--agent-namespace",
            "agent_namespace",
            "Expected agent's namespace during agent authentication.",
        )
        text(
            "--agent-service-account",
            "agent_service_account",
            "Expected agent's service account during agent authentication.",
        )
        text("--kubeconfig", "kubeconfig_path", "absolute path to the kubeconfig file.")
        number("--kubeconfig-qps", "kubeconfig_qps", "Maximum client QPS.", float)
        number("--kubeconfig-burst", "kubeconfig_burst", "Maximum client burst.")
        text(
            "--authentication-audience",
            "authentication_audience",
            "Expected agent's token authentication audience.",
        )
        text(
            "--proxy-strategies",
            "proxy_strategies",
            "The list of proxy strategies used by the server to pick a backend/tunnel, "
            "available strategies are: default, destHost.",
        )
        parser.add_argument(
            "--cipher-suites",
            dest="cipher_suites",
            action=_StringListAction,
            default=list(self.cipher_suites),
            help="The comma separated list of allowed cipher suites. Has no effect on TLS1.3. "
            "Empty means allow default list.",
        )
        parser.add_argument(
            "--warn-on-channel-limit",
            action=_DeprecatedFlag,
            help=argparse.SUPPRESS,
        )

    def describe(self) -> str:
        """One line per setting, as the server logs them at start-up."""

        def flag(value: bool) -> str:
            return "true" if value else "false"

        ciphers = " ".join(_quote(cipher) for cipher in self.cipher_suites)
        lines = [
            f"ServerCert set to {_quote(self.server_cert)}.",
            f"ServerKey set to {_quote(self.server_key)}.",
            f"ServerCACert set to {_quote(self.server_ca_cert)}.",
            f"ClusterCert set to {_quote(self.cluster_cert)}.",
            f"ClusterKey set to {_quote(self.cluster_key)}.",
            f"ClusterCACert set to {_quote(self.cluster_ca_cert)}.",
            f"Mode set to {_quote(self.mode)}.",
            f"UDSName set to {_quote(self.uds_name)}.",
            f"DeleteUDSFile set to {flag(self.delete_uds_file)}.",
            f"Server port set to {self.server_port}.",
            f"Server bind address set to {_quote(self.server_bind_address)}.",
            f"Agent port set to {self.agent_port}.",
            f"Agent bind address set to {_quote(self.agent_bind_address)}.",
            f"Admin port set to {self.admin_port}.",
            f"Admin bind address set to {_quote(self.admin_bind_address)}.",
            f"Health port set to {self.health_port}.",
            f"Health bind address set to {_quote(self.health_bind_address)}.",
            f"Keepalive time set to {_format_duration(self.keepalive_time)}.",
            f"Frontend keepalive time set to {_format_duration(self.frontend_keepalive_time)}.",
            f"EnableProfiling set to {flag(self.enable_profiling)}.",
            f"EnableContentionProfiling set to {flag(self.enable_contention_profiling)}.",
            f"ServerID set to {self.server_id}.",
            f"ServerCount set to {self.server_count}.",
            f"AgentNamespace set to {_quote(self.agent_namespace)}.",
            f"AgentServiceAccount set to {_quote(self.agent_service_account)}.",
            f"AuthenticationAudience set to {_quote(self.authentication_audience)}.",
            f"KubeconfigPath set to {_quote(self.kubeconfig_path)}.",
            f"KubeconfigQPS set to {self.kubeconfig_qps:.6f}.",
            f"KubeconfigBurst set to {self.kubeconfig_burst}.",
            f"ProxyStrategies set to {_quote(self.proxy_strategies)}.",
            f"CipherSuites set to [{ciphers}].",
        ]
        return "\n".join(lines) + "\n"


def new_proxy_run_options() -> ProxyRunOptions:
    """Proxy server options holding the documented defaults."""
    return ProxyRunOptions()


def parse_server_args(argv: Optional[Sequence[str]] = None) -> ProxyRunOptions:
    """Build proxy server options from command-line arguments."""
    options = new_proxy_run_options()
    parser = argparse.ArgumentParser(prog="proxy-server")
    options.add_arguments(parser)
    parser.parse_args(argv, namespace=options)
    return options