"""Command-line options for the proxy test client and their validation."""

from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from .agent_options import _missing, _parse_bool, _quote

log = logging.getLogger(__name__)

MODE_GRPC = "grpc"
MODE_HTTP_CONNECT = "http-connect"

_DEFAULT_READ_IDLE_TIMEOUT = 30
_DEFAULT_PING_TIMEOUT = 15
_INTEGER = re.compile(r"[+-]?\d+")


class ClientOptionsError(ValueError):
    """The test client options are not usable."""


def join_host_port(host: str, port: int) -> str:
    """Combine host and port into "host:port", bracketing hosts that contain a colon."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _env_seconds(name: str, default: int) -> int:
    text = os.environ.get(name, "")
    if not text:
        return default
    if _INTEGER.fullmatch(text) is None:
        log.warning("Illegal %s(%r): not an integer. Default value %d is used", name, text, default)
        return default
    return int(text)


def read_idle_timeout_seconds() -> int:
    """HTTP/2 read idle timeout from HTTP2_READ_IDLE_TIMEOUT_SECONDS; 0 disables health checks."""
    return _env_seconds("HTTP2_READ_IDLE_TIMEOUT_SECONDS", _DEFAULT_READ_IDLE_TIMEOUT)


def ping_timeout_seconds() -> int:
    """HTTP/2 ping timeout from HTTP2_PING_TIMEOUT_SECONDS."""
    return _env_seconds("HTTP2_PING_TIMEOUT_SECONDS", _DEFAULT_PING_TIMEOUT)


@dataclass
class ClientOptions:
    """Settings for sending test requests through the proxy server."""

    client_cert: str = ""
    client_key: str = ""
    ca_cert: str = ""
    request_proto: str = "http"
    request_path: str = "success"
    request_host: str = "localhost"
    request_port: int = 8000
    proxy_host: str = "localhost"
    proxy_port: int = 8090
    proxy_uds_name: str = ""
    mode: str = MODE_GRPC
    user_agent: str = "test-client"
    test_requests: int = 1
    test_delay_sec: int = 0
    after_delay_sec: int = 0
    close_idle_conn: bool = True
    enable_http2_health_checks: bool = True

    def _check_exists(self, path: str) -> None:
        err = _missing(path)
        if err is not None:
            raise ClientOptionsError(str(err)) from err

    def validate(self) -> None:
        """Raise ClientOptionsError describing the first problem found."""
        if self.client_key:
            self._check_exists(self.client_key)
            if not self.client_cert:
                raise ClientOptionsError(
                    f"cannot have client cert empty when client key is set to {_quote(self.client_key)}"
                )
        if self.client_cert:
            self._check_exists(self.client_cert)
            if not self.client_key:
                raise ClientOptionsError(
                    f"cannot have client key empty when client cert is set to {_quote(self.client_cert)}"
                )
        if self.ca_cert:
            self._check_exists(self.ca_cert)
        if self.request_proto not in ("http", "https"):
            raise ClientOptionsError(
                "request protocol must be set to either 'http' or 'https' not "
                f"{_quote(self.request_proto)}"
            )
        if self.mode not in (MODE_GRPC, MODE_HTTP_CONNECT):
            raise ClientOptionsError(
                f"mode must be set to either 'grpc' or 'http-connect' not {_quote(self.mode)}"
            )
        if self.request_port > 49151:
            raise ClientOptionsError(
                f"please do not try to use ephemeral port {self.request_port} "
                "for the request server port"
            )
        if self.proxy_port > 49151:
            raise ClientOptionsError(
                f"please do not try to use ephemeral port {self.proxy_port} "
                "for the proxy server port"
            )
        if self.proxy_port < 1024 and not self.proxy_uds_name:
            raise ClientOptionsError(
                f"please do not try to use reserved port {self.proxy_port} "
                "for the proxy server port"
            )
        if self.proxy_uds_name:
            if self.proxy_host:
                raise ClientOptionsError("please do set proxy host when using UDS")
            if self.proxy_port != 0:
                raise ClientOptionsError(
                    f"please do set proxy server port to 0 not {self.proxy_port} when using UDS"
                )
            if self.client_key or self.client_cert or self.ca_cert:
                raise ClientOptionsError(
                    "please do set cert materials when using UDS, "
                    f"key = {self.client_key}, cert = {self.client_cert}, CA = {self.ca_cert}"
                )
        if self.test_requests < 1:
            raise ClientOptionsError(
                f"please do not ask for fewer than 1 test request({self.test_requests})"
            )
        if self.test_delay_sec < 0:
            raise ClientOptionsError(
                f"please do not ask for less than a 0 second delay({self.test_delay_sec})"
            )
        if self.after_delay_sec < 0:
            raise ClientOptionsError(
                f"please do not ask for less than a 0 second delay({self.after_delay_sec})"
            )

    def add_arguments(self, parser: argparse.ArgumentParser) -> None:
        """Register the client flags; parse with namespace=self to fill this object."""

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

        text("--client-cert", "client_cert", "If non-empty secure communication with this cert.")
        text("--client-key", "client_key", "If non-empty secure communication with this key.")
        text("--ca-cert", "ca_cert", "If non-empty the CAs we use to validate clients.")
        text(
            "--request-proto",
            "request_proto",
            "The protocol for the request to send through the proxy.",
        )
        text("--request-path", "request_path", "The url request to send through the proxy.")
        text("--request-host", "request_host", "The host of the request server.")
        number("--request-port", "request_port", "The port the request server is listening on.")
        text("--proxy-host", "proxy_host", "The host of the proxy server.")
        number("--proxy-port", "proxy_port", "The port the proxy server is listening on.")
        text("--proxy-uds", "proxy_uds_name", "The UDS name to connect to.")
        text("--mode", "mode", "Mode can be either 'grpc' or 'http-connect'.")
        text("--user-agent", "user_agent", "User agent to pass to the proxy server")
        number("--test-requests", "test_requests", "The number of times to send the request.")
        number("--test-delay", "test_delay_sec", "The delay in seconds between sending requests.")
        number("--after-delay", "after_delay_sec", "The delay in seconds after sending requests.")
        boolean(
            "--close-idle-conn",
            "close_idle_conn",
            "Controls if the client calls closeIdleConnections.",
        )
        boolean(
            "--enable-http2-healthchecks",
            "enable_http2_health_checks",
            "enables health checks on http2 connections made by the client.",
        )

    def describe(self) -> str:
        """One line per setting, as the client logs them at start-up."""
        lines = [
            f"ClientCert set to {_quote(self.client_cert)}.",
            f"ClientKey set to {_quote(self.client_key)}.",
            f"CACert set to {_quote(self.ca_cert)}.",
            f"RequestProto set to {_quote(self.request_proto)}.",
            f"RequestPath set to {_quote(self.request_path)}.",
            f"RequestHost set to {_quote(self.request_host)}.",
            f"RequestPort set to {self.request_port}.",
            f"ProxyHost set to {_quote(self.proxy_host)}.",
            f"ProxyPort set to {self.proxy_port}.",
            f"ProxyUdsName set to {_quote(self.proxy_uds_name)}.",
            f"TestRequests set to {self.test_requests}.",
            f"TestDelaySec set to {self.test_delay_sec}.",
            f"AfterDelaySec set to {self.after_delay_sec}.",
            f"CloseIdleConn set to {'true' if self.close_idle_conn else 'false'}.",
        ]
        return "\n".join(lines) + "\n"


def parse_client_args(argv: Optional[Sequence[str]] = None) -> ClientOptions:
    """Build test client options from command-line arguments."""
    options = ClientOptions()
    parser = argparse.ArgumentParser(
        prog="proxy-client",
        description="A proxy client, primarily used to test the proxy server.",
    )
    options.add_arguments(parser)
    parser.parse_args(argv, namespace=options)
    return options