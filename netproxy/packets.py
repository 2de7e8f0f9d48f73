"""Packets exchanged with the proxy server over the tunnel stream."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class PacketType(str, Enum):
    """Kind of a tunnel packet."""

    DIAL_REQ = "DIAL_REQ"
    DIAL_RSP = "DIAL_RSP"
    CLOSE_REQ = "CLOSE_REQ"
    CLOSE_RSP = "CLOSE_RSP"
    DATA = "DATA"
    DIAL_CLS = "DIAL_CLS"


@dataclass(frozen=True)
class DialRequest:
    protocol: str
    address: str
    random: int


@dataclass(frozen=True)
class DialResponse:
    random: int
    connect_id: int = 0
    error: str = ""


@dataclass(frozen=True)
class CloseRequest:
    connect_id: int


@dataclass(frozen=True)
class CloseResponse:
    connect_id: int
    error: str = ""


@dataclass(frozen=True)
class CloseDial:
    random: int


@dataclass(frozen=True)
class Data:
    connect_id: int
    data: bytes = b""


Payload = Union[DialRequest, DialResponse, CloseRequest, CloseResponse, CloseDial, Data]

_PAYLOADS = {
    PacketType.DIAL_REQ: DialRequest,
    PacketType.DIAL_RSP: DialResponse,
    PacketType.CLOSE_REQ: CloseRequest,
    PacketType.CLOSE_RSP: CloseResponse,
    PacketType.DATA: Data,
    PacketType.DIAL_CLS: CloseDial,
}


@dataclass(frozen=True)
class Packet:
    """A typed packet whose payload must match its type."""

    type: PacketType
    payload: Payload

    def __post_init__(self) -> None:
        expected = _PAYLOADS[PacketType(self.type)]
        if not isinstance(self.payload, expected):
            raise TypeError(
                f"{PacketType(self.type).value} packet needs a {expected.__name__} payload, "
                f"not {type(self.payload).__name__}"
            )