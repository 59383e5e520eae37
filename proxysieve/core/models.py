"""
Core data models and structures for the sieve pipeline.

A ProxyProfile is the unit that flows from the parsers through
validation and probing; LatencyResult is the per-round outcome of one
probe; ErrorTally counts failure messages for reporting.
"""

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Protocol(str, Enum):
    """Outbound protocol types understood by the pipeline."""
    VLESS = "vless"
    TROJAN = "trojan"
    VMESS = "vmess"
    SHADOWSOCKS = "shadowsocks"
    HYSTERIA2 = "hysteria2"


@dataclass
class OutboundDescriptor:
    """Protocol type plus sing-box style options payload."""
    type: Protocol
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def server(self) -> str:
        return self.options.get("server", "")

    @property
    def server_port(self) -> int:
        return self.options.get("server_port", 0)

    def to_outbound(self, tag: Optional[str] = None) -> Dict[str, Any]:
        """Render as a sing-box outbound object."""
        outbound: Dict[str, Any] = {"type": self.type.value}
        if tag:
            outbound["tag"] = tag
        outbound.update(self.options)
        return outbound


class ProxyProfile:
    """A parsed connection URI: one outbound descriptor and its source text."""

    __slots__ = ("outbound", "_conn_uri", "_tag")

    def __init__(self, outbound: OutboundDescriptor, conn_uri: str):
        self.outbound = outbound
        self._conn_uri = conn_uri
        self._tag: Optional[str] = None

    @property
    def conn_uri(self) -> str:
        return self._conn_uri

    @property
    def protocol(self) -> Protocol:
        return self.outbound.type

    @property
    def tag(self) -> Optional[str]:
        return self._tag

    def assign_tag(self, tag: str):
        if self._tag is not None:
            raise RuntimeError(f"profile already tagged as {self._tag}")
        self._tag = tag

    def to_outbound(self) -> Dict[str, Any]:
        return self.outbound.to_outbound(self._tag)

    def __repr__(self) -> str:
        return f"ProxyProfile(type={self.protocol.value!r}, tag={self._tag!r}, uri={self._conn_uri!r})"


@dataclass
class LatencyResult:
    """Outcome of one probe of one profile in one round."""
    tag: str
    delay_ms: int = -1
    error: Optional[BaseException] = None
    dialer: Any = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ErrorTally(Counter):
    """Error message -> occurrence count."""

    def record(self, error: Any):
        self[str(error)] += 1

    def lines(self) -> List[str]:
        return [f"{count} x {message}" for message, count in self.most_common()]
