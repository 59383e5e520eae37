"""
Option builders shared by the scheme parsers.

TLS and V2Ray-style transport settings are spelled the same way in
vless, trojan and vmess links (vmess only renames a few keys), so the
parsers hand their query parameters to these builders. Output dicts
use sing-box outbound field names.
"""

import re
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import SplitResult, parse_qs, urlsplit

from proxysieve.core.errors import (
    SchemeParseError,
    UnknownTransportError,
    UnsupportedSecurityError,
    UnsupportedTransportError,
)

QueryParams = Dict[str, str]

SUPPORTED_SECURITY = ("tls", "reality", "none")
UNSUPPORTED_TRANSPORTS = ("kcp", "mkcp", "xhttp", "splithttp")
REALITY_DEFAULT_FINGERPRINT = "chrome"

_IPV6_NETLOC = re.compile(r"^\[([0-9a-fA-F:.]+)\](?::(\d*))?$")


def query_params(query: str) -> QueryParams:
    """Flatten a query string to first-value-wins params."""
    return {k: v[0] for k, v in parse_qs(query, keep_blank_values=True).items()}


def build_tls_options(params: Mapping[str, str], protocol: str) -> Dict[str, Any]:
    """Build the sing-box 'tls' block from link parameters."""
    security_key = "tls" if protocol == "vmess" else "security"

    security = params.get(security_key, "")
    sni = params.get("sni", "")
    alpn = params.get("alpn", "")
    fp = params.get("fp", "")
    pbk = params.get("pbk", "")
    sid = params.get("sid", "")
    ech = params.get("ech", "")
    insecure = params.get("insecure") == "1" or params.get("allowInsecure") == "1"

    options: Dict[str, Any] = {"enabled": False}
    if not security:
        return options
    if security not in SUPPORTED_SECURITY:
        raise UnsupportedSecurityError(security)

    options["enabled"] = security != "none"
    if sni:
        options["server_name"] = sni
    if fp:
        options["utls"] = {"enabled": True, "fingerprint": fp}
    if alpn:
        options["alpn"] = alpn.split(",")
    if ech:
        options["ech"] = {"enabled": True, "config": [ech]}
    if insecure:
        options["insecure"] = True

    if security == "reality":
        options["reality"] = {"enabled": True, "public_key": pbk, "short_id": sid}
        # uTLS is required by the reality client
        options["utls"] = {"enabled": True, "fingerprint": fp or REALITY_DEFAULT_FINGERPRINT}

    return options


def build_transport_options(params: Mapping[str, str], protocol: str) -> Optional[Dict[str, Any]]:
    """Build the sing-box 'transport' block, or None for plain TCP."""
    type_key = "type"
    service_name_key = "serviceName"
    if protocol == "vmess":
        type_key = "net"
        service_name_key = "path"

    transport = params.get(type_key, "")
    path = params.get("path", "")
    host = params.get("host", "")

    if transport in ("", "raw", "tcp"):
        return None
    if transport in ("http", "h2"):
        return {"type": "http", "host": [host], "path": path, "method": "GET"}
    if transport in ("ws", "websocket"):
        return {"type": "ws", "path": path or "/"}
    if transport == "quic":
        return {"type": "quic"}
    if transport == "grpc":
        return {"type": "grpc", "service_name": params.get(service_name_key, "")}
    if transport == "httpupgrade":
        return {"type": "httpupgrade", "host": host, "path": path}
    if transport in UNSUPPORTED_TRANSPORTS:
        raise UnsupportedTransportError(transport)
    raise UnknownTransportError(transport)


def split_netloc(netloc: str) -> Tuple[str, str]:
    """Split 'user@host:port' into (user, host:port) on the last '@'."""
    user, sep, hostport = netloc.rpartition("@")
    if not sep:
        return "", netloc
    return user, hostport


def parse_endpoint(hostport: str, scheme: str) -> Tuple[str, int]:
    """Extract (address, port) from 'host:port' or '[v6]:port'.

    A missing port is reported as 0; a non-numeric or out-of-range
    port is a parse error.
    """
    m = _IPV6_NETLOC.match(hostport)
    if m:
        address, port_str = m.group(1), m.group(2) or ""
    elif hostport.count(":") == 1:
        address, _, port_str = hostport.partition(":")
    else:
        address, port_str = hostport, ""

    address = address.strip("[]")
    if not port_str:
        return address, 0
    if not (port_str.isascii() and port_str.isdigit()):
        raise SchemeParseError(scheme, message=f"invalid port {port_str!r}")
    port = int(port_str)
    if port > 65535:
        raise SchemeParseError(scheme, message=f"port {port} out of range")
    return address, port


def parse_config_uri(uri: str, scheme: str) -> SplitResult:
    try:
        return urlsplit(uri)
    except ValueError as e:
        raise SchemeParseError(scheme, e) from e


def user_and_endpoint(parts: SplitResult, scheme: str) -> Tuple[str, str, int]:
    """Return (raw user-info, address, port) of a split URL."""
    user, hostport = split_netloc(parts.netloc)
    address, port = parse_endpoint(hostport, scheme)
    return user, address, port
