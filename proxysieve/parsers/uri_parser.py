"""
URI parsers for different proxy protocols.

This module contains parsers for VLESS, Trojan, VMess, Shadowsocks and
Hysteria2 links. Each parser normalizes its input, then turns it into
a ProxyProfile holding a sing-box outbound descriptor. Parsers are
registered once, at import time, in SCHEME_REGISTRY.
"""

import binascii
import json
import logging
import re
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from urllib.parse import unquote

from proxysieve.core.errors import (
    EmptyInputError,
    MalformedCredentialsError,
    SchemeParseError,
    SieveError,
    UnknownSchemeError,
)
from proxysieve.core.models import ErrorTally, OutboundDescriptor, Protocol, ProxyProfile
from proxysieve.core.utils import decode_base64_auto
from proxysieve.parsers.normalizer import normalize_uri
from proxysieve.parsers.options import (
    build_tls_options,
    build_transport_options,
    parse_config_uri,
    parse_endpoint,
    query_params,
    split_netloc,
    user_and_endpoint,
)

logger = logging.getLogger(__name__)

VISION_FLOW = "xtls-rprx-vision"
VISION_UDP443_FLOW = "xtls-rprx-vision-udp443"

_PORT_PATTERN = re.compile(r"[0-9]+")


def _attach_stream(options: Dict[str, Any], tls: Dict[str, Any], transport: Optional[Dict[str, Any]]):
    if tls.get("enabled"):
        options["tls"] = tls
    if transport:
        options["transport"] = transport


def _b64_text(data: str) -> Optional[str]:
    """Decode base64 text, or None when data is not base64 of UTF-8."""
    try:
        return decode_base64_auto(data).decode("utf-8")
    except (binascii.Error, ValueError):
        return None


class ProfileParser:
    """Base class: normalize, build the outbound options, wrap failures."""

    protocol: Protocol

    def parse(self, uri: str) -> ProxyProfile:
        try:
            conn_uri = normalize_uri(uri)
            options = self.build_options(conn_uri)
        except SchemeParseError:
            raise
        except (SieveError, ValueError) as e:
            raise SchemeParseError(self.protocol.value, e) from e
        return ProxyProfile(OutboundDescriptor(self.protocol, options), conn_uri)

    def build_options(self, uri: str) -> Dict[str, Any]:
        raise NotImplementedError


class VLESSParser(ProfileParser):
    """Parser for VLESS protocol URIs."""

    protocol = Protocol.VLESS

    def build_options(self, uri: str) -> Dict[str, Any]:
        parts = parse_config_uri(uri, "vless")
        user, host, port = user_and_endpoint(parts, "vless")
        params = query_params(parts.query)

        flow = params.get("flow", "")
        if flow == VISION_UDP443_FLOW:
            flow = VISION_FLOW

        tls = build_tls_options(params, "vless")
        transport = build_transport_options(params, "vless")

        options: Dict[str, Any] = {"server": host, "server_port": port, "uuid": unquote(user)}
        if flow:
            options["flow"] = flow
        _attach_stream(options, tls, transport)
        return options


def split_trojan_uri(uri: str) -> Tuple[str, str, str, str]:
    """Split a trojan link whose password may hold '@' or unsafe bytes.

    Returns (password, host:port, query, remark). The remark starts at
    the last '#', the password ends at the last '@' before it.
    """
    before_remark, sep, remark = uri.rpartition("#")
    if not sep:
        before_remark, remark = uri, ""

    before_at, sep, after_at = before_remark.rpartition("@")
    if not sep:
        raise SchemeParseError("trojan", message="malformed URI: symbol '@' not found")

    scheme, sep, user_info = before_at.partition("://")
    if not sep:
        raise SchemeParseError("trojan", message="malformed URI: split by '://' failed")

    placeholder = parse_config_uri(f"{scheme}://placeholder@{after_at}", "trojan")
    host_port = after_at.split("?", 1)[0].replace("/", "")
    return unquote(user_info), host_port, placeholder.query, remark


class TrojanParser(ProfileParser):
    """Parser for Trojan protocol URIs."""

    protocol = Protocol.TROJAN

    def build_options(self, uri: str) -> Dict[str, Any]:
        password, host_port, query, _remark = split_trojan_uri(uri)
        host, port = parse_endpoint(host_port, "trojan")
        params = query_params(query)

        tls = build_tls_options(params, "trojan")
        transport = build_transport_options(params, "trojan")

        options: Dict[str, Any] = {"server": host, "server_port": port, "password": password}
        _attach_stream(options, tls, transport)
        return options


def _stringify(value: Any) -> str:
    """Coerce a JSON value the way vmess share links expect."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class VMessParser(ProfileParser):
    """Parser for VMess protocol URIs (base64 JSON payload)."""

    protocol = Protocol.VMESS

    def build_options(self, uri: str) -> Dict[str, Any]:
        payload = uri.partition("://")[2].split("#", 1)[0]
        decoded = decode_base64_auto(payload).decode("utf-8")
        j = json.loads(decoded)
        if not isinstance(j, dict):
            raise SchemeParseError("vmess", message="payload is not a JSON object")

        params = {k: _stringify(v) for k, v in j.items()}

        port_str = params.get("port", "")
        if not _PORT_PATTERN.fullmatch(port_str) or int(port_str) > 65535:
            raise SchemeParseError("vmess", message=f"invalid port {port_str!r}")

        aid = params.get("aid", "")
        tls = build_tls_options(params, "vmess")
        transport = build_transport_options(params, "vmess")

        options: Dict[str, Any] = {
            "server": params.get("add", ""),
            "server_port": int(port_str),
            "uuid": params.get("id", ""),
            "security": params.get("scy", "") or "auto",
            "alter_id": int(aid) if _PORT_PATTERN.fullmatch(aid) else 0,
        }
        _attach_stream(options, tls, transport)
        return options


class ShadowsocksParser(ProfileParser):
    """Parser for Shadowsocks protocol URIs (SIP002 and legacy base64 forms)."""

    protocol = Protocol.SHADOWSOCKS

    def build_options(self, uri: str) -> Dict[str, Any]:
        parts = parse_config_uri(uri, "shadowsocks")

        # Legacy form: ss://base64(method:password@host:port)#remark
        if "@" not in parts.netloc:
            decoded_host = _b64_text(parts.netloc)
            if decoded_host is not None:
                rebuilt = f"ss://{decoded_host}"
                if parts.query:
                    rebuilt += f"?{parts.query}"
                parts = parse_config_uri(f"{rebuilt}#{parts.fragment}", "shadowsocks")

        user, host_port = split_netloc(parts.netloc)
        host, port = parse_endpoint(host_port, "shadowsocks")
        params = query_params(parts.query)
        method, password = self.resolve_credentials(unquote(user), parts.password, params)

        return {
            "server": host,
            "server_port": port,
            "method": method,
            "password": password,
        }

    @staticmethod
    def resolve_credentials(user_info: str, explicit_password: Optional[str],
                            params: Mapping[str, str]) -> Tuple[str, str]:
        if not user_info:
            raise MalformedCredentialsError("missing user info")

        if ":" in user_info or explicit_password:
            method, _, password = user_info.partition(":")
            return method, password

        decoded = _b64_text(user_info)
        if decoded is not None:
            if ":" not in decoded:
                raise MalformedCredentialsError("malformed base64 encoded user:pass tuple")
            method, _, password = decoded.partition(":")
            return method, password

        return params.get("method") or "none", user_info


class Hysteria2Parser(ProfileParser):
    """Parser for Hysteria2 protocol URIs."""

    protocol = Protocol.HYSTERIA2

    def build_options(self, uri: str) -> Dict[str, Any]:
        parts = parse_config_uri(uri, "hysteria2")
        user, host, port = user_and_endpoint(parts, "hysteria2")
        params = query_params(parts.query)

        sni = params.get("sni", "")
        obfs_type = params.get("obfs", "")
        obfs_password = params.get("obfs-password", "")

        # Without an SNI there is nothing to verify the certificate against.
        tls: Dict[str, Any] = {"enabled": True, "insecure": params.get("insecure") == "1" or not sni}
        if sni:
            tls["server_name"] = sni

        options: Dict[str, Any] = {
            "server": host,
            "server_port": port,
            "password": unquote(user),
            "tls": tls,
        }
        if obfs_type and obfs_password:
            options["obfs"] = {"type": obfs_type, "password": obfs_password}
        return options


def _build_registry() -> Mapping[str, ProfileParser]:
    by_protocol = {
        Protocol.VLESS: VLESSParser(),
        Protocol.TROJAN: TrojanParser(),
        Protocol.VMESS: VMessParser(),
        Protocol.SHADOWSOCKS: ShadowsocksParser(),
        Protocol.HYSTERIA2: Hysteria2Parser(),
    }
    schemes = {
        "vless": Protocol.VLESS,
        "trojan": Protocol.TROJAN,
        "vmess": Protocol.VMESS,
        "ss": Protocol.SHADOWSOCKS,
        "hysteria2": Protocol.HYSTERIA2,
        "hy2": Protocol.HYSTERIA2,
    }
    return MappingProxyType({scheme: by_protocol[proto] for scheme, proto in schemes.items()})


SCHEME_REGISTRY = _build_registry()


def parse_profile(raw_uri: str, registry: Mapping[str, ProfileParser] = SCHEME_REGISTRY) -> ProxyProfile:
    """Parse one connection URI into a ProxyProfile.

    Raises EmptyInputError, UnknownSchemeError or SchemeParseError.
    """
    uri = raw_uri.strip()
    if not uri:
        raise EmptyInputError("empty configuration URI")

    scheme = uri.split("://", 1)[0].lower()
    parser = registry.get(scheme)
    if parser is None:
        raise UnknownSchemeError(scheme)
    return parser.parse(uri)


class UniversalParser:
    """Parses batches of URIs, tallying the failures."""

    def __init__(self, registry: Mapping[str, ProfileParser] = SCHEME_REGISTRY):
        self.registry = registry

    def parse(self, uri: str) -> ProxyProfile:
        return parse_profile(uri, self.registry)

    def parse_all(self, uris: Iterable[str]) -> Tuple[List[ProxyProfile], ErrorTally]:
        profiles: List[ProxyProfile] = []
        errors = ErrorTally()
        for uri in uris:
            try:
                profiles.append(self.parse(uri))
            except SieveError as e:
                logger.debug(f"Parse failed for {uri[:60]}: {e}")
                errors.record(e)
        return profiles, errors
