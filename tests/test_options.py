import pytest

from proxysieve.core.errors import (
    SchemeParseError,
    UnknownTransportError,
    UnsupportedSecurityError,
    UnsupportedTransportError,
)
from proxysieve.parsers.options import (
    build_tls_options,
    build_transport_options,
    parse_endpoint,
    query_params,
    split_netloc,
)


def test_query_params_first_value_wins():
    assert query_params("a=1&a=2&b=") == {"a": "1", "b": ""}


def test_tls_options():
    params = {"security": "tls", "sni": "a.com", "alpn": "h2,http/1.1", "fp": "firefox", "allowInsecure": "1"}
    assert build_tls_options(params, "vless") == {
        "enabled": True,
        "server_name": "a.com",
        "utls": {"enabled": True, "fingerprint": "firefox"},
        "alpn": ["h2", "http/1.1"],
        "insecure": True,
    }


def test_reality_forces_utls_with_default_fingerprint():
    tls = build_tls_options({"security": "reality", "sni": "x.com", "pbk": "KEY", "sid": "ab"}, "vless")
    assert tls["enabled"] is True
    assert tls["reality"] == {"enabled": True, "public_key": "KEY", "short_id": "ab"}
    assert tls["utls"] == {"enabled": True, "fingerprint": "chrome"}


@pytest.mark.parametrize("security", ["", "none"])
def test_tls_disabled(security):
    assert build_tls_options({"security": security}, "trojan")["enabled"] is False


def test_vmess_reads_tls_key():
    assert build_tls_options({"tls": "tls"}, "vmess")["enabled"] is True
    assert build_tls_options({"security": "tls"}, "vmess")["enabled"] is False


def test_unsupported_security():
    with pytest.raises(UnsupportedSecurityError):
        build_tls_options({"security": "xtls"}, "vless")


@pytest.mark.parametrize("params,protocol,expected", [
    ({}, "vless", None),
    ({"type": "tcp"}, "vless", None),
    ({"type": "raw"}, "trojan", None),
    ({"type": "ws"}, "vless", {"type": "ws", "path": "/"}),
    ({"type": "websocket", "path": "/p"}, "vless", {"type": "ws", "path": "/p"}),
    ({"type": "grpc", "serviceName": "svc"}, "trojan", {"type": "grpc", "service_name": "svc"}),
    ({"net": "grpc", "path": "svc"}, "vmess", {"type": "grpc", "service_name": "svc"}),
    ({"type": "h2", "host": "h.com", "path": "/x"}, "vless",
     {"type": "http", "host": ["h.com"], "path": "/x", "method": "GET"}),
    ({"type": "quic"}, "vless", {"type": "quic"}),
    ({"type": "httpupgrade", "host": "h", "path": "/u"}, "vless", {"type": "httpupgrade", "host": "h", "path": "/u"}),
])
def test_transport_options(params, protocol, expected):
    assert build_transport_options(params, protocol) == expected


@pytest.mark.parametrize("transport", ["kcp", "mkcp", "xhttp", "splithttp"])
def test_unsupported_transport(transport):
    with pytest.raises(UnsupportedTransportError) as exc:
        build_transport_options({"type": transport}, "vless")
    assert str(exc.value) == f"transport {transport} unsupported"


def test_unknown_transport():
    with pytest.raises(UnknownTransportError):
        build_transport_options({"type": "carrier-pigeon"}, "vless")


def test_split_netloc_uses_last_at():
    assert split_netloc("a@b@host:1") == ("a@b", "host:1")
    assert split_netloc("host:1") == ("", "host:1")


@pytest.mark.parametrize("hostport,expected", [
    ("example.com:443", ("example.com", 443)),
    ("[2001:db8::1]:8443", ("2001:db8::1", 8443)),
    ("[2001:db8::1]", ("2001:db8::1", 0)),
    ("example.com", ("example.com", 0)),
    ("h:0", ("h", 0)),
])
def test_parse_endpoint(hostport, expected):
    assert parse_endpoint(hostport, "vless") == expected


@pytest.mark.parametrize("hostport", ["h:abc", "h:70000", "h:-1"])
def test_parse_endpoint_bad_port(hostport):
    with pytest.raises(SchemeParseError) as exc:
        parse_endpoint(hostport, "trojan")
    assert exc.value.scheme == "trojan"
