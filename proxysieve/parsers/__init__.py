"""
Parsers module initialization.

This module provides access to the URI normalizer and the parsers
for the supported proxy protocols.
"""

from .normalizer import normalize_uri
from .uri_parser import (
    VMessParser,
    VLESSParser,
    TrojanParser,
    ShadowsocksParser,
    Hysteria2Parser,
    UniversalParser,
    SCHEME_REGISTRY,
    parse_profile
)

__all__ = [
    "normalize_uri",
    "VMessParser",
    "VLESSParser",
    "TrojanParser",
    "ShadowsocksParser",
    "Hysteria2Parser",
    "UniversalParser",
    "SCHEME_REGISTRY",
    "parse_profile"
]
