"""
proxysieve - Proxy Subscription Sieve

Parses proxy connection URIs from subscription lists, validates them
with sing-box and ranks the reachable ones by measured latency.
"""

__version__ = "1.0.0"
__author__ = "proxysieve Project"

from .core.config import SieveConfig
from .core.models import LatencyResult, OutboundDescriptor, Protocol, ProxyProfile
from .parsers.uri_parser import parse_profile
from .orchestrator import SieveOrchestrator

__all__ = [
    "SieveConfig",
    "LatencyResult",
    "OutboundDescriptor",
    "Protocol",
    "ProxyProfile",
    "parse_profile",
    "SieveOrchestrator",
]
