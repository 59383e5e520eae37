"""
Core module initialization.

This module provides access to core functionality including
configuration, models, errors, cancellation and utilities.
"""

from .cancel import CancelToken
from .config import SieveConfig
from .models import ErrorTally, LatencyResult, OutboundDescriptor, Protocol, ProxyProfile
from .utils import (
    decode_base64_auto, decode_subscription_body, dedupe_uris,
    read_lines, write_lines,
    resolve_executable_path, setup_logging
)

__all__ = [
    "CancelToken",
    "SieveConfig",
    "ErrorTally",
    "LatencyResult",
    "OutboundDescriptor",
    "Protocol",
    "ProxyProfile",
    "decode_base64_auto",
    "decode_subscription_body",
    "dedupe_uris",
    "read_lines",
    "write_lines",
    "resolve_executable_path",
    "setup_logging"
]
