"""
Exception hierarchy for the sieve pipeline.

Every failure a URI can hit on its way from subscription text to a
ranked result maps onto one of these classes. Parsing and validation
errors are tallied by message and never stop a run; probe errors are
folded into a failed LatencyResult.
"""

from typing import Optional


class SieveError(Exception):
    """Base class for all proxysieve errors."""


# Normalization

class NormalizationError(SieveError):
    """Raw URI text could not be repaired into a parseable form."""


class EmptyInputError(NormalizationError):
    def __init__(self, message: str = "empty URI"):
        super().__init__(message)


class MalformedSchemeError(NormalizationError):
    def __init__(self, message: str = "failed to split URI by scheme"):
        super().__init__(message)


# Parsing

class UnknownSchemeError(SieveError):
    def __init__(self, scheme: str):
        self.scheme = scheme
        super().__init__(f"unknown profile URI scheme {scheme!r}")


class SchemeParseError(SieveError):
    """Scheme-specific structural failure wrapping the underlying cause."""

    def __init__(self, scheme: str, cause: Optional[BaseException] = None, message: Optional[str] = None):
        self.scheme = scheme
        self.cause = cause
        detail = message if message is not None else str(cause)
        super().__init__(f"{scheme}: {detail}")


class MalformedCredentialsError(SchemeParseError):
    def __init__(self, message: str = "malformed credentials"):
        super().__init__("shadowsocks", message=message)


# Options

class UnsupportedOptionError(SieveError):
    """A TLS security mode or stream transport this pipeline cannot express."""


class UnsupportedSecurityError(UnsupportedOptionError):
    def __init__(self, security: str):
        self.security = security
        super().__init__(f"unsupported security parameter {security!r}")


class UnsupportedTransportError(UnsupportedOptionError):
    def __init__(self, transport: str):
        self.transport = transport
        super().__init__(f"transport {transport} unsupported")


class UnknownTransportError(UnsupportedOptionError):
    def __init__(self, transport: str):
        self.transport = transport
        super().__init__(f"unknown transport {transport!r}")


# Engine

class EngineError(SieveError):
    """The proxy engine binary is missing or failed to start."""


class ValidationError(SieveError):
    """The engine rejected an outbound descriptor."""


class ProbeError(SieveError):
    """A latency probe failed."""


class ProbeTimeoutError(ProbeError):
    def __init__(self, message: str = "context deadline exceeded"):
        super().__init__(message)


class ProbeCancelledError(ProbeError):
    def __init__(self, message: str = "context canceled"):
        super().__init__(message)


# Configuration

class ConfigError(SieveError):
    """Invalid or unreadable configuration."""
