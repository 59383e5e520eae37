"""
Proxy engine interface.

An engine validates outbound descriptors, starts dialers for a set of
tagged profiles and measures request latency through a dialer.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List

from proxysieve.core.models import OutboundDescriptor, ProxyProfile
from proxysieve.network.http_client import socks_proxies


@dataclass(frozen=True)
class Dialer:
    """Local inbound routed to one outbound."""
    tag: str
    port: int

    @property
    def proxies(self) -> Dict[str, str]:
        return socks_proxies(self.port)


class ProxyEngine(ABC):
    """Base class for proxy engine adapters."""

    @abstractmethod
    def check(self, descriptor: OutboundDescriptor):
        """Raise ValidationError when the engine rejects descriptor."""

    @abstractmethod
    def start(self, profiles: List[ProxyProfile]) -> Dict[str, Dialer]:
        """Start dialers for tagged profiles; returns tag -> dialer."""

    @abstractmethod
    async def probe(self, dialer: Dialer, url: str, timeout: float) -> int:
        """Request url through dialer; returns elapsed milliseconds or raises ProbeError."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
