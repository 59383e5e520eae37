import asyncio
import os
from typing import Any, Dict, List

import pytest

from proxysieve.core.errors import ValidationError
from proxysieve.core.models import OutboundDescriptor, Protocol, ProxyProfile
from proxysieve.engine.base import ProxyEngine

HANG = "hang"


class FakeEngine(ProxyEngine):
    """In-memory engine: tag -> delay (int), exception, or HANG."""

    def __init__(self, delays: Dict[str, Any] = None, reject_servers=()):
        self.delays = delays or {}
        self.reject_servers = set(reject_servers)
        self.calls: List[str] = []
        self.in_flight = 0
        self.peak = 0
        self.closed = False

    def check(self, descriptor: OutboundDescriptor):
        if descriptor.server in self.reject_servers:
            raise ValidationError("rejected")

    def start(self, profiles):
        return {p.tag: p.tag for p in profiles}

    async def probe(self, dialer, url, timeout):
        self.calls.append(dialer)
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            value = self.delays.get(dialer, 10)
            if value == HANG:
                await asyncio.sleep(3600)
            await asyncio.sleep(0.01)
            if isinstance(value, Exception):
                raise value
            return value
        finally:
            self.in_flight -= 1

    def close(self):
        self.closed = True


def make_profiles(count: int, tagged: bool = True) -> List[ProxyProfile]:
    profiles = []
    for i in range(count):
        descriptor = OutboundDescriptor(Protocol.VLESS, {"server": f"h{i}.example", "server_port": 443, "uuid": "u"})
        profile = ProxyProfile(descriptor, f"vless://u@h{i}.example:443#p{i}")
        if tagged:
            profile.assign_tag(f"outbound-{i}")
        profiles.append(profile)
    return profiles


@pytest.fixture
def clean_env(monkeypatch):
    """os.environ without any SIEVE_* variables, restored afterwards."""
    env = {k: v for k, v in os.environ.items() if not k.startswith("SIEVE_") and k != "SING_BOX_PATH"}
    monkeypatch.setattr(os, "environ", env)
    return env


class RepeatHangsEngine(FakeEngine):
    """Answers each dialer once; every later probe of it hangs."""

    async def probe(self, dialer, url, timeout):
        if dialer in self.calls:
            self.calls.append(dialer)
            await asyncio.sleep(3600)
        return await super().probe(dialer, url, timeout)
