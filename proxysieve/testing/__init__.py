"""
Testing module initialization.

Validation gate, latency prober and round controller.
"""

from .latency import LatencyProber, LatencySettings
from .rounds import RoundController, rank_results, resolve_uris
from .validator import ProfileValidator, assign_tags

__all__ = [
    "LatencyProber",
    "LatencySettings",
    "RoundController",
    "rank_results",
    "resolve_uris",
    "ProfileValidator",
    "assign_tags"
]
