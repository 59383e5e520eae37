"""
Engine module initialization.
"""

from .base import Dialer, ProxyEngine
from .singbox import SingBoxEngine

__all__ = [
    "Dialer",
    "ProxyEngine",
    "SingBoxEngine"
]
