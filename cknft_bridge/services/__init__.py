"""
Bridge services: discovery, mirror lookups, costs, workflows and polling.
"""

from .bridge import BridgeSession

__all__ = ["BridgeSession"]
