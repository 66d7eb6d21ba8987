"""
Network utilities for the swarm.

This module provides:
- Interface name/address resolution for multicast membership
- Outbound route address detection
"""

from .ip_detect import (
    NetworkInterface,
    get_local_interfaces,
    get_route_ip,
    resolve_interface,
)

__all__ = [
    "NetworkInterface",
    "get_local_interfaces",
    "get_route_ip",
    "resolve_interface",
]
