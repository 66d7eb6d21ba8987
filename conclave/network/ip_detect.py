"""
Local interface detection for multicast membership.

Maps an interface name (``eth0``, ``en0``) or address to the IPv4
address used when joining a multicast group.
"""

import ipaddress
import logging
import platform
import socket
import subprocess
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class NetworkInterface:
    """Information about a network interface."""
    name: str
    ip: str
    is_private: bool


def is_private_ip(ip: str) -> bool:
    """Check if IP is in private range."""
    try:
        return ipaddress.IPv4Address(ip).is_private
    except ValueError:
        return False


def _parse_ifconfig(output: str) -> List[NetworkInterface]:
    interfaces = []
    current_iface = None
    for line in output.split('\n'):
        if line and not line.startswith(('\t', ' ')) and ':' in line:
            current_iface = line.split(':')[0]
        elif 'inet ' in line:
            parts = line.strip().split()
            ip_idx = parts.index('inet') + 1
            if ip_idx < len(parts) and current_iface:
                ip = parts[ip_idx].split('/')[0]
                interfaces.append(NetworkInterface(current_iface, ip, is_private_ip(ip)))
    return interfaces


def _parse_ip_addr(output: str) -> List[NetworkInterface]:
    interfaces = []
    current_iface = None
    for line in output.split('\n'):
        if line and not line.startswith(' ') and ': ' in line:
            parts = line.split(':')
            if len(parts) >= 2:
                current_iface = parts[1].strip().split('@')[0]
        elif 'inet ' in line:
            parts = line.strip().split()
            if len(parts) >= 2 and current_iface:
                ip = parts[1].split('/')[0]
                interfaces.append(NetworkInterface(current_iface, ip, is_private_ip(ip)))
    return interfaces


def get_local_interfaces() -> List[NetworkInterface]:
    """
    List IPv4 addresses per interface.

    Parses ``ip addr`` on Linux and ``ifconfig`` elsewhere. Returns an
    empty list when neither tool is available.
    """
    try:
        if platform.system() == 'Linux':
            output = subprocess.check_output(['ip', 'addr'], text=True, stderr=subprocess.DEVNULL)
            return _parse_ip_addr(output)
        output = subprocess.check_output(['ifconfig'], text=True, stderr=subprocess.DEVNULL)
        return _parse_ifconfig(output)
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug(f"Interface listing failed: {e}")
        return []


def resolve_interface(interface: Optional[str]) -> str:
    """
    Resolve an interface name or address to an IPv4 address.

    Args:
        interface: IPv4 address, interface name, or None for any

    Returns:
        Dotted-quad address ("0.0.0.0" when no interface was given)

    Raises:
        LookupError: if the name matches no local interface
    """
    if not interface:
        return "0.0.0.0"

    try:
        return str(ipaddress.IPv4Address(interface))
    except ValueError:
        pass

    for iface in get_local_interfaces():
        if iface.name == interface:
            logger.debug(f"Resolved interface {interface} to {iface.ip}")
            return iface.ip

    raise LookupError(f"Network interface '{interface}' not found")


def get_route_ip() -> str:
    """Get the local IP address used for outbound traffic."""
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            # Connect doesn't send anything for UDP
            sock.connect(("8.8.8.8", 80))
            return sock.getsockname()[0]
        finally:
            sock.close()
    except OSError:
        return "127.0.0.1"
