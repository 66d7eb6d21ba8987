"""
UDP multicast transport.

The only component in the swarm that performs raw socket I/O. Each
agent joins the same multicast group and every datagram it sends is
delivered to all members, including itself (loopback is enabled so
that several agents can share one host).
"""

import asyncio
import ipaddress
import logging
import socket
import struct
from typing import Awaitable, Callable, Optional, Tuple, Union

from ..network.ip_detect import resolve_interface

logger = logging.getLogger(__name__)

# Largest datagram we send; stays under a typical 1500-byte MTU
MAX_DATAGRAM_SIZE = 1400
RECV_BUFFER_SIZE = 65536

DEFAULT_GROUP = "239.255.255.250"
DEFAULT_PORT = 8080

Address = Tuple[str, int]
DatagramHandler = Callable[[bytes, Address], Union[None, Awaitable[None]]]


class TransportError(Exception):
    """Socket setup or I/O failure."""
    pass


class PayloadTooLarge(TransportError):
    """Datagram exceeds MAX_DATAGRAM_SIZE."""

    def __init__(self, size: int, limit: int = MAX_DATAGRAM_SIZE):
        super().__init__(f"Payload of {size} bytes exceeds limit of {limit} bytes")
        self.size = size
        self.limit = limit


class MulticastTransport:
    """
    Joins an IPv4 multicast group and sends/receives raw datagrams.

    Usage:
        transport = MulticastTransport("239.255.255.250", 8080)
        transport.join()

        await transport.send(b"...")
        await transport.receive_loop(handler)

        transport.close()
    """

    def __init__(
        self,
        group: str = DEFAULT_GROUP,
        port: int = DEFAULT_PORT,
        interface: Optional[str] = None,
        ttl: int = 1,
        loopback: bool = True,
    ):
        self.group = group
        self.port = port
        self.interface = interface
        self.ttl = ttl
        self.loopback = loopback

        self.sock: Optional[socket.socket] = None
        self._interface_ip = "0.0.0.0"
        self._closed = False

    @property
    def address(self) -> Address:
        return (self.group, self.port)

    @property
    def is_open(self) -> bool:
        return self.sock is not None and not self._closed

    def join(self) -> None:
        """
        Bind the socket and join the multicast group.

        Raises:
            TransportError: if the address is not multicast, the interface
                cannot be resolved, or the bind/join fails
        """
        try:
            if not ipaddress.IPv4Address(self.group).is_multicast:
                raise TransportError(f"Address {self.group} is not a valid multicast address")
        except ValueError as e:
            raise TransportError(f"Invalid multicast address {self.group}: {e}") from e

        try:
            self._interface_ip = resolve_interface(self.interface)
        except LookupError as e:
            raise TransportError(str(e)) from e

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            # Several agents on one host share the port
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if hasattr(socket, "SO_REUSEPORT"):
                try:
                    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
                except OSError as e:
                    logger.warning(f"Failed to set SO_REUSEPORT: {e}")

            sock.bind(("0.0.0.0", self.port))

            membership = struct.pack(
                "4s4s",
                socket.inet_aton(self.group),
                socket.inet_aton(self._interface_ip),
            )
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, self.ttl)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1 if self.loopback else 0)
            if self._interface_ip != "0.0.0.0":
                sock.setsockopt(
                    socket.IPPROTO_IP,
                    socket.IP_MULTICAST_IF,
                    socket.inet_aton(self._interface_ip),
                )
            sock.setblocking(False)
        except OSError as e:
            sock.close()
            raise TransportError(
                f"Failed to join multicast group {self.group}:{self.port} "
                f"on interface {self._interface_ip}: {e}"
            ) from e

        self.sock = sock
        self._closed = False
        logger.info(f"Joined multicast group {self.group}:{self.port} on interface {self._interface_ip}")

    async def send(self, data: bytes) -> None:
        """
        Send one datagram to the group.

        Raises:
            PayloadTooLarge: if data exceeds MAX_DATAGRAM_SIZE
            TransportError: if the socket is closed or the send fails
        """
        if len(data) > MAX_DATAGRAM_SIZE:
            raise PayloadTooLarge(len(data))
        if not self.is_open:
            raise TransportError("Transport is not joined")

        loop = asyncio.get_running_loop()
        try:
            await loop.sock_sendto(self.sock, data, self.address)
        except OSError as e:
            raise TransportError(f"Failed to send to {self.group}:{self.port}: {e}") from e

        logger.debug(f"Sent {len(data)} bytes to multicast group {self.group}:{self.port}")

    async def receive_loop(self, handler: DatagramHandler) -> None:
        """
        Deliver every received datagram to handler until closed.

        Receive errors are logged and the loop keeps going. Handler
        errors are logged and never stop the loop.
        """
        if not self.is_open:
            raise TransportError("Transport is not joined")

        loop = asyncio.get_running_loop()

        while not self._closed:
            try:
                data, addr = await loop.sock_recvfrom(self.sock, RECV_BUFFER_SIZE)
            except asyncio.CancelledError:
                raise
            except OSError as e:
                if self._closed:
                    break
                logger.error(f"Error receiving UDP packet: {e}")
                continue

            logger.debug(f"Received {len(data)} bytes from {addr[0]}:{addr[1]}")

            try:
                result = handler(data, addr)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in datagram handler: {e}")

        logger.debug("Receive loop exited")

    def close(self) -> None:
        """Leave the group and close the socket."""
        if self._closed:
            return
        self._closed = True

        if self.sock:
            try:
                self.sock.close()
            finally:
                self.sock = None
            logger.info(f"Left multicast group {self.group}:{self.port}")
