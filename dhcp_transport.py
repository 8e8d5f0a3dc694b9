"""UDP transport used by every role, plus the bounded send retry."""

import fcntl
import logging
import socket
import struct
import time
from typing import Callable, Optional, Tuple

from dhcp_config import RetryPolicy
from dhcp_errors import TransportError

logger = logging.getLogger(__name__)

Address = Tuple[str, int]

SIOCGIFADDR = 0x8915
RECEIVE_BUFFER = 4096


class UDPTransport:
    """Broadcast-capable UDP socket bound to a port (and optionally a device)."""

    def __init__(self, port: int, interface: Optional[str] = None, bind_address: str = '0.0.0.0'):
        self.port = port
        self.interface = interface
        self.socket = None
        try:
            self.socket = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
            if interface:
                # SO_BINDTODEVICE is Linux-specific and needs root
                optname = getattr(socket, 'SO_BINDTODEVICE', 25)
                self.socket.setsockopt(socket.SOL_SOCKET, optname, interface.encode('utf-8') + b'\x00')
            self.socket.bind((bind_address, port))
            logger.info(f"UDP socket bound to {interface or bind_address}:{port}")
        except OSError as e:
            logger.error(f"Failed to create socket on port {port}: {e}")
            if self.socket:
                self.socket.close()
            raise TransportError(f"Could not bind port {port}: {e}") from e

    def send(self, data: bytes, destination: Address) -> None:
        try:
            self.socket.sendto(data, destination)
        except OSError as e:
            raise TransportError(f"sendto {destination[0]}:{destination[1]} failed: {e}") from e

    def receive(self, timeout: Optional[float]) -> Optional[Tuple[bytes, Address]]:
        """Block for one datagram; None when ``timeout`` seconds pass first."""
        self.socket.settimeout(timeout)
        try:
            return self.socket.recvfrom(RECEIVE_BUFFER)
        except socket.timeout:
            return None
        except OSError as e:
            raise TransportError(f"Error receiving on port {self.port}: {e}") from e

    def close(self) -> None:
        if self.socket:
            self.socket.close()
            self.socket = None
            logger.debug(f"Socket on port {self.port} closed")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


def send_with_retry(transport, data: bytes, destination: Address,
                    policy: Optional[RetryPolicy] = None,
                    sleep: Callable[[float], None] = time.sleep) -> int:
    """Send ``data``, retrying with exponential backoff.

    Returns the number of attempts used. Raises TransportError once the
    policy's attempts are spent.
    """
    policy = policy or RetryPolicy()
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            transport.send(data, destination)
            return attempt
        except TransportError as e:
            delay = next(delays, None)
            if delay is None:
                logger.error(f"Giving up sending to {destination[0]}:{destination[1]} after {attempt} attempts: {e}")
                raise
            logger.warning(f"Error in sending packet ({e}), resending in {delay:.2f} seconds...")
            sleep(delay)


def interface_address(interface: str) -> str:
    """IPv4 address assigned to ``interface`` (Linux)."""
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        ifname = interface[:15].encode('utf-8')
        res = fcntl.ioctl(s.fileno(), SIOCGIFADDR, struct.pack('256s', ifname))
        return socket.inet_ntoa(res[20:24])
    except OSError as e:
        raise TransportError(f"No IPv4 address on interface {interface}: {e}") from e
    finally:
        s.close()
