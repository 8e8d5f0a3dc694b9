import errno
import socket

import pytest

from dhcp_errors import TransportError
from dhcp_transport import UDPTransport


class FakeSocket:
    """Stands in for the UDP socket; recvfrom raises or returns what it is given."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.options = []
        self.timeout = None
        self.closed = False

    def setsockopt(self, level, optname, value):
        self.options.append((optname, value))

    def bind(self, address):
        self.address = address

    def settimeout(self, timeout):
        self.timeout = timeout

    def recvfrom(self, size):
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome

    def close(self):
        self.closed = True


def transport_with(monkeypatch, outcome):
    fake = FakeSocket(outcome)
    monkeypatch.setattr(socket, 'socket', lambda *args: fake)
    return UDPTransport(67)


def test_receive_returns_datagram(monkeypatch):
    transport = transport_with(monkeypatch, (b'data', ('10.0.0.1', 67)))
    assert transport.receive(1.0) == (b'data', ('10.0.0.1', 67))
    assert transport.socket.timeout == 1.0


def test_receive_timeout_is_none(monkeypatch):
    transport = transport_with(monkeypatch, socket.timeout())
    assert transport.receive(0.5) is None


def test_receive_error_becomes_transport_error(monkeypatch):
    transport = transport_with(monkeypatch, OSError(errno.ENETDOWN, 'Network is down'))
    with pytest.raises(TransportError, match='Network is down'):
        transport.receive(None)
