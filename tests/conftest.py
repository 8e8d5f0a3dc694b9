import collections

import pytest

from dhcp_config import DHCPConfig, RetryPolicy
from dhcp_errors import TransportError
from dhcp_server import LeaseAllocator, RogueDHCPServer

SERVER_IP = '10.0.0.1'


class FakeTransport:
    """Queue-backed transport: scripted inbound datagrams, recorded sends."""

    def __init__(self, inbound=(), failures=0):
        self.inbound = collections.deque(inbound)
        self.sent = []
        self.failures = failures
        self.timeouts = []

    def send(self, data, destination):
        if self.failures:
            self.failures -= 1
            raise TransportError("network is unreachable")
        self.sent.append((data, destination))

    def receive(self, timeout):
        self.timeouts.append(timeout)
        if self.inbound:
            return self.inbound.popleft()
        return None

    def close(self):
        pass


class LoopbackTransport(FakeTransport):
    """Client transport whose broadcasts are served synchronously by a rogue server."""

    def __init__(self, server):
        super().__init__()
        self.server = server
        self.server.transport = self

    def send(self, data, destination):
        port = destination[1]
        if port == self.server.config.server_port:
            self.server.serve_packet(data, ('0.0.0.0', self.server.config.client_port))
            return
        self.sent.append((data, destination))
        if port == self.server.config.client_port:
            # server reply broadcast to the client port
            self.inbound.append((data, (self.server.server_ip, self.server.config.server_port)))


@pytest.fixture
def config():
    return DHCPConfig(reply_timeout=2.0, retry=RetryPolicy(max_attempts=3, initial_delay=0, backoff=1))


@pytest.fixture
def allocator():
    return LeaseAllocator(SERVER_IP, 101, 150)


@pytest.fixture
def server(allocator, config):
    return RogueDHCPServer(allocator, config, FakeTransport())


@pytest.fixture
def loopback(server):
    return LoopbackTransport(server)
