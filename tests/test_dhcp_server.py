import pytest

from conftest import SERVER_IP, FakeTransport
from dhcp_config import RetryPolicy
from dhcp_errors import PoolExhausted, TransportError
from dhcp_options import (DHCPACK, DHCPDISCOVER, DHCPOFFER, DHCPRELEASE, DHCPREQUEST,
                          MAGIC_COOKIE, OPTION_DNS_SERVER, OPTION_REQUESTED_ADDRESS,
                          OPTION_ROUTER, OPTION_SERVER_ID, OptionTable, address_option,
                          build, message_type_option)
from dhcp_packet import (BOOTREPLY, BOOTREQUEST, BROADCAST_FLAG, DHCPMessage, decode,
                         encode, parse_mac)
from dhcp_server import ControlChannel, LeaseAllocator, RogueDHCPServer

CLIENT_MAC = parse_mac('AA:BB:CC:DD:EE:FF')


def client_message(message_type, xid=0x1234, requested=None, op=BOOTREQUEST, options=None):
    entries = [message_type_option(message_type)]
    if requested:
        entries.append(address_option(OPTION_REQUESTED_ADDRESS, requested))
    return DHCPMessage(
        op=op, xid=xid, flags=BROADCAST_FLAG, chaddr=CLIENT_MAC,
        options=build(entries) if options is None else options,
    )


def test_allocate_sequential(allocator):
    addresses = [allocator.allocate() for _ in range(50)]

    hosts = [int(address.rsplit('.', 1)[1]) for address in addresses]
    assert hosts == list(range(101, 151))
    assert all(address.startswith('10.0.0.') for address in addresses)
    assert allocator.exhausted
    assert allocator.remaining == 0

    with pytest.raises(PoolExhausted):
        allocator.allocate()


def test_allocate_keeps_prefix_of_server_address():
    allocator = LeaseAllocator('192.168.56.7', 200, 201)
    assert allocator.allocate() == '192.168.56.200'
    assert allocator.allocate() == '192.168.56.201'


def test_allocator_rejects_bad_pool():
    with pytest.raises(ValueError):
        LeaseAllocator(SERVER_IP, 150, 101)
    with pytest.raises(ValueError):
        LeaseAllocator(SERVER_IP, 0, 10)


def test_discover_gets_offer(server):
    offer = server.handle(client_message(DHCPDISCOVER))

    assert offer.op == BOOTREPLY
    assert offer.xid == 0x1234
    assert offer.hardware_address == CLIENT_MAC
    assert offer.yiaddr == '10.0.0.101'
    assert offer.siaddr == SERVER_IP
    assert offer.ciaddr == offer.giaddr == '0.0.0.0'

    options = OptionTable.from_bytes(offer.options, strict=True)
    assert options.message_type == DHCPOFFER
    assert [entry.code for entry in options] == [53, 3, 51, 54, 6]
    assert options.address(OPTION_ROUTER) == SERVER_IP
    assert options.address(OPTION_SERVER_ID) == SERVER_IP
    assert options.address(OPTION_DNS_SERVER) == SERVER_IP
    assert options.lease_time == 120


def test_request_gets_ack_for_requested_address(server, allocator):
    ack = server.handle(client_message(DHCPREQUEST, requested='10.0.0.101'))

    assert ack.yiaddr == '10.0.0.101'
    assert OptionTable.from_bytes(ack.options).message_type == DHCPACK
    # the Ack never touches the counter
    assert allocator.counter == 101


def test_unsolicited_request_is_acked_by_default(server):
    ack = server.handle(client_message(DHCPREQUEST, xid=0x999, requested='10.0.0.140'))
    assert ack.yiaddr == '10.0.0.140'


def test_strict_requests_need_matching_offer(server):
    server.config.strict_requests = True

    assert server.handle(client_message(DHCPREQUEST, xid=0x999, requested='10.0.0.101')) is None

    offer = server.handle(client_message(DHCPDISCOVER, xid=0x999))
    ack = server.handle(client_message(DHCPREQUEST, xid=0x999, requested=offer.yiaddr))
    assert ack.yiaddr == offer.yiaddr
    assert server.allocator.lease_list()[0]['acknowledged']


def test_request_without_requested_address_ignored(server):
    assert server.handle(client_message(DHCPREQUEST)) is None


@pytest.mark.parametrize('message', [
    client_message(DHCPDISCOVER, op=BOOTREPLY),
    client_message(DHCPRELEASE),
    client_message(DHCPDISCOVER, options=b''),
    client_message(DHCPDISCOVER, options=MAGIC_COOKIE + b'\x35\x01\x01'),
    client_message(DHCPDISCOVER, options=MAGIC_COOKIE + b'\x35\x09\x01\xff'),
])
def test_messages_without_reply(server, allocator, message):
    assert server.handle(message) is None
    assert allocator.counter == 101


def test_exhausted_pool_is_silent(server, allocator):
    for _ in range(50):
        assert server.handle(client_message(DHCPDISCOVER)) is not None

    assert server.handle(client_message(DHCPDISCOVER)) is None
    assert server.handle(client_message(DHCPREQUEST, requested='10.0.0.101')) is None


def test_serve_packet_broadcasts_reply(server):
    reply = server.serve_packet(encode(client_message(DHCPDISCOVER)), ('0.0.0.0', 68))

    (data, destination), = server.transport.sent
    assert destination == ('255.255.255.255', 68)
    assert decode(data) == reply


def test_serve_packet_drops_truncated(server):
    assert server.serve_packet(b'\x01' * 100, ('0.0.0.0', 68)) is None
    assert server.transport.sent == []


def test_serve_packet_survives_send_failure(allocator, config):
    config.retry = RetryPolicy(max_attempts=2, initial_delay=0)
    server = RogueDHCPServer(allocator, config, FakeTransport(failures=2))

    reply = server.serve_packet(encode(client_message(DHCPDISCOVER)), ('0.0.0.0', 68))

    assert reply.yiaddr == '10.0.0.101'
    assert server.transport.sent == []


def test_control_channel_logs_message(caplog):
    channel = ControlChannel(FakeTransport())
    with caplog.at_level('INFO'):
        text = channel.handle(b'hello gateway\n' + b'\x00' * 86, ('10.0.0.101', 68))
    assert text == 'hello gateway'
    assert 'Message from client 10.0.0.101: hello gateway' in caplog.text


class StopServing(Exception):
    pass


class ScriptedTransport(FakeTransport):
    """Receive replays a script; exception entries are raised instead of returned."""

    def __init__(self, script, when_empty):
        super().__init__(script)
        self.when_empty = when_empty

    def receive(self, timeout):
        self.timeouts.append(timeout)
        if not self.inbound:
            return self.when_empty()
        item = self.inbound.popleft()
        if isinstance(item, Exception):
            raise item
        return item


def stop_serving():
    raise StopServing


def test_serve_forever_survives_receive_error(allocator, config, caplog):
    transport = ScriptedTransport([
        TransportError("Network is down"),
        (encode(client_message(DHCPDISCOVER)), ('0.0.0.0', 68)),
    ], stop_serving)
    server = RogueDHCPServer(allocator, config, transport)

    with caplog.at_level('ERROR'), pytest.raises(StopServing):
        server.serve_forever()

    assert 'Error receiving packet: Network is down' in caplog.text
    (data, destination), = transport.sent
    assert destination == ('255.255.255.255', 68)
    assert decode(data).yiaddr == '10.0.0.101'


def test_control_channel_survives_receive_error(caplog):
    channel = ControlChannel(None)

    def stop():
        channel.running = False

    channel.transport = ScriptedTransport([
        TransportError("Network is down"),
        (b'still here\n', ('10.0.0.101', 68)),
    ], stop)

    with caplog.at_level('INFO'):
        channel._receive_messages()

    assert 'Error receiving control message: Network is down' in caplog.text
    assert 'Message from client 10.0.0.101: still here' in caplog.text
    assert channel.transport.timeouts == [1.0, 1.0, 1.0]


def test_snapshot(allocator):
    allocator.allocate('aa:bb:cc:dd:ee:ff', 0x1234)
    pool = allocator.snapshot()
    assert pool['next'] == 102
    assert pool['remaining'] == 49
    assert pool['offered'] == 1
    assert not pool['exhausted']
    lease, = allocator.lease_list()
    assert lease['ip_address'] == '10.0.0.101'
    assert lease['xid'] == '00001234'
    assert lease['position'] == 101
