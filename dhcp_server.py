#!/usr/bin/env python3

import argparse
import ipaddress
import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List, Optional

from dhcp_config import DHCPConfig, configure_logging, load_config, server_config
from dhcp_errors import DecodeError, OptionsMalformed, PoolExhausted, TransportError
from dhcp_options import (DHCPACK, DHCPDISCOVER, DHCPOFFER, DHCPREQUEST,
                          OPTION_DNS_SERVER, OPTION_REQUESTED_ADDRESS, OPTION_ROUTER,
                          OPTION_SERVER_ID, OptionTable, address_option, build,
                          lease_time_option, message_type_name, message_type_option)
from dhcp_packet import BOOTREQUEST, ZERO_ADDRESS, DHCPMessage, decode, encode, format_mac
from dhcp_transport import UDPTransport, interface_address, send_with_retry

logger = logging.getLogger(__name__)

MAX_MSG_LENGTH = 100


@dataclass
class DHCPLease:
    ip_address: str
    mac_address: str
    xid: int
    position: int
    offered_at: datetime
    acknowledged: bool = False

    def to_dict(self) -> Dict:
        lease = asdict(self)
        lease['xid'] = f'{self.xid:08x}'
        lease['offered_at'] = self.offered_at.strftime('%Y-%m-%d %H:%M:%S')
        return lease


class LeaseAllocator:
    """Hands out host addresses START..END of the server's /24 in order.

    Addresses are never returned to the pool.
    """

    def __init__(self, server_address: str, start: int, end: int):
        if not 0 < start <= end < 255:
            raise ValueError(f"Pool {start}..{end} is not a range of host addresses")
        self.server_address = server_address
        self.start = start
        self.end = end
        self.counter = start
        self.prefix = int(ipaddress.IPv4Address(server_address)) & 0xFFFFFF00
        self.leases: List[DHCPLease] = []
        self.lock = threading.Lock()

    @property
    def exhausted(self) -> bool:
        with self.lock:
            return self.counter > self.end

    @property
    def remaining(self) -> int:
        with self.lock:
            return max(self.end - self.counter + 1, 0)

    def allocate(self, mac_address: str = '', xid: int = 0) -> str:
        with self.lock:
            if self.counter > self.end:
                raise PoolExhausted(self.end)
            position = self.counter
            self.counter += 1
            address = str(ipaddress.IPv4Address(self.prefix | position))
            self.leases.append(DHCPLease(address, mac_address, xid, position, datetime.now()))
        return address

    def offered(self, xid: int, address: str) -> Optional[DHCPLease]:
        with self.lock:
            for lease in reversed(self.leases):
                if lease.xid == xid and lease.ip_address == address:
                    return lease
        return None

    def acknowledge(self, xid: int, address: str) -> None:
        with self.lock:
            for lease in reversed(self.leases):
                if lease.xid == xid and lease.ip_address == address:
                    lease.acknowledged = True
                    return

    def snapshot(self) -> Dict:
        with self.lock:
            return {
                'server_address': self.server_address,
                'start': self.start,
                'end': self.end,
                'next': self.counter if self.counter <= self.end else None,
                'remaining': max(self.end - self.counter + 1, 0),
                'exhausted': self.counter > self.end,
                'offered': len(self.leases),
                'acknowledged': sum(1 for lease in self.leases if lease.acknowledged),
            }

    def lease_list(self) -> List[Dict]:
        with self.lock:
            return [lease.to_dict() for lease in self.leases]


class RogueDHCPServer:
    def __init__(self, allocator: LeaseAllocator, config: DHCPConfig, transport=None):
        self.allocator = allocator
        self.config = config
        self.server_ip = allocator.server_address
        self.transport = transport

    def reply_options(self, message_type: int) -> bytes:
        return build([
            message_type_option(message_type),
            address_option(OPTION_ROUTER, self.server_ip),
            lease_time_option(self.config.lease_time),
            address_option(OPTION_SERVER_ID, self.server_ip),
            address_option(OPTION_DNS_SERVER, self.server_ip),
        ])

    def handle(self, message: DHCPMessage) -> Optional[DHCPMessage]:
        """Answer a client message, or return None to stay silent."""
        if message.op != BOOTREQUEST:
            return None
        if self.allocator.exhausted:
            logger.debug(f"Pool exhausted, ignoring message {message.xid:08x}")
            return None

        try:
            options = OptionTable.from_bytes(message.options, strict=True)
        except OptionsMalformed as e:
            logger.warning(f"Dropping message {message.xid:08x} with malformed options: {e}")
            return None

        message_type = options.message_type
        mac_str = format_mac(message.hardware_address)
        if message_type == DHCPDISCOVER:
            logger.info(f"DHCP DISCOVER from {mac_str}")
            return self.handle_discover(message, mac_str)
        elif message_type == DHCPREQUEST:
            logger.info(f"DHCP REQUEST from {mac_str}")
            return self.handle_request(message, options, mac_str)

        logger.debug(f"No reply to DHCP {message_type_name(message_type)} from {mac_str}")
        return None

    def handle_discover(self, message: DHCPMessage, mac_str: str) -> Optional[DHCPMessage]:
        try:
            offered_ip = self.allocator.allocate(mac_str, message.xid)
        except PoolExhausted as e:
            logger.warning(str(e))
            return None

        logger.info(f"Offering IP {offered_ip} to {mac_str}")
        return message.reply(
            ciaddr=ZERO_ADDRESS,
            giaddr=ZERO_ADDRESS,
            yiaddr=offered_ip,
            siaddr=self.server_ip,
            options=self.reply_options(DHCPOFFER),
        )

    def handle_request(self, message: DHCPMessage, options: OptionTable, mac_str: str) -> Optional[DHCPMessage]:
        requested_ip = options.address(OPTION_REQUESTED_ADDRESS)
        if requested_ip is None:
            logger.warning(f"REQUEST from {mac_str} carries no requested address")
            return None

        if self.config.strict_requests and not self.allocator.offered(message.xid, requested_ip):
            logger.warning(f"REQUEST from {mac_str} for {requested_ip} was never offered, ignoring")
            return None

        self.allocator.acknowledge(message.xid, requested_ip)
        logger.info(f"Grant IP {requested_ip} to {mac_str}")
        return message.reply(
            ciaddr=ZERO_ADDRESS,
            giaddr=ZERO_ADDRESS,
            yiaddr=requested_ip,
            siaddr=self.server_ip,
            options=self.reply_options(DHCPACK),
        )

    def serve_packet(self, data: bytes, addr) -> Optional[DHCPMessage]:
        try:
            message = decode(data)
        except DecodeError as e:
            logger.debug(f"Dropping packet from {addr}: {e}")
            return None

        reply = self.handle(message)
        if reply is None:
            return None

        packet = encode(reply)
        logger.debug(f"Created DHCP packet: {packet.hex()}")
        try:
            send_with_retry(self.transport, packet,
                            (self.config.broadcast_address, self.config.client_port),
                            self.config.retry)
        except TransportError as e:
            logger.error(f"Error sending reply to {format_mac(reply.hardware_address)}: {e}")
        return reply

    def serve_forever(self) -> None:
        logger.info(f"Server {self.server_ip} ready, pool {self.allocator.start}..{self.allocator.end}")
        while True:
            try:
                received = self.transport.receive(None)
            except TransportError as e:
                logger.error(f"Error receiving packet: {e}")
                continue
            if received is None:
                continue
            data, addr = received
            logger.debug(f"Received {len(data)} bytes from {addr}")
            self.serve_packet(data, addr)


class ControlChannel:
    """Logs the free-text messages clients send to the control port."""

    def __init__(self, transport):
        self.transport = transport
        self.running = True
        self.thread = threading.Thread(target=self._receive_messages, name='control_channel', daemon=True)

    def start(self) -> None:
        self.thread.start()

    def handle(self, data: bytes, addr) -> str:
        text = data[:MAX_MSG_LENGTH].split(b'\x00', 1)[0].decode('utf-8', errors='replace').rstrip('\n')
        logger.info(f"Message from client {addr[0]}: {text}")
        return text

    def _receive_messages(self) -> None:
        while self.running:
            try:
                received = self.transport.receive(1.0)
            except TransportError as e:
                logger.error(f"Error receiving control message: {e}")
                continue
            if received is not None:
                self.handle(*received)

    def stop(self) -> None:
        self.running = False
        if self.thread.is_alive():
            self.thread.join(timeout=2)


def start_dashboard(allocator: LeaseAllocator, port: int, log_file: Optional[str] = None) -> threading.Thread:
    from dashboard.app import create_app

    app = create_app(allocator, log_file)
    thread = threading.Thread(
        target=app.run,
        kwargs={'host': '0.0.0.0', 'port': port, 'use_reloader': False},
        name='dashboard',
        daemon=True,
    )
    thread.start()
    logger.info(f"Dashboard listening on port {port}")
    return thread


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Rogue DHCP server handing out a sequential pool")
    parser.add_argument("-i", "--interface", help="Interface to bind to (e.g. enp0s3)")
    parser.add_argument("-c", "--config", help="INI configuration file with a [DHCP] section")
    parser.add_argument("-a", "--address", help="Own IPv4 address (read from the interface by default)")
    parser.add_argument("--strict-requests", action="store_true", default=None,
                        help="Only acknowledge addresses offered to the same transaction")
    parser.add_argument("--dashboard-port", type=int, help="Serve the lease dashboard on this port")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log packet dumps")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = server_config()
    if args.config:
        config = load_config(args.config, config)
    if args.interface:
        config.interface = args.interface
    if args.address:
        config.server_address = args.address
    if args.strict_requests is not None:
        config.strict_requests = args.strict_requests
    if args.dashboard_port:
        config.dashboard_port = args.dashboard_port

    configure_logging(config.log_file, logging.DEBUG if args.verbose else logging.INFO)

    transport = None
    control = None
    try:
        server_ip = config.server_address or interface_address(config.interface or 'eth0')
        allocator = LeaseAllocator(server_ip, config.pool_start, config.pool_end)
        transport = UDPTransport(config.server_port, config.interface)
        control = ControlChannel(UDPTransport(config.control_port, config.interface))
        control.start()
        if config.dashboard_port:
            start_dashboard(allocator, config.dashboard_port, config.log_file)

        logger.info(f"Fake DHCP Server is starting, my IP address {server_ip}")
        RogueDHCPServer(allocator, config, transport).serve_forever()
    except TransportError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Shutting down DHCP server...")
    finally:
        if control:
            control.stop()
            control.transport.close()
        if transport:
            transport.close()
            logger.info("Socket closed")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
