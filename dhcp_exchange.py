"""Client side of one DHCP lease handshake (Discover, Offer, Request, Ack)."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Optional

from dhcp_config import DHCPConfig
from dhcp_errors import DecodeError, ExchangeTimeout, TransactionMismatch
from dhcp_options import (DHCPACK, DHCPDISCOVER, DHCPNAK, DHCPOFFER, DHCPREQUEST,
                          OPTION_REQUESTED_ADDRESS, OPTION_ROUTER, OPTION_SERVER_ID,
                          OptionTable, address_option, build, message_type_name,
                          message_type_option)
from dhcp_packet import (BOOTREPLY, BOOTREQUEST, BROADCAST_FLAG, HLEN_ETHERNET,
                         ZERO_ADDRESS, DHCPMessage, decode, encode, format_mac,
                         random_mac, random_xid)
from dhcp_transport import send_with_retry

logger = logging.getLogger(__name__)

# Exchange states
INIT = 'init'
AWAIT_OFFER = 'await-offer'
AWAIT_ACK = 'await-ack'
BOUND = 'bound'
ABANDONED = 'abandoned'


@dataclass
class TransactionContext:
    """Identity of one exchange and the reply it is waiting for."""
    xid: int
    hardware_address: bytes
    expected: Optional[int] = None

    @classmethod
    def new(cls, rng: Optional[random.Random] = None) -> 'TransactionContext':
        return cls(xid=random_xid(rng), hardware_address=random_mac(rng))

    @property
    def mac(self) -> str:
        return format_mac(self.hardware_address)

    def check(self, message: DHCPMessage) -> OptionTable:
        """Return the reply's options if it answers this transaction.

        Raises TransactionMismatch for anything that is not a reply to
        our xid and hardware address.
        """
        if message.op != BOOTREPLY:
            raise TransactionMismatch(f"op {message.op} is not a reply")
        if message.xid != self.xid:
            raise TransactionMismatch(f"xid {message.xid:08x} != {self.xid:08x}")
        if message.hardware_address[:len(self.hardware_address)] != self.hardware_address:
            raise TransactionMismatch(f"chaddr {format_mac(message.hardware_address)} != {self.mac}")
        return OptionTable.from_bytes(message.options)


@dataclass
class ExchangeResult:
    state: str
    xid: int
    hardware_address: bytes
    address: Optional[str] = None
    server: Optional[str] = None
    gateway: Optional[str] = None
    lease_time: Optional[int] = None

    @property
    def bound(self) -> bool:
        return self.state == BOUND

    def require_bound(self) -> 'ExchangeResult':
        if not self.bound:
            raise ExchangeTimeout(f"Exchange {self.xid:08x} ended {self.state}")
        return self


class ClientExchange:
    """Runs one Discover/Offer/Request/Ack handshake with a fresh identity."""

    def __init__(self, transport, config: DHCPConfig, rng: Optional[random.Random] = None,
                 clock=time.monotonic):
        self.transport = transport
        self.config = config
        self.clock = clock
        self.state = INIT
        self.context = TransactionContext.new(rng)
        self.result = ExchangeResult(INIT, self.context.xid, self.context.hardware_address)

    def run(self) -> ExchangeResult:
        logger.info(f"Starting exchange {self.context.xid:08x} as {self.context.mac}")

        self._send(self._request_message(DHCPDISCOVER))
        self._enter(AWAIT_OFFER, DHCPOFFER)
        offer = self._wait()
        if offer is None:
            return self._finish(ABANDONED)
        message, options, source = offer
        self.result.address = message.yiaddr
        self.result.server = source
        logger.info(f"Received DHCP OFFER - IP: {message.yiaddr}, Server: {source}")

        self._send(self._request_message(DHCPREQUEST, message.yiaddr, source))
        self._enter(AWAIT_ACK, DHCPACK)
        ack = self._wait()
        if ack is None:
            return self._finish(ABANDONED)
        message, options, source = ack
        if options.message_type == DHCPNAK:
            logger.error(f"Received DHCP NAK for {self.result.address} - Request rejected")
            return self._finish(ABANDONED)

        self.result.gateway = options.address(OPTION_ROUTER)
        self.result.lease_time = options.lease_time
        logger.info(f"Received DHCP ACK - IP {self.result.address} bound, gateway {self.result.gateway}")
        return self._finish(BOUND)

    def _enter(self, state: str, expected: int) -> None:
        logger.debug(f"Exchange {self.context.xid:08x}: {self.state} -> {state}")
        self.state = state
        self.context.expected = expected

    def _finish(self, state: str) -> ExchangeResult:
        if state == ABANDONED:
            logger.warning(f"Exchange {self.context.xid:08x} abandoned while in {self.state}")
        self.state = self.result.state = state
        return self.result

    def _request_message(self, message_type: int, requested: Optional[str] = None,
                         server: Optional[str] = None) -> DHCPMessage:
        entries = [message_type_option(message_type)]
        if requested:
            entries.append(address_option(OPTION_REQUESTED_ADDRESS, requested))
        if server:
            entries.append(address_option(OPTION_SERVER_ID, server))
        return DHCPMessage(
            op=BOOTREQUEST,
            hlen=HLEN_ETHERNET,
            xid=self.context.xid,
            flags=BROADCAST_FLAG,
            ciaddr=requested or ZERO_ADDRESS,
            siaddr=server or ZERO_ADDRESS,
            chaddr=self.context.hardware_address,
            options=build(entries),
        )

    def _send(self, message: DHCPMessage) -> None:
        options = OptionTable.from_bytes(message.options)
        logger.info(f"Sending DHCP {message_type_name(options.message_type)} for {self.context.mac}")
        data = encode(message)
        logger.debug(f"Packet: {data.hex()}")
        send_with_retry(self.transport, data,
                        (self.config.broadcast_address, self.config.server_port),
                        self.config.retry)

    def _wait(self):
        """Block until a matching reply arrives or the timeout elapses.

        Returns ``(message, options, source address)`` or None on timeout.
        """
        deadline = self.clock() + self.config.reply_timeout
        while True:
            remaining = deadline - self.clock()
            if remaining <= 0:
                break
            received = self.transport.receive(remaining)
            if received is None:
                break
            data, addr = received
            try:
                message = decode(data)
                options = self.context.check(message)
            except DecodeError as e:
                logger.debug(f"Dropping packet from {addr}: {e}")
                continue
            except TransactionMismatch as e:
                logger.debug(f"Ignoring reply from {addr}: {e}")
                continue

            message_type = options.message_type
            if message_type == self.context.expected or (self.state == AWAIT_ACK and message_type == DHCPNAK):
                return message, options, addr[0]
            logger.debug(f"Ignoring DHCP {message_type_name(message_type)} while in {self.state}")

        logger.warning(f"Timeout waiting for DHCP {message_type_name(self.context.expected)}")
        return None
