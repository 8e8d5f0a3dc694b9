#!/usr/bin/env python3

import argparse
import logging
import random
import sys
from dataclasses import replace
from typing import Iterable

from dhcp_config import DHCPConfig, client_config, configure_logging, load_config
from dhcp_errors import ExchangeTimeout, TransportError
from dhcp_exchange import ClientExchange, ExchangeResult
from dhcp_transport import UDPTransport, send_with_retry

logger = logging.getLogger(__name__)

MAX_MSG_LENGTH = 100


class DHCPClient:
    """Cooperative client: obtain a lease, then talk to the default gateway."""

    def __init__(self, transport, config: DHCPConfig, rng=None):
        self.transport = transport
        self.config = config
        self.rng = rng
        self.lease = None

    def acquire(self) -> ExchangeResult:
        """Run one handshake; a timeout is fatal for the client."""
        result = ClientExchange(self.transport, self.config, self.rng).run()
        self.lease = result.require_bound()
        logger.info(f"IP Address: {self.lease.address}")
        logger.info(f"Default Gateway is: {self.lease.gateway}")
        logger.info(f"Lease Time: {self.lease.lease_time} seconds")
        return self.lease

    def send_message(self, text: str) -> None:
        if not (self.lease and self.lease.gateway):
            raise TransportError("No default gateway to send to")
        data = text.encode('utf-8')[:MAX_MSG_LENGTH]
        send_with_retry(self.transport, data, (self.lease.gateway, self.config.control_port),
                        self.config.retry)
        logger.debug(f"Sent {len(data)} bytes to {self.lease.gateway}:{self.config.control_port}")

    def chat(self, lines: Iterable[str]) -> int:
        """Send up to ``max_messages`` lines to the gateway; returns the count sent."""
        sent = 0
        for line in lines:
            if sent >= self.config.max_messages:
                break
            self.send_message(line)
            sent += 1
        return sent


def prompt_lines():
    while True:
        print("Enter message: ", end='', flush=True)
        line = sys.stdin.readline()
        if not line:
            return
        yield line


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="DHCP client that chats with its default gateway")
    parser.add_argument("-i", "--interface", help="Network interface to use")
    parser.add_argument("-c", "--config", help="INI configuration file with a [DHCP] section")
    parser.add_argument("-t", "--timeout", type=float, help="Seconds to wait for each reply")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log packet dumps")
    return parser.parse_args(argv)


def build_config(args) -> DHCPConfig:
    config = client_config()
    if args.config:
        config = load_config(args.config, config)
    overrides = {}
    if args.interface:
        overrides['interface'] = args.interface
    if args.timeout is not None:
        overrides['reply_timeout'] = args.timeout
    return replace(config, **overrides)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = build_config(args)

    configure_logging(config.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        with UDPTransport(config.client_port, config.interface) as transport:
            client = DHCPClient(transport, config, random.Random())
            client.acquire()
            client.chat(prompt_lines())
    except ExchangeTimeout as e:
        logger.error(f"Could not obtain a lease: {e}")
        return 1
    except TransportError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Client stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
