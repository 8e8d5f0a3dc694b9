"""Role configuration and logging setup shared by the three programs."""

import configparser
import logging
from dataclasses import dataclass, field, fields, replace
from logging.handlers import RotatingFileHandler
from typing import Optional

logger = logging.getLogger(__name__)

SERVER_PORT = 67
CLIENT_PORT = 68
CONTROL_PORT = 547
BROADCAST_ADDRESS = '255.255.255.255'

START_IP = 101
END_IP = 150
LEASE_TIME = 120  # seconds

LOG_FORMAT = '%(asctime)s - %(levelname)s - [%(threadName)s] - %(message)s'


@dataclass
class RetryPolicy:
    max_attempts: int = 5
    initial_delay: float = 0.1
    backoff: float = 2.0
    max_delay: float = 2.0

    def delays(self):
        """Sleep durations between consecutive attempts."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield min(delay, self.max_delay)
            delay *= self.backoff


@dataclass
class DHCPConfig:
    interface: Optional[str] = None
    server_port: int = SERVER_PORT
    client_port: int = CLIENT_PORT
    control_port: int = CONTROL_PORT
    broadcast_address: str = BROADCAST_ADDRESS
    reply_timeout: float = 2.0
    iterations: int = 40
    pool_start: int = START_IP
    pool_end: int = END_IP
    lease_time: int = LEASE_TIME
    strict_requests: bool = False
    server_address: Optional[str] = None
    dashboard_port: Optional[int] = None
    max_messages: int = 5
    log_file: Optional[str] = None
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self):
        if not 0 < self.pool_start <= self.pool_end < 255:
            raise ValueError(f"Pool {self.pool_start}..{self.pool_end} is not a range of host addresses")
        if self.reply_timeout <= 0:
            raise ValueError("reply_timeout must be positive")


def attacker_config(**overrides) -> DHCPConfig:
    settings = dict(reply_timeout=2.0, iterations=40, log_file='dhcp_starvation.log')
    settings.update(overrides)
    return DHCPConfig(**settings)


def client_config(**overrides) -> DHCPConfig:
    settings = dict(reply_timeout=5.0, iterations=1, log_file='dhcp_client.log')
    settings.update(overrides)
    return DHCPConfig(**settings)


def server_config(**overrides) -> DHCPConfig:
    settings = dict(log_file='dhcp_server.log')
    settings.update(overrides)
    return DHCPConfig(**settings)


_RETRY_KEYS = {
    'retry_attempts': ('max_attempts', int),
    'retry_delay': ('initial_delay', float),
    'retry_backoff': ('backoff', float),
    'retry_max_delay': ('max_delay', float),
}


def load_config(path: str, base: Optional[DHCPConfig] = None) -> DHCPConfig:
    """Override ``base`` with the values of the [DHCP] section of an INI file."""
    base = base or DHCPConfig()
    parser = configparser.ConfigParser()
    if not parser.read(path):
        raise FileNotFoundError(path)
    if not parser.has_section('DHCP'):
        logger.warning(f"No [DHCP] section in {path}, using defaults")
        return base

    section = parser['DHCP']
    changes = {}
    for f in fields(DHCPConfig):
        if f.name == 'retry' or f.name not in section:
            continue
        default = getattr(base, f.name)
        if isinstance(default, bool):
            changes[f.name] = section.getboolean(f.name)
        elif isinstance(default, int) or f.name == 'dashboard_port':
            changes[f.name] = section.getint(f.name)
        elif isinstance(default, float):
            changes[f.name] = section.getfloat(f.name)
        else:
            changes[f.name] = section.get(f.name)

    retry_changes = {}
    for key, (attr, kind) in _RETRY_KEYS.items():
        if key in section:
            retry_changes[attr] = kind(section.get(key))
    if retry_changes:
        changes['retry'] = replace(base.retry, **retry_changes)

    return replace(base, **changes)


def configure_logging(log_file: Optional[str] = None, level: int = logging.INFO) -> None:
    handlers = [logging.StreamHandler()]  # Also log to console
    if log_file:
        handlers.insert(0, RotatingFileHandler(
            log_file,
            maxBytes=1024*1024,  # 1MB
            backupCount=5
        ))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers)
