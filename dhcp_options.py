"""DHCP option area: TLV walker, lookup and bounded builder.

The option area starts with the 4 byte magic cookie, followed by
``code, length, value`` triples and closed by the End code (255).
Pad (0) is a single filler byte and never carries a length.
"""

import socket
import struct
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional

from dhcp_errors import OptionNotFound, OptionsMalformed, OptionsOverflow
from dhcp_packet import OPTIONS_LENGTH

MAGIC_COOKIE = b'\x63\x82\x53\x63'

OPTION_PAD = 0
OPTION_ROUTER = 3
OPTION_DNS_SERVER = 6
OPTION_REQUESTED_ADDRESS = 50
OPTION_LEASE_TIME = 51
OPTION_MESSAGE_TYPE = 53
OPTION_SERVER_ID = 54
OPTION_END = 255

# DHCP Message Types
DHCPDISCOVER = 1
DHCPOFFER = 2
DHCPREQUEST = 3
DHCPDECLINE = 4
DHCPACK = 5
DHCPNAK = 6
DHCPRELEASE = 7

MESSAGE_TYPE_NAMES = {
    DHCPDISCOVER: 'DISCOVER',
    DHCPOFFER: 'OFFER',
    DHCPREQUEST: 'REQUEST',
    DHCPDECLINE: 'DECLINE',
    DHCPACK: 'ACK',
    DHCPNAK: 'NAK',
    DHCPRELEASE: 'RELEASE',
}


def message_type_name(message_type: Optional[int]) -> str:
    if message_type is None:
        return 'NONE'
    return MESSAGE_TYPE_NAMES.get(message_type, f'unknown({message_type})')


@dataclass(frozen=True)
class OptionEntry:
    code: int
    value: bytes = b''

    def __post_init__(self):
        if not 0 < self.code < OPTION_END:
            raise ValueError(f"Option code {self.code} cannot carry a value")
        if len(self.value) > 255:
            raise ValueError(f"Option {self.code} value is {len(self.value)} bytes, limit is 255")

    @property
    def length(self) -> int:
        return len(self.value)

    def as_address(self) -> str:
        if self.length != 4:
            raise ValueError(f"Option {self.code} holds {self.length} bytes, not an IPv4 address")
        return socket.inet_ntoa(self.value)

    def as_int(self) -> int:
        return int.from_bytes(self.value, 'big')


def message_type_option(message_type: int) -> OptionEntry:
    return OptionEntry(OPTION_MESSAGE_TYPE, bytes([message_type]))


def address_option(code: int, address: str) -> OptionEntry:
    return OptionEntry(code, socket.inet_aton(address))


def lease_time_option(seconds: int) -> OptionEntry:
    return OptionEntry(OPTION_LEASE_TIME, struct.pack('!I', seconds))


def parse(option_bytes: bytes, validate_cookie: bool = False, strict: bool = False,
          cookie: bool = True) -> Iterator[OptionEntry]:
    """Walk the option area once, yielding entries in wire order.

    With ``cookie`` false the area holds entries from offset 0, as written by
    ``build(..., cookie=False)``.

    In lenient mode an entry whose length runs past the end of the area is
    dropped and the walk stops there. In strict mode that entry, or a
    missing End marker, raises OptionsMalformed.
    """
    if cookie and validate_cookie and option_bytes[:4] != MAGIC_COOKIE:
        raise OptionsMalformed(f"Bad magic cookie {bytes(option_bytes[:4]).hex()}")

    bound = len(option_bytes)
    i = len(MAGIC_COOKIE) if cookie else 0
    while i < bound:
        code = option_bytes[i]
        if code == OPTION_END:
            return
        if code == OPTION_PAD:
            i += 1
            continue
        if i + 1 >= bound:
            if strict:
                raise OptionsMalformed(f"Option {code} at offset {i} has no length byte")
            return
        length = option_bytes[i + 1]
        end = i + 2 + length
        if end > bound:
            if strict:
                raise OptionsMalformed(f"Option {code} at offset {i} declares {length} bytes past the bound")
            return
        yield OptionEntry(code, bytes(option_bytes[i + 2:end]))
        i = end

    if strict:
        raise OptionsMalformed("No End marker within the option area")


def find(option_bytes: bytes, code: int, strict: bool = False, cookie: bool = True) -> OptionEntry:
    for entry in parse(option_bytes, strict=strict, cookie=cookie):
        if entry.code == code:
            return entry
    raise OptionNotFound(code)


def build(entries: Iterable[OptionEntry], cookie: bool = True, size: int = OPTIONS_LENGTH) -> bytes:
    """Write cookie, entries and End into a zeroed area of ``size`` bytes."""
    area = bytearray(size)
    offset = 0

    def reserve(count: int) -> int:
        nonlocal offset
        start = offset
        # one byte always stays free for the End marker
        if start + count + 1 > size:
            raise OptionsOverflow(start + count + 1, size)
        offset += count
        return start

    if cookie:
        start = reserve(len(MAGIC_COOKIE))
        area[start:offset] = MAGIC_COOKIE

    for entry in entries:
        start = reserve(2 + entry.length)
        area[start] = entry.code
        area[start + 1] = entry.length
        area[start + 2:offset] = entry.value

    area[offset] = OPTION_END
    return bytes(area)


class OptionTable:
    """Materialised, random-access view of a message's options."""

    def __init__(self, entries: Iterable[OptionEntry]):
        self.entries: List[OptionEntry] = list(entries)
        self._by_code: Dict[int, OptionEntry] = {}
        for entry in self.entries:
            self._by_code.setdefault(entry.code, entry)

    @classmethod
    def from_bytes(cls, option_bytes: bytes, strict: bool = False) -> 'OptionTable':
        return cls(parse(option_bytes, strict=strict))

    def __iter__(self) -> Iterator[OptionEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, code: int) -> bool:
        return code in self._by_code

    def get(self, code: int) -> Optional[OptionEntry]:
        return self._by_code.get(code)

    @property
    def message_type(self) -> Optional[int]:
        entry = self.get(OPTION_MESSAGE_TYPE)
        if entry is None or entry.length != 1:
            return None
        return entry.value[0]

    def address(self, code: int) -> Optional[str]:
        entry = self.get(code)
        if entry is None or entry.length != 4:
            return None
        return entry.as_address()

    @property
    def lease_time(self) -> Optional[int]:
        entry = self.get(OPTION_LEASE_TIME)
        if entry is None or entry.length != 4:
            return None
        return entry.as_int()

    def to_bytes(self, size: int = OPTIONS_LENGTH) -> bytes:
        return build(self.entries, size=size)
