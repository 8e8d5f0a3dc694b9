"""Fixed-layout DHCP frame encoding and decoding."""

import random
import socket
import struct
from dataclasses import dataclass, replace
from typing import Optional

from dhcp_errors import TruncatedPacket

BOOTREQUEST = 1
BOOTREPLY = 2

HTYPE_ETHERNET = 1
HLEN_ETHERNET = 6

BROADCAST_FLAG = 0x8000

CHADDR_LENGTH = 16
SNAME_LENGTH = 64
FILE_LENGTH = 128
OPTIONS_LENGTH = 312

# op htype hlen hops | xid | secs flags | ciaddr yiaddr siaddr giaddr | chaddr sname file options
FRAME = struct.Struct(f'!BBBBIHH4s4s4s4s{CHADDR_LENGTH}s{SNAME_LENGTH}s{FILE_LENGTH}s{OPTIONS_LENGTH}s')
FRAME_SIZE = FRAME.size
OPTIONS_OFFSET = FRAME_SIZE - OPTIONS_LENGTH

ZERO_ADDRESS = '0.0.0.0'


def _pad(name: str, value: bytes, width: int) -> bytes:
    value = bytes(value)
    if len(value) > width:
        raise ValueError(f"{name} is {len(value)} bytes, field holds {width}")
    return value.ljust(width, b'\x00')


@dataclass
class DHCPMessage:
    op: int = BOOTREQUEST
    htype: int = HTYPE_ETHERNET
    hlen: int = HLEN_ETHERNET
    hops: int = 0
    xid: int = 0
    secs: int = 0
    flags: int = 0
    ciaddr: str = ZERO_ADDRESS
    yiaddr: str = ZERO_ADDRESS
    siaddr: str = ZERO_ADDRESS
    giaddr: str = ZERO_ADDRESS
    chaddr: bytes = b''
    sname: bytes = b''
    file: bytes = b''
    options: bytes = b''

    def __post_init__(self):
        self.chaddr = _pad('chaddr', self.chaddr, CHADDR_LENGTH)
        self.sname = _pad('sname', self.sname, SNAME_LENGTH)
        self.file = _pad('file', self.file, FILE_LENGTH)
        self.options = _pad('options', self.options, OPTIONS_LENGTH)
        if not 0 <= self.hlen <= CHADDR_LENGTH:
            raise ValueError(f"hlen {self.hlen} outside 0..{CHADDR_LENGTH}")

    @property
    def hardware_address(self) -> bytes:
        """The significant part of chaddr."""
        return self.chaddr[:self.hlen]

    @property
    def broadcast(self) -> bool:
        return bool(self.flags & BROADCAST_FLAG)

    def reply(self, **changes) -> 'DHCPMessage':
        """Copy of this message turned into a server reply."""
        return replace(self, op=BOOTREPLY, **changes)


def encode(msg: DHCPMessage) -> bytes:
    """Serialize a message into the full fixed-size frame."""
    return FRAME.pack(
        msg.op, msg.htype, msg.hlen, msg.hops,
        msg.xid,
        msg.secs, msg.flags,
        socket.inet_aton(msg.ciaddr),
        socket.inet_aton(msg.yiaddr),
        socket.inet_aton(msg.siaddr),
        socket.inet_aton(msg.giaddr),
        msg.chaddr, msg.sname, msg.file, msg.options,
    )


def decode(data: bytes) -> DHCPMessage:
    """Parse a frame; the option area is kept as raw bytes."""
    if len(data) < FRAME_SIZE:
        raise TruncatedPacket(len(data), FRAME_SIZE)

    (op, htype, hlen, hops, xid, secs, flags,
     ciaddr, yiaddr, siaddr, giaddr,
     chaddr, sname, file, options) = FRAME.unpack_from(data)

    return DHCPMessage(
        op=op, htype=htype, hlen=min(hlen, CHADDR_LENGTH), hops=hops,
        xid=xid, secs=secs, flags=flags,
        ciaddr=socket.inet_ntoa(ciaddr),
        yiaddr=socket.inet_ntoa(yiaddr),
        siaddr=socket.inet_ntoa(siaddr),
        giaddr=socket.inet_ntoa(giaddr),
        chaddr=chaddr, sname=sname, file=file, options=options,
    )


def format_mac(mac: bytes) -> str:
    return ':'.join(f'{b:02x}' for b in mac)


def parse_mac(text: str) -> bytes:
    mac = bytes.fromhex(text.replace(':', '').replace('-', ''))
    if len(mac) != HLEN_ETHERNET:
        raise ValueError(f"Not a 6 byte hardware address: {text!r}")
    return mac


def random_mac(rng: Optional[random.Random] = None) -> bytes:
    rng = rng or random
    return bytes(rng.randint(0, 255) for _ in range(HLEN_ETHERNET))


def random_xid(rng: Optional[random.Random] = None) -> int:
    rng = rng or random
    return rng.randint(0, 0xFFFFFFFF)
