"""Exceptions shared by the DHCP roles."""


class DHCPError(Exception):
    """Base class for every DHCP protocol error."""


class DecodeError(DHCPError):
    """An inbound frame could not be decoded."""


class TruncatedPacket(DecodeError):
    def __init__(self, length: int, expected: int):
        super().__init__(f"Packet of {length} bytes is shorter than the {expected} byte frame")
        self.length = length
        self.expected = expected


class OptionsMalformed(DecodeError):
    """The option area overruns its bound, lacks an End marker or a valid cookie."""


class OptionNotFound(DHCPError, KeyError):
    def __init__(self, code: int):
        super().__init__(code)
        self.code = code

    def __str__(self) -> str:
        return f"Option {self.code} not present"


class OptionsOverflow(DHCPError):
    def __init__(self, needed: int, size: int):
        super().__init__(f"Options need {needed} bytes but the option area holds {size}")
        self.needed = needed
        self.size = size


class TransactionMismatch(DHCPError):
    """A reply belongs to some other transaction."""


class ExchangeTimeout(DHCPError):
    """No matching reply arrived before the deadline."""


class TransportError(DHCPError):
    """Sending failed at the OS boundary, after any retries."""


class PoolExhausted(DHCPError):
    def __init__(self, end: int):
        super().__init__(f"Lease pool exhausted past host address {end}")
        self.end = end
