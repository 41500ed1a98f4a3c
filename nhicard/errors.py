"""
Error taxonomy for NHI card acquisition.

ParseError and UnsupportedCardError are local to one reader. NoCardError is a
soft transport condition; PlatformError means the PC/SC service itself is
unreachable and aborts the whole acquisition cycle.
"""

from typing import Optional


class NHICardError(Exception):
    """Base exception for all NHI card errors"""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ParseError(NHICardError):
    """Raised when the basic-data record is malformed"""

    def __init__(self, message: str = "not a valid NHI card"):
        super().__init__(message)


class UnsupportedCardError(NHICardError):
    """Raised when the card does not answer SELECT with 90 00"""

    def __init__(self, sw1: int, sw2: int):
        super().__init__(f"NHI applet not available: SW={sw1:02X}{sw2:02X}")
        self.sw1 = sw1
        self.sw2 = sw2


class TransportError(NHICardError):
    """Raised when a PC/SC call fails"""

    def __init__(self, message: str, hresult: Optional[int] = None):
        super().__init__(message)
        self.hresult = hresult


class NoCardError(TransportError):
    """No card in the reader, or the card was removed mid-exchange"""

    pass


class PlatformError(TransportError):
    """The smart card service cannot be reached"""

    pass
