"""
PC/SC reader enumeration and APDU transport.

Thin wrapper over pyscard's ``smartcard.scard`` module: one context per
CardAcquirer, shared-mode connections with T=0/T=1 negotiation, and
hresult codes translated into the nhicard error taxonomy.
"""

import logging
from typing import List, Tuple

from smartcard import scard
from smartcard.util import toHexString

from .errors import TransportError, NoCardError, PlatformError

logger = logging.getLogger(__name__)

# Card not there: skip the reader
NO_CARD_CODES = (
    scard.SCARD_E_NO_SMARTCARD,
    scard.SCARD_W_REMOVED_CARD,
)

# Service gone: the context has to be re-established
SERVICE_CODES = (
    scard.SCARD_E_NO_SERVICE,
    scard.SCARD_E_SERVICE_STOPPED,
    scard.SCARD_E_INVALID_HANDLE,
)


def get_hex_string(data) -> str:
    """Convert bytes/list to hex string"""
    return toHexString(list(data))


def describe(hresult: int) -> str:
    """Human readable PC/SC error"""
    return f"{scard.SCardGetErrorMessage(hresult)} ({hresult & 0xFFFFFFFF:#010x})"


def check(hresult: int, action: str):
    """Raise the matching TransportError for a failed PC/SC call"""
    if hresult == scard.SCARD_S_SUCCESS:
        return
    message = f"{action} failed: {describe(hresult)}"
    if hresult in NO_CARD_CODES:
        raise NoCardError(message, hresult)
    if hresult in SERVICE_CODES:
        raise PlatformError(message, hresult)
    raise TransportError(message, hresult)


class CardHandle:
    """A connected card; use as a context manager to disconnect"""

    def __init__(self, hcard, protocol: int, reader_name: str):
        self.hcard = hcard
        self.protocol = protocol
        self.reader_name = reader_name

    def transmit(self, apdu: List[int]) -> Tuple[List[int], int, int]:
        """Send APDU command and return (data, sw1, sw2)"""
        hresult, response = scard.SCardTransmit(self.hcard, self.protocol, list(apdu))
        check(hresult, f"transmit to '{self.reader_name}'")
        if len(response) < 2:
            raise TransportError(f"short response from '{self.reader_name}': {get_hex_string(response)}")
        data, sw1, sw2 = list(response[:-2]), response[-2], response[-1]
        logger.debug(f"APDU: {get_hex_string(apdu)} -> SW={sw1:02X}{sw2:02X} len={len(data)}")
        return data, sw1, sw2

    def disconnect(self):
        hresult = scard.SCardDisconnect(self.hcard, scard.SCARD_LEAVE_CARD)
        if hresult != scard.SCARD_S_SUCCESS:
            logger.debug(f"Disconnect from '{self.reader_name}' failed: {describe(hresult)}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()


class PCSCContext:
    """
    PC/SC resource manager context.

    Not thread-safe: callers must serialize access (the snapshot cache runs
    at most one acquisition at a time).
    """

    def __init__(self, scope: int = scard.SCARD_SCOPE_USER):
        self.scope = scope
        self._hcontext = None

    @property
    def established(self) -> bool:
        return self._hcontext is not None

    def establish(self):
        """Establish the context if needed. Raises PlatformError on failure."""
        if self.established:
            return
        hresult, hcontext = scard.SCardEstablishContext(self.scope)
        if hresult != scard.SCARD_S_SUCCESS:
            raise PlatformError(f"cannot reach PC/SC service: {describe(hresult)}", hresult)
        self._hcontext = hcontext
        logger.info("PC/SC context established")

    def release(self):
        if self._hcontext is None:
            return
        hcontext, self._hcontext = self._hcontext, None
        hresult = scard.SCardReleaseContext(hcontext)
        if hresult != scard.SCARD_S_SUCCESS:
            logger.debug(f"Release context failed: {describe(hresult)}")

    def reset(self):
        """Drop the current context and establish a new one"""
        self.release()
        self.establish()

    def list_readers(self) -> List[str]:
        """
        List reader names.

        Returns:
            Reader names in enumeration order; empty when no reader is attached
        """
        self.establish()
        hresult, names = scard.SCardListReaders(self._hcontext, [])
        if hresult == scard.SCARD_E_NO_READERS_AVAILABLE:
            return []
        if hresult != scard.SCARD_S_SUCCESS:
            # Any enumeration failure other than "no readers" means the context is unusable
            raise PlatformError(f"list readers failed: {describe(hresult)}", hresult)

        readers = []
        for name in names or []:
            if not isinstance(name, str) or not name or "\x00" in name:
                logger.warning(f"Skipping malformed reader name: {name!r}")
                continue
            readers.append(name)
        return readers

    def connect(self, reader_name: str) -> CardHandle:
        """
        Connect to the card in a reader (shared mode, any protocol).

        Raises:
            NoCardError if the reader is empty or the card was removed
            PlatformError if the service went away
            TransportError for any other failure
        """
        self.establish()
        hresult, hcard, protocol = scard.SCardConnect(
            self._hcontext,
            reader_name,
            scard.SCARD_SHARE_SHARED,
            scard.SCARD_PROTOCOL_T0 | scard.SCARD_PROTOCOL_T1,
        )
        check(hresult, f"connect to '{reader_name}'")
        return CardHandle(hcard, protocol, reader_name)
