"""
NHI Card Module
===============
Reading the Taiwan National Health Insurance card (全民健康保險卡).

- record: fixed-layout basic-data decoder
- pcsc: reader enumeration and APDU transport (pyscard)
- acquisition: one pass over all readers

nhicard.pcsc is not imported here so the decoder and acquisition logic can be
used without a PC/SC library present.
"""

from .apdu import APDU
from .acquisition import CardAcquirer
from .errors import (
    NHICardError, ParseError, UnsupportedCardError,
    TransportError, NoCardError, PlatformError,
)
from .record import CardRecord, Sex, decode_card, parse_minguo_date, serialize_snapshot

__version__ = "0.3.0"

__all__ = [
    'APDU',
    'CardAcquirer',
    'CardRecord',
    'Sex',
    'decode_card',
    'parse_minguo_date',
    'serialize_snapshot',
    'NHICardError',
    'ParseError',
    'UnsupportedCardError',
    'TransportError',
    'NoCardError',
    'PlatformError',
]
