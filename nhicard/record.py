"""
Taiwan NHI card (全民健康保險卡) basic-data record.

The READ command returns a fixed-layout buffer of at least 57 bytes:

    [0, 12)   card number, ASCII
    [12, 32)  holder name, Big5, NUL padded
    [32, 42)  national ID number, ASCII
    [42, 49)  birth date, Minguo YYYMMDD
    [49]      sex, 'M' or 'F'
    [50, 57)  issue date, Minguo YYYMMDD
"""

import json
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Optional, Dict, Any, Sequence

from .errors import ParseError

logger = logging.getLogger(__name__)

RECORD_LENGTH = 57
MINGUO_OFFSET = 1911

# Legacy double-byte charset for Traditional Chinese names
NAME_ENCODING = "big5hkscs"

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
LOCAL_TZ = datetime.now(timezone.utc).astimezone().tzinfo

CARD_NO = slice(0, 12)
NAME_START = 12
NAME_END = 32
ID_NO = slice(32, 42)
BIRTH_DATE = slice(42, 49)
SEX = 49
ISSUE_DATE = slice(50, 57)


class Sex(Enum):
    MALE = "M"
    FEMALE = "F"


def parse_minguo_date(raw: bytes) -> date:
    """
    Parse a 7-digit Minguo date (YYYMMDD) into a civil date.

    Args:
        raw: Exactly seven ASCII digits, e.g. b"1120520"

    Returns:
        The Gregorian date (year + 1911)

    Raises:
        ParseError if any byte is not a digit or the date does not exist
    """
    if len(raw) != 7 or not raw.isdigit():
        raise ParseError(f"invalid Minguo date: {raw!r}")

    year = MINGUO_OFFSET + int(raw[:3])
    month = int(raw[3:5])
    day = int(raw[5:7])

    try:
        return date(year, month, day)
    except ValueError:
        raise ParseError(f"invalid Minguo date: {raw!r}")


def _decode_ascii(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ParseError(f"invalid text field: {raw!r}")


def _decode_name(data: bytes) -> str:
    """Decode the NUL-terminated Big5 name field"""
    end = NAME_START
    while end < NAME_END and data[end] != 0:
        end += 1

    try:
        return data[NAME_START:end].decode(NAME_ENCODING)
    except UnicodeDecodeError:
        raise ParseError("invalid name field")


def _local_midnight_millis(value: date) -> int:
    """
    Epoch milliseconds of local midnight on the given date.

    Uses the host's current UTC offset. Aware datetime arithmetic never calls
    the platform localtime(), which rejects pre-1970 dates on Windows.
    """
    midnight = datetime.combine(value, time(), tzinfo=LOCAL_TZ)
    return (midnight - EPOCH) // timedelta(milliseconds=1)


@dataclass(frozen=True)
class CardRecord:
    """Demographic data decoded from one NHI card"""
    card_no: str
    full_name: str
    id_no: str
    birth_date: date
    sex: Sex
    issue_date: date
    reader_name: Optional[str] = None

    @classmethod
    def from_raw(cls, data: bytes) -> "CardRecord":
        """
        Decode the READ response buffer.

        Raises:
            ParseError if the buffer is short or any field is malformed
        """
        data = bytes(data)
        if len(data) < RECORD_LENGTH:
            raise ParseError(f"record too short: {len(data)} bytes")

        card_no = _decode_ascii(data[CARD_NO])
        full_name = _decode_name(data)
        id_no = _decode_ascii(data[ID_NO])
        birth_date = parse_minguo_date(data[BIRTH_DATE])

        try:
            sex = Sex(chr(data[SEX]))
        except ValueError:
            raise ParseError(f"invalid sex marker: {data[SEX]:#04x}")

        issue_date = parse_minguo_date(data[ISSUE_DATE])

        return cls(
            card_no=card_no,
            full_name=full_name,
            id_no=id_no,
            birth_date=birth_date,
            sex=sex,
            issue_date=issue_date,
        )

    def with_reader(self, reader_name: str) -> "CardRecord":
        """Copy of this record tagged with the reader it was read from"""
        return replace(self, reader_name=reader_name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dict"""
        return {
            "reader_name": self.reader_name,
            "card_no": self.card_no,
            "full_name": self.full_name,
            "id_no": self.id_no,
            "birth_date": self.birth_date.isoformat(),
            "birth_date_timestamp": _local_midnight_millis(self.birth_date),
            "sex": self.sex.value,
            "issue_date": self.issue_date.isoformat(),
            "issue_date_timestamp": _local_midnight_millis(self.issue_date),
        }


def decode_card(data: bytes) -> CardRecord:
    """Decode a raw READ buffer into a CardRecord"""
    return CardRecord.from_raw(data)


def serialize_snapshot(records: Sequence[CardRecord]) -> str:
    """Serialize a snapshot as a JSON array"""
    return json.dumps([record.to_dict() for record in records], ensure_ascii=False)
