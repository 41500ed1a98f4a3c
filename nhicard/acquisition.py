"""
Acquisition cycle: read every attached NHI card once.
"""

import logging
from typing import List

from .apdu import APDU
from .errors import NHICardError, NoCardError, PlatformError, UnsupportedCardError
from .record import CardRecord

logger = logging.getLogger(__name__)


class CardAcquirer:
    """
    Reads the basic-data record from the card in every reader.

    Individual readers that are empty, hold another kind of card, or return
    garbage are skipped. Only an unreachable PC/SC service fails the cycle,
    and that is retried once with a fresh context.
    """

    def __init__(self, context):
        """
        Args:
            context: PC/SC context (see nhicard.pcsc.PCSCContext)
        """
        self.context = context

    def read_card(self, reader_name: str) -> CardRecord:
        """
        Connect, SELECT the NHI applet, READ and decode.

        Raises:
            NoCardError, UnsupportedCardError, ParseError, TransportError
        """
        with self.context.connect(reader_name) as card:
            data, sw1, sw2 = card.transmit(APDU.SELECT_NHI_APP)
            if not APDU.is_ok(sw1, sw2):
                raise UnsupportedCardError(sw1, sw2)

            data, sw1, sw2 = card.transmit(APDU.READ_BASIC_DATA)
            if not APDU.is_ok(sw1, sw2):
                logger.debug(f"READ on '{reader_name}' returned SW={sw1:02X}{sw2:02X}")

            return CardRecord.from_raw(bytes(data)).with_reader(reader_name)

    def read_all(self) -> List[CardRecord]:
        """One pass over all readers, in enumeration order"""
        records = []

        for reader_name in self.context.list_readers():
            try:
                records.append(self.read_card(reader_name))
            except PlatformError:
                raise
            except NoCardError as e:
                logger.warning(f"No card in '{reader_name}': {e.message}")
            except UnsupportedCardError as e:
                logger.warning(f"Unsupported card in '{reader_name}': {e.message}")
            except NHICardError as e:
                logger.warning(f"Skipping '{reader_name}': {e.message}")

        return records

    def acquire(self) -> List[CardRecord]:
        """
        Produce a full snapshot.

        Raises:
            PlatformError if the service is still unreachable after one retry
        """
        try:
            return self.read_all()
        except PlatformError as e:
            logger.warning(f"PC/SC service error, re-establishing context: {e.message}")
            self.context.reset()

        return self.read_all()
