"""
APDU commands for the NHI (健保卡) card.
"""

from typing import List


class APDU:
    """Fixed APDU commands for the NHI basic-data applet"""
    
    # NHI applet AID (16 bytes)
    AID_NHI = [0xD1, 0x58, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00,
               0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x11, 0x00]
    
    SELECT_NHI_APP = [0x00, 0xA4, 0x04, 0x00, len(AID_NHI)] + AID_NHI
    
    # Basic demographic record (card no, name, ID no, birth date, sex, issue date)
    READ_BASIC_DATA = [0x00, 0xCA, 0x11, 0x00, 0x02, 0x00, 0x00]
    
    # Status words
    SW_OK = (0x90, 0x00)
    
    @staticmethod
    def is_ok(sw1: int, sw2: int) -> bool:
        """True when the card answered 90 00"""
        return (sw1, sw2) == APDU.SW_OK
