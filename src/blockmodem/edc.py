"""
Error-detection codes for block trailers.

Two interchangeable variants: the legacy 8-bit checksum and the 16-bit
CRC (CRC-16/XMODEM, CCITT polynomial 0x1021, initial value 0).
"""

from enum import Enum
import binascii
import struct


class EDCMode(Enum):
    """Error-detection mode fixed during the handshake"""
    CHECKSUM = "checksum"
    CRC = "crc"


class Checksum:
    """8-bit truncated sum of the payload bytes"""

    mode = EDCMode.CHECKSUM
    trailer_length = 1

    def compute(self, payload: bytes) -> bytes:
        return bytes([sum(payload) & 0xFF])

    def verify(self, payload: bytes, trailer: bytes) -> bool:
        return len(trailer) == self.trailer_length and self.compute(payload) == trailer

    def __repr__(self) -> str:
        return "Checksum()"


class CRC16:
    """CRC-16/XMODEM, transmitted big-endian"""

    mode = EDCMode.CRC
    trailer_length = 2

    def compute(self, payload: bytes) -> bytes:
        return struct.pack('!H', binascii.crc_hqx(payload, 0))

    def verify(self, payload: bytes, trailer: bytes) -> bool:
        return len(trailer) == self.trailer_length and self.compute(payload) == trailer

    def __repr__(self) -> str:
        return "CRC16()"


def edc_for_mode(mode: EDCMode):
    """
    Get the error-detection code for a negotiated mode

    Args:
        mode: Negotiated EDC mode

    Returns:
        Checksum or CRC16 instance
    """
    if mode == EDCMode.CRC:
        return CRC16()
    if mode == EDCMode.CHECKSUM:
        return Checksum()
    raise ValueError(f"Unknown EDC mode: {mode}")
