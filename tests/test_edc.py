from __future__ import annotations

import pytest

from blockmodem.edc import CRC16, Checksum, EDCMode, edc_for_mode


def test_checksum_is_truncated_byte_sum():
    edc = Checksum()
    assert edc.trailer_length == 1
    assert edc.compute(b"\x01\x02\x03") == b"\x06"
    assert edc.compute(b"\xff\xff") == b"\xfe"
    assert edc.compute(b"") == b"\x00"


def test_crc16_xmodem_check_value():
    edc = CRC16()
    assert edc.trailer_length == 2
    # CRC-16/XMODEM check value, big-endian on the wire
    assert edc.compute(b"123456789") == b"\x31\xc3"
    assert edc.compute(b"") == b"\x00\x00"


@pytest.mark.parametrize("edc", [Checksum(), CRC16()])
def test_verify_detects_corruption(edc):
    payload = bytes(range(128))
    trailer = edc.compute(payload)
    assert edc.verify(payload, trailer)

    corrupted = bytearray(payload)
    corrupted[17] ^= 0x01
    assert not edc.verify(bytes(corrupted), trailer)
    assert not edc.verify(payload, trailer[:-1])


def test_crc_catches_swapped_bytes_checksum_does_not():
    payload = b"\x01\x02" + bytes(126)
    swapped = b"\x02\x01" + bytes(126)
    assert Checksum().verify(swapped, Checksum().compute(payload))
    assert not CRC16().verify(swapped, CRC16().compute(payload))


def test_edc_for_mode():
    assert isinstance(edc_for_mode(EDCMode.CRC), CRC16)
    assert isinstance(edc_for_mode(EDCMode.CHECKSUM), Checksum)
    with pytest.raises(ValueError):
        edc_for_mode("crc")
