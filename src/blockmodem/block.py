"""
Block framing for the XMODEM-1K / YMODEM wire format.

This module frames payloads into blocks and parses them back:

    [control][sequence][255 - sequence][payload: 128 or 1024 bytes][trailer]

The trailer is produced by the error-detection code negotiated for the
session (1 byte checksum or 2 byte CRC) and covers the payload only.
"""

from typing import Callable, Optional, Tuple, Union
from enum import Enum, IntEnum
from dataclasses import dataclass
import logging

from blockmodem.errors import ChecksumMismatch, MalformedBlock, ReadTimeout, UnrecognizedControl


class ControlByte(IntEnum):
    """Wire-level control bytes"""
    SOH = 0x01      # Start of 128-byte block
    STX = 0x02      # Start of 1024-byte block
    EOT = 0x04      # End of transmission
    ACK = 0x06      # Acknowledge
    NAK = 0x15      # Not acknowledge, also the legacy checksum probe
    CAN = 0x18      # Cancel
    CRC = 0x43      # 'C', request CRC mode

    def to_bytes(self) -> bytes:
        return bytes([self.value])


# Filler for the unused tail of a data block
CPMEOF = 0x1A


class BlockKind(Enum):
    """Block size variants, each with its own start marker"""
    SHORT = (ControlByte.SOH, 128)
    LONG = (ControlByte.STX, 1024)

    @property
    def header(self) -> ControlByte:
        return self.value[0]

    @property
    def size(self) -> int:
        return self.value[1]

    @classmethod
    def from_header(cls, value: int) -> Optional['BlockKind']:
        for kind in cls:
            if kind.header == value:
                return kind
        return None

    @classmethod
    def for_length(cls, length: int, block_size: int = 1024) -> 'BlockKind':
        """
        Choose the block kind for a chunk of data

        Args:
            length: Number of payload bytes to carry
            block_size: Preferred block size (128 forces short blocks)

        Returns:
            SHORT when the data fits 128 bytes or short blocks are forced
        """
        if length > cls.LONG.size or (block_size == cls.SHORT.size and length > cls.SHORT.size):
            raise ValueError(f"Chunk of {length} bytes does not fit a {block_size}-byte block")
        if block_size == cls.SHORT.size or length <= cls.SHORT.size:
            return cls.SHORT
        return cls.LONG


@dataclass(frozen=True)
class Block:
    """One decoded block"""
    kind: BlockKind
    sequence: int
    payload: bytes

    @property
    def complement(self) -> int:
        return 255 - self.sequence

    def pack(self, edc, filler: int = CPMEOF) -> bytes:
        """Encode this block for transmission"""
        return encode_block(self.kind, self.sequence, self.payload, edc, filler)


def pad_payload(data: bytes, kind: BlockKind, filler: int = CPMEOF) -> bytes:
    """
    Pad data to the fixed payload size of a block kind

    Args:
        data: Payload data (at most kind.size bytes)
        kind: Target block kind
        filler: Byte value used for padding

    Returns:
        Payload of exactly kind.size bytes
    """
    if len(data) > kind.size:
        raise ValueError(f"Payload size {len(data)} exceeds block size {kind.size}")
    return bytes(data) + bytes([filler]) * (kind.size - len(data))


def encode_block(kind: BlockKind, sequence: int, payload: bytes, edc, filler: int = CPMEOF) -> bytes:
    """
    Frame a payload into its wire representation

    Args:
        kind: Block kind (selects the start marker and payload size)
        sequence: Block number, 0-255
        payload: Data to carry, padded with filler up to kind.size
        edc: Error-detection code computing the trailer
        filler: Padding byte value

    Returns:
        Encoded block bytes
    """
    if not 0 <= sequence <= 255:
        raise ValueError(f"Sequence number {sequence} outside 0-255")

    body = pad_payload(payload, kind, filler)
    data = bytes([kind.header, sequence, 255 - sequence])
    data += body
    data += edc.compute(body)
    return data


def classify_control(value: int) -> ControlByte:
    """
    Validate a byte read where a frame start is expected

    Args:
        value: Received byte value

    Returns:
        SOH, STX, EOT or CAN

    Raises:
        UnrecognizedControl: for any other byte
    """
    if value in (ControlByte.SOH, ControlByte.STX, ControlByte.EOT, ControlByte.CAN):
        return ControlByte(value)
    raise UnrecognizedControl(value)


def decode_block(header_byte: int, read_fn: Callable[[int], bytes], edc) -> Block:
    """
    Parse the remainder of a block whose header byte was already read

    The whole frame is consumed before any validation so that a corrupted
    block leaves the stream positioned at the next frame.

    Args:
        header_byte: SOH or STX
        read_fn: Callable returning up to n bytes (fewer on timeout)
        edc: Error-detection code negotiated for the session

    Returns:
        Decoded block

    Raises:
        UnrecognizedControl: header byte is not a block start
        ReadTimeout: the frame was truncated
        MalformedBlock: sequence complement mismatch
        ChecksumMismatch: trailer does not match the payload
    """
    kind = BlockKind.from_header(header_byte)
    if kind is None:
        raise UnrecognizedControl(header_byte)

    expected_length = 2 + kind.size + edc.trailer_length
    data = read_fn(expected_length)
    if len(data) < expected_length:
        raise ReadTimeout(f"Truncated {kind.name.lower()} block: got {len(data)} of {expected_length} bytes")

    sequence, complement = data[0], data[1]
    payload = bytes(data[2:2 + kind.size])
    trailer = bytes(data[2 + kind.size:])

    if complement != 255 - sequence:
        raise MalformedBlock(f"Sequence {sequence} with bad complement {complement}")

    if not edc.verify(payload, trailer):
        logging.debug(f"Trailer mismatch on block {sequence}: received={trailer.hex()}, "
                      f"calculated={edc.compute(payload).hex()}")
        raise ChecksumMismatch(f"Block {sequence} failed {edc.mode.value} verification")

    return Block(kind=kind, sequence=sequence, payload=payload)


ChunkSpec = Union[bytes, Tuple[BlockKind, bytes]]


def split_chunk(chunk: ChunkSpec, block_size: int = 1024) -> Tuple[BlockKind, bytes]:
    """
    Resolve a chunk given to the send loop into (kind, data)

    Args:
        chunk: Raw bytes, or a (BlockKind, bytes) tuple forcing the kind
        block_size: Preferred block size

    Returns:
        Tuple of (kind, data)
    """
    if isinstance(chunk, tuple):
        kind, data = chunk
        if len(data) > kind.size:
            raise ValueError(f"Chunk of {len(data)} bytes does not fit a {kind.size}-byte block")
        return kind, bytes(data)
    return BlockKind.for_length(len(chunk), block_size), bytes(chunk)
