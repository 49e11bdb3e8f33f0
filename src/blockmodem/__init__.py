"""
blockmodem - XMODEM-1K / YMODEM block transfer

A Python package for moving files across unreliable byte channels (serial
links) with checksum-verified blocks, acknowledgement, retry and cancellation.
"""

__version__ = "0.1.0"

from .protocol import TransferEngine, TransferStatistics, send, receive
from .batch import YModem, XModem1K, FileHeader
from .cancel import CancelToken
from .config import TransferConfig
from .channel import SerialChannel, PipeChannel, pipe_pair

__all__ = [
    "TransferEngine",
    "TransferStatistics",
    "send",
    "receive",
    "YModem",
    "XModem1K",
    "FileHeader",
    "CancelToken",
    "TransferConfig",
    "SerialChannel",
    "PipeChannel",
    "pipe_pair",
]
