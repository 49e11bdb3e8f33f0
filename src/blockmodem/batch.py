"""
File transfer over the block engine: YMODEM batch and XMODEM-1K.

YMODEM carries file metadata in block 0:

    name NUL decimal-size SPACE octal-mtime, null-padded to the block size

An all-zero block 0 ends the batch. XMODEM-1K sends the data blocks only,
so the receiver cannot strip the padding of the last block.
"""

from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Union
from dataclasses import dataclass
import logging
import os
import re

from blockmodem.block import BlockKind
from blockmodem.cancel import CancelToken
from blockmodem.config import TransferConfig
from blockmodem.protocol import TransferEngine, TransferStatistics


DOS_FILENAME = re.compile(r'\w{1,8}\.\w{1,3}', re.ASCII)


def check_dos_filename(name: str) -> None:
    """
    Reject names that are not DOS 8.3 style

    Raises:
        ValueError: if the name has spaces, no extension or is too long
    """
    if not DOS_FILENAME.fullmatch(name):
        raise ValueError(f"Filename must be in DOS style (no spaces, max 8.3): {name!r}")


@dataclass
class FileHeader:
    """Metadata record carried in YMODEM block 0"""
    name: str
    size: Optional[int] = None
    mtime: Optional[int] = None

    @classmethod
    def for_path(cls, path: Union[str, Path]) -> 'FileHeader':
        path = Path(path)
        stat = path.stat()
        return cls(name=path.name, size=stat.st_size, mtime=int(stat.st_mtime))

    def encode(self) -> bytes:
        """
        Encode the header record, null-padded to 128 bytes (1024 if it does not fit)

        Returns:
            Block 0 payload
        """
        record = self.name.encode('ascii') + b'\x00'
        if self.size is not None:
            record += str(self.size).encode('ascii')
            if self.mtime is not None:
                record += b' ' + format(self.mtime, 'o').encode('ascii')

        kind = header_kind(len(record))
        return record + b'\x00' * (kind.size - len(record))

    @staticmethod
    def decode(payload: bytes) -> Optional['FileHeader']:
        """
        Decode a block 0 payload

        Args:
            payload: Block 0 payload

        Returns:
            FileHeader, or None for the end-of-batch stop block
        """
        if not payload or payload[0] == 0:
            return None

        name_bytes, _, rest = payload.partition(b'\x00')
        name = name_bytes.decode('ascii', errors='replace')

        fields = rest.split(b'\x00', 1)[0].split()
        size = None
        mtime = None
        try:
            if fields:
                size = int(fields[0])
            if len(fields) > 1:
                mtime = int(fields[1], 8)
        except ValueError:
            logging.warning(f"Ignoring malformed header fields for {name!r}: {fields!r}")

        return FileHeader(name=name, size=size, mtime=mtime)


def header_kind(record_length: int) -> BlockKind:
    if record_length <= BlockKind.SHORT.size:
        return BlockKind.SHORT
    if record_length <= BlockKind.LONG.size:
        return BlockKind.LONG
    raise ValueError(f"Header record of {record_length} bytes does not fit block 0")


class SizedSink:
    """Writes accepted payloads to a stream, dropping padding past the announced size"""

    def __init__(self, stream: BinaryIO, size: Optional[int] = None):
        self.stream = stream
        self.size = size
        self.written = 0

    def __call__(self, payload: bytes) -> None:
        if self.size is not None:
            payload = payload[:max(0, self.size - self.written)]
        if payload:
            self.stream.write(payload)
            self.written += len(payload)


def _read_chunks(stream: BinaryIO, block_size: int):
    return iter(lambda: stream.read(block_size), b'')


class YModem:
    """YMODEM sender and receiver over one channel"""

    def __init__(self, channel, config: Optional[TransferConfig] = None,
                 cancel: Optional[CancelToken] = None,
                 progress: Optional[Callable[[int], None]] = None):
        """
        Initialize YMODEM transfers

        Args:
            channel: ByteChannel (read and write)
            config: Timeouts and retry policy
            cancel: Cancellation token shared by all sessions
            progress: Called with byte counts as blocks are acknowledged/accepted
        """
        self.channel = channel
        self.config = config or TransferConfig()
        self.cancel = cancel or CancelToken()
        self.progress = progress

    def _engine(self) -> TransferEngine:
        engine = TransferEngine(self.channel, self.channel, self.config, self.cancel, self.progress)
        engine.begin()
        return engine

    def send(self, path: Union[str, Path]) -> TransferStatistics:
        """
        Send one file: header block, data blocks, EOT

        Args:
            path: File to send (DOS 8.3 name)

        Returns:
            Transfer statistics
        """
        path = Path(path)
        check_dos_filename(path.name)
        header = FileHeader.for_path(path)
        record = header.encode()

        with open(path, 'rb') as f:
            engine = self._engine()
            engine.wait_for_request()

            logging.info(f"Sending header for {header.name} ({header.size} bytes)")
            engine.send_block(0, record, header_kind(len(record)), filler=0)

            engine.wait_for_request()
            engine.send_blocks(_read_chunks(f, self.config.block_size))
            engine.send_eot()

        logging.info(f"Sent {path.name}: {engine.statistics.bytes_transferred} bytes")
        return engine.statistics

    def send_batch_stop(self) -> None:
        """Send the all-zero block 0 that ends a batch"""
        engine = self._engine()
        engine.wait_for_request()
        engine.send_block(0, bytes(BlockKind.SHORT.size), BlockKind.SHORT, filler=0)
        logging.info("Batch stop block acknowledged")

    def batch_send(self, *paths: Union[str, Path]) -> List[TransferStatistics]:
        """
        Send files in batch mode, then the stop block

        Args:
            paths: Files to send in order

        Returns:
            Statistics of every file transfer
        """
        for path in paths:
            check_dos_filename(Path(path).name)

        results = [self.send(path) for path in paths]
        self.send_batch_stop()
        return results

    def _receive(self, target: Path, in_directory: bool) -> Optional[Path]:
        engine = self._engine()
        control = engine.request_start()
        header = FileHeader.decode(engine.receive_header_block(control))
        if header is None:
            logging.info("Batch stop block received")
            engine.acknowledge()
            return None

        if in_directory:
            name = Path(header.name.replace('\\', '/')).name
            if name in ('', '.', '..'):
                engine.abort()
                raise ValueError(f"Invalid file name in header block: {header.name!r}")
            file_path = target / name
        else:
            file_path = target

        try:
            out = open(file_path, 'wb')
        except OSError:
            logging.error(f"Cannot open {file_path} for writing, aborting transfer")
            engine.abort()
            raise

        with out:
            engine.acknowledge()
            logging.info(f"Receiving {header.name} into {file_path} "
                         f"({header.size if header.size is not None else 'unknown'} bytes)")
            sink = SizedSink(out, header.size)
            control = engine.request_start()
            engine.receive_blocks(sink, control)

        if header.mtime is not None:
            os.utime(file_path, (header.mtime, header.mtime))

        logging.info(f"Received {file_path.name}: {sink.written} bytes")
        return file_path

    def receive(self, path: Union[str, Path]) -> Optional[Path]:
        """
        Receive one file into the given path (the name in block 0 is ignored)

        Returns:
            The path written, or None if the sender ended the batch
        """
        return self._receive(Path(path), in_directory=False)

    def receive_single_file_in_directory(self, directory: Union[str, Path]) -> Optional[Path]:
        """
        Receive one file into a directory using the name from block 0

        Returns:
            Path to the created file, or None on the batch stop block
        """
        return self._receive(Path(directory), in_directory=True)

    def receive_files_in_directory(self, directory: Union[str, Path]) -> List[Path]:
        """
        Receive files in batch mode until the stop block

        Returns:
            Paths of the received files in order
        """
        received = []
        while True:
            file_path = self.receive_single_file_in_directory(directory)
            if file_path is None:
                return received
            received.append(file_path)


class XModem1K:
    """XMODEM with 1K blocks, no header block"""

    def __init__(self, channel, config: Optional[TransferConfig] = None,
                 cancel: Optional[CancelToken] = None,
                 progress: Optional[Callable[[int], None]] = None):
        self.channel = channel
        self.config = config or TransferConfig()
        self.cancel = cancel or CancelToken()
        self.progress = progress

    def _engine(self) -> TransferEngine:
        return TransferEngine(self.channel, self.channel, self.config, self.cancel, self.progress)

    def send(self, path: Union[str, Path]) -> TransferStatistics:
        with open(path, 'rb') as f:
            return self._engine().send(_read_chunks(f, self.config.block_size))

    def receive(self, path: Union[str, Path]) -> TransferStatistics:
        with open(path, 'wb') as out:
            return self._engine().receive(out.write)
