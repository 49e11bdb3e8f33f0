"""
Block-transfer engine for XMODEM-1K / YMODEM sessions.

This module implements the session state machine: error-detection mode
negotiation, the stop-and-wait send loop with ACK/NAK handling and
retransmission, the receive loop with duplicate and out-of-sequence
detection, and cancellation in both directions.
"""

from typing import Callable, Dict, Iterable, Optional, Any
from dataclasses import dataclass, field
import io
import logging
import time

from blockmodem.block import (
    BlockKind, ControlByte, ChunkSpec, Block,
    classify_control, decode_block, encode_block, split_chunk,
)
from blockmodem.cancel import CancelToken
from blockmodem.config import TransferConfig
from blockmodem.edc import Checksum, EDCMode, edc_for_mode
from blockmodem.errors import (
    ChecksumMismatch, HandshakeTimeout, LocallyCancelled, PeerCancelled, ReadTimeout,
    RecoverableBlockError, RetryLimitExceeded, SynchronizationLost, UnrecognizedControl,
)
from blockmodem.timer import Deadline


@dataclass
class Session:
    """
    State of one directed transfer

    The receiver accepts expected_sequence as new data and
    last_accepted_sequence as a resend whose ACK was lost. The sender uses
    expected_sequence as the next block number to send.
    """
    expected_sequence: int = 1
    last_accepted_sequence: int = 0
    error_count: int = 0
    _edc_mode: Optional[EDCMode] = field(default=None, repr=False)

    @property
    def edc_mode(self) -> Optional[EDCMode]:
        return self._edc_mode

    @edc_mode.setter
    def edc_mode(self, mode: EDCMode):
        if self._edc_mode is not None and self._edc_mode != mode:
            raise ValueError(f"EDC mode already fixed to {self._edc_mode.value}, cannot change to {mode.value}")
        self._edc_mode = mode

    def advance(self) -> None:
        """Record acceptance of the expected block"""
        self.last_accepted_sequence = self.expected_sequence
        self.expected_sequence = (self.expected_sequence + 1) % 256
        self.error_count = 0


@dataclass
class TransferStatistics:
    """Counters for one transfer"""
    blocks_sent: int = 0
    blocks_acked: int = 0
    blocks_received: int = 0
    duplicates: int = 0
    retransmissions: int = 0
    naks_sent: int = 0
    naks_received: int = 0
    timeouts: int = 0
    bytes_transferred: int = 0
    edc_mode: Optional[EDCMode] = None
    start_time: float = field(default_factory=time.monotonic)
    end_time: Optional[float] = None

    def elapsed_time(self) -> float:
        """Get seconds from session start to completion (or now)"""
        end = self.end_time if self.end_time is not None else time.monotonic()
        return max(0.0, end - self.start_time)

    def throughput_bps(self) -> float:
        elapsed = self.elapsed_time()
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred * 8) / elapsed

    def to_dict(self) -> Dict[str, Any]:
        return {
            'blocks_sent': self.blocks_sent,
            'blocks_acked': self.blocks_acked,
            'blocks_received': self.blocks_received,
            'duplicates': self.duplicates,
            'retransmissions': self.retransmissions,
            'naks_sent': self.naks_sent,
            'naks_received': self.naks_received,
            'timeouts': self.timeouts,
            'bytes_transferred': self.bytes_transferred,
            'edc_mode': self.edc_mode.value if self.edc_mode else None,
            'elapsed_time': self.elapsed_time(),
            'throughput_bps': self.throughput_bps(),
        }


class TransferEngine:
    """
    Drives one transfer over a byte channel

    One engine serves exactly one session (one file or one batch-stop
    exchange) and is discarded afterwards.
    """

    def __init__(self, channel_in, channel_out, config: Optional[TransferConfig] = None,
                 cancel: Optional[CancelToken] = None,
                 progress: Optional[Callable[[int], None]] = None):
        """
        Initialize the engine

        Args:
            channel_in: Object with read(size, timeout) -> bytes
            channel_out: Object with write(data)
            config: Timeouts and retry policy (protocol defaults if not provided)
            cancel: Cancellation token polled at every wait
            progress: Called with the byte count of every acknowledged/accepted block
        """
        self.channel_in = channel_in
        self.channel_out = channel_out
        self.config = config or TransferConfig()
        self.config.validate()
        self.cancel = cancel or CancelToken()
        self.progress = progress

        self.session = Session()
        self.statistics = TransferStatistics()
        self._edc = None
        self._started = False
        self._both_probes_sent = False

    # ------------------------------------------------------------------
    # Channel primitives

    def _check_cancelled(self) -> None:
        if self.cancel.is_cancelled():
            logging.warning("Transfer cancelled locally, notifying peer")
            self._abort()
            raise LocallyCancelled("Transfer cancelled locally")

    def _write(self, data: bytes) -> None:
        self.channel_out.write(data)

    def _send_control(self, control: ControlByte) -> None:
        logging.debug(f"Sending {control.name}")
        self._write(control.to_bytes())

    def _read(self, size: int, deadline: Deadline) -> bytes:
        """
        Read up to size bytes before the deadline

        Waits are sliced into poll_interval pieces so a cancellation request
        is noticed while blocked.

        Args:
            size: Number of bytes wanted
            deadline: Bound for the whole read

        Returns:
            Bytes read (fewer than size if the deadline elapsed)
        """
        data = bytearray()
        while len(data) < size:
            self._check_cancelled()
            remaining = deadline.remaining()
            if remaining <= 0:
                break
            data.extend(self.channel_in.read(size - len(data), min(remaining, self.config.poll_interval)))
        return bytes(data)

    def _read_byte(self, deadline: Deadline) -> Optional[int]:
        data = self._read(1, deadline)
        return data[0] if data else None

    def _purge(self) -> None:
        """Drain input until the line stays idle for purge_timeout"""
        drained = 0
        while True:
            self._check_cancelled()
            data = self.channel_in.read(1024, self.config.purge_timeout)
            if not data:
                break
            drained += len(data)
        if drained:
            logging.debug(f"Purged {drained} bytes of input")

    def _abort(self) -> None:
        """Best-effort cancellation burst so the peer detects abandonment"""
        try:
            self._write(ControlByte.CAN.to_bytes() * self.config.cancel_burst)
        except OSError as e:
            logging.error(f"Failed to send cancellation burst: {e}")
        self._finish()

    def _finish(self) -> None:
        if self.statistics.end_time is None:
            self.statistics.end_time = time.monotonic()

    def _register_error(self, reason: str) -> None:
        """
        Count a consecutive failure

        Raises:
            RetryLimitExceeded: when the count reaches max_errors (after the
                cancellation burst was sent)
        """
        self.session.error_count += 1
        if self.session.error_count >= self.config.max_errors:
            logging.error(f"{reason}; error count reached {self.config.max_errors}, aborting transfer")
            self._abort()
            raise RetryLimitExceeded(
                f"Transfer aborted after {self.session.error_count} consecutive errors (last: {reason})"
            )
        logging.warning(f"{reason} (error {self.session.error_count}/{self.config.max_errors})")

    def _fix_mode(self, mode: EDCMode) -> None:
        self.session.edc_mode = mode
        if self._edc is None:
            self._edc = edc_for_mode(mode)
            self.statistics.edc_mode = mode
            logging.info(f"Error detection mode: {mode.value}")

    def _require_edc(self):
        if self._edc is None:
            raise RuntimeError("Error detection mode not negotiated yet")
        return self._edc

    def begin(self) -> None:
        """Mark the start of this engine's single transfer"""
        if self._started:
            raise RuntimeError("TransferEngine serves a single transfer; create a new engine")
        self._started = True

    def abort(self) -> None:
        """Abandon the transfer and notify the peer with the cancellation burst"""
        logging.warning("Aborting transfer")
        self._abort()

    @property
    def edc(self):
        """Negotiated error-detection code (None before the handshake)"""
        return self._edc

    # ------------------------------------------------------------------
    # Handshake

    def wait_for_request(self) -> EDCMode:
        """
        Wait for the receiver's probe (sender role)

        The first probe fixes the EDC mode: 'C' selects CRC, NAK selects the
        checksum. Probes already queued on the line are drained and the most
        recent one wins, so a sender that starts late follows the receiver's
        current choice. Once the mode is fixed, a repeated wait (YMODEM
        re-probe after block 0) accepts either probe and keeps the mode.

        Returns:
            The session's EDC mode

        Raises:
            HandshakeTimeout: no probe within handshake_timeout
            PeerCancelled: CAN received
        """
        deadline = Deadline(self.config.handshake_timeout).start()
        logging.info(f"Waiting for receiver request (timeout={self.config.handshake_timeout:.1f}s)...")

        while True:
            value = self._read_byte(deadline)
            if value is None:
                logging.error("No request from receiver")
                self._finish()
                raise HandshakeTimeout(
                    f"Receiver did not request transmission within {self.config.handshake_timeout:.1f}s"
                )
            if value == ControlByte.CAN:
                self._finish()
                raise PeerCancelled("Receiver cancelled before transmission start")
            if value in (ControlByte.CRC, ControlByte.NAK):
                break
            logging.debug(f"Ignoring byte 0x{value:02x} while waiting for request")

        latest = value
        while True:
            queued = self.channel_in.read(1, 0)
            if not queued:
                break
            if queued[0] == ControlByte.CAN:
                self._finish()
                raise PeerCancelled("Receiver cancelled before transmission start")
            if queued[0] in (ControlByte.CRC, ControlByte.NAK):
                latest = queued[0]

        if self.session.edc_mode is None:
            self._fix_mode(EDCMode.CRC if latest == ControlByte.CRC else EDCMode.CHECKSUM)
        else:
            logging.debug(f"Repeat request received, keeping {self.session.edc_mode.value} mode")
        return self.session.edc_mode

    def request_start(self) -> ControlByte:
        """
        Probe the sender until it starts transmitting (receiver role)

        Sends the CRC probe every probe_interval during crc_probe_window, then
        falls back to the legacy checksum probe (NAK) until handshake_timeout.
        The mode of the probe the sender answered becomes the session's EDC
        mode. Once the mode is fixed (YMODEM re-probe after block 0) only the
        matching probe is sent.

        A sender may still answer a 'C' sent just before the fallback, so when
        both probes went out the first frame's trailer length decides the mode
        (see _read_first_frame).

        Returns:
            The first byte of the sender's answer (SOH, STX or EOT)

        Raises:
            HandshakeTimeout: the sender never answered
            PeerCancelled: CAN received
        """
        overall = Deadline(self.config.handshake_timeout).start()
        crc_window = Deadline(self.config.crc_probe_window).start()
        fixed = self.session.edc_mode
        sent = set()

        while not overall.expired():
            if fixed is not None:
                mode = fixed
            elif crc_window.expired():
                mode = EDCMode.CHECKSUM
            else:
                mode = EDCMode.CRC

            probe = ControlByte.CRC if mode == EDCMode.CRC else ControlByte.NAK
            logging.debug(f"Requesting transmission start with {probe.name} probe")
            self._send_control(probe)
            sent.add(mode)

            interval = Deadline(min(self.config.probe_interval, overall.remaining())).start()
            while True:
                value = self._read_byte(interval)
                if value is None:
                    break
                if value in (ControlByte.SOH, ControlByte.STX, ControlByte.EOT):
                    if fixed is None:
                        if len(sent) > 1 and value != ControlByte.EOT:
                            self._both_probes_sent = True
                        else:
                            self._fix_mode(mode)
                    return ControlByte(value)
                if value == ControlByte.CAN:
                    self._finish()
                    raise PeerCancelled("Sender cancelled before transmission start")
                logging.debug(f"Ignoring byte 0x{value:02x} while waiting for sender")

        logging.error("Sender did not answer transmission request")
        self._finish()
        raise HandshakeTimeout(f"Sender did not answer within {self.config.handshake_timeout:.1f}s")

    # ------------------------------------------------------------------
    # Send loop

    def _wait_response(self, deadline: Deadline) -> Optional[int]:
        """Wait for ACK, NAK or CAN; other bytes (stale probes) are skipped"""
        while True:
            value = self._read_byte(deadline)
            if value is None:
                return None
            if value in (ControlByte.ACK, ControlByte.NAK, ControlByte.CAN):
                return value
            logging.debug(f"Ignoring byte 0x{value:02x} while waiting for acknowledge")

    def _send_with_ack(self, frame: bytes, label: str) -> None:
        """
        Send a frame and wait for its ACK, retransmitting on NAK or timeout

        Implements stop-and-wait ARQ with a consecutive-error bound:
        1. Send frame
        2. Wait for ACK/NAK/CAN within block_timeout
        3. ACK: done. NAK or timeout: resend the identical frame

        Args:
            frame: Encoded bytes to send
            label: Description for log messages

        Raises:
            RetryLimitExceeded: max_errors consecutive NAKs/timeouts
            PeerCancelled: CAN received
            LocallyCancelled: cancellation token set
        """
        while True:
            self._check_cancelled()
            self._write(frame)
            self.statistics.blocks_sent += 1
            logging.debug(f"Sent {label} ({len(frame)} bytes)")

            response = self._wait_response(Deadline(self.config.block_timeout).start())

            if response == ControlByte.ACK:
                self.session.error_count = 0
                self.statistics.blocks_acked += 1
                logging.debug(f"ACK received for {label}")
                return

            if response == ControlByte.CAN:
                logging.error(f"Receiver cancelled transfer at {label}")
                self._finish()
                raise PeerCancelled(f"Receiver cancelled transfer at {label}")

            if response == ControlByte.NAK:
                self.statistics.naks_received += 1
                reason = f"NAK received for {label}"
            else:
                self.statistics.timeouts += 1
                reason = f"Timeout waiting for ACK of {label}"

            self._register_error(reason)
            self.statistics.retransmissions += 1

    def send_block(self, sequence: int, payload: bytes, kind: Optional[BlockKind] = None,
                   filler: Optional[int] = None) -> None:
        """
        Send one block and wait until it is acknowledged

        Args:
            sequence: Block number (0 for the batch header block)
            payload: Block data, padded to the block size
            kind: Block kind (chosen from the payload length if not provided)
            filler: Padding byte (config.pad_byte if not provided)
        """
        if kind is None:
            kind = BlockKind.for_length(len(payload), self.config.block_size)
        if filler is None:
            filler = self.config.pad_byte

        frame = encode_block(kind, sequence, payload, self._require_edc(), filler)
        self._send_with_ack(frame, f"block {sequence}")

    def send_blocks(self, chunks: Iterable[ChunkSpec]) -> int:
        """
        Send data chunks as consecutive blocks starting at the session's next sequence

        Args:
            chunks: Byte strings (at most 1024 bytes each), or (BlockKind, bytes)
                tuples forcing the block kind

        Returns:
            Number of chunks sent
        """
        count = 0
        for chunk in chunks:
            kind, data = split_chunk(chunk, self.config.block_size)
            sequence = self.session.expected_sequence
            self.send_block(sequence, data, kind)
            self.session.advance()
            self.statistics.bytes_transferred += len(data)
            count += 1
            if self.progress:
                self.progress(len(data))
        return count

    def send_eot(self) -> None:
        """Send end-of-transmission and wait for its ACK under the block retry policy"""
        self._send_with_ack(ControlByte.EOT.to_bytes(), "EOT")
        logging.info("End of transmission acknowledged")

    def send(self, chunks: Iterable[ChunkSpec]) -> TransferStatistics:
        """
        Run a complete send session: handshake, data blocks from 1, EOT

        Args:
            chunks: Data chunks in order

        Returns:
            Transfer statistics
        """
        self.begin()
        self.wait_for_request()
        count = self.send_blocks(chunks)
        self.send_eot()
        self._finish()
        logging.info(f"Sent {count} blocks ({self.statistics.bytes_transferred} bytes) "
                     f"with {self.statistics.retransmissions} retransmissions")
        return self.statistics

    # ------------------------------------------------------------------
    # Receive loop

    def _read_control(self) -> Optional[int]:
        return self._read_byte(Deadline(self.config.block_timeout).start())

    def _read_frame(self, control: int) -> Block:
        if self._edc is None and self._both_probes_sent:
            return self._read_first_frame(control)
        deadline = Deadline(self.config.block_timeout).start()
        return decode_block(control, lambda n: self._read(n, deadline), self._require_edc())

    def _read_first_frame(self, control: int) -> Block:
        """
        Decode the first frame when both probes were on the line

        The checksum-length frame is read first; one more byte arriving right
        after it means the sender answered the CRC probe. The mode is fixed
        only once a frame verifies.
        """
        kind = BlockKind.from_header(control)
        if kind is None:
            raise UnrecognizedControl(control)

        deadline = Deadline(self.config.block_timeout).start()
        data = self._read(2 + kind.size + Checksum.trailer_length, deadline)
        extra = self._read(1, Deadline(self.config.purge_timeout).start())

        candidates = [(EDCMode.CHECKSUM, data)]
        if extra:
            candidates.insert(0, (EDCMode.CRC, data + extra))

        for mode, frame in candidates:
            try:
                block = decode_block(control, io.BytesIO(frame).read, edc_for_mode(mode))
            except ChecksumMismatch:
                continue
            self._fix_mode(mode)
            return block
        raise ChecksumMismatch("First block failed both checksum and CRC verification")

    def _receive_error(self, error: RecoverableBlockError) -> None:
        """Count a receive error, then NAK (or abort at the limit)"""
        if isinstance(error, ReadTimeout):
            self.statistics.timeouts += 1
        self._register_error(str(error))
        self._purge()
        self._send_control(ControlByte.NAK)
        self.statistics.naks_sent += 1

    def acknowledge(self) -> None:
        """Send ACK (used by the batch layer after opening the output for block 0)"""
        self._send_control(ControlByte.ACK)

    def _next_frame(self, control: Optional[int]) -> Optional[Block]:
        """
        Read and decode the next frame

        Args:
            control: Already-read control byte, or None to read one

        Returns:
            Decoded block, or None on EOT (already acknowledged)

        Raises:
            RecoverableBlockError: timeout, unrecognized byte or bad frame
            PeerCancelled: CAN received
        """
        if control is None:
            control = self._read_control()
            if control is None:
                raise ReadTimeout(f"Timeout waiting for block {self.session.expected_sequence}")

        control = classify_control(control)
        if control == ControlByte.EOT:
            self.acknowledge()
            return None
        if control == ControlByte.CAN:
            logging.error(f"Sender cancelled transfer at block {self.session.expected_sequence}")
            self._finish()
            raise PeerCancelled(f"Sender cancelled transfer at block {self.session.expected_sequence}")
        return self._read_frame(control)

    def receive_header_block(self, first_control: Optional[int] = None) -> bytes:
        """
        Receive YMODEM block 0 without acknowledging it

        The caller acknowledges with acknowledge() once it has handled the
        header (e.g. opened the output file). An EOT in place of block 0 is
        the previous file's EOT resent because its ACK was lost: it is
        acknowledged again, counted as an error and the sender is probed anew.

        Args:
            first_control: Control byte returned by request_start()

        Returns:
            Block 0 payload

        Raises:
            SynchronizationLost: a data block arrived where block 0 was expected
            RetryLimitExceeded: max_errors consecutive receive errors
            HandshakeTimeout: the sender did not answer a renewed probe
        """
        control = first_control
        while True:
            try:
                block = self._next_frame(control)
            except RecoverableBlockError as e:
                self._receive_error(e)
                control = None
                continue

            if block is None:
                self._register_error("EOT received where header block was expected")
                self.statistics.duplicates += 1
                control = self.request_start()
                continue

            if block.sequence != 0:
                logging.error(f"Expected header block 0, received block {block.sequence}")
                self._abort()
                raise SynchronizationLost(block.sequence, 0, self.session.last_accepted_sequence)

            self.session.error_count = 0
            logging.info(f"Header block received ({block.kind.name.lower()})")
            return block.payload

    def _accept(self, block: Block, sink: Callable[[bytes], Any]) -> None:
        session = self.session

        if block.sequence == session.expected_sequence:
            try:
                sink(block.payload)
            except Exception:
                logging.error(f"Sink failed on block {block.sequence}, aborting transfer")
                self._abort()
                raise
            session.advance()
            self.statistics.blocks_received += 1
            self.statistics.bytes_transferred += len(block.payload)
            logging.debug(f"Accepted block {block.sequence} ({block.kind.name.lower()})")
            self.acknowledge()
            if self.progress:
                self.progress(len(block.payload))
            return

        if block.sequence == session.last_accepted_sequence:
            session.error_count = 0
            self.statistics.duplicates += 1
            logging.warning(f"Duplicate block {block.sequence} (ACK lost), acknowledging again")
            self.acknowledge()
            return

        logging.error(f"Synchronization lost: received block {block.sequence}, "
                      f"expected {session.expected_sequence}")
        self._abort()
        raise SynchronizationLost(block.sequence, session.expected_sequence, session.last_accepted_sequence)

    def receive_blocks(self, sink: Callable[[bytes], Any], first_control: Optional[int] = None) -> int:
        """
        Receive data blocks until end-of-transmission

        Args:
            sink: Called once with each accepted payload, in order
            first_control: Control byte already read by request_start()

        Returns:
            Number of blocks delivered to the sink

        Raises:
            SynchronizationLost: block neither expected nor a resend
            RetryLimitExceeded: max_errors consecutive receive errors
            PeerCancelled: CAN received
            LocallyCancelled: cancellation token set
        """
        control = first_control
        delivered = 0
        while True:
            try:
                block = self._next_frame(control)
            except RecoverableBlockError as e:
                self._receive_error(e)
                control = None
                continue
            control = None

            if block is None:
                logging.info(f"End of transmission after {delivered} blocks")
                return delivered

            before = self.statistics.blocks_received
            self._accept(block, sink)
            delivered += self.statistics.blocks_received - before

    def receive(self, sink: Callable[[bytes], Any]) -> TransferStatistics:
        """
        Run a complete receive session: handshake, data blocks, EOT

        Args:
            sink: Called once with each accepted payload, in order

        Returns:
            Transfer statistics
        """
        self.begin()
        first = self.request_start()
        self.receive_blocks(sink, first)
        self._finish()
        logging.info(f"Received {self.statistics.blocks_received} blocks "
                     f"({self.statistics.bytes_transferred} bytes), "
                     f"{self.statistics.duplicates} duplicates")
        return self.statistics


def send(channel_in, channel_out, chunks: Iterable[ChunkSpec],
         config: Optional[TransferConfig] = None,
         cancel: Optional[CancelToken] = None) -> TransferStatistics:
    """
    Send chunks as one XMODEM-1K transfer

    Args:
        channel_in: Readable side of the channel
        channel_out: Writable side of the channel
        chunks: Data chunks (at most 1024 bytes each)
        config: Timeouts and retry policy
        cancel: Cancellation token

    Returns:
        Transfer statistics
    """
    return TransferEngine(channel_in, channel_out, config, cancel).send(chunks)


def receive(channel_in, channel_out, sink: Callable[[bytes], Any],
            config: Optional[TransferConfig] = None,
            cancel: Optional[CancelToken] = None) -> TransferStatistics:
    """
    Receive one XMODEM-1K transfer into a sink

    Args:
        channel_in: Readable side of the channel
        channel_out: Writable side of the channel
        sink: Called with each accepted payload, in order
        config: Timeouts and retry policy
        cancel: Cancellation token

    Returns:
        Transfer statistics
    """
    return TransferEngine(channel_in, channel_out, config, cancel).receive(sink)
