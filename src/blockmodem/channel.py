"""
Byte channels carrying the block protocol.

The engine needs only ordered byte delivery: read(size, timeout) returning
fewer bytes on timeout, and write(data). SerialChannel wraps a pyserial port
(device path or URL such as loop:// or socket://host:port); PipeChannel is an
in-memory, thread-safe pipe used by the loopback self-test.
"""

from typing import Optional, Tuple
from dataclasses import dataclass
import logging
import random
import threading
import time

import serial

from blockmodem.config import SerialConfig


class ByteChannel:
    """
    Ordered, unframed byte stream in both directions

    Base class to override: subclasses implement read() and write(), and
    close() when they hold a resource. The engine only needs an object with
    these methods, so test doubles need not inherit from it.
    """

    def read(self, size: int, timeout: float) -> bytes:
        """
        Read up to size bytes

        Args:
            size: Number of bytes wanted
            timeout: Seconds to wait for all of them

        Returns:
            The bytes received before the timeout (possibly fewer than size)
        """
        raise NotImplementedError

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class SerialChannel(ByteChannel):
    """Channel over a pyserial port"""

    def __init__(self, port: serial.SerialBase):
        self._serial = port

    @classmethod
    def open(cls, config: SerialConfig) -> 'SerialChannel':
        """
        Open the port described by a serial configuration

        Args:
            config: Serial settings; port may be a device path or a URL

        Returns:
            Opened SerialChannel
        """
        if not config.port:
            raise ValueError("No serial port configured")

        port = serial.serial_for_url(
            config.port,
            baudrate=config.baudrate,
            bytesize=config.bytesize,
            parity=config.parity,
            stopbits=config.stopbits,
            rtscts=config.rtscts,
            xonxoff=config.xonxoff,
            timeout=0,
        )
        logging.info(f"Opened serial port {config.port} at {config.baudrate} baud")
        return cls(port)

    def read(self, size: int, timeout: float) -> bytes:
        self._serial.timeout = timeout
        return bytes(self._serial.read(size))

    def write(self, data: bytes) -> None:
        self._serial.write(data)
        self._serial.flush()

    def close(self) -> None:
        if self._serial.is_open:
            self._serial.close()
            logging.debug(f"Closed serial port {self._serial.port}")


class BytePipe:
    """One-directional in-memory byte buffer"""

    def __init__(self):
        self._buffer = bytearray()
        self._condition = threading.Condition()
        self._closed = False

    def put(self, data: bytes) -> None:
        with self._condition:
            if self._closed:
                raise BrokenPipeError("Pipe is closed")
            self._buffer.extend(data)
            self._condition.notify_all()

    def get(self, size: int, timeout: float) -> bytes:
        end_time = time.monotonic() + timeout
        with self._condition:
            while len(self._buffer) < size and not self._closed:
                remaining = end_time - time.monotonic()
                if remaining <= 0:
                    break
                self._condition.wait(remaining)
            data = bytes(self._buffer[:size])
            del self._buffer[:size]
            return data

    def pending(self) -> int:
        with self._condition:
            return len(self._buffer)

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()


@dataclass(frozen=True)
class Impairment:
    """Line noise applied to written bytes"""
    corrupt_rate: float = 0.0
    seed: Optional[int] = None

    def apply(self, data: bytes, rng: random.Random) -> bytes:
        if self.corrupt_rate <= 0:
            return data
        out = bytearray(data)
        for i in range(len(out)):
            if rng.random() < self.corrupt_rate:
                out[i] ^= 1 << rng.randrange(8)
        return bytes(out)


class PipeChannel(ByteChannel):
    """Channel end reading from one pipe and writing to another"""

    def __init__(self, inbound: BytePipe, outbound: BytePipe, impairment: Optional[Impairment] = None):
        self.inbound = inbound
        self.outbound = outbound
        self.impairment = impairment or Impairment()
        self._rng = random.Random(self.impairment.seed)
        self.bytes_written = 0

    def read(self, size: int, timeout: float) -> bytes:
        return self.inbound.get(size, timeout)

    def write(self, data: bytes) -> None:
        self.bytes_written += len(data)
        self.outbound.put(self.impairment.apply(bytes(data), self._rng))

    def close(self) -> None:
        self.outbound.close()


def pipe_pair(impairment: Optional[Impairment] = None) -> Tuple[PipeChannel, PipeChannel]:
    """
    Create two connected channel ends

    Args:
        impairment: Optional noise applied in both directions

    Returns:
        Tuple of (a, b) where bytes written to a are read from b and vice versa
    """
    a_to_b = BytePipe()
    b_to_a = BytePipe()
    return (PipeChannel(b_to_a, a_to_b, impairment),
            PipeChannel(a_to_b, b_to_a, impairment))
