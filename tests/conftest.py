from __future__ import annotations

import threading
import time
from typing import Callable, Optional

import pytest

from blockmodem.block import ControlByte
from blockmodem.channel import PipeChannel, pipe_pair
from blockmodem.config import TransferConfig


ACK = ControlByte.ACK.to_bytes()
NAK = ControlByte.NAK.to_bytes()
CAN = ControlByte.CAN.to_bytes()
EOT = ControlByte.EOT.to_bytes()
CRC = ControlByte.CRC.to_bytes()


def make_config(**overrides) -> TransferConfig:
    values = dict(
        handshake_timeout=2.0,
        probe_interval=0.1,
        crc_probe_window=1.0,
        block_timeout=0.3,
        purge_timeout=0.02,
        poll_interval=0.02,
        max_errors=4,
    )
    values.update(overrides)
    return TransferConfig(**values)


@pytest.fixture
def config() -> TransferConfig:
    return make_config()


class ScriptedChannel:
    """Channel whose input is fixed up front; optionally reacts to writes."""

    def __init__(self, incoming: bytes = b"", respond: Optional[Callable[[bytes], bytes]] = None):
        self.incoming = bytearray(incoming)
        self.respond = respond
        self.writes: list[bytes] = []
        self._lock = threading.Lock()

    def feed(self, data: bytes) -> None:
        with self._lock:
            self.incoming.extend(data)

    def read(self, size: int, timeout: float) -> bytes:
        with self._lock:
            available = bool(self.incoming)
        if not available:
            time.sleep(min(timeout, 0.01))
        with self._lock:
            data = bytes(self.incoming[:size])
            del self.incoming[:size]
            return data

    def write(self, data: bytes) -> None:
        self.writes.append(bytes(data))
        if self.respond is not None:
            reply = self.respond(bytes(data))
            if reply:
                self.feed(reply)

    @property
    def written(self) -> bytes:
        return b"".join(self.writes)


class FaultyChannel:
    """Wraps a channel end and drops selected outgoing writes."""

    def __init__(self, inner: PipeChannel, drop: Callable[[bytes, int], bool]):
        self.inner = inner
        self.drop = drop
        self.count = 0
        self.dropped: list[bytes] = []

    def read(self, size: int, timeout: float) -> bytes:
        return self.inner.read(size, timeout)

    def write(self, data: bytes) -> None:
        self.count += 1
        if self.drop(bytes(data), self.count):
            self.dropped.append(bytes(data))
            return
        self.inner.write(data)

    def close(self) -> None:
        self.inner.close()


def drop_acks(*which: int) -> Callable[[bytes, int], bool]:
    """Drop the n-th ACK written (1-based), once each."""
    state = {"acks": 0}

    def drop(data: bytes, _count: int) -> bool:
        if data != ACK:
            return False
        state["acks"] += 1
        return state["acks"] in which

    return drop


class Background:
    """Run a callable in a thread and collect its result or exception."""

    def __init__(self, target: Callable[[], object]):
        self._target = target
        self._result = None
        self._error: Optional[BaseException] = None
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            self._result = self._target()
        except BaseException as e:
            self._error = e

    def result(self, timeout: float = 20.0):
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "background task did not finish"
        if self._error is not None:
            raise self._error
        return self._result

    def error(self, timeout: float = 20.0) -> Optional[BaseException]:
        self._thread.join(timeout)
        assert not self._thread.is_alive(), "background task did not finish"
        return self._error


@pytest.fixture
def pipes():
    a, b = pipe_pair()
    yield a, b
    a.close()
    b.close()
