from __future__ import annotations

import os

import pytest

from blockmodem import protocol
from blockmodem.block import BlockKind
from blockmodem.cancel import CancelToken
from blockmodem.channel import ByteChannel, BytePipe, Impairment, PipeChannel
from blockmodem.edc import EDCMode
from blockmodem.errors import LocallyCancelled, PeerCancelled
from blockmodem.protocol import TransferEngine

from conftest import Background, FaultyChannel, drop_acks, make_config


def test_lost_ack_is_recovered_without_duplicate_delivery(pipes):
    a, b = pipes
    receiver_end = FaultyChannel(b, drop_acks(2))
    chunks = [bytes([n]) * 1024 for n in (1, 2, 3)]

    sender = TransferEngine(a, a, make_config(block_timeout=0.2))
    receiver = TransferEngine(receiver_end, receiver_end, make_config(block_timeout=1.0))
    sending = Background(lambda: sender.send(chunks))

    sink = []
    received = receiver.receive(sink.append)
    sent = sending.result()

    assert sink == chunks
    assert receiver_end.dropped == [b"\x06"]
    assert sent.retransmissions == 1
    assert sent.timeouts == 1
    assert received.duplicates == 1
    assert received.blocks_received == 3


def test_checksum_mode_with_mixed_block_kinds(pipes):
    a, b = pipes
    chunks = [(BlockKind.SHORT, b"a" * 100), b"b" * 1000, (BlockKind.LONG, b"c")]
    sending = Background(lambda: protocol.send(a, a, chunks, make_config()))

    sink = []
    received = protocol.receive(b, b, sink.append, make_config(crc_probe_window=0.0))
    sent = sending.result()

    assert received.edc_mode is EDCMode.CHECKSUM
    assert sent.edc_mode is EDCMode.CHECKSUM
    assert [len(p) for p in sink] == [128, 1024, 1024]
    assert sink[0] == b"a" * 100 + b"\x1a" * 28
    assert sink[2].startswith(b"c\x1a")


def test_sequence_numbers_wrap_past_255(pipes):
    a, b = pipes
    chunks = [bytes([n % 256]) * 10 for n in range(300)]
    sending = Background(lambda: protocol.send(a, a, chunks, make_config()))

    sink = []
    received = protocol.receive(b, b, sink.append, make_config())
    sent = sending.result()

    assert [p[:10] for p in sink] == chunks
    assert received.duplicates == 0
    assert sent.retransmissions == 0
    assert received.bytes_transferred == 300 * 128


def test_noisy_line_delivers_exact_data():
    a_to_b, b_to_a = BytePipe(), BytePipe()
    sender_end = PipeChannel(b_to_a, a_to_b, Impairment(corrupt_rate=0.0005, seed=7))
    receiver_end = PipeChannel(a_to_b, b_to_a)
    data = os.urandom(20 * 1024)
    chunks = [data[i:i + 1024] for i in range(0, len(data), 1024)]

    sending = Background(lambda: protocol.send(sender_end, sender_end, chunks,
                                               make_config(block_timeout=0.2, max_errors=10)))
    sink = []
    received = protocol.receive(receiver_end, receiver_end, sink.append,
                                make_config(block_timeout=1.0, max_errors=10))
    sent = sending.result()

    assert b"".join(sink) == data
    assert received.naks_sent > 0
    assert sent.naks_received == received.naks_sent


def test_receiver_cancel_mid_transfer_notifies_sender(pipes):
    a, b = pipes
    token = CancelToken()
    chunks = (bytes([n]) * 1024 for n in range(1, 11))
    sender = TransferEngine(a, a, make_config())
    sending = Background(lambda: sender.send(chunks))

    sink = []

    def cancel_after_two(payload: bytes) -> None:
        sink.append(payload)
        if len(sink) == 2:
            token.cancel()

    receiver = TransferEngine(b, b, make_config(), token)
    with pytest.raises(LocallyCancelled):
        receiver.receive(cancel_after_two)

    assert isinstance(sending.error(), PeerCancelled)
    assert len(sink) == 2
    assert sender.statistics.blocks_acked == 2


def test_byte_channel_base_requires_read_and_write():
    with ByteChannel() as channel:
        with pytest.raises(NotImplementedError):
            channel.read(1, 0.0)
        with pytest.raises(NotImplementedError):
            channel.write(b"x")


def test_pipe_channel_closes_outbound_on_exit():
    a_to_b, b_to_a = BytePipe(), BytePipe()
    with PipeChannel(b_to_a, a_to_b) as channel:
        channel.write(b"abc")
    with pytest.raises(BrokenPipeError):
        a_to_b.put(b"more")
    assert a_to_b.get(3, 0.0) == b"abc"
