from __future__ import annotations

import os

import pytest

from blockmodem.batch import FileHeader, SizedSink, XModem1K, YModem, check_dos_filename
from blockmodem.block import BlockKind, encode_block
from blockmodem.edc import CRC16

from conftest import CRC, EOT, Background, FaultyChannel, ScriptedChannel, drop_acks, make_config


MTIME = 1_600_000_000


def write_file(path, data: bytes, mtime: int = MTIME):
    path.write_bytes(data)
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture
def source(tmp_path):
    directory = tmp_path / "src"
    directory.mkdir()
    return directory


@pytest.fixture
def target(tmp_path):
    directory = tmp_path / "dst"
    directory.mkdir()
    return directory


# ---------------------------------------------------------------------------
# Header block


def test_header_encode_layout():
    payload = FileHeader("FOO.TXT", 1234, 0o1234).encode()
    assert len(payload) == 128
    assert payload.startswith(b"FOO.TXT\x001234 1234\x00")
    assert payload.rstrip(b"\x00") == b"FOO.TXT\x001234 1234"


def test_header_decode():
    header = FileHeader.decode(FileHeader("FOO.TXT", 1234, MTIME).encode())
    assert header == FileHeader("FOO.TXT", 1234, MTIME)


def test_header_name_only():
    payload = FileHeader("A.B").encode()
    assert payload.startswith(b"A.B\x00\x00")
    assert FileHeader.decode(payload) == FileHeader("A.B")


def test_long_header_uses_long_block():
    payload = FileHeader("x" * 200 + ".txt", 1).encode()
    assert len(payload) == 1024


def test_stop_block_decodes_to_none():
    assert FileHeader.decode(bytes(128)) is None


def test_malformed_fields_are_dropped():
    assert FileHeader.decode(b"A.TXT\x00abc 777\x00") == FileHeader("A.TXT")
    assert FileHeader.decode(b"A.TXT\x00123 89\x00") == FileHeader("A.TXT", 123)


@pytest.mark.parametrize("name", ["ONE.TXT", "LONGNAME.TXT", "a.b", "DATA_1.BIN"])
def test_dos_names_accepted(name):
    check_dos_filename(name)


@pytest.mark.parametrize("name", ["TOOLONGNAME.TXT", "a b.txt", "noext", "x.abcd", "", "é.txt"])
def test_non_dos_names_rejected(name):
    with pytest.raises(ValueError):
        check_dos_filename(name)


def test_sized_sink_truncates_padding():
    written = []

    class Stream:
        def write(self, data):
            written.append(data)

    sink = SizedSink(Stream(), 130)
    sink(b"a" * 128)
    sink(b"b" * 128)
    sink(b"c" * 128)
    assert written == [b"a" * 128, b"bb"]
    assert sink.written == 130


# ---------------------------------------------------------------------------
# YMODEM sessions


def test_batch_transfer_restores_content_and_mtime(pipes, source, target):
    a, b = pipes
    files = [
        write_file(source / "ONE.TXT", b"first file\n" * 300),
        write_file(source / "TWO.BIN", os.urandom(1024), MTIME + 60),
        write_file(source / "EMPTY.DAT", b""),
    ]

    sending = Background(lambda: YModem(a, make_config()).batch_send(*files))
    received = YModem(b, make_config()).receive_files_in_directory(target)
    results = sending.result()

    assert [p.name for p in received] == ["ONE.TXT", "TWO.BIN", "EMPTY.DAT"]
    for original, copy in zip(files, received):
        assert copy.parent == target
        assert copy.read_bytes() == original.read_bytes()
        assert int(copy.stat().st_mtime) == int(original.stat().st_mtime)
    assert [r.bytes_transferred for r in results] == [3300, 1024, 0]


def test_stop_only_batch(pipes, target):
    a, b = pipes
    sending = Background(lambda: YModem(a, make_config()).batch_send())
    received = YModem(b, make_config()).receive_files_in_directory(target)
    sending.result()

    assert received == []
    assert list(target.iterdir()) == []


def test_receive_into_explicit_path(pipes, source, tmp_path):
    a, b = pipes
    original = write_file(source / "NAME.TXT", b"payload" * 50)
    destination = tmp_path / "renamed.out"

    sending = Background(lambda: YModem(a, make_config()).send(original))
    path = YModem(b, make_config()).receive(destination)
    sending.result()

    assert path == destination
    assert destination.read_bytes() == original.read_bytes()


def test_lost_header_ack_recovers(pipes, source, target):
    a, b = pipes
    original = write_file(source / "ONE.TXT", b"x" * 2000)
    receiver_end = FaultyChannel(b, drop_acks(1))

    sending = Background(lambda: YModem(a, make_config()).send(original))
    path = YModem(receiver_end, make_config()).receive_single_file_in_directory(target)
    stats = sending.result()

    assert path.read_bytes() == original.read_bytes()
    assert stats.retransmissions == 1


def test_lost_eot_ack_between_files_keeps_batch_going(pipes, source, target):
    a, b = pipes
    files = [
        write_file(source / "ONE.TXT", b"one" * 30),
        write_file(source / "TWO.TXT", b"two" * 30),
    ]
    # ACKs: header, data block, EOT of ONE.TXT (dropped)
    receiver_end = FaultyChannel(b, drop_acks(3))

    sending = Background(lambda: YModem(a, make_config()).batch_send(*files))
    received = YModem(receiver_end, make_config()).receive_files_in_directory(target)
    results = sending.result()

    assert receiver_end.dropped == [b"\x06"]
    assert [p.name for p in received] == ["ONE.TXT", "TWO.TXT"]
    for original, copy in zip(files, received):
        assert copy.read_bytes() == original.read_bytes()
    assert results[0].retransmissions == 1


def test_header_name_is_confined_to_directory(target):
    header = encode_block(BlockKind.SHORT, 0, FileHeader("../EVIL.TXT", 3).encode(), CRC16(), filler=0)
    probes = {"count": 0}

    def respond(data):
        if data == CRC:
            probes["count"] += 1
            if probes["count"] == 2:
                return encode_block(BlockKind.SHORT, 1, b"abc", CRC16()) + EOT
        return b""

    channel = ScriptedChannel(header, respond=respond)
    path = YModem(channel, make_config()).receive_single_file_in_directory(target)

    assert path == target / "EVIL.TXT"
    assert path.read_bytes() == b"abc"


def test_batch_send_rejects_non_dos_name_before_transfer(source):
    bad = write_file(source / "bad name.txt", b"data")
    channel = ScriptedChannel(CRC)
    with pytest.raises(ValueError):
        YModem(channel, make_config()).batch_send(bad)
    assert channel.writes == []


# ---------------------------------------------------------------------------
# XMODEM-1K


def test_xmodem_receiver_keeps_padding(pipes, source, tmp_path):
    a, b = pipes
    original = write_file(source / "data.bin", b"z" * 1500)
    destination = tmp_path / "out.bin"

    sending = Background(lambda: XModem1K(a, make_config()).send(original))
    stats = XModem1K(b, make_config()).receive(destination)
    sending.result()

    assert destination.read_bytes() == b"z" * 1500 + b"\x1a" * 548
    assert stats.blocks_received == 2
