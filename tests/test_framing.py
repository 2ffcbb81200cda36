import io
import struct

import pytest

from clamav_scan_service.clamd import ClamdProtocolError
from clamav_scan_service.clamd import framing
from clamav_scan_service.clamd.framing import FrameReader, FrameWriter


class OneByteAtATime(io.RawIOBase):
    """Stream returning short reads, like a pipe."""

    def __init__(self, data):
        self.data = io.BytesIO(data)

    def readable(self):
        return True

    def read(self, size=-1):
        return self.data.read(min(size, 1) if size > 0 else 1)


def test_encode_command():
    assert framing.encode_command("IDSESSION") == b"zIDSESSION\x00"
    assert framing.encode_command("INSTREAM") == b"zINSTREAM\x00"
    assert framing.encode_command("END") == b"zEND\x00"


def test_encode_chunk():
    assert framing.encode_chunk(b"abc") == b"\x00\x00\x00\x03abc"


def test_encode_empty_chunk_refused():
    with pytest.raises(ValueError):
        framing.encode_chunk(b"")


def test_end_of_stream_is_zero_length():
    assert framing.END_OF_STREAM == b"\x00\x00\x00\x00"


@pytest.mark.parametrize("size, expected", [
    (0, []),
    (1, [1]),
    (8192, [8192]),
    (8193, [8192, 1]),
    (10000, [8192, 1808]),
    (3 * 8192, [8192, 8192, 8192]),
])
def test_iter_chunks_sizes(size, expected):
    chunks = list(framing.iter_chunks(io.BytesIO(b"\x00" * size)))

    assert [len(c) for c in chunks] == expected
    assert sum(len(c) for c in chunks) == size


def test_iter_chunks_fills_short_reads():
    data = bytes(range(256)) * 4
    chunks = list(framing.iter_chunks(OneByteAtATime(data), chunk_size=300))

    assert [len(c) for c in chunks] == [300, 300, 300, 124]
    assert b"".join(chunks) == data


def test_writer_and_reader_on_buffer():
    wire = io.BytesIO()
    writer = FrameWriter(wire)
    writer.command("INSTREAM")
    for chunk in framing.iter_chunks(io.BytesIO(b"x" * 10000)):
        writer.chunk(chunk)
    writer.end_of_stream()
    writer.flush()

    # 10-byte command, two prefixed chunks, terminator
    assert len(wire.getvalue()) == 10 + 4 + 8192 + 4 + 1808 + 4

    wire.seek(0)
    reader = FrameReader(wire)
    assert reader.command() == "INSTREAM"
    assert [len(c) for c in reader.chunks()] == [8192, 1808]
    assert reader.command() is None


def test_reader_truncated_chunk():
    wire = io.BytesIO(struct.pack("!L", 10) + b"short")

    with pytest.raises(ClamdProtocolError):
        FrameReader(wire).chunk()


def test_reader_unterminated_command():
    with pytest.raises(ClamdProtocolError):
        FrameReader(io.BytesIO(b"zINSTR")).command()


def test_reader_newline_commands_unsupported():
    with pytest.raises(ClamdProtocolError):
        FrameReader(io.BytesIO(b"nPING\n")).command()


def test_decode_reply_outside_session():
    assert framing.decode_reply(b"stream: OK\x00") == (None, "stream: OK")


def test_decode_reply_in_session():
    reply = b"3: stream: Eicar-Test-Signature FOUND\x00"

    assert framing.decode_reply(reply) == \
        (3, "stream: Eicar-Test-Signature FOUND")


@pytest.mark.parametrize("raw", [b"", b"\x00", b"  \x00", b"\xff\xfe\x00"])
def test_decode_reply_garbled(raw):
    with pytest.raises(ClamdProtocolError):
        framing.decode_reply(raw)
