"""Framing of the clamd wire protocol.

Commands are null terminated and prefixed with 'z' (see man
clamd(8)).  The INSTREAM command is followed by the data to scan,
sent in chunks: each chunk is a 4-byte unsigned integer in network
byte order holding the length of the chunk, followed by the chunk
itself.  A chunk of length zero marks the end of the stream.

Inside a session (IDSESSION) every reply is prefixed with the number
of the request it answers, e.g. ``1: stream: OK``.

Nothing here knows about sockets: writers and readers work on any
binary file-like object, so the protocol can be exercised against an
``io.BytesIO`` as well as against ``socket.makefile()``.
"""
import re
import struct
import typing as t

from .types import ClamdProtocolError

# 8k chunks keep syscalls low without holding large attachments in
# memory
CHUNK_SIZE = 8192

CMD_SPECIFIER = b'z'
CMD_TERMINATOR = b'\x00'

LENGTH_PREFIX = struct.Struct('!L')
MAX_CHUNK_LENGTH = 2 ** 32 - 1
END_OF_STREAM = LENGTH_PREFIX.pack(0)

IDSESSION = "IDSESSION"
INSTREAM = "INSTREAM"
PING = "PING"
END = "END"

reply_id_pattern = re.compile(r"^(\d+): (.*)$", re.DOTALL)


def encode_command(command: str) -> bytes:
    """Encode a command as a null terminated clamd command.

    :param command: Command name, possible values in man clamd(8)
    :return: Bytes to write on the wire
    """
    return b''.join([CMD_SPECIFIER, command.encode(), CMD_TERMINATOR])


def encode_chunk(data: bytes) -> bytes:
    """Pack a chunk of data as man clamd(8) says for INSTREAM command.

    :param data: Non-empty chunk payload
    :return: Length prefix followed by the payload
    """
    datalen = len(data)
    if datalen == 0:
        raise ValueError("Empty chunk, use END_OF_STREAM to end a stream")
    if datalen > MAX_CHUNK_LENGTH:
        raise ValueError(f"Chunk too long: {datalen} bytes")
    return struct.pack('!L{}s'.format(datalen), datalen, data)


def iter_chunks(input_stream: t.IO[bytes],
                chunk_size: int = CHUNK_SIZE) -> t.Iterator[bytes]:
    """Read a stream in chunks of chunk_size bytes.

    Short reads (pipes, sockets, raw files) are filled up, so only the
    last chunk can be shorter than chunk_size.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")

    while True:
        buf = input_stream.read(chunk_size)
        if not buf:
            return
        while len(buf) < chunk_size:
            more = input_stream.read(chunk_size - len(buf))
            if not more:
                break
            buf += more
        yield buf
        if len(buf) < chunk_size:
            return


def decode_reply(raw: bytes) -> tuple[int | None, str]:
    """Decode a reply received from clamd.

    :param raw: Reply bytes, with or without the terminator
    :return: Request number (None outside a session) and message
    """
    try:
        text = raw.decode()
    except UnicodeDecodeError as e:
        raise ClamdProtocolError(f"Undecodable clamd reply: {raw!r}") from e

    message = text.rstrip('\x00').strip()
    if not message:
        raise ClamdProtocolError("Empty clamd reply")

    m = reply_id_pattern.match(message)
    if not m:
        return None, message
    return int(m.group(1)), m.group(2).strip()


class FrameWriter:
    """Write clamd frames on a binary output.

    Nothing is flushed until flush() is called, so the chunks of a
    stream reach the output as a whole.
    """
    def __init__(self, output: t.IO[bytes]):
        self.output = output

    def command(self, command: str) -> None:
        self.output.write(encode_command(command))

    def chunk(self, data: bytes) -> None:
        self.output.write(encode_chunk(data))

    def end_of_stream(self) -> None:
        self.output.write(END_OF_STREAM)

    def flush(self) -> None:
        self.output.flush()


class FrameReader:
    """Read clamd frames from a binary input.

    This is the daemon side of the protocol.
    """
    def __init__(self, input_stream: t.IO[bytes]):
        self.input = input_stream

    def command(self) -> str | None:
        """Read the next command.

        :return: Command name, or None when the input is exhausted
        """
        specifier = self.input.read(1)
        if not specifier:
            return None
        if specifier != CMD_SPECIFIER:
            raise ClamdProtocolError(f"Unsupported command specifier "
                                     f"{specifier!r}")

        buf = bytearray()
        while True:
            c = self.input.read(1)
            if not c:
                raise ClamdProtocolError("Unterminated command: " +
                                         buf.decode(errors="replace"))
            if c == CMD_TERMINATOR:
                return buf.decode()
            buf.extend(c)

    def chunk(self) -> bytes:
        """Read one chunk, b'' for the end of stream marker.
        """
        prefix = self._read_exactly(LENGTH_PREFIX.size)
        (length,) = LENGTH_PREFIX.unpack(prefix)
        if length == 0:
            return b''
        return self._read_exactly(length)

    def chunks(self) -> t.Iterator[bytes]:
        """Iterate the chunks of a stream up to the terminator.
        """
        while True:
            data = self.chunk()
            if not data:
                return
            yield data

    def _read_exactly(self, size: int) -> bytes:
        buf = bytearray()
        while len(buf) < size:
            data = self.input.read(size - len(buf))
            if not data:
                raise ClamdProtocolError(f"Truncated frame: expected {size} "
                                         f"bytes, got {len(buf)}")
            buf.extend(data)
        return bytes(buf)
