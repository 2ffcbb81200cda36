"""Session client for clamd.

A session keeps one connection to clamd open across many scans: the
IDSESSION command is sent once after connecting, then every INSTREAM
travels on the same socket until END is sent or the socket is closed.

It comes in two shapes:
 - ClamdUnixSession for clamav daemon running locally
 - ClamdTCPSession for clamav daemon on the network

Once connection is established, the behaviour is the same.

A session is not meant to be shared: commands and chunks of two
concurrent scans would interleave on the wire.  Scans on one session
are serialized, but the intended use is one session per worker.

"""
import abc
import contextlib
import logging
import re
import socket
import threading
import typing as t

from . import framing
from .types import ClamdConnectionError, \
    ClamdProtocolError, \
    ClamdCmdResponse, \
    ClamdScanResult, \
    ClamdScanStatus, \
    SessionState

scan_status_line_pattern = re.compile(r"^(.+?):\s+(.+)?\s?(OK|FOUND|ERROR)$")


class ClamdSession(abc.ABC):
    """Abstract session with clamd daemon.
    """
    def __init__(self,
                 timeout: float,
                 buffer_size: int,
                 chunk_size: int = framing.CHUNK_SIZE):
        self.timeout = timeout
        self.buffer_size = buffer_size
        self.chunk_size = chunk_size
        self.state = SessionState.CLOSED

        self._sock = None
        self._writer = None
        self._frames = None
        # clamd numbers the requests of a session starting from 1
        self._request_id = 0
        self._lock = threading.Lock()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    @property
    @abc.abstractmethod
    def address(self) -> str:
        """Human readable address of the daemon, for logging.
        """

    def open(self) -> None:
        """Connect to clamd daemon and start a session.

        Does nothing if the session is already open.
        """
        if self.is_open():
            return
        if self._sock is not None:
            # leftovers of a broken session
            self._teardown()

        logging.debug("Connecting to clamd at %s", self.address)
        try:
            sock = self._get_connection()
        except OSError as e:
            raise ClamdConnectionError(f"Unable to connect to clamd at "
                                       f"{self.address}: {e}") from e

        self._sock = sock
        self._writer = sock.makefile('wb')
        self._frames = framing.FrameWriter(self._writer)
        self._request_id = 0
        self.state = SessionState.IDLE

        try:
            self._frames.command(framing.IDSESSION)
            self._frames.flush()
        except OSError as e:
            logging.error("Failed to open clamd session on %s: %s",
                          self.address, e)
            self._teardown()
            raise ClamdConnectionError(f"Unable to start clamd session on "
                                       f"{self.address}: {e}") from e

        self.state = SessionState.SESSION_OPEN
        logging.debug("IDSESSION command sent to %s", self.address)

    def is_open(self) -> bool:
        """Whether the session is started and its socket not closed.
        """
        return (self.state == SessionState.SESSION_OPEN
                and self._sock is not None
                and self._sock.fileno() != -1)

    def close(self) -> None:
        """End the session and close connection to clamd daemon.

        Failures are logged and swallowed: the session is being thrown
        away anyway.
        """
        if self._sock is None:
            self.state = SessionState.CLOSED
            return

        if self.state == SessionState.SESSION_OPEN:
            try:
                self._frames.command(framing.END)
                self._frames.flush()
            except (OSError, ValueError) as e:
                logging.warning("Unable to send END to clamd at %s: %s",
                                self.address, e)

        logging.debug("Closing the socket for clamd at %s", self.address)
        self._teardown()

    def ping(self) -> ClamdCmdResponse:
        """Execute clamd PING command inside the session.

        Check the server's state. It should reply with "PONG".
        """
        with self._lock:
            self._ensure_open()
            frames, sock = self._frames, self._sock
            self._next_request()
            with self._transport_errors("sending PING"):
                frames.command(framing.PING)
                frames.flush()
            with self._transport_errors("reading PING reply"):
                recd_raw = self._recv(sock)

            if not recd_raw:
                self._teardown()
                raise ClamdConnectionError("clamd closed the connection")

        _, message = framing.decode_reply(recd_raw)
        return ClamdCmdResponse(
            raw_data=recd_raw.decode().rstrip('\x00'),
            message=message,
        )

    def scan(self,
             input_stream: t.IO[bytes],
             label: str = "stream") -> ClamdScanResult:
        """Execute clamd INSTREAM command inside the session.

        The stream is read to exhaustion and sent to clamd in chunks,
        then a single reply is read.  The stream is not closed.

        Errors reading input_stream are propagated as they are; the
        session is then in the middle of a command and must be closed.

        :param input_stream: Input stream to analyze
        :param label: Name of what is scanned, for reporting
        :return: Result of the scanning as ClamdScanResult instance
        :raises ClamdConnectionError: the transport failed, the
            session must be closed and reopened
        """
        with self._lock:
            self._ensure_open()
            # close() may run concurrently and reset the attributes
            frames, sock = self._frames, self._sock
            request_id = self._next_request()
            logging.debug("Scanning %s (request %d)", label, request_id)

            with self._transport_errors("sending INSTREAM"):
                frames.command(framing.INSTREAM)

            chunks = 0
            size = 0
            for buf in framing.iter_chunks(input_stream, self.chunk_size):
                with self._transport_errors("streaming data"):
                    frames.chunk(buf)
                chunks += 1
                size += len(buf)

            # send an empty chunk to signal that we are finished
            with self._transport_errors("ending stream"):
                frames.end_of_stream()
                frames.flush()
            logging.debug("Sent %d bytes in %d chunks for %s",
                          size, chunks, label)

            with self._transport_errors("reading scan reply"):
                recd_raw = self._recv(sock)

            if not recd_raw:
                logging.error("clamd hung up without replying to %s", label)
                self._teardown()
                return ClamdScanResult(
                    raw_data="",
                    message="",
                    label=label,
                    status=ClamdScanStatus.PROTOCOL_ERROR,
                    err_msg="clamd closed the connection without reply",
                )

        logging.debug("Response: %r", recd_raw)
        return self._parse_scan_result(recd_raw, request_id, label)

    @abc.abstractmethod
    def _get_connection(self) -> socket.socket:
        """Get connection to clamd as socket.

        :return: Socket connected to clamd
        """

    def _ensure_open(self) -> None:
        if not self.is_open():
            raise ClamdConnectionError(f"No open session with clamd at "
                                       f"{self.address}")

    def _next_request(self) -> int:
        self._request_id += 1
        return self._request_id

    @contextlib.contextmanager
    def _transport_errors(self, action: str):
        """Turn I/O errors on the transport into ClamdConnectionError.
        """
        try:
            yield
        except (OSError, ValueError) as e:
            logging.error("Error %s on clamd session %s: %s",
                          action, self.address, e)
            raise ClamdConnectionError(f"Error {action}: {e}") from e

    def _recv(self, sock: socket.socket) -> bytes:
        """Receive one reply from clamd socket.

        :return: Raw data received, empty if clamd hung up
        """
        # block until the reply terminator or the end of the connection
        recd_data = bytearray()
        while not recd_data.endswith(framing.CMD_TERMINATOR):
            recd_buf = sock.recv(self.buffer_size)
            if not recd_buf:
                break
            recd_data.extend(recd_buf)
        return bytes(recd_data)

    def _teardown(self) -> None:
        """Close writer and socket unconditionally.
        """
        writer, sock = self._writer, self._sock
        self._writer = self._frames = self._sock = None
        self.state = SessionState.CLOSED

        if writer is not None:
            try:
                writer.close()
            except (OSError, ValueError) as e:
                # pending data could not be flushed
                logging.warning("Exception closing clamd writer: %s", e)
        if sock is not None:
            try:
                # abort reads and writes still in flight
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            sock.close()

    def _parse_scan_result(self,
                           raw_resp: bytes,
                           request_id: int,
                           label: str) -> ClamdScanResult:
        """Parse the reply to INSTREAM.

        :param raw_resp: Raw clamd reply
        :param request_id: Number of the request the reply should answer
        :param label: Name of what was scanned
        :return: Structured scan result
        """
        try:
            reply_id, message = framing.decode_reply(raw_resp)
        except ClamdProtocolError as e:
            logging.error("Unable to parse clamd reply for %s: %s", label, e)
            return ClamdScanResult(
                raw_data=raw_resp.decode(errors="replace"),
                message="",
                label=label,
                status=ClamdScanStatus.PROTOCOL_ERROR,
                err_msg=str(e),
            )

        raw_data = raw_resp.decode().rstrip('\x00')
        if reply_id is not None and reply_id != request_id:
            logging.error("clamd answered request %d while waiting for %d",
                          reply_id, request_id)
            # the awaited reply may still be queued, later replies would
            # all be off by one
            self._teardown()
            return ClamdScanResult(
                raw_data=raw_data,
                message=message,
                label=label,
                status=ClamdScanStatus.PROTOCOL_ERROR,
                err_msg=f"Reply to request {reply_id}, "
                        f"expected {request_id}",
            )

        lines = message.split('\n')
        details = [line for line in lines[1:] if line]

        if "FOUND" not in message:
            return ClamdScanResult(
                raw_data=raw_data,
                message=message,
                details=details,
                label=label,
                status=ClamdScanStatus.CLEAN,
            )

        # "stream: Eicar-Test-Signature FOUND": keep the signature only,
        # or the whole message if it does not look like that
        m = scan_status_line_pattern.match(lines[0])
        virus = None
        if m and m.group(3) == "FOUND":
            virus = (m.group(2) or "").strip()
        return ClamdScanResult(
            raw_data=raw_data,
            message=message,
            details=details,
            label=label,
            status=ClamdScanStatus.INFECTED,
            virus=virus or message,
        )


class ClamdUnixSession(ClamdSession):
    """Session with clamd daemon over UNIX domain socket.

    This is the recommended option when clamd is running on the same host.

    When using this option, clamd should be running with 'LocalSocket <path>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 socket_path: str,
                 timeout: float = 300,  # seconds
                 buffer_size: int = 2048,
                 chunk_size: int = framing.CHUNK_SIZE):
        """Create clamd session for UNIX domain socket.

        :param socket_path: Path of the clamd daemon socket
        :param timeout: Timeout of the socket
        :param buffer_size: Size of the buffer to read from clamd
        :param chunk_size: Size of INSTREAM chunks
        """
        super().__init__(timeout=timeout,
                         buffer_size=buffer_size,
                         chunk_size=chunk_size)
        self.socket_path = socket_path

    @property
    def address(self) -> str:
        return self.socket_path

    def _get_connection(self) -> socket.socket:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(self.timeout)
        try:
            sock.connect(self.socket_path)
        except FileNotFoundError:
            sock.close()
            raise ClamdConnectionError("clamd unix socket not found at " +
                                       self.socket_path +
                                       ". Is the clamd daemon running?")
        except OSError:
            sock.close()
            raise
        return sock


class ClamdTCPSession(ClamdSession):
    """Session with clamd daemon over TCP socket.

    This is the recommended (only) option when clamd is running on
    other host in the network.

    When using this option, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf (see man clamd.conf(5)).
    """
    def __init__(self,
                 host: str,
                 port: int = 3310,
                 timeout: float = 300,  # seconds
                 buffer_size: int = 1024,
                 chunk_size: int = framing.CHUNK_SIZE):
        """Create clamd session for TCP socket.

        :param host: TCP host
        :param port: TCP port
        :param timeout: Timeout of the socket
        :param buffer_size: Size of the buffer to read from clamd
        :param chunk_size: Size of INSTREAM chunks
        """
        super().__init__(timeout=timeout,
                         buffer_size=buffer_size,
                         chunk_size=chunk_size)
        self.host = host
        self.port = int(port)

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"

    def _get_connection(self) -> socket.socket:
        # the timeout applies to connect and to every read and write
        return socket.create_connection((self.host, self.port),
                                        timeout=self.timeout)
