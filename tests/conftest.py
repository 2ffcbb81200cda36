# A fake clamd speaking the session protocol stands in for the daemon

import os
import socket
import tempfile
import threading

import pytest

from clamav_scan_service import app
from clamav_scan_service.clamd import ClamdTCPSession, ClamdProtocolError
from clamav_scan_service.clamd.framing import FrameReader

EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"

# scripted reply: keep the connection open without answering
STALL = object()


class FakeClamd:
    """Minimal clamd: IDSESSION, PING, INSTREAM and END.

    Replies "stream: OK", or "stream: Eicar-Test-Signature FOUND" when
    the streamed data contains the EICAR test string.  Replies can be
    scripted with self.replies: a str is sent as a regular reply, bytes
    are sent verbatim, None hangs up, STALL never answers.
    """
    def __init__(self, family=socket.AF_INET, address=("127.0.0.1", 0)):
        self.listener = socket.socket(family, socket.SOCK_STREAM)
        self.listener.bind(address)
        self.listener.listen(5)
        self.address = self.listener.getsockname()

        self.replies = []
        self.commands = []
        # lengths of the chunks of every INSTREAM
        self.chunks = []
        self.payloads = []
        self.connections = 0
        self.disconnected = threading.Semaphore(0)
        self._threads = []

    def start(self):
        t = threading.Thread(target=self._accept, daemon=True)
        t.start()
        return self

    def stop(self):
        # wakes up the thread blocked in accept()
        try:
            self.listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.listener.close()

    def wait_disconnect(self, timeout=5):
        return self.disconnected.acquire(timeout=timeout)

    def _accept(self):
        while True:
            try:
                conn, _ = self.listener.accept()
            except OSError:
                return
            self.connections += 1
            t = threading.Thread(target=self._serve, args=(conn,), daemon=True)
            t.start()
            self._threads.append(t)

    def _serve(self, conn):
        rfile = conn.makefile('rb')
        reader = FrameReader(rfile)
        in_session = False
        request_id = 0
        try:
            while True:
                try:
                    command = reader.command()
                except (ClamdProtocolError, OSError):
                    return
                if command is None:
                    return
                self.commands.append(command)

                if command == "IDSESSION":
                    in_session = True
                    continue
                if command == "END":
                    return

                request_id += 1
                if command == "PING":
                    reply = "PONG"
                elif command == "INSTREAM":
                    try:
                        chunks = list(reader.chunks())
                    except (ClamdProtocolError, OSError):
                        return
                    payload = b''.join(chunks)
                    self.chunks.append([len(c) for c in chunks])
                    self.payloads.append(payload)
                    reply = self._reply_for(payload)
                else:
                    reply = "UNKNOWN COMMAND"

                if reply is None:
                    return
                if reply is STALL:
                    # wait for the client to give up
                    while conn.recv(1024):
                        pass
                    return
                if isinstance(reply, bytes):
                    conn.sendall(reply)
                    continue
                prefix = f"{request_id}: " if in_session else ""
                conn.sendall((prefix + reply).encode() + b'\x00')
        finally:
            # the file keeps the socket alive, shutdown really hangs up
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            rfile.close()
            conn.close()
            self.disconnected.release()

    def _reply_for(self, payload):
        if self.replies:
            return self.replies.pop(0)
        if EICAR in payload:
            return "stream: Eicar-Test-Signature FOUND"
        return "stream: OK"


@pytest.fixture()
def clamd_server():
    server = FakeClamd().start()

    yield server

    server.stop()


@pytest.fixture()
def unix_clamd_server():
    # unix socket paths are short, keep them out of pytest tmp dirs
    with tempfile.TemporaryDirectory(dir="/tmp") as tmpdir:
        path = os.path.join(tmpdir, "clamd.sock")
        server = FakeClamd(family=socket.AF_UNIX, address=path).start()

        yield server

        server.stop()


@pytest.fixture()
def session(clamd_server):
    host, port = clamd_server.address
    clamd = ClamdTCPSession(host, port, timeout=5)

    yield clamd

    clamd.close()


@pytest.fixture()
def test_app(clamd_server):
    host, port = clamd_server.address
    app.config.update({
        "TESTING": True,
        "CLAMD_HOST": host,
        "CLAMD_PORT": port,
        "CLAMD_TIMEOUT_MS": 5000,
    })

    yield app

    # clean up / reset resources here
    for key in ["CLAMD_HOST", "CLAMD_PORT", "CLAMD_TIMEOUT_MS",
                "SCAN_FAILFAST", "REPORT_PARTIAL_RESULTS",
                "INCLUDE_RAW_DATA"]:
        app.config.pop(key, None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()

