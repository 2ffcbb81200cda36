"""Types for clamd communication.

"""
from dataclasses import dataclass, field
from enum import Enum


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class ClamdConnectionError(ClamdException):
    """The transport to clamd is unusable.

    Raised when the daemon cannot be reached, the session handshake
    fails, or an I/O error (timeout included) happens in the middle of
    a command.  The session must be closed and reopened before it is
    used again.
    """


class ClamdProtocolError(ClamdException):
    """clamd answered, but the answer could not be interpreted.
    """


class SessionState(Enum):
    """State of a clamd session.
    """
    CLOSED = "CLOSED"
    # transport connected, IDSESSION not sent yet
    IDLE = "IDLE"
    SESSION_OPEN = "SESSION_OPEN"


class ClamdScanStatus(Enum):
    """Outcome of a streamed scan.
    """
    CLEAN = "CLEAN"
    INFECTED = "INFECTED"
    # clamd replied with something we cannot interpret
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    # the scan never completed because the transport failed
    CONNECTION_ERROR = "CONNECTION_ERROR"


@dataclass
class ClamdCmdResponse():
    """Response of a clamd command.
    """
    raw_data: str
    message: str
    details: list[str] = field(default_factory=list)

    def __str__(self):
        return self.raw_data


@dataclass
class ClamdScanResult(ClamdCmdResponse):
    """Result of a clamd scanning.
    """
    label: str = ""
    status: ClamdScanStatus = ClamdScanStatus.CLEAN
    virus: str | None = None
    err_msg: str | None = None

    @property
    def infected(self) -> bool:
        return self.status == ClamdScanStatus.INFECTED
