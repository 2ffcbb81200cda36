"""Python bindings for clamd sessions on Unix or TCP socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    with ClamdUnixSession("/var/run/clamd.sock") as clamd:
        for path in paths:
            with open(path, "rb") as stream:
                result = clamd.scan(stream, label=path)

The connection is opened once and the IDSESSION command tells clamd
that the following commands share it.  If a scan raises
ClamdConnectionError, close the session and open it again before the
next scan:
.. code-block:: python

    clamd = ClamdTCPSession("clamd.local", 3310)
    try:
        clamd.open()
        result = clamd.scan(stream, label="attachment.pdf")
    except ClamdConnectionError:
        clamd.close()

"""

from .types import ClamdScanStatus, ClamdScanResult, ClamdCmdResponse, \
    ClamdException, ClamdConnectionError, ClamdProtocolError, \
    SessionState  # noqa
from .session import ClamdSession, ClamdUnixSession, ClamdTCPSession  # noqa
