"""Scan a batch of streams through one clamd session.

The session is opened when needed before each stream.  A broken
transport stops the batch: the session is closed so that the next
batch starts with a fresh connection.  Infections either stop the batch
(fail fast) or are collected while the remaining streams are scanned.

"""
import contextlib
import io
import logging
import os
import typing as t
from dataclasses import dataclass, field
from enum import Enum

from .clamd import ClamdConnectionError, \
    ClamdScanResult, \
    ClamdScanStatus, \
    ClamdSession

CLEAN_MESSAGE = "had no viruses detected."
INFECTED_MESSAGE = "had virus detected."
UNSCANNED_MESSAGE = "could not be fully scanned."
CONNECT_FAIL_MESSAGE = "Unable to connect to virus service - check setup"
SCAN_FAIL_MESSAGE = "Error encountered using virus service - check setup"


class BatchStatus(Enum):
    """Coarse outcome of a batch, with the curation status codes.
    """
    SUCCESS = 0
    # something was infected
    FAIL = 1
    # nothing to scan
    SKIP = 2
    ERROR = -1


# the worst status wins
_severity = {
    BatchStatus.SKIP: 0,
    BatchStatus.SUCCESS: 1,
    BatchStatus.FAIL: 2,
    BatchStatus.ERROR: 3,
}


@dataclass
class ScanRequest:
    """Something to scan.

    The opener returns the stream as a context manager; the batch
    releases it as soon as it has been scanned.
    """
    label: str
    opener: t.Callable[[], t.ContextManager[t.IO[bytes]]]

    @classmethod
    def from_bytes(cls, label: str, data: bytes) -> "ScanRequest":
        return cls(label, lambda: io.BytesIO(data))

    @classmethod
    def from_path(cls,
                  path: str | os.PathLike,
                  label: str | None = None) -> "ScanRequest":
        return cls(label or os.fspath(path), lambda: open(path, "rb"))

    @classmethod
    def from_stream(cls, label: str, stream: t.IO[bytes]) -> "ScanRequest":
        """Scan a stream owned by the caller, it is left open.
        """
        return cls(label, lambda: contextlib.nullcontext(stream))

    def open(self) -> t.ContextManager[t.IO[bytes]]:
        return self.opener()


@dataclass
class BatchPolicy:
    """How a batch reacts to infections.
    """
    fail_fast: bool = True
    # keep what was collected before a fail fast stop in the report
    report_partial_results: bool = True


@dataclass
class BatchResult:
    """Results of the scans of a batch, in order.
    """
    policy: BatchPolicy
    results: list[ClamdScanResult] = field(default_factory=list)
    status: BatchStatus = BatchStatus.SKIP
    aborted: bool = False
    # fatal error, replaces the whole report
    error_message: str | None = None

    @property
    def infected(self) -> list[ClamdScanResult]:
        return [r for r in self.results if r.infected]

    @property
    def failed(self) -> list[ClamdScanResult]:
        return [r for r in self.results
                if r.status in (ClamdScanStatus.PROTOCOL_ERROR,
                                ClamdScanStatus.CONNECTION_ERROR)]

    def mark(self, status: BatchStatus) -> None:
        if _severity[status] > _severity[self.status]:
            self.status = status

    def abort(self, error_message: str) -> "BatchResult":
        self.status = BatchStatus.ERROR
        self.aborted = True
        self.error_message = error_message
        return self

    def report_lines(self) -> list[str]:
        """One line per infected or unscannable stream.
        """
        lines = []
        for r in self.results:
            if r.status == ClamdScanStatus.INFECTED:
                lines.append(f"{r.label}: infected - {r.virus}")
            elif r.status == ClamdScanStatus.PROTOCOL_ERROR:
                lines.append(f"{r.label}: scan failed - {r.err_msg}")
        return lines

    def format_report(self, name: str) -> str:
        """Human readable report of the batch.

        :param name: What the batch is about, e.g. "Item: 123/456"
        """
        if self.error_message is not None:
            return self.error_message
        if self.status == BatchStatus.SKIP:
            return f"{name} had nothing to scan."
        if self.status == BatchStatus.SUCCESS:
            return f"{name} {CLEAN_MESSAGE}"

        if self.infected:
            lines = [f"{name} {INFECTED_MESSAGE}"]
        else:
            lines = [f"{name} {UNSCANNED_MESSAGE}"]
        failfast = str(self.policy.fail_fast).lower()
        if self.aborted and not self.policy.report_partial_results:
            lines.append(f"Scan stopped at first failure. "
                         f"failfast: {failfast}")
            return "\n".join(lines)

        lines.extend(self.report_lines())
        lines.append(f"{len(self.infected)} virus(es) found. "
                     f"failfast: {failfast}")
        return "\n".join(lines)


def scan_batch(session: ClamdSession,
               requests: t.Iterable[ScanRequest],
               policy: BatchPolicy | None = None) -> BatchResult:
    """Scan every request of a batch with the session.

    :param session: Session to use, opened if needed
    :param requests: What to scan, in order
    :param policy: Reaction to infections, fail fast by default
    :return: Collected results
    """
    batch = BatchResult(policy=policy or BatchPolicy())

    for request in requests:
        batch.mark(BatchStatus.SUCCESS)

        if not session.is_open():
            try:
                session.open()
            except ClamdConnectionError as e:
                logging.error("Unable to open clamd session: %s", e)
                return batch.abort(CONNECT_FAIL_MESSAGE)

        try:
            source = request.open()
        except OSError as e:
            logging.error("Unable to open %s: %s", request.label, e)
            return batch.abort(f"Unable to read {request.label}: {e}")

        logging.debug("Scanning %s . . .", request.label)
        try:
            with source as stream:
                result = session.scan(stream, request.label)
        except ClamdConnectionError as e:
            # the session is unusable, next scan will reconnect
            session.close()
            batch.results.append(ClamdScanResult(
                raw_data="",
                message="",
                label=request.label,
                status=ClamdScanStatus.CONNECTION_ERROR,
                err_msg=str(e),
            ))
            return batch.abort(SCAN_FAIL_MESSAGE)
        except Exception as e:
            # INSTREAM was cut halfway, clamd still waits for chunks
            logging.error("Error reading %s: %s", request.label, e)
            session.close()
            return batch.abort(f"Unable to read {request.label}: {e}")

        batch.results.append(result)

        if result.status == ClamdScanStatus.INFECTED:
            logging.info("%s: infected - %s", request.label, result.virus)
            batch.mark(BatchStatus.FAIL)
        elif result.status == ClamdScanStatus.PROTOCOL_ERROR:
            logging.warning("%s: scan failed - %s",
                            request.label, result.err_msg)
            batch.mark(BatchStatus.ERROR)
        else:
            continue

        if batch.policy.fail_fast:
            batch.aborted = True
            break

    return batch
