"""Curation tasks.

A curation run calls init() once, perform() for every object, and
finish() once at the end.  ClamScanTask scans the attachments of
items with one clamd session kept open for the whole run.

"""
import logging
import typing as t
from dataclasses import dataclass, field

from .batch import BatchPolicy, BatchResult, BatchStatus, ScanRequest, \
    scan_batch
from .clamd import ClamdSession

NEW_ITEM_HANDLE = "in workflow"


class CurationTask(t.Protocol):
    """Lifecycle shared by curation tasks.
    """
    def init(self) -> None:
        ...

    def perform(self, obj: object) -> BatchStatus:
        ...

    def finish(self) -> None:
        ...


@dataclass
class Attachment:
    """A file attached to an item.
    """
    name: str
    sequence_id: int
    opener: t.Callable[[], t.ContextManager[t.IO[bytes]]]

    @property
    def label(self) -> str:
        return f"bitstream - {self.name}: SequenceId - {self.sequence_id}"


@dataclass
class Item:
    """An item and its attachments, in order.
    """
    handle: str | None = None
    attachments: list[Attachment] = field(default_factory=list)


class ClamScanTask:
    """Scan the attachments of items with clamd.
    """
    def __init__(self,
                 session: ClamdSession,
                 policy: BatchPolicy | None = None):
        self.session = session
        self.policy = policy or BatchPolicy()
        self.result: str | None = None
        self.last_batch: BatchResult | None = None
        self.reports: list[str] = []

    def init(self) -> None:
        """Open one clamd session for the entire run.
        """
        self.session.open()

    def finish(self) -> None:
        self.session.close()

    def perform(self, obj: object) -> BatchStatus:
        """Scan every attachment of an item.

        Objects other than items are skipped.  The human readable
        outcome is left in self.result.
        """
        self.result = None
        self.last_batch = None
        if not isinstance(obj, Item):
            logging.debug("Skipping %r, not an item", obj)
            return BatchStatus.SKIP

        handle = obj.handle or NEW_ITEM_HANDLE
        if not obj.attachments:
            self.result = f"No ORIGINAL bundle found for item: {handle}"
            return BatchStatus.SKIP

        requests = [ScanRequest(a.label, a.opener) for a in obj.attachments]
        batch = scan_batch(self.session, requests, self.policy)
        for r in batch.infected:
            self.report(f"item - {handle}: {r.label}: infected")

        self.last_batch = batch
        self.result = batch.format_report(f"Item: {handle}")
        return batch.status

    def report(self, message: str) -> None:
        logging.info(message)
        self.reports.append(message)
