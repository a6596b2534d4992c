"""
Interfaces the importer depends on.

The importer holds one collaborator per pipeline step and only talks to them
through these protocols, so each step can be swapped for a test double:

- MessageSource: SQSReceiver
- Router: Resolver
- ObjectCopier: Transporter
- WarehouseLoader: BigQueryLoader
"""

import threading
from typing import TYPE_CHECKING, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from .model import Job, Locator

if TYPE_CHECKING:
    from .receiver import ReceiptHandle
    from .transporter import StagingHandle


@runtime_checkable
class MessageSource(Protocol):
    def receive(self, cancel: Optional[threading.Event] = None) -> Tuple[List[Locator], "ReceiptHandle"]:
        """Receives one notification.

        Raises:
            NoMessageError: If the queue is empty.
            ReceiveError: If the queue cannot be reached.
            ParseError: If the notification body is malformed.
        """
        ...

    def set_queue_name(self, queue_name: str) -> None:
        ...


@runtime_checkable
class Router(Protocol):
    def resolve(self, locators: Iterable[Locator]) -> List[Job]:
        """Returns one job per matching (locator, rule) pair."""
        ...


@runtime_checkable
class ObjectCopier(Protocol):
    def transport(self, job: Job) -> "StagingHandle":
        """Stages ``job.source`` at ``job.staging``.

        Raises:
            TransportError: If the copy fails; no handle is returned.
        """
        ...


@runtime_checkable
class WarehouseLoader(Protocol):
    def load(self, job: Job) -> None:
        """Loads the staged object and waits for the job to finish.

        Raises:
            LoadError: If the load could not be submitted or failed.
        """
        ...
