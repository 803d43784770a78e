"""Helpers shared by the murmuration services."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterator

from murmurations.core.constants import MURMURATIONS_COLLECTION
from murmurations.errors import AppError, NotFoundError, PersistenceError

if TYPE_CHECKING:
    from google.cloud.firestore_v1.base_document import DocumentSnapshot
    from google.cloud.firestore_v1.client import Client

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def snapshot_to_dict(doc: DocumentSnapshot) -> dict[str, Any]:
    """Flatten a snapshot into a plain dict carrying its document id."""
    return {**(doc.to_dict() or {}), "id": doc.id}


def fetch_murmuration(db: Client, murmuration_id: str) -> dict[str, Any]:
    """Load a murmuration document or raise NotFoundError."""
    if not murmuration_id:
        raise NotFoundError("Murmuration not found.")
    with store_errors("load murmuration"):
        doc = db.collection(MURMURATIONS_COLLECTION).document(murmuration_id).get()
    if not doc.exists:
        raise NotFoundError("Murmuration not found.")
    return snapshot_to_dict(doc)


def is_past(moment: Any, now: datetime | None = None) -> bool:
    """Return True when a stored timestamp lies at or before now."""
    if moment is None:
        return False
    if isinstance(moment, str):
        moment = datetime.fromisoformat(moment)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (now or utc_now()) >= moment


@contextmanager
def store_errors(action: str) -> Iterator[None]:
    """Re-raise Firestore failures as PersistenceError."""
    try:
        yield
    except AppError:
        raise
    except Exception as e:
        logger.error(f"Firestore error while trying to {action}: {e}")
        raise PersistenceError(f"Failed to {action}.") from e


class Compensations:
    """Undo actions recorded while a multi-document write moves forward."""

    def __init__(self, action: str) -> None:
        self.action = action
        self._steps: list[tuple[str, Callable[[], Any]]] = []

    def push(self, label: str, undo: Callable[[], Any]) -> None:
        """Register the inverse of a write that just succeeded."""
        self._steps.append((label, undo))

    def rollback(self) -> None:
        """Replay the recorded inverses, newest first."""
        while self._steps:
            label, undo = self._steps.pop()
            try:
                undo()
                logger.warning(f"Compensated '{label}' after failed {self.action}.")
            except Exception as e:
                logger.error(
                    f"Compensation '{label}' failed during {self.action}: {e}"
                )


@contextmanager
def compensating(action: str) -> Iterator[Compensations]:
    """Run dependent writes, undoing the completed ones if a later one fails.

    Firestore gives no multi-document atomicity here, so each forward step
    registers its inverse and any exception replays them in reverse order.
    """
    undo = Compensations(action)
    try:
        yield undo
    except AppError:
        undo.rollback()
        raise
    except Exception as e:
        undo.rollback()
        logger.error(f"Firestore error while trying to {action}: {e}")
        raise PersistenceError(f"Failed to {action}.") from e
