"""Common utilities for tests."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional
from unittest.mock import patch

from google.api_core.exceptions import Aborted, AlreadyExists
from mockfirestore import CollectionReference, MockFirestore, Query
from mockfirestore.document import DocumentReference

from murmurations.core.constants import (
    DEFAULT_EMBLEM,
    MEMBERS_COLLECTION,
    MURMURATIONS_COLLECTION,
    USERS_COLLECTION,
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def patch_mockfirestore() -> None:
    """Apply monkeypatches to mockfirestore to support FieldFilter and equality."""

    def collection_where(
        self: Any,
        field_path: Optional[str] = None,
        op_string: Optional[str] = None,
        value: Any = None,
        filter: Any = None,
    ) -> Any:  # noqa: E501
        if filter:
            return self._where(filter.field_path, filter.op_string, filter.value)
        return self._where(field_path, op_string, value)

    if not hasattr(CollectionReference, "_where"):
        CollectionReference._where = CollectionReference.where
        CollectionReference.where = collection_where

    def query_where(
        self: Any,
        field_path: Optional[str] = None,
        op_string: Optional[str] = None,
        value: Any = None,
        filter: Any = None,
    ) -> Any:
        if filter:
            return self._where(filter.field_path, filter.op_string, filter.value)
        return self._where(field_path, op_string, value)

    if not hasattr(Query, "_where"):
        Query._where = Query.where
        Query.where = query_where

    def doc_ref_eq(self: Any, other: Any) -> bool:
        if not isinstance(other, DocumentReference):
            return False
        return self._path == other._path

    if not hasattr(DocumentReference, "_orig_eq"):
        DocumentReference._orig_eq = DocumentReference.__eq__
        DocumentReference.__eq__ = doc_ref_eq
        DocumentReference.__hash__ = lambda self: hash(tuple(self._path))

    def doc_ref_get(self: Any, transaction: Any = None) -> Any:
        snapshot = self._orig_get()
        if transaction is not None:
            transaction.track_read(self, snapshot)
        return snapshot

    def doc_ref_create(self: Any, document_data: dict) -> None:
        if self._orig_get().exists:
            raise AlreadyExists(f"Document already exists: {'/'.join(self._path)}")
        self.set(document_data)

    if not hasattr(DocumentReference, "_orig_get"):
        DocumentReference._orig_get = DocumentReference.get
        DocumentReference.get = doc_ref_get
        DocumentReference.create = doc_ref_create
        MockFirestore.transaction = lambda self, **kwargs: FakeTransaction(self)
        MockFirestore.batch = lambda self: MockWriteBatch()


def _read_state(snapshot: Any) -> tuple:
    if not snapshot.exists:
        return (False, None)
    return (True, copy.deepcopy(snapshot.to_dict()))


class FakeTransaction:
    """Buffers writes and aborts the commit if a document it read has changed."""

    def __init__(self, db: Any, max_attempts: int = 5) -> None:
        self.db = db
        self.max_attempts = max_attempts
        self._reads: dict = {}
        self._writes: list[Callable[[], Any]] = []

    def _begin(self) -> None:
        self._reads = {}
        self._writes = []

    def track_read(self, ref: Any, snapshot: Any) -> None:
        self._reads.setdefault(tuple(ref._path), (ref, _read_state(snapshot)))

    def set(self, ref: Any, data: dict, merge: bool = False) -> None:
        self._writes.append(lambda: ref.set(data, merge=merge))

    def update(self, ref: Any, data: dict) -> None:
        self._writes.append(lambda: ref.update(data))

    def create(self, ref: Any, data: dict) -> None:
        self._writes.append(lambda: ref.create(data))

    def delete(self, ref: Any) -> None:
        self._writes.append(ref.delete)

    def _commit(self) -> None:
        for ref, seen in self._reads.values():
            if _read_state(ref._orig_get()) != seen:
                raise Aborted("Document changed during the transaction.")
        for write in self._writes:
            write()
        self._writes = []


def fake_transactional(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Retry loop of firestore.transactional, driven by FakeTransaction."""

    def run(transaction: FakeTransaction, *args: Any, **kwargs: Any) -> Any:
        for _ in range(transaction.max_attempts):
            transaction._begin()
            result = fn(transaction, *args, **kwargs)
            try:
                transaction._commit()
            except Aborted:
                continue
            return result
        raise Aborted("Transaction was retried too many times.")

    return run


def use_mock_transactions(testcase: Any) -> None:
    """Route firestore.transactional through FakeTransaction for one test."""
    patcher = patch("firebase_admin.firestore.transactional", new=fake_transactional)
    patcher.start()
    testcase.addCleanup(patcher.stop)


class MockWriteBatch:
    """Applies queued writes only when committed."""

    def __init__(self) -> None:
        self._writes: list[Callable[[], Any]] = []

    def set(self, ref: Any, data: dict, merge: bool = False) -> None:
        self._writes.append(lambda: ref.set(data, merge=merge))

    def update(self, ref: Any, data: dict) -> None:
        self._writes.append(lambda: ref.update(data))

    def delete(self, ref: Any) -> None:
        self._writes.append(ref.delete)

    def commit(self) -> None:
        for write in self._writes:
            write()
        self._writes = []



def seed_user(
    db: Any,
    uid: str,
    level: int = 10,
    coins: int = 1000,
    username: Optional[str] = None,
    email: Optional[str] = None,
) -> None:
    data = {"level": level, "coins": coins, "username": username or uid}
    if email:
        data["email"] = email
    db.collection(USERS_COLLECTION).document(uid).set(data)


def seed_murmuration(db: Any, mid: str, leader_id: str, **fields: Any) -> dict:
    """Write a murmuration document with sensible defaults."""
    name = fields.pop("name", f"Flock {mid}")
    data = {
        "name": name,
        "name_lower": name.lower(),
        "tag": fields.pop("tag", mid[:4].upper()),
        "description": None,
        "privacy": "open",
        "leader_id": leader_id,
        "formation_level": 1,
        "formation_xp": 0,
        "member_count": 1,
        "total_coins_banked": 0,
        "season_coins_banked": 0,
        "mvm_wins": 0,
        "mvm_losses": 0,
        "emblem_config": dict(DEFAULT_EMBLEM),
        "created_at": BASE_TIME,
    }
    data.update(fields)
    db.collection(MURMURATIONS_COLLECTION).document(mid).set(data)
    return data


def seed_member(
    db: Any, mid: str, uid: str, role: str = "recruit", joined_hours: int = 0
) -> None:
    """Write a membership; joined_hours orders members by seniority."""
    db.collection(MEMBERS_COLLECTION).document(uid).set(
        {
            "murmuration_id": mid,
            "user_id": uid,
            "role": role,
            "joined_at": BASE_TIME + timedelta(hours=joined_hours),
            "coins_contributed": 0,
            "formation_xp_contributed": 0,
        }
    )
