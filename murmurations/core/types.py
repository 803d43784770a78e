"""Core data types for the murmurations application."""

from typing import Any, TypedDict


class _FirestoreDocumentBase(TypedDict):
    id: str
    created_at: Any


class FirestoreDocument(_FirestoreDocumentBase, total=False):
    """Generic Firestore document structure."""

    updated_at: Any


class _APIResponseBase(TypedDict):
    status: str


class APIResponse(_APIResponseBase, total=False):
    """JSON envelope returned by every route."""

    message: str
    data: Any
