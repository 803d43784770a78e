"""Player profile and coin balance access for the murmuration engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from firebase_admin import firestore

from murmurations.core.constants import USERS_COLLECTION
from murmurations.errors import (
    AppError,
    InsufficientFunds,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from murmurations.utils import run_in_transaction

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

logger = logging.getLogger(__name__)


def display_name(user: dict[str, Any]) -> str:
    """Return the best name to show for a player."""
    return user.get("username") or user.get("name") or "Unknown"


class CurrencyService:
    """Boundary to the per-player progression and coin store."""

    def __init__(self, db: Client) -> None:
        self.db = db

    def _ref(self, user_id: str):
        return self.db.collection(USERS_COLLECTION).document(user_id)

    def get_profile(self, user_id: str) -> dict[str, Any]:
        """Fetch a player's profile or raise NotFoundError."""
        try:
            doc = self._ref(user_id).get()
        except Exception as e:
            raise PersistenceError("Failed to fetch player profile.") from e
        if not doc.exists:
            raise NotFoundError("Player profile not found.")
        data = doc.to_dict() or {}
        data["id"] = doc.id
        return data

    def get_profiles(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        """Batch fetch profiles, keyed by user id; missing users are skipped."""
        if not user_ids:
            return {}
        try:
            docs = [self._ref(uid).get() for uid in dict.fromkeys(user_ids)]
            return {doc.id: {**doc.to_dict(), "id": doc.id} for doc in docs if doc.exists}
        except Exception as e:
            logger.error(f"Failed to batch fetch profiles: {e}")
            return {}

    def debit(self, user_id: str, amount: int) -> None:
        """Take coins from a player, refusing to overdraw.

        The balance check and the write share one transaction, so two
        debits racing for the same coins cannot both pass the check.
        """
        if amount <= 0:
            raise ValidationError("Amount must be positive.")
        try:
            run_in_transaction(self.db, _deduct_coins, self._ref(user_id), amount)
        except AppError:
            raise
        except Exception as e:
            logger.error(f"Failed to debit {amount} coins from {user_id}: {e}")
            raise PersistenceError("Failed to deduct coins.") from e

    def credit(self, user_id: str, amount: int) -> None:
        """Give coins to a player."""
        if amount <= 0:
            raise ValidationError("Amount must be positive.")
        try:
            self._ref(user_id).update({"coins": firestore.Increment(amount)})
        except Exception as e:
            logger.error(f"Failed to credit {amount} coins to {user_id}: {e}")
            raise PersistenceError("Failed to add coins.") from e


def _deduct_coins(transaction, ref, amount: int) -> None:
    doc = ref.get(transaction=transaction)
    if not doc.exists:
        raise NotFoundError("Player profile not found.")
    coins = (doc.to_dict() or {}).get("coins", 0)
    if coins < amount:
        raise InsufficientFunds(f"This costs {amount} coins. You have {coins}.")
    transaction.update(ref, {"coins": coins - amount})
