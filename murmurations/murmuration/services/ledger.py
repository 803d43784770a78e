"""Coin and formation XP accounting for murmurations."""

from __future__ import annotations

import logging
from bisect import bisect_right
from dataclasses import dataclass
from typing import TYPE_CHECKING

from firebase_admin import firestore

from murmurations.core.constants import (
    FORMATION_XP_THRESHOLDS,
    MAX_FORMATION_LEVEL,
    MEMBERS_COLLECTION,
    MURMURATIONS_COLLECTION,
)
from murmurations.errors import ValidationError
from murmurations.utils import commit_in_batches, run_in_transaction

from ..utils import fetch_murmuration, store_errors

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

logger = logging.getLogger(__name__)


def formation_level_for(xp: int) -> int:
    """Highest formation whose threshold the XP total has reached."""
    level = bisect_right(FORMATION_XP_THRESHOLDS, max(xp, 0))
    return min(max(level, 1), MAX_FORMATION_LEVEL)


@dataclass
class FormationResult:
    xp: int
    level: int
    leveled_up: bool


class ContributionLedger:
    """Shared counters only ever move through Firestore increments."""

    def __init__(self, db: Client) -> None:
        self.db = db

    def _group_ref(self, murmuration_id: str):
        return self.db.collection(MURMURATIONS_COLLECTION).document(murmuration_id)

    def _credit_member(
        self, murmuration_id: str, user_id: str, field: str, amount: int
    ) -> None:
        """Bump a member's personal tally; failures only get logged."""
        ref = self.db.collection(MEMBERS_COLLECTION).document(user_id)
        try:
            doc = ref.get()
            member = (doc.to_dict() or {}) if doc.exists else {}
            if member.get("murmuration_id") != murmuration_id:
                logger.warning(
                    f"Skipping {field} credit: {user_id} is not in {murmuration_id}"
                )
                return
            ref.update({field: firestore.Increment(amount)})
        except Exception as e:
            logger.error(
                f"Failed to credit {amount} {field} to {user_id} "
                f"in {murmuration_id}: {e}"
            )

    def add_currency(self, murmuration_id: str, user_id: str, amount: int) -> None:
        """Bank coins for the murmuration and credit the contributing member."""
        if amount <= 0:
            raise ValidationError("Coins amount must be positive.")
        fetch_murmuration(self.db, murmuration_id)

        with store_errors("bank coins"):
            self._group_ref(murmuration_id).update(
                {
                    "season_coins_banked": firestore.Increment(amount),
                    "total_coins_banked": firestore.Increment(amount),
                }
            )
        self._credit_member(murmuration_id, user_id, "coins_contributed", amount)

    def add_experience(
        self, murmuration_id: str, amount: int, contributor: str | None = None
    ) -> FormationResult:
        """Add formation XP and level up from the stored total.

        The XP is added with an increment. The level is then compared with
        the stored total inside a transaction that can only raise it, so
        concurrent additions settle on the level their combined XP earns.
        """
        if amount <= 0:
            raise ValidationError("XP amount must be positive.")
        fetch_murmuration(self.db, murmuration_id)
        ref = self._group_ref(murmuration_id)

        with store_errors("add formation XP"):
            ref.update({"formation_xp": firestore.Increment(amount)})

        try:
            result = run_in_transaction(self.db, _sync_formation_level, ref)
        except Exception as e:
            logger.error(f"Failed to sync formation level of {murmuration_id}: {e}")
            with store_errors("read formation XP"):
                current = ref.get().to_dict() or {}
            result = FormationResult(
                xp=current.get("formation_xp", 0),
                level=current.get("formation_level", 1),
                leveled_up=False,
            )
        if result.leveled_up:
            logger.info(f"Murmuration {murmuration_id} reached formation {result.level}")

        if contributor:
            self._credit_member(
                murmuration_id, contributor, "formation_xp_contributed", amount
            )
        return result

    def record_match_result(self, murmuration_id: str, won: bool) -> None:
        """Count a win or loss reported by matchmaking."""
        fetch_murmuration(self.db, murmuration_id)
        field = "mvm_wins" if won else "mvm_losses"
        with store_errors("record match result"):
            self._group_ref(murmuration_id).update({field: firestore.Increment(1)})

    def reset_season(self) -> int:
        """Zero every murmuration's season coins. Returns how many were reset.

        Writes are committed in batches. A failed batch leaves the later
        murmurations untouched and the reset can simply be run again.
        """
        with store_errors("reset season"):
            refs = [
                doc.reference
                for doc in self.db.collection(MURMURATIONS_COLLECTION).stream()
                if doc.exists
            ]
            reset = commit_in_batches(
                self.db,
                refs,
                lambda batch, ref: batch.update(ref, {"season_coins_banked": 0}),
            )
        logger.info(f"Season reset for {reset} murmurations")
        return reset


def _sync_formation_level(transaction, ref) -> FormationResult:
    """Raise the stored level to match the XP total; never lower it."""
    current = ref.get(transaction=transaction).to_dict() or {}
    xp = current.get("formation_xp", 0)
    stored_level = current.get("formation_level", 1)
    level = formation_level_for(xp)
    if level <= stored_level:
        return FormationResult(xp=xp, level=stored_level, leveled_up=False)
    transaction.update(ref, {"formation_level": level})
    return FormationResult(xp=xp, level=level, leveled_up=True)
