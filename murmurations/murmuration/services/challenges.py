"""Time-boxed murmuration challenges and their progress tallies."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from firebase_admin import firestore

from murmurations.core.constants import (
    CHALLENGE_ACTIVE,
    CHALLENGE_COMPLETED,
    CHALLENGE_EXPIRED,
    CHALLENGE_TYPES,
    CHALLENGES_COLLECTION,
    OBJECTIVE_TYPES,
)
from murmurations.errors import ConflictError, Expired, NotFoundError, ValidationError
from murmurations.utils import run_in_transaction

from ..utils import fetch_murmuration, is_past, snapshot_to_dict, store_errors, utc_now

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

    from ..models import Challenge

logger = logging.getLogger(__name__)


class ChallengeTracker:
    """Creates challenges and folds member progress into them."""

    def __init__(self, db: Client) -> None:
        self.db = db

    def _challenges(self):
        return self.db.collection(CHALLENGES_COLLECTION)

    def _expire(self, challenge_id: str) -> None:
        with store_errors("expire challenge"):
            self._challenges().document(challenge_id).update(
                {"status": CHALLENGE_EXPIRED}
            )

    def create(
        self,
        murmuration_id: str,
        challenge_type: str,
        objective_type: str,
        target: int,
        description: str,
        expires_at: datetime | None = None,
    ) -> Challenge:
        """Open a new challenge for a murmuration."""
        if challenge_type not in CHALLENGE_TYPES:
            raise ValidationError(f"Unknown challenge type: {challenge_type!r}.")
        if objective_type not in OBJECTIVE_TYPES:
            raise ValidationError(f"Unknown objective type: {objective_type!r}.")
        if target <= 0:
            raise ValidationError("Challenge target must be positive.")
        fetch_murmuration(self.db, murmuration_id)

        data = {
            "murmuration_id": murmuration_id,
            "type": challenge_type,
            "objective": {
                "type": objective_type,
                "target": target,
                "current": 0,
                "description": description,
            },
            "progress": {"total": 0, "contributions": []},
            "status": CHALLENGE_ACTIVE,
            "expires_at": expires_at,
            "created_at": utc_now(),
        }
        with store_errors("create challenge"):
            _, ref = self._challenges().add(data)
        logger.info(f"Challenge {ref.id} opened for {murmuration_id}")
        return {**data, "id": ref.id}

    def get(self, challenge_id: str) -> Challenge:
        with store_errors("load challenge"):
            doc = self._challenges().document(challenge_id).get()
        if not doc.exists:
            raise NotFoundError("Challenge not found.")
        return snapshot_to_dict(doc)

    def active_for_group(self, murmuration_id: str) -> list[Challenge]:
        """Active challenges, newest first. Lapsed ones are expired on the way."""
        with store_errors("fetch challenges"):
            docs = (
                self._challenges()
                .where(
                    filter=firestore.FieldFilter("murmuration_id", "==", murmuration_id)
                )
                .where(filter=firestore.FieldFilter("status", "==", CHALLENGE_ACTIVE))
                .stream()
            )
            challenges = [snapshot_to_dict(doc) for doc in docs if doc.exists]

        active = []
        for challenge in challenges:
            if is_past(challenge.get("expires_at")):
                try:
                    self._expire(challenge["id"])
                except Exception as e:
                    logger.warning(f"Could not expire challenge {challenge['id']}: {e}")
                continue
            active.append(challenge)
        active.sort(key=lambda c: c.get("created_at") or utc_now(), reverse=True)
        return active

    def update_progress(
        self, challenge_id: str, user_id: str, amount: int
    ) -> Challenge:
        """Add a member's progress, completing the challenge at its target.

        The tally is read and written in one transaction, so contributions
        arriving at the same time are folded in one after the other.
        """
        if amount <= 0:
            raise ValidationError("Progress amount must be positive.")
        ref = self._challenges().document(challenge_id)
        with store_errors("update challenge progress"):
            challenge = run_in_transaction(
                self.db, _fold_progress, ref, user_id, amount
            )
        if challenge is None:
            raise Expired("Challenge has expired.")
        if challenge["status"] == CHALLENGE_COMPLETED:
            logger.info(
                f"Challenge {challenge_id} completed for {challenge['murmuration_id']}"
            )
        return challenge

    def expire_stale(self, now: datetime | None = None) -> int:
        """Move every active challenge past its deadline to expired."""
        expired = 0
        with store_errors("sweep challenges"):
            docs = (
                self._challenges()
                .where(filter=firestore.FieldFilter("status", "==", CHALLENGE_ACTIVE))
                .stream()
            )
            for doc in docs:
                if is_past((doc.to_dict() or {}).get("expires_at"), now):
                    doc.reference.update({"status": CHALLENGE_EXPIRED})
                    expired += 1
        return expired


def _fold_progress(transaction, ref, user_id: str, amount: int) -> Challenge | None:
    """Returns the updated challenge, or None once it has lapsed."""
    doc = ref.get(transaction=transaction)
    if not doc.exists:
        raise NotFoundError("Challenge not found.")
    challenge = snapshot_to_dict(doc)
    if challenge.get("status") != CHALLENGE_ACTIVE:
        raise ConflictError("Challenge is not active.")
    if is_past(challenge.get("expires_at")):
        transaction.update(ref, {"status": CHALLENGE_EXPIRED})
        return None

    progress = challenge.get("progress") or {}
    total = progress.get("total", 0) + amount
    contributions = [dict(c) for c in progress.get("contributions", [])]
    for entry in contributions:
        if entry.get("user_id") == user_id:
            entry["amount"] = entry.get("amount", 0) + amount
            break
    else:
        contributions.append({"user_id": user_id, "amount": amount})

    objective = dict(challenge.get("objective") or {})
    target = objective.get("target", 0)
    objective["current"] = min(total, target)
    status = CHALLENGE_COMPLETED if total >= target else CHALLENGE_ACTIVE

    changes = {
        "progress": {"total": total, "contributions": contributions},
        "objective": objective,
        "status": status,
    }
    transaction.update(ref, changes)
    return {**challenge, **changes}
