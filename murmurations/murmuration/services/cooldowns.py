"""Join cooldowns applied after leaving or being kicked."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from murmurations.core.constants import COOLDOWNS_COLLECTION, JOIN_COOLDOWN

from ..utils import is_past, store_errors, utc_now

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

logger = logging.getLogger(__name__)


class CooldownGuard:
    """Tracks when each player may next join or create a murmuration."""

    def __init__(self, db: Client) -> None:
        self.db = db

    def _ref(self, user_id: str):
        return self.db.collection(COOLDOWNS_COLLECTION).document(user_id)

    def expires_at(self, user_id: str, now: datetime | None = None) -> datetime | None:
        """Return the active cooldown's expiry, evicting it if it has lapsed."""
        with store_errors("check join cooldown"):
            doc = self._ref(user_id).get()
        if not doc.exists:
            return None

        expires = (doc.to_dict() or {}).get("expires_at")
        if expires is None or is_past(expires, now):
            try:
                self._ref(user_id).delete()
            except Exception as e:
                logger.warning(f"Could not clear expired cooldown for {user_id}: {e}")
            return None
        return expires

    def is_active(self, user_id: str, now: datetime | None = None) -> bool:
        return self.expires_at(user_id, now) is not None

    def start(self, user_id: str, now: datetime | None = None) -> datetime:
        """Start (or restart) a cooldown; a failed write is logged, not raised."""
        expires = (now or utc_now()) + JOIN_COOLDOWN
        try:
            self._ref(user_id).set({"user_id": user_id, "expires_at": expires})
        except Exception as e:
            logger.error(f"Failed to set join cooldown for {user_id}: {e}")
        return expires

    def sweep(self, now: datetime | None = None) -> int:
        """Delete every lapsed cooldown. Returns how many were removed."""
        removed = 0
        with store_errors("sweep join cooldowns"):
            for doc in self.db.collection(COOLDOWNS_COLLECTION).stream():
                if not doc.exists:
                    continue
                if is_past((doc.to_dict() or {}).get("expires_at"), now):
                    doc.reference.delete()
                    removed += 1
        return removed
