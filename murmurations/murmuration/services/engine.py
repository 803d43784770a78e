"""Wires the murmuration services around one Firestore client."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from murmurations.user.currency import CurrencyService

from .challenges import ChallengeTracker
from .cooldowns import CooldownGuard
from .directory import GroupDirectory
from .invites import InvitationService
from .ledger import ContributionLedger
from .membership import MembershipManager

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

    from .invites import InviteNotifier


class MurmurationService:
    """Entry point for callers that need more than one murmuration service.

    Each instance owns its collaborators; nothing is cached at module level,
    so tests and request handlers can build one per Firestore client.
    """

    def __init__(
        self,
        db: Client,
        currency: CurrencyService | None = None,
        notifier: InviteNotifier | None = None,
    ) -> None:
        self.db = db
        self.currency = currency or CurrencyService(db)
        self.cooldowns = CooldownGuard(db)
        self.membership = MembershipManager(db, self.cooldowns)
        self.invites = InvitationService(db, self.membership, self.currency, notifier)
        self.ledger = ContributionLedger(db)
        self.challenges = ChallengeTracker(db)
        self.directory = GroupDirectory(
            db, self.currency, self.membership, self.cooldowns
        )

    def overview(self, user_id: str) -> dict[str, Any]:
        """Everything the player's murmuration panel shows on open."""
        murmuration = self.directory.get_for_player(user_id)
        membership = self.membership.get_membership(user_id) if murmuration else None
        return {
            "murmuration": murmuration,
            "role": membership.get("role") if membership else None,
            "cooldown_expires_at": self.cooldowns.expires_at(user_id),
            "pending_invites": [] if murmuration else self.invites.pending_for_user(user_id),
        }
