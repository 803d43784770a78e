"""Invitation issuance, acceptance, decline and expiry."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable

from firebase_admin import firestore

from murmurations.core.constants import (
    INVITE_ACCEPTED,
    INVITE_DECLINED,
    INVITE_EXPIRED,
    INVITE_PENDING,
    INVITE_TTL,
    INVITES_COLLECTION,
)
from murmurations.errors import (
    AuthorizationError,
    ConflictError,
    Expired,
    NotFoundError,
    ValidationError,
)
from murmurations.user.currency import display_name

from ..utils import (
    compensating,
    fetch_murmuration,
    is_past,
    snapshot_to_dict,
    store_errors,
    utc_now,
)
from .roles import Role, can_invite

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

    from murmurations.user.currency import CurrencyService

    from ..models import Invite, Member
    from .membership import MembershipManager

    InviteNotifier = Callable[[dict[str, Any], dict[str, Any], dict[str, Any]], None]

logger = logging.getLogger(__name__)


def invite_expires_at(invite: dict[str, Any]) -> datetime | None:
    created_at = invite.get("created_at")
    if created_at is None:
        return None
    if isinstance(created_at, str):
        created_at = datetime.fromisoformat(created_at)
    return created_at + INVITE_TTL


class InvitationService:
    """Pending invites and their one-way transitions."""

    def __init__(
        self,
        db: Client,
        membership: MembershipManager,
        profiles: CurrencyService,
        notifier: InviteNotifier | None = None,
    ) -> None:
        self.db = db
        self.membership = membership
        self.profiles = profiles
        self.notifier = notifier

    def _invites(self):
        return self.db.collection(INVITES_COLLECTION)

    def _is_stale(self, invite: dict[str, Any], now: datetime | None = None) -> bool:
        return is_past(invite_expires_at(invite), now)

    def _mark(self, invite_id: str, status: str) -> None:
        with store_errors(f"mark invite {status}"):
            self._invites().document(invite_id).update(
                {"status": status, "resolved_at": utc_now()}
            )

    def _expire_quietly(self, invite_id: str) -> None:
        try:
            self._mark(invite_id, INVITE_EXPIRED)
        except Exception as e:
            logger.warning(f"Could not expire invite {invite_id}: {e}")

    def _pending_query(self, field: str, value: str):
        return (
            self._invites()
            .where(filter=firestore.FieldFilter(field, "==", value))
            .where(filter=firestore.FieldFilter("status", "==", INVITE_PENDING))
        )

    def get(self, invite_id: str) -> Invite:
        with store_errors("load invite"):
            doc = self._invites().document(invite_id).get()
        if not doc.exists:
            raise NotFoundError("Invite not found.")
        return snapshot_to_dict(doc)

    def invite(
        self, actor_id: str, target_id: str, murmuration_id: str
    ) -> Invite:
        """Invite a player who is not in any murmuration."""
        if actor_id == target_id:
            raise ValidationError("You cannot invite yourself.")
        actor = self.membership.require_membership(
            actor_id,
            murmuration_id,
            AuthorizationError,
            "You are not a member of this murmuration.",
        )
        if not can_invite(Role.parse(actor.get("role"))):
            raise AuthorizationError("Recruits cannot invite players.")

        murmuration = fetch_murmuration(self.db, murmuration_id)
        target = self.profiles.get_profile(target_id)
        if self.membership.get_membership(target_id):
            raise ConflictError("Target player is already in a murmuration.")

        with store_errors("check pending invites"):
            existing = [
                snapshot_to_dict(doc)
                for doc in self._pending_query("invited_user_id", target_id).stream()
            ]
        for invite in existing:
            if invite.get("murmuration_id") != murmuration_id:
                continue
            if self._is_stale(invite):
                self._expire_quietly(invite["id"])
                continue
            raise ConflictError("An invite is already pending for this player.")

        data = {
            "murmuration_id": murmuration_id,
            "invited_user_id": target_id,
            "invited_by": actor_id,
            "status": INVITE_PENDING,
            "created_at": utc_now(),
        }
        with store_errors("create invite"):
            _, ref = self._invites().add(data)
        invite = {**data, "id": ref.id}
        logger.info(f"{actor_id} invited {target_id} to {murmuration_id}")

        if self.notifier:
            try:
                self.notifier(invite, murmuration, target)
            except Exception as e:
                logger.error(f"Invite notification for {invite['id']} failed: {e}")
        return invite

    def accept(self, invite_id: str, user_id: str) -> Member:
        """Accept a pending invite and join as a recruit.

        Every other pending invite the player holds is declined afterwards.
        """
        invite = self.get(invite_id)
        if invite.get("invited_user_id") != user_id:
            raise NotFoundError("Invite not found.")
        if invite.get("status") != INVITE_PENDING:
            raise ConflictError(f"This invite has already been {invite.get('status')}.")
        if self._is_stale(invite):
            self._mark(invite_id, INVITE_EXPIRED)
            raise Expired("This invite has expired.")

        murmuration_id = invite["murmuration_id"]
        murmuration = fetch_murmuration(self.db, murmuration_id)
        self.membership.ensure_can_join(user_id, murmuration)

        with compensating("accept invite") as undo:
            member = self.membership.insert_membership(
                murmuration_id, user_id, Role.RECRUIT
            )
            undo.push(
                "remove new member",
                lambda: self.membership.remove_membership(user_id),
            )
            self._mark(invite_id, INVITE_ACCEPTED)

        self.membership.adjust_member_count(murmuration_id, 1)
        self._decline_others(user_id, keep=invite_id)
        logger.info(f"{user_id} accepted invite {invite_id} to {murmuration_id}")
        return member

    def _decline_others(self, user_id: str, keep: str) -> None:
        try:
            docs = list(self._pending_query("invited_user_id", user_id).stream())
        except Exception as e:
            logger.error(f"Could not load other invites for {user_id}: {e}")
            return
        for doc in docs:
            if doc.id == keep:
                continue
            try:
                self._mark(doc.id, INVITE_DECLINED)
            except Exception as e:
                logger.error(f"Could not decline invite {doc.id}: {e}")

    def decline(self, invite_id: str, user_id: str) -> None:
        """Decline a pending invite."""
        invite = self.get(invite_id)
        if invite.get("invited_user_id") != user_id:
            raise NotFoundError("Invite not found.")
        if invite.get("status") != INVITE_PENDING:
            raise ConflictError(f"This invite has already been {invite.get('status')}.")
        self._mark(invite_id, INVITE_DECLINED)

    def pending_for_user(self, user_id: str) -> list[Invite]:
        """Pending invites for a player, newest first, with display names."""
        with store_errors("fetch pending invites"):
            invites = [
                snapshot_to_dict(doc)
                for doc in self._pending_query("invited_user_id", user_id).stream()
            ]

        live = []
        for invite in invites:
            if self._is_stale(invite):
                self._expire_quietly(invite["id"])
            else:
                live.append(invite)

        inviters = self.profiles.get_profiles([i["invited_by"] for i in live])
        for invite in live:
            try:
                murmuration = fetch_murmuration(self.db, invite["murmuration_id"])
            except NotFoundError:
                murmuration = {}
            invite["murmuration_name"] = murmuration.get("name")
            invite["murmuration_tag"] = murmuration.get("tag")
            inviter = inviters.get(invite["invited_by"])
            invite["inviter_username"] = display_name(inviter) if inviter else None

        live.sort(key=lambda i: i.get("created_at") or utc_now(), reverse=True)
        return [i for i in live if i["murmuration_name"] is not None]

    def pending_for_murmuration(self, murmuration_id: str) -> list[Invite]:
        """Outstanding invites a murmuration has sent."""
        with store_errors("fetch sent invites"):
            invites = [
                snapshot_to_dict(doc)
                for doc in self._pending_query("murmuration_id", murmuration_id).stream()
            ]
        return [i for i in invites if not self._is_stale(i)]

    def expire_stale(self, now: datetime | None = None) -> int:
        """Move every pending invite past its window to expired."""
        expired = 0
        with store_errors("sweep invites"):
            docs = (
                self._invites()
                .where(filter=firestore.FieldFilter("status", "==", INVITE_PENDING))
                .stream()
            )
            for doc in docs:
                if self._is_stale(snapshot_to_dict(doc), now):
                    self._mark(doc.id, INVITE_EXPIRED)
                    expired += 1
        return expired
