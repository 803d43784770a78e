"""Joining, leaving, kicking and leadership succession."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from firebase_admin import firestore
from google.api_core.exceptions import AlreadyExists

from murmurations.core.constants import (
    CAPACITY_UNLOCK_LEVEL,
    CHALLENGES_COLLECTION,
    INVITES_COLLECTION,
    MAX_MEMBERS,
    MAX_MEMBERS_UNLOCKED,
    MEMBERS_COLLECTION,
    MURMURATIONS_COLLECTION,
    PRIVACY_OPEN,
)
from murmurations.errors import (
    AuthorizationError,
    CapacityExceeded,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from murmurations.utils import commit_in_batches

from ..utils import (
    Compensations,
    compensating,
    fetch_murmuration,
    snapshot_to_dict,
    store_errors,
    utc_now,
)
from .roles import (
    Role,
    can_administer,
    can_kick,
    can_set_role,
    pick_successor,
    succession_key,
)

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

    from ..models import Member
    from .cooldowns import CooldownGuard

logger = logging.getLogger(__name__)


@dataclass
class LeaveResult:
    """Outcome of a member leaving."""

    murmuration_id: str
    successor_id: str | None = None
    disbanded: bool = False


class MembershipManager:
    """Owns the roster: who is in which murmuration, and with what role."""

    def __init__(self, db: Client, cooldowns: CooldownGuard) -> None:
        self.db = db
        self.cooldowns = cooldowns

    def _members(self):
        return self.db.collection(MEMBERS_COLLECTION)

    def _groups(self):
        return self.db.collection(MURMURATIONS_COLLECTION)

    @staticmethod
    def capacity(formation_level: int) -> int:
        """Member cap for a formation level."""
        if formation_level >= CAPACITY_UNLOCK_LEVEL:
            return MAX_MEMBERS_UNLOCKED
        return MAX_MEMBERS

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_membership(self, user_id: str) -> Member | None:
        """Return the user's membership, or None if they are in no murmuration."""
        with store_errors("load membership"):
            doc = self._members().document(user_id).get()
        if not doc.exists:
            return None
        return snapshot_to_dict(doc)

    def require_membership(
        self,
        user_id: str,
        murmuration_id: str,
        error: type[Exception] = NotFoundError,
        message: str = "Target player is not a member of this murmuration.",
    ) -> dict[str, Any]:
        membership = self.get_membership(user_id)
        if not membership or membership.get("murmuration_id") != murmuration_id:
            raise error(message)
        return membership

    def list_members(self, murmuration_id: str) -> list[Member]:
        """All members of a murmuration, leader first, then by seniority."""
        with store_errors("fetch members"):
            docs = (
                self._members()
                .where(
                    filter=firestore.FieldFilter("murmuration_id", "==", murmuration_id)
                )
                .stream()
            )
            members = [snapshot_to_dict(doc) for doc in docs if doc.exists]
        members.sort(key=succession_key)
        return members

    # ------------------------------------------------------------------
    # Writes shared with the directory and invitations
    # ------------------------------------------------------------------

    def ensure_can_join(self, user_id: str, murmuration: dict[str, Any]) -> None:
        """Cooldown, single-membership and capacity checks before any write."""
        if self.cooldowns.is_active(user_id):
            raise ConflictError(
                "You are on a join cooldown. Please wait before joining a murmuration."
            )
        if self.get_membership(user_id):
            raise ConflictError(
                "You are already in a murmuration. Leave your current one first."
            )
        cap = self.capacity(murmuration.get("formation_level", 1))
        if murmuration.get("member_count", 0) >= cap:
            raise CapacityExceeded()

    def insert_membership(
        self,
        murmuration_id: str,
        user_id: str,
        role: Role,
        joined_at: datetime | None = None,
    ) -> dict[str, Any]:
        """Write the membership document. The member count is not touched.

        The document is keyed by user id and created only if absent, so a
        player who slipped past ensure_can_join still cannot hold two.
        """
        data = {
            "murmuration_id": murmuration_id,
            "user_id": user_id,
            "role": role.value,
            "joined_at": joined_at or utc_now(),
            "coins_contributed": 0,
            "formation_xp_contributed": 0,
        }
        with store_errors("add member"):
            try:
                self._members().document(user_id).create(data)
            except AlreadyExists as e:
                raise ConflictError(
                    "You are already in a murmuration. Leave your current one first."
                ) from e
        return {**data, "id": user_id}

    def remove_membership(self, user_id: str) -> None:
        with store_errors("remove member"):
            self._members().document(user_id).delete()

    def adjust_member_count(self, murmuration_id: str, delta: int) -> None:
        """Atomically move the cached member count.

        The count is re-derivable from membership documents, so a failure is
        logged and left for reconcile_member_count.
        """
        try:
            self._groups().document(murmuration_id).update(
                {"member_count": firestore.Increment(delta)}
            )
        except Exception as e:
            logger.error(
                f"Member count drift on {murmuration_id} (delta {delta}): {e}"
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def join(self, user_id: str, murmuration_id: str) -> Member:
        """Join an open murmuration as a recruit."""
        murmuration = fetch_murmuration(self.db, murmuration_id)
        if murmuration.get("privacy") != PRIVACY_OPEN:
            raise AuthorizationError(
                "This murmuration is not open for direct joining. "
                "Request an invite instead."
            )
        self.ensure_can_join(user_id, murmuration)

        member = self.insert_membership(murmuration_id, user_id, Role.RECRUIT)
        self.adjust_member_count(murmuration_id, 1)
        logger.info(f"{user_id} joined murmuration {murmuration_id}")
        return member

    def leave(self, user_id: str) -> LeaveResult:
        """Leave the current murmuration, handing over leadership if needed."""
        membership = self.get_membership(user_id)
        if membership is None:
            raise NotFoundError("You are not in a murmuration.")
        murmuration_id = membership["murmuration_id"]
        member_ref = self._members().document(user_id)

        try:
            murmuration = fetch_murmuration(self.db, murmuration_id)
        except NotFoundError:
            # Left behind by an interrupted disband.
            with store_errors("leave murmuration"):
                member_ref.delete()
            return LeaveResult(murmuration_id, disbanded=True)

        others = [
            m for m in self.list_members(murmuration_id) if m["user_id"] != user_id
        ]
        successor = None
        with compensating("leave murmuration") as undo:
            if Role.parse(membership.get("role")) is Role.LEADER and others:
                successor = pick_successor(others, user_id)
                self._hand_over(murmuration, successor, undo)
            member_ref.delete()

        if not others:
            self.dissolve(murmuration_id)
            logger.info(f"Murmuration {murmuration_id} dissolved after last member left")
            return LeaveResult(murmuration_id, disbanded=True)

        self.adjust_member_count(murmuration_id, -1)
        self.cooldowns.start(user_id)
        return LeaveResult(
            murmuration_id, successor_id=successor["user_id"] if successor else None
        )

    def _hand_over(
        self,
        murmuration: dict[str, Any],
        successor: dict[str, Any],
        undo: Compensations,
    ) -> None:
        """Promote the successor and repoint the murmuration's leader reference."""
        successor_ref = self._members().document(successor["user_id"])
        previous_role = successor["role"]
        successor_ref.update({"role": Role.LEADER.value})
        undo.push(
            "restore successor role",
            lambda: successor_ref.update({"role": previous_role}),
        )

        group_ref = self._groups().document(murmuration["id"])
        previous_leader = murmuration.get("leader_id")
        group_ref.update({"leader_id": successor["user_id"]})
        undo.push(
            "restore leader reference",
            lambda: group_ref.update({"leader_id": previous_leader}),
        )
        logger.info(
            f"{successor['user_id']} succeeded {previous_leader} "
            f"as leader of {murmuration['id']}"
        )

    def kick(self, actor_id: str, target_id: str, murmuration_id: str) -> None:
        """Remove a member on behalf of a leader or deputy."""
        if actor_id == target_id:
            raise AuthorizationError("You cannot kick yourself. Use leave instead.")

        actor = self.require_membership(
            actor_id,
            murmuration_id,
            AuthorizationError,
            "You are not a member of this murmuration.",
        )
        target = self.require_membership(target_id, murmuration_id)

        actor_role = Role.parse(actor.get("role"))
        target_role = Role.parse(target.get("role"))
        if target_role is Role.LEADER:
            raise AuthorizationError("Cannot kick the leader.")
        if not can_kick(actor_role, target_role, is_self=False):
            raise AuthorizationError(
                f"A {actor_role.value} cannot kick a {target_role.value}."
            )

        self.remove_membership(target_id)
        self.adjust_member_count(murmuration_id, -1)
        self.cooldowns.start(target_id)
        logger.info(f"{actor_id} kicked {target_id} from {murmuration_id}")

    def set_role(
        self, actor_id: str, target_id: str, murmuration_id: str, role: Any
    ) -> Member:
        """Promote or demote a member between deputy and recruit."""
        new_role = Role.parse(role)
        if actor_id == target_id:
            raise AuthorizationError(
                "Cannot change your own role. Transfer leadership instead."
            )
        if new_role is Role.LEADER:
            raise ValidationError(
                "Use a leadership transfer to appoint a new leader."
            )

        actor = self.require_membership(
            actor_id,
            murmuration_id,
            AuthorizationError,
            "You are not a member of this murmuration.",
        )
        target = self.require_membership(target_id, murmuration_id)
        actor_role = Role.parse(actor.get("role"))
        target_role = Role.parse(target.get("role"))

        if not can_set_role(actor_role, target_role, new_role, is_self=False):
            raise AuthorizationError("Only the leader can change member roles.")
        if target_role is new_role:
            return target

        with store_errors("update member role"):
            self._members().document(target_id).update({"role": new_role.value})
        return {**target, "role": new_role.value}

    def transfer_leadership(
        self, actor_id: str, new_leader_id: str, murmuration_id: str
    ) -> None:
        """Hand the leader role to another member; the old leader becomes deputy."""
        murmuration = fetch_murmuration(self.db, murmuration_id)
        actor = self.require_membership(
            actor_id,
            murmuration_id,
            AuthorizationError,
            "You are not a member of this murmuration.",
        )
        if murmuration.get("leader_id") != actor_id or not can_administer(
            Role.parse(actor.get("role"))
        ):
            raise AuthorizationError("Only the leader can transfer leadership.")
        if new_leader_id == actor_id:
            raise ConflictError("You are already the leader.")
        target = self.require_membership(new_leader_id, murmuration_id)

        actor_ref = self._members().document(actor_id)
        with compensating("transfer leadership") as undo:
            self._hand_over(murmuration, target, undo)
            actor_ref.update({"role": Role.DEPUTY.value})

    # ------------------------------------------------------------------
    # Teardown & repair
    # ------------------------------------------------------------------

    def dissolve(self, murmuration_id: str) -> None:
        """Delete a murmuration, then everything that hangs off it.

        The group document goes first so nobody can join mid-teardown. Child
        documents are deleted in batches; whatever a failed batch leaves
        behind is orphaned, ignored by lookups and removed by the
        maintenance sweep.
        """
        with store_errors("disband murmuration"):
            self._groups().document(murmuration_id).delete()

        for collection in (INVITES_COLLECTION, CHALLENGES_COLLECTION, MEMBERS_COLLECTION):
            try:
                docs = (
                    self.db.collection(collection)
                    .where(
                        filter=firestore.FieldFilter(
                            "murmuration_id", "==", murmuration_id
                        )
                    )
                    .stream()
                )
                commit_in_batches(
                    self.db,
                    [doc.reference for doc in docs],
                    lambda batch, ref: batch.delete(ref),
                )
            except Exception as e:
                logger.error(
                    f"Failed to purge {collection} for {murmuration_id}: {e}"
                )

    def reconcile_member_count(self, murmuration_id: str) -> int:
        """Recount membership documents and rewrite the cached counter."""
        murmuration = fetch_murmuration(self.db, murmuration_id)
        actual = len(self.list_members(murmuration_id))
        if murmuration.get("member_count") != actual:
            logger.warning(
                f"Member count for {murmuration_id} was "
                f"{murmuration.get('member_count')}, recounted {actual}"
            )
            with store_errors("reconcile member count"):
                self._groups().document(murmuration_id).update(
                    {"member_count": actual}
                )
        return actual
