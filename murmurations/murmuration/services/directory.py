"""Creation, lookup, settings and browsing of murmurations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from firebase_admin import firestore

from murmurations.core.constants import (
    BROWSE_PAGE_SIZE,
    CREATE_COST,
    DEFAULT_EMBLEM,
    DESCRIPTION_MAX,
    LEADERBOARD_PAGE_SIZE,
    MIN_LEVEL,
    MURMURATIONS_COLLECTION,
    NAME_MAX,
    NAME_MIN,
    PRIVACY_MODES,
    TAG_MAX,
    TAG_MIN,
)
from murmurations.errors import (
    AuthorizationError,
    ConflictError,
    InsufficientFunds,
    NotFoundError,
    ValidationError,
)
from murmurations.user.currency import display_name

from ..utils import (
    compensating,
    fetch_murmuration,
    snapshot_to_dict,
    store_errors,
    utc_now,
)
from .roles import Role, can_administer

if TYPE_CHECKING:
    from google.cloud.firestore_v1.client import Client

    from murmurations.user.currency import CurrencyService

    from ..models import Member, Murmuration, TeamRoster
    from .cooldowns import CooldownGuard
    from .membership import MembershipManager

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "tag", "description", "privacy", "emblem_config")

LEADERBOARD_FIELDS = (
    "id",
    "name",
    "tag",
    "emblem_config",
    "formation_level",
    "member_count",
    "season_coins_banked",
    "mvm_wins",
)


def validate_name(name: Any) -> str:
    name = (name or "").strip()
    if not NAME_MIN <= len(name) <= NAME_MAX:
        raise ValidationError(
            f"Name must be between {NAME_MIN} and {NAME_MAX} characters."
        )
    return name


def validate_tag(tag: Any) -> str:
    tag = (tag or "").strip()
    if not TAG_MIN <= len(tag) <= TAG_MAX:
        raise ValidationError(f"Tag must be between {TAG_MIN} and {TAG_MAX} characters.")
    return tag.upper()


def validate_description(description: Any) -> str | None:
    if not description:
        return None
    if len(description) > DESCRIPTION_MAX:
        raise ValidationError(
            f"Description must be at most {DESCRIPTION_MAX} characters."
        )
    return description


def validate_privacy(privacy: Any) -> str:
    if privacy not in PRIVACY_MODES:
        raise ValidationError(f"Privacy must be one of: {', '.join(PRIVACY_MODES)}.")
    return privacy


class GroupDirectory:
    """Front door for murmurations as a whole."""

    def __init__(
        self,
        db: Client,
        currency: CurrencyService,
        membership: MembershipManager,
        cooldowns: CooldownGuard,
    ) -> None:
        self.db = db
        self.currency = currency
        self.membership = membership
        self.cooldowns = cooldowns

    def _groups(self):
        return self.db.collection(MURMURATIONS_COLLECTION)

    def list_all(self) -> list[Murmuration]:
        with store_errors("fetch murmurations"):
            return [
                snapshot_to_dict(doc) for doc in self._groups().stream() if doc.exists
            ]

    def _ensure_unique(
        self, name: str | None, tag: str | None, exclude_id: str | None = None
    ) -> None:
        """Names and tags are unique across murmurations, ignoring case."""
        checks = []
        if name is not None:
            checks.append(("name_lower", name.lower(), "name"))
        if tag is not None:
            checks.append(("tag", tag, "tag"))
        for field, value, label in checks:
            with store_errors("check murmuration uniqueness"):
                docs = (
                    self._groups()
                    .where(filter=firestore.FieldFilter(field, "==", value))
                    .stream()
                )
                taken = any(doc.exists and doc.id != exclude_id for doc in docs)
            if taken:
                raise ConflictError(f"That {label} is already taken.")

    def _require_leader(self, actor_id: str, murmuration: dict[str, Any]) -> None:
        membership = self.membership.require_membership(
            actor_id,
            murmuration["id"],
            AuthorizationError,
            "You are not a member of this murmuration.",
        )
        if murmuration.get("leader_id") != actor_id or not can_administer(
            Role.parse(membership.get("role"))
        ):
            raise AuthorizationError("Only the leader can manage this murmuration.")

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(
        self,
        requester_id: str,
        name: str,
        tag: str,
        privacy: str,
        description: str | None = None,
        emblem_config: dict[str, Any] | None = None,
    ) -> Murmuration:
        """Found a murmuration with the requester as its leader.

        Costs CREATE_COST coins. The debit, the group document and the
        leader's membership are written in that order, and a failure part
        way through undoes whatever already landed.
        """
        name = validate_name(name)
        tag = validate_tag(tag)
        description = validate_description(description)
        privacy = validate_privacy(privacy)
        self._ensure_unique(name, tag)

        profile = self.currency.get_profile(requester_id)
        if profile.get("level", 0) < MIN_LEVEL:
            raise ValidationError(
                f"You must be at least level {MIN_LEVEL} to create a murmuration."
            )
        if profile.get("coins", 0) < CREATE_COST:
            raise InsufficientFunds(
                f"Creating a murmuration costs {CREATE_COST} coins. "
                f"You have {profile.get('coins', 0)}."
            )
        if self.membership.get_membership(requester_id):
            raise ConflictError(
                "You are already in a murmuration. Leave your current one first."
            )
        if self.cooldowns.is_active(requester_id):
            raise ConflictError(
                "You are on a join cooldown. "
                "Please wait before creating or joining a murmuration."
            )

        now = utc_now()
        data = {
            "name": name,
            "name_lower": name.lower(),
            "tag": tag,
            "description": description,
            "privacy": privacy,
            "leader_id": requester_id,
            "formation_level": 1,
            "formation_xp": 0,
            "member_count": 1,
            "total_coins_banked": 0,
            "season_coins_banked": 0,
            "mvm_wins": 0,
            "mvm_losses": 0,
            "emblem_config": dict(emblem_config or DEFAULT_EMBLEM),
            "created_at": now,
        }

        self.currency.debit(requester_id, CREATE_COST)
        with compensating("create murmuration") as undo:
            undo.push(
                "refund creation cost",
                lambda: self.currency.credit(requester_id, CREATE_COST),
            )
            group_ref = self._groups().document()
            group_ref.set(data)
            undo.push("delete murmuration", group_ref.delete)
            self.membership.insert_membership(
                group_ref.id, requester_id, Role.LEADER, joined_at=now
            )

        logger.info(f"{requester_id} created murmuration {group_ref.id} [{tag}]")
        return {**data, "id": group_ref.id}

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, murmuration_id: str) -> Murmuration:
        return fetch_murmuration(self.db, murmuration_id)

    def get_for_player(self, user_id: str) -> Murmuration | None:
        """The murmuration a player belongs to, or None."""
        membership = self.membership.get_membership(user_id)
        if membership is None:
            return None
        try:
            return fetch_murmuration(self.db, membership["murmuration_id"])
        except NotFoundError:
            logger.warning(
                f"{user_id} pointed at missing murmuration "
                f"{membership['murmuration_id']}; dropping the membership"
            )
            try:
                self.membership.remove_membership(user_id)
            except Exception as e:
                logger.error(f"Could not drop orphan membership of {user_id}: {e}")
            return None

    def browse(
        self,
        name_search: str | None = None,
        min_formation: int | None = None,
        max_formation: int | None = None,
        privacy: str | None = None,
        limit: int = BROWSE_PAGE_SIZE,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int]:
        """Filter murmurations, largest first. Returns (page, total matches)."""
        needle = (name_search or "").strip().lower()
        matches = []
        for group in self.list_all():
            level = group.get("formation_level", 1)
            if needle and needle not in (
                group.get("name_lower") or group.get("name", "").lower()
            ):
                continue
            if min_formation is not None and level < min_formation:
                continue
            if max_formation is not None and level > max_formation:
                continue
            if privacy and group.get("privacy") != privacy:
                continue
            matches.append(group)

        matches.sort(key=lambda g: g.get("member_count", 0), reverse=True)
        offset = max(offset, 0)
        return matches[offset : offset + max(limit, 0)], len(matches)

    def members(self, murmuration_id: str) -> list[Member]:
        """Members, leader first, with usernames and levels attached."""
        fetch_murmuration(self.db, murmuration_id)
        members = self.membership.list_members(murmuration_id)
        profiles = self.currency.get_profiles([m["user_id"] for m in members])
        for member in members:
            profile = profiles.get(member["user_id"], {})
            member["username"] = display_name(profile)
            member["level"] = profile.get("level", 1)
        return members

    def leaderboard(
        self, limit: int = LEADERBOARD_PAGE_SIZE, offset: int = 0
    ) -> list[dict[str, Any]]:
        """Murmurations ranked by coins banked this season."""
        groups = self.list_all()
        groups.sort(key=lambda g: g.get("season_coins_banked", 0), reverse=True)
        offset = max(offset, 0)
        return [
            {field: group.get(field) for field in LEADERBOARD_FIELDS}
            for group in groups[offset : offset + max(limit, 0)]
        ]

    def team_roster(self, murmuration_id: str) -> TeamRoster:
        """Identity, formation and member ids for fielding a team."""
        murmuration = fetch_murmuration(self.db, murmuration_id)
        return {
            "id": murmuration["id"],
            "name": murmuration.get("name"),
            "tag": murmuration.get("tag"),
            "formation_level": murmuration.get("formation_level", 1),
            "member_ids": [
                m["user_id"] for m in self.membership.list_members(murmuration_id)
            ],
        }

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def update(
        self, actor_id: str, murmuration_id: str, **changes: Any
    ) -> Murmuration:
        """Change a murmuration's settings. Leader only."""
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update: {', '.join(sorted(unknown))}.")

        murmuration = fetch_murmuration(self.db, murmuration_id)
        self._require_leader(actor_id, murmuration)

        updates: dict[str, Any] = {}
        if "name" in changes:
            updates["name"] = validate_name(changes["name"])
            updates["name_lower"] = updates["name"].lower()
        if "tag" in changes:
            updates["tag"] = validate_tag(changes["tag"])
        if "description" in changes:
            updates["description"] = validate_description(changes["description"])
        if "privacy" in changes:
            updates["privacy"] = validate_privacy(changes["privacy"])
        if "emblem_config" in changes:
            updates["emblem_config"] = dict(changes["emblem_config"] or DEFAULT_EMBLEM)
        if not updates:
            return murmuration

        self._ensure_unique(
            updates.get("name"), updates.get("tag"), exclude_id=murmuration_id
        )
        with store_errors("update murmuration"):
            self._groups().document(murmuration_id).update(updates)
        return {**murmuration, **updates}

    def disband(self, actor_id: str, murmuration_id: str) -> None:
        """Delete a murmuration and everything attached to it. Leader only."""
        try:
            murmuration = fetch_murmuration(self.db, murmuration_id)
        except NotFoundError:
            membership = self.membership.get_membership(actor_id)
            if membership and membership.get("murmuration_id") == murmuration_id:
                raise ConflictError("This murmuration has already been disbanded.")
            raise

        self._require_leader(actor_id, murmuration)
        self.membership.dissolve(murmuration_id)
        logger.info(f"{actor_id} disbanded murmuration {murmuration_id}")
