"""Data models for the murmuration blueprint."""

from __future__ import annotations

from typing import Any, TypedDict

from murmurations.core.types import FirestoreDocument


class EmblemConfig(TypedDict, total=False):
    """Opaque display data for a murmuration's emblem."""

    background: str
    icon: str
    border: str
    fgColor: str
    bgColor: str


class Murmuration(FirestoreDocument, total=False):
    """A murmuration document in Firestore."""

    name: str
    name_lower: str
    tag: str
    description: str | None
    privacy: str
    leader_id: str
    formation_level: int
    formation_xp: int
    member_count: int
    total_coins_banked: int
    season_coins_banked: int
    mvm_wins: int
    mvm_losses: int
    emblem_config: EmblemConfig


class Member(TypedDict, total=False):
    """A membership document, keyed by user id."""

    id: str
    murmuration_id: str
    user_id: str
    role: str
    joined_at: Any
    coins_contributed: int
    formation_xp_contributed: int

    # Joined from the user profile for display
    username: str
    level: int


class Invite(FirestoreDocument, total=False):
    """An invitation to join a murmuration."""

    murmuration_id: str
    invited_user_id: str
    invited_by: str
    status: str
    resolved_at: Any

    # Joined for display
    murmuration_name: str
    murmuration_tag: str
    inviter_username: str


class ChallengeObjective(TypedDict, total=False):
    type: str
    target: int
    current: int
    description: str


class ChallengeContribution(TypedDict):
    user_id: str
    amount: int


class ChallengeProgress(TypedDict):
    total: int
    contributions: list[ChallengeContribution]


class Challenge(FirestoreDocument, total=False):
    """A time-boxed group objective."""

    murmuration_id: str
    type: str
    objective: ChallengeObjective
    progress: ChallengeProgress
    status: str
    expires_at: Any


class Cooldown(TypedDict):
    """A join cooldown, keyed by user id."""

    user_id: str
    expires_at: Any


class TeamRoster(TypedDict):
    """What the matchmaking subsystem needs to field a team."""

    id: str
    name: str
    tag: str
    formation_level: int
    member_ids: list[str]
