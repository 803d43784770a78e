"""Global constants for the murmurations engine."""

from datetime import timedelta

# Firestore collections
MURMURATIONS_COLLECTION = "murmurations"
MEMBERS_COLLECTION = "murmuration_members"
INVITES_COLLECTION = "murmuration_invites"
COOLDOWNS_COLLECTION = "murmuration_cooldowns"
CHALLENGES_COLLECTION = "murmuration_challenges"
USERS_COLLECTION = "users"

# Writes per Firestore batch
FIRESTORE_BATCH_LIMIT = 400

# Creation
CREATE_COST = 500
MIN_LEVEL = 5

# Member limits
MAX_MEMBERS = 50
MAX_MEMBERS_UNLOCKED = 75
CAPACITY_UNLOCK_LEVEL = 7

# Name, tag & description
NAME_MIN = 3
NAME_MAX = 24
TAG_MIN = 2
TAG_MAX = 4
DESCRIPTION_MAX = 200

# Cooldowns & timers
JOIN_COOLDOWN = timedelta(hours=24)
INVITE_TTL = timedelta(days=7)

# Formation XP thresholds, index 0 is Formation 1
FORMATION_XP_THRESHOLDS = (
    0,
    2_000,
    5_000,
    10_000,
    20_000,
    35_000,
    55_000,
    80_000,
    120_000,
    200_000,
)
MAX_FORMATION_LEVEL = len(FORMATION_XP_THRESHOLDS)

# Privacy modes
PRIVACY_OPEN = "open"
PRIVACY_INVITE_ONLY = "invite_only"
PRIVACY_CLOSED = "closed"
PRIVACY_MODES = (PRIVACY_OPEN, PRIVACY_INVITE_ONLY, PRIVACY_CLOSED)

# Invite statuses
INVITE_PENDING = "pending"
INVITE_ACCEPTED = "accepted"
INVITE_DECLINED = "declined"
INVITE_EXPIRED = "expired"

# Challenges
CHALLENGE_TYPES = ("daily", "weekly", "milestone")
OBJECTIVE_TYPES = (
    "bank_coins",
    "hit_npcs",
    "fly_distance",
    "mvm_wins",
    "member_combos",
    "reach_members",
)
CHALLENGE_ACTIVE = "active"
CHALLENGE_COMPLETED = "completed"
CHALLENGE_EXPIRED = "expired"

DEFAULT_EMBLEM = {
    "background": "circle",
    "icon": "bird_silhouette",
    "border": "thin",
    "fgColor": "#ffffff",
    "bgColor": "#4488ff",
}

# Pagination
BROWSE_PAGE_SIZE = 20
LEADERBOARD_PAGE_SIZE = 50
