"""Routes for the murmuration blueprint."""

from firebase_admin import firestore
from flask import current_app, g, jsonify, request

from murmurations.auth.decorators import login_required
from murmurations.core.constants import BROWSE_PAGE_SIZE, LEADERBOARD_PAGE_SIZE
from murmurations.core.types import APIResponse
from murmurations.errors import AuthorizationError, ValidationError

from . import bp
from .forms import (
    ChallengeProgressForm,
    InvitePlayerForm,
    MurmurationForm,
    RoleForm,
    UpdateMurmurationForm,
)
from .services import MurmurationService
from .services.tasks import build_invite_notifier


def _service():
    """Build the engine for this request."""
    return MurmurationService(
        firestore.client(),
        notifier=build_invite_notifier(current_app._get_current_object()),
    )


def _payload():
    return request.get_json(silent=True) or request.form


def _validate(form):
    """Raise ValidationError with the first problem the form reports."""
    if form.validate_on_submit():
        return
    for field, errors in form.errors.items():
        raise ValidationError(f"{field}: {errors[0]}")
    raise ValidationError("Invalid submission.")


def _ok(data=None, message=None, status=200):
    body: APIResponse = {"status": "success", "data": data}
    if message:
        body["message"] = message
    return jsonify(body), status


# ----------------------------------------------------------------------
# Directory
# ----------------------------------------------------------------------


@bp.route("/create", methods=["POST"])
@login_required
def create_murmuration():
    """Found a new murmuration led by the current player."""
    form = MurmurationForm()
    _validate(form)
    emblem = _payload().get("emblem_config")
    murmuration = _service().directory.create(
        g.user["uid"],
        name=form.name.data,
        tag=form.tag.data,
        privacy=form.privacy.data,
        description=form.description.data,
        emblem_config=emblem if isinstance(emblem, dict) else None,
    )
    current_app.logger.info(
        f"Murmuration {murmuration['id']} created by {g.user['uid']}"
    )
    return _ok(murmuration, "Murmuration created.", 201)


@bp.route("/", methods=["GET"])
@login_required
def browse_murmurations():
    """Search murmurations, largest first."""
    rows, total = _service().directory.browse(
        name_search=request.args.get("search"),
        min_formation=request.args.get("min_formation", type=int),
        max_formation=request.args.get("max_formation", type=int),
        privacy=request.args.get("privacy") or None,
        limit=request.args.get("limit", BROWSE_PAGE_SIZE, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return _ok({"murmurations": rows, "total": total})


@bp.route("/mine", methods=["GET"])
@login_required
def my_murmuration():
    """The current player's murmuration, role, cooldown and invites."""
    return _ok(_service().overview(g.user["uid"]))


@bp.route("/leaderboard", methods=["GET"])
@login_required
def leaderboard():
    """Murmurations ranked by season coins."""
    rows = _service().directory.leaderboard(
        limit=request.args.get("limit", LEADERBOARD_PAGE_SIZE, type=int),
        offset=request.args.get("offset", 0, type=int),
    )
    return _ok(rows)


@bp.route("/<string:murmuration_id>", methods=["GET"])
@login_required
def view_murmuration(murmuration_id):
    return _ok(_service().directory.get(murmuration_id))


@bp.route("/<string:murmuration_id>/update", methods=["POST"])
@login_required
def update_murmuration(murmuration_id):
    """Change settings. Only fields present in the request are touched."""
    form = UpdateMurmurationForm()
    _validate(form)
    payload = _payload()
    changes = {
        name: form[name].data
        for name in ("name", "tag", "privacy", "description")
        if name in payload
    }
    if isinstance(payload.get("emblem_config"), dict):
        changes["emblem_config"] = payload["emblem_config"]
    murmuration = _service().directory.update(g.user["uid"], murmuration_id, **changes)
    return _ok(murmuration, "Murmuration updated.")


@bp.route("/<string:murmuration_id>/disband", methods=["POST"])
@login_required
def disband_murmuration(murmuration_id):
    _service().directory.disband(g.user["uid"], murmuration_id)
    current_app.logger.info(f"Murmuration {murmuration_id} disbanded by {g.user['uid']}")
    return _ok(message="Murmuration disbanded.")


@bp.route("/<string:murmuration_id>/members", methods=["GET"])
@login_required
def view_members(murmuration_id):
    return _ok(_service().directory.members(murmuration_id))


@bp.route("/<string:murmuration_id>/roster", methods=["GET"])
@login_required
def team_roster(murmuration_id):
    """Identity and member ids for matchmaking."""
    return _ok(_service().directory.team_roster(murmuration_id))


# ----------------------------------------------------------------------
# Membership
# ----------------------------------------------------------------------


@bp.route("/<string:murmuration_id>/join", methods=["POST"])
@login_required
def join_murmuration(murmuration_id):
    member = _service().membership.join(g.user["uid"], murmuration_id)
    return _ok(member, "Welcome to the murmuration!")


@bp.route("/leave", methods=["POST"])
@login_required
def leave_murmuration():
    """Leave the current murmuration."""
    result = _service().membership.leave(g.user["uid"])
    return _ok(
        {
            "murmuration_id": result.murmuration_id,
            "successor_id": result.successor_id,
            "disbanded": result.disbanded,
        },
        "You left the murmuration.",
    )


@bp.route("/<string:murmuration_id>/kick/<string:user_id>", methods=["POST"])
@login_required
def kick_member(murmuration_id, user_id):
    _service().membership.kick(g.user["uid"], user_id, murmuration_id)
    return _ok(message="Member removed.")


@bp.route("/<string:murmuration_id>/role/<string:user_id>", methods=["POST"])
@login_required
def set_member_role(murmuration_id, user_id):
    """Promote or demote a member between deputy and recruit."""
    form = RoleForm()
    _validate(form)
    member = _service().membership.set_role(
        g.user["uid"], user_id, murmuration_id, form.role.data
    )
    return _ok(member, "Role updated.")


@bp.route("/<string:murmuration_id>/transfer/<string:user_id>", methods=["POST"])
@login_required
def transfer_leadership(murmuration_id, user_id):
    _service().membership.transfer_leadership(g.user["uid"], user_id, murmuration_id)
    current_app.logger.info(
        f"Leadership of {murmuration_id} moved from {g.user['uid']} to {user_id}"
    )
    return _ok(message="Leadership transferred.")


# ----------------------------------------------------------------------
# Invitations
# ----------------------------------------------------------------------


@bp.route("/<string:murmuration_id>/invite", methods=["POST"])
@login_required
def invite_player(murmuration_id):
    form = InvitePlayerForm()
    _validate(form)
    invite = _service().invites.invite(g.user["uid"], form.user_id.data, murmuration_id)
    return _ok(invite, "Invite sent.", 201)


@bp.route("/invites", methods=["GET"])
@login_required
def pending_invites():
    return _ok(_service().invites.pending_for_user(g.user["uid"]))


@bp.route("/invites/<string:invite_id>/accept", methods=["POST"])
@login_required
def accept_invite(invite_id):
    member = _service().invites.accept(invite_id, g.user["uid"])
    return _ok(member, "Invite accepted.")


@bp.route("/invites/<string:invite_id>/decline", methods=["POST"])
@login_required
def decline_invite(invite_id):
    _service().invites.decline(invite_id, g.user["uid"])
    return _ok(message="Invite declined.")


# ----------------------------------------------------------------------
# Challenges
# ----------------------------------------------------------------------


@bp.route("/<string:murmuration_id>/challenges", methods=["GET"])
@login_required
def view_challenges(murmuration_id):
    return _ok(_service().challenges.active_for_group(murmuration_id))


@bp.route("/challenges/<string:challenge_id>/progress", methods=["POST"])
@login_required
def challenge_progress(challenge_id):
    """Report progress on a challenge for the current player's murmuration."""
    form = ChallengeProgressForm()
    _validate(form)
    service = _service()
    challenge = service.challenges.get(challenge_id)
    service.membership.require_membership(
        g.user["uid"],
        challenge.get("murmuration_id"),
        AuthorizationError,
        "You are not a member of this murmuration.",
    )
    updated = service.challenges.update_progress(
        challenge_id, g.user["uid"], form.amount.data
    )
    return _ok(updated)
