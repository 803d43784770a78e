"""Background and maintenance tasks for murmurations."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any

from firebase_admin import firestore

from murmurations.core.constants import INVITES_COLLECTION, MEMBERS_COLLECTION
from murmurations.errors import NotFoundError
from murmurations.user.currency import display_name
from murmurations.utils import send_email

from ..utils import snapshot_to_dict
from .engine import MurmurationService

if TYPE_CHECKING:
    from flask import Flask
    from google.cloud.firestore_v1.client import Client

logger = logging.getLogger(__name__)


def send_invite_email_background(
    app: Flask, invite_id: str, email_data: dict[str, Any]
) -> threading.Thread:
    """Send an invite email in a background thread."""

    def task() -> None:
        with app.app_context():
            db = firestore.client()
            invite_ref = db.collection(INVITES_COLLECTION).document(invite_id)
            try:
                send_email(**email_data)
                invite_ref.update({"email_status": "sent", "email_error": None})
            except Exception as e:
                app.logger.error(f"Background invite email failed for {invite_id}: {e}")
                try:
                    invite_ref.update({"email_status": "failed", "email_error": str(e)})
                except Exception as update_error:
                    app.logger.error(
                        f"Could not record email failure on {invite_id}: {update_error}"
                    )

    thread = threading.Thread(target=task)
    thread.start()
    return thread


def build_invite_notifier(app: Flask):
    """Return a callback that e-mails invited players who have an address."""

    def notify(
        invite: dict[str, Any], murmuration: dict[str, Any], target: dict[str, Any]
    ) -> None:
        email = target.get("email")
        if not email:
            return
        email_data = {
            "to": email,
            "subject": f"You're invited to join [{murmuration.get('tag')}] "
            f"{murmuration.get('name')}",
            "template": "email/murmuration_invite.html",
            "player_name": display_name(target),
            "murmuration": murmuration,
            "invite_id": invite["id"],
        }
        send_invite_email_background(app, invite["id"], email_data)

    return notify


def sweep_expired(db: Client) -> dict[str, int]:
    """Expire stale invites and challenges, and drop lapsed cooldowns."""
    service = MurmurationService(db)
    result = {
        "invites": service.invites.expire_stale(),
        "challenges": service.challenges.expire_stale(),
        "cooldowns": service.cooldowns.sweep(),
        "orphans": _purge_orphan_members(service),
    }
    logger.info(f"Sweep finished: {result}")
    return result


def _purge_orphan_members(service: MurmurationService) -> int:
    """Remove memberships whose murmuration no longer exists.

    The listing only picks candidates. Each candidate's murmuration is
    looked up again right before the delete, since a murmuration founded
    after the listing already holds its leader's membership.
    """
    live = {group["id"] for group in service.directory.list_all()}
    removed = 0
    for doc in service.db.collection(MEMBERS_COLLECTION).stream():
        if not doc.exists:
            continue
        murmuration_id = snapshot_to_dict(doc).get("murmuration_id")
        if murmuration_id in live:
            continue
        if murmuration_id and _murmuration_exists(service, murmuration_id):
            live.add(murmuration_id)
            continue
        service.membership.remove_membership(doc.id)
        removed += 1
    return removed


def _murmuration_exists(service: MurmurationService, murmuration_id: str) -> bool:
    try:
        service.directory.get(murmuration_id)
    except NotFoundError:
        return False
    return True


def reconcile_all(db: Client) -> dict[str, int]:
    """Recount members for every murmuration. Returns the corrected counts."""
    service = MurmurationService(db)
    corrected = {}
    for murmuration in service.directory.list_all():
        before = murmuration.get("member_count")
        after = service.membership.reconcile_member_count(murmuration["id"])
        if before != after:
            corrected[murmuration["id"]] = after
    return corrected
