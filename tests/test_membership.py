"""Tests for joining, leaving, kicking and succession."""

from __future__ import annotations

import unittest
from datetime import timedelta
from unittest.mock import patch

from mockfirestore import MockFirestore
from mockfirestore.document import DocumentReference

from murmurations.core.constants import (
    CHALLENGES_COLLECTION,
    COOLDOWNS_COLLECTION,
    INVITES_COLLECTION,
    MEMBERS_COLLECTION,
    MURMURATIONS_COLLECTION,
)
from murmurations.errors import (
    AuthorizationError,
    CapacityExceeded,
    ConflictError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from murmurations.murmuration.services import MurmurationService
from murmurations.murmuration.services.membership import MembershipManager
from murmurations.murmuration.services.roles import Role
from murmurations.murmuration.utils import utc_now
from tests.conftest import (
    MockWriteBatch,
    patch_mockfirestore,
    seed_member,
    seed_murmuration,
    use_mock_transactions,
)


class MembershipTestCase(unittest.TestCase):
    def setUp(self) -> None:
        patch_mockfirestore()
        use_mock_transactions(self)
        self.db = MockFirestore()
        self.service = MurmurationService(self.db)
        self.membership = self.service.membership

    def _group(self, mid="m1"):
        return self.db.collection(MURMURATIONS_COLLECTION).document(mid).get()

    def _member(self, uid):
        return self.db.collection(MEMBERS_COLLECTION).document(uid).get()

    def _seed_trio(self):
        """Leader, an older deputy and a newer recruit."""
        seed_murmuration(self.db, "m1", "lead", member_count=3)
        seed_member(self.db, "m1", "lead", "leader", joined_hours=0)
        seed_member(self.db, "m1", "dep", "deputy", joined_hours=1)
        seed_member(self.db, "m1", "rec", "recruit", joined_hours=2)

    def _leaders(self, mid="m1"):
        return [
            m["user_id"]
            for m in self.membership.list_members(mid)
            if m["role"] == "leader"
        ]

    # ------------------------------------------------------------------
    # join
    # ------------------------------------------------------------------

    def test_join_open(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_member(self.db, "m1", "lead", "leader")

        member = self.membership.join("u2", "m1")

        self.assertEqual(member["role"], "recruit")
        self.assertEqual(self._group().to_dict()["member_count"], 2)
        self.assertEqual(self._member("u2").to_dict()["murmuration_id"], "m1")

    def test_join_requires_open_privacy(self) -> None:
        seed_murmuration(self.db, "m1", "lead", privacy="invite_only")
        with self.assertRaises(AuthorizationError):
            self.membership.join("u2", "m1")
        self.assertFalse(self._member("u2").exists)

    def test_join_missing_group(self) -> None:
        with self.assertRaises(NotFoundError):
            self.membership.join("u2", "nope")

    def test_join_already_member(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_murmuration(self.db, "m2", "other")
        seed_member(self.db, "m2", "u2", "recruit")
        with self.assertRaises(ConflictError):
            self.membership.join("u2", "m1")

    def test_join_blocked_by_cooldown(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        self.service.cooldowns.start("u2")
        with self.assertRaises(ConflictError):
            self.membership.join("u2", "m1")

    def test_join_allowed_once_cooldown_lapses(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_member(self.db, "m1", "lead", "leader")
        self.service.cooldowns.start("u2")
        with self.assertRaises(ConflictError):
            self.membership.join("u2", "m1")

        self.db.collection(COOLDOWNS_COLLECTION).document("u2").update(
            {"expires_at": utc_now() - timedelta(minutes=1)}
        )
        member = self.membership.join("u2", "m1")

        self.assertEqual(member["role"], "recruit")
        self.assertEqual(self._member("u2").to_dict()["murmuration_id"], "m1")
        self.assertFalse(
            self.db.collection(COOLDOWNS_COLLECTION).document("u2").get().exists
        )

    def test_second_membership_rejected_at_write(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_member(self.db, "m1", "lead", "leader")
        seed_murmuration(self.db, "m2", "other")
        seed_member(self.db, "m2", "other", "leader")

        with self.assertRaises(ConflictError):
            self.membership.insert_membership("m2", "lead", Role.LEADER)

        self.assertEqual(self._member("lead").to_dict()["murmuration_id"], "m1")
        self.assertEqual(self._leaders("m1"), ["lead"])
        self.assertEqual(self._leaders("m2"), ["other"])

    def test_join_that_passed_checks_cannot_double_join(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_murmuration(self.db, "m2", "other", member_count=2)
        seed_member(self.db, "m2", "u2", "recruit")

        # A join for another group landed between the check and the write.
        with patch.object(self.membership, "ensure_can_join"):
            with self.assertRaises(ConflictError):
                self.membership.join("u2", "m1")

        self.assertEqual(self._member("u2").to_dict()["murmuration_id"], "m2")
        self.assertEqual(self._group("m1").to_dict()["member_count"], 1)

    def test_join_full(self) -> None:
        seed_murmuration(self.db, "m1", "lead", member_count=50)
        with self.assertRaises(CapacityExceeded):
            self.membership.join("u2", "m1")

    def test_capacity_unlocks_at_formation_seven(self) -> None:
        self.assertEqual(MembershipManager.capacity(6), 50)
        self.assertEqual(MembershipManager.capacity(7), 75)
        seed_murmuration(self.db, "m1", "lead", member_count=50, formation_level=7)
        self.membership.join("u2", "m1")
        self.assertEqual(self._group().to_dict()["member_count"], 51)

    def test_count_increment_failure_is_tolerated(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_member(self.db, "m1", "lead", "leader")
        with patch.object(
            self.membership, "_groups", side_effect=RuntimeError("down")
        ):
            self.membership.join("u2", "m1")
        self.assertTrue(self._member("u2").exists)
        self.assertEqual(self._group().to_dict()["member_count"], 1)
        self.assertEqual(self.membership.reconcile_member_count("m1"), 2)
        self.assertEqual(self._group().to_dict()["member_count"], 2)

    # ------------------------------------------------------------------
    # leave & succession
    # ------------------------------------------------------------------

    def test_leader_leaving_promotes_older_deputy(self) -> None:
        self._seed_trio()

        result = self.membership.leave("lead")

        self.assertEqual(result.successor_id, "dep")
        self.assertFalse(result.disbanded)
        group = self._group().to_dict()
        self.assertEqual(group["leader_id"], "dep")
        self.assertEqual(group["member_count"], 2)
        self.assertEqual(self._leaders(), ["dep"])
        self.assertFalse(self._member("lead").exists)
        self.assertTrue(self.service.cooldowns.is_active("lead"))

    def test_recruit_leaving(self) -> None:
        self._seed_trio()
        result = self.membership.leave("rec")
        self.assertIsNone(result.successor_id)
        self.assertEqual(self._group().to_dict()["leader_id"], "lead")
        self.assertEqual(self._group().to_dict()["member_count"], 2)

    def test_last_member_leaving_dissolves(self) -> None:
        seed_murmuration(self.db, "m1", "lead")
        seed_member(self.db, "m1", "lead", "leader")
        self.db.collection(INVITES_COLLECTION).add(
            {"murmuration_id": "m1", "invited_user_id": "x", "status": "pending"}
        )
        self.db.collection(CHALLENGES_COLLECTION).add(
            {"murmuration_id": "m1", "status": "active"}
        )

        result = self.membership.leave("lead")

        self.assertTrue(result.disbanded)
        self.assertFalse(self._group().exists)
        self.assertEqual(
            [d for d in self.db.collection(INVITES_COLLECTION).stream() if d.exists], []
        )
        self.assertEqual(
            [d for d in self.db.collection(CHALLENGES_COLLECTION).stream() if d.exists],
            [],
        )
        self.assertFalse(
            self.db.collection(COOLDOWNS_COLLECTION).document("lead").get().exists
        )

    def test_dissolve_deletes_children_in_batches(self) -> None:
        self._seed_trio()
        for invited in ("x", "y"):
            self.db.collection(INVITES_COLLECTION).add(
                {"murmuration_id": "m1", "invited_user_id": invited, "status": "pending"}
            )
        self.db.collection(CHALLENGES_COLLECTION).add(
            {"murmuration_id": "m1", "status": "active"}
        )
        seed_murmuration(self.db, "m2", "other")
        seed_member(self.db, "m2", "other", "leader")
        original_commit = MockWriteBatch.commit
        batch_sizes = []

        def counting_commit(batch):
            batch_sizes.append(len(batch._writes))
            original_commit(batch)

        with patch("murmurations.utils.FIRESTORE_BATCH_LIMIT", 2), patch.object(
            MockWriteBatch, "commit", counting_commit
        ):
            self.membership.dissolve("m1")

        self.assertEqual(batch_sizes, [2, 1, 2, 1])
        self.assertFalse(self._group().exists)
        for uid in ("lead", "dep", "rec"):
            self.assertFalse(self._member(uid).exists)
        for collection in (INVITES_COLLECTION, CHALLENGES_COLLECTION):
            self.assertEqual(
                [d for d in self.db.collection(collection).stream() if d.exists], []
            )
        self.assertEqual(self._leaders("m2"), ["other"])

    def test_dissolve_logs_failed_batch_and_carries_on(self) -> None:
        self._seed_trio()
        self.db.collection(INVITES_COLLECTION).add(
            {"murmuration_id": "m1", "invited_user_id": "x", "status": "pending"}
        )

        with patch.object(
            MockWriteBatch, "commit", side_effect=RuntimeError("commit failed")
        ):
            with self.assertLogs(
                "murmurations.murmuration.services.membership", level="ERROR"
            ) as logs:
                self.membership.dissolve("m1")

        self.assertFalse(self._group().exists)
        self.assertEqual(len(logs.records), 2)
        self.assertTrue(self._member("lead").exists)

    def test_leave_when_not_member(self) -> None:
        with self.assertRaises(NotFoundError):
            self.membership.leave("ghost")

    def test_leave_after_group_vanished(self) -> None:
        seed_member(self.db, "gone", "u1", "recruit")
        result = self.membership.leave("u1")
        self.assertTrue(result.disbanded)
        self.assertFalse(self._member("u1").exists)

    def test_failed_leave_rolls_back_succession(self) -> None:
        self._seed_trio()

        # The leaver's own delete is the last forward step; make it fail.
        with patch.object(
            DocumentReference, "delete", side_effect=RuntimeError("write failed")
        ):
            with self.assertRaises(PersistenceError):
                self.membership.leave("lead")

        self.assertEqual(self._group().to_dict()["leader_id"], "lead")
        self.assertEqual(self._member("dep").to_dict()["role"], "deputy")
        self.assertEqual(self._leaders(), ["lead"])

    # ------------------------------------------------------------------
    # kick
    # ------------------------------------------------------------------

    def test_leader_kicks_deputy(self) -> None:
        self._seed_trio()
        self.membership.kick("lead", "dep", "m1")
        self.assertFalse(self._member("dep").exists)
        self.assertEqual(self._group().to_dict()["member_count"], 2)
        self.assertTrue(self.service.cooldowns.is_active("dep"))

    def test_deputy_kicks_recruit_only(self) -> None:
        self._seed_trio()
        with self.assertRaises(AuthorizationError):
            self.membership.kick("dep", "lead", "m1")
        self.membership.kick("dep", "rec", "m1")
        self.assertFalse(self._member("rec").exists)

    def test_recruit_cannot_kick(self) -> None:
        self._seed_trio()
        with self.assertRaises(AuthorizationError):
            self.membership.kick("rec", "dep", "m1")

    def test_no_self_kick(self) -> None:
        self._seed_trio()
        with self.assertRaises(AuthorizationError):
            self.membership.kick("lead", "lead", "m1")

    def test_kick_outsider(self) -> None:
        self._seed_trio()
        with self.assertRaises(NotFoundError):
            self.membership.kick("lead", "stranger", "m1")

    # ------------------------------------------------------------------
    # roles & transfer
    # ------------------------------------------------------------------

    def test_promote_and_demote(self) -> None:
        self._seed_trio()
        self.membership.set_role("lead", "rec", "m1", "deputy")
        self.assertEqual(self._member("rec").to_dict()["role"], "deputy")
        self.membership.set_role("lead", "dep", "m1", "recruit")
        self.assertEqual(self._member("dep").to_dict()["role"], "recruit")

    def test_deputy_cannot_promote(self) -> None:
        self._seed_trio()
        with self.assertRaises(AuthorizationError):
            self.membership.set_role("dep", "rec", "m1", "deputy")

    def test_promote_to_leader_rejected(self) -> None:
        self._seed_trio()
        with self.assertRaises(ValidationError):
            self.membership.set_role("lead", "dep", "m1", "leader")

    def test_transfer_leadership(self) -> None:
        self._seed_trio()
        self.membership.transfer_leadership("lead", "rec", "m1")
        self.assertEqual(self._group().to_dict()["leader_id"], "rec")
        self.assertEqual(self._member("rec").to_dict()["role"], "leader")
        self.assertEqual(self._member("lead").to_dict()["role"], "deputy")
        self.assertEqual(self._leaders(), ["rec"])

    def test_only_leader_transfers(self) -> None:
        self._seed_trio()
        with self.assertRaises(AuthorizationError):
            self.membership.transfer_leadership("dep", "rec", "m1")

    def test_single_leader_after_churn(self) -> None:
        self._seed_trio()
        self.membership.join("u4", "m1")
        self.membership.leave("lead")
        self.membership.kick("dep", "u4", "m1")
        self.membership.leave("dep")
        self.assertEqual(self._leaders(), ["rec"])
        self.assertEqual(self._group().to_dict()["leader_id"], "rec")
        self.assertEqual(self.membership.reconcile_member_count("m1"), 1)


if __name__ == "__main__":
    unittest.main()
