"""Tests for server/store.py and server/models.py -- storage, transactions, schema versions."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import unittest
from protocol import AuditStatus, WrongState
from server.models import (
    SCHEMA_VERSION, ArbiterSeat, AuditRecord, ExtensionRequest, RewardInfo, RewardStats, VotePoll,
)
from server.store import AuditStore, PollStore


def _audit(audit_id=1, **kw):
    fields = dict(id=audit_id, patron="acct_p", worker="acct_p", arbiter_provider="coordinator",
                  value=100, deadline=3600, start_time=1000)
    fields.update(kw)
    return AuditRecord(**fields)


def _poll(poll_id=1):
    return VotePoll(id=poll_id, audit_id=4, arbiters=(ArbiterSeat("a"), ArbiterSeat("b")),
                    admin_override_time=5000)


class TestAuditStore(unittest.TestCase):
    def setUp(self):
        self.store = AuditStore()

    def tearDown(self):
        self.store.close()

    def test_ids_start_at_one(self):
        self.assertEqual(self.store.current_audit_id(), 0)
        with self.store.transaction():
            self.assertEqual(self.store.next_audit_id(), 1)
            self.assertEqual(self.store.next_audit_id(), 2)
        self.assertEqual(self.store.current_audit_id(), 2)

    def test_put_and_get(self):
        audit = _audit(status=AuditStatus.SUBMITTED)
        with self.store.transaction():
            self.store.put_audit(audit)
        self.assertEqual(self.store.get_audit(1), audit)
        self.assertIsNone(self.store.get_audit(2))

    def test_put_overwrites(self):
        with self.store.transaction():
            self.store.put_audit(_audit())
            self.store.put_audit(_audit(value=40, status=AuditStatus.ASSIGNED))
        self.assertEqual(self.store.get_audit(1).value, 40)
        self.assertEqual(self.store.list_by_status("created"), [])
        self.assertEqual(len(self.store.list_by_status("assigned")), 1)

    def test_rollback_discards_everything(self):
        with self.assertRaises(RuntimeError):
            with self.store.transaction():
                self.store.next_audit_id()
                self.store.put_audit(_audit())
                self.store.put_submission(1, "ref")
                raise RuntimeError("boom")
        self.assertEqual(self.store.current_audit_id(), 0)
        self.assertIsNone(self.store.get_audit(1))
        self.assertIsNone(self.store.get_submission(1))

    def test_extension_request(self):
        with self.store.transaction():
            self.store.put_extension_request(1, ExtensionRequest(10, 9999))
        self.assertEqual(self.store.get_extension_request(1), ExtensionRequest(10, 9999, False))
        self.assertIsNone(self.store.get_extension_request(2))

    def test_submission(self):
        with self.store.transaction():
            self.store.put_submission(1, "ipfs://a")
            self.store.put_submission(1, "ipfs://b")
        self.assertEqual(self.store.get_submission(1), "ipfs://b")


class TestAuditTransitions(unittest.TestCase):
    def test_allowed_transition(self):
        audit = _audit().evolve(status=AuditStatus.ASSIGNED)
        self.assertEqual(audit.status, AuditStatus.ASSIGNED)

    def test_terminal_status_is_final(self):
        audit = _audit(status=AuditStatus.COMPLETED)
        with self.assertRaises(WrongState):
            audit.evolve(status=AuditStatus.ASSIGNED)

    def test_created_cannot_skip_to_submitted(self):
        with self.assertRaises(WrongState):
            _audit().evolve(status=AuditStatus.SUBMITTED)

    def test_same_status_allowed(self):
        audit = _audit(status=AuditStatus.COMPLETED).evolve(value=0, status=AuditStatus.COMPLETED)
        self.assertEqual(audit.value, 0)


class TestPollStore(unittest.TestCase):
    def setUp(self):
        self.store = PollStore()

    def tearDown(self):
        self.store.close()

    def test_put_and_get(self):
        poll = _poll().with_vote(1, extension=7, haircut=5)
        with self.store.transaction():
            self.store.put_poll(poll)
        loaded = self.store.get_poll(1)
        self.assertEqual(loaded, poll)
        self.assertEqual(loaded.voters(), ["b"])

    def test_polls_for_audit(self):
        with self.store.transaction():
            self.store.put_poll(_poll(1))
            self.store.put_poll(_poll(2))
        self.assertEqual([p.id for p in self.store.polls_for_audit(4)], [1, 2])
        self.assertEqual(self.store.polls_for_audit(5), [])

    def test_settings(self):
        self.assertEqual(self.store.get_setting("arbiters_share", 5), 5)
        with self.store.transaction():
            self.store.put_setting("arbiters_share", 8)
        self.assertEqual(self.store.get_setting("arbiters_share", 5), 8)


class TestVotePoll(unittest.TestCase):
    def test_with_vote_does_not_mutate(self):
        poll = _poll()
        voted = poll.with_vote(0, extension=10, haircut=3)
        self.assertEqual(poll.votes_cast, 0)
        self.assertFalse(poll.arbiters[0].has_voted)
        self.assertEqual(voted.votes_cast, 1)
        self.assertEqual(voted.extension_sum, 10)
        self.assertEqual(voted.haircut_sum, 3)

    def test_seat_index(self):
        poll = _poll()
        self.assertEqual(poll.seat_index("b"), 1)
        self.assertIsNone(poll.seat_index("z"))

    def test_is_final_vote(self):
        poll = _poll()
        self.assertFalse(poll.is_final_vote())
        self.assertTrue(poll.with_vote(0).is_final_vote())


class TestSchemaVersion(unittest.TestCase):
    def test_dicts_carry_version(self):
        self.assertEqual(_audit().to_dict()["v"], SCHEMA_VERSION)
        self.assertEqual(_poll().to_dict()["v"], SCHEMA_VERSION)
        self.assertEqual(RewardStats().to_dict()["v"], SCHEMA_VERSION)

    def test_unknown_version_rejected(self):
        d = _audit().to_dict()
        d["v"] = SCHEMA_VERSION + 1
        with self.assertRaises(ValueError):
            AuditRecord.from_dict(d)

    def test_missing_version_rejected(self):
        d = ExtensionRequest(5, 100).to_dict()
        del d["v"]
        with self.assertRaises(ValueError):
            ExtensionRequest.from_dict(d)

    def test_reward_info(self):
        info = RewardInfo("acct_w", 3, 60, 1, 98, "ref", positive=False)
        self.assertEqual(RewardInfo.from_dict(info.to_dict()), info)


if __name__ == "__main__":
    unittest.main()
