"""Tests for server/reputation.py -- reward tokens and track records."""

import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
sys.path.insert(0, os.path.dirname(__file__))

import unittest
from protocol import UnAuthorisedCall
from server.events import EventLog
from server.models import RewardStats
from server.reputation import RewardRegistry
from conftest import ESCROW, WORKER, STRANGER


class TestRewardStatsDefaults(unittest.TestCase):
    def test_defaults(self):
        s = RewardStats()
        self.assertEqual(s.successful_audits, 0)
        self.assertEqual(s.unsuccessful_audits, 0)


class TestMint(unittest.TestCase):
    def setUp(self):
        self.events = EventLog()
        self.registry = RewardRegistry(owner=ESCROW, events=self.events)

    def tearDown(self):
        self.registry.close()

    def mint(self, positive=True, caller=ESCROW, recipient=WORKER, audit_id=1):
        return self.registry.mint(recipient, audit_id, completion_time=3600, extensions=0,
                                  amount=98, reference="ipfs://report", positive=positive,
                                  caller=caller)

    def test_reward_ids_start_at_zero(self):
        self.assertEqual(self.registry.current_reward_id(), 0)
        self.assertEqual(self.mint(), 0)
        self.assertEqual(self.mint(audit_id=2), 1)
        self.assertEqual(self.registry.current_reward_id(), 2)

    def test_counters(self):
        self.mint()
        self.mint()
        self.mint(positive=False)
        record = self.registry.show_auditors_record(WORKER)
        self.assertEqual(record.successful_audits, 2)
        self.assertEqual(record.unsuccessful_audits, 1)

    def test_unknown_account(self):
        self.assertIsNone(self.registry.show_auditors_record(STRANGER))
        self.assertIsNone(self.registry.show_reward_details(0))

    def test_details(self):
        reward_id = self.mint(audit_id=7)
        info = self.registry.show_reward_details(reward_id)
        self.assertEqual(info.recipient, WORKER)
        self.assertEqual(info.audit_id, 7)
        self.assertEqual(info.completion_time, 3600)
        self.assertEqual(info.amount, 98)
        self.assertTrue(info.positive)

    def test_owner_only(self):
        with self.assertRaises(UnAuthorisedCall):
            self.mint(caller=STRANGER)
        self.assertEqual(self.registry.current_reward_id(), 0)
        self.assertIsNone(self.registry.show_auditors_record(WORKER))

    def test_event_published(self):
        self.mint(positive=False)
        events = self.events.of_type("reward_minted")
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["payload"], {
            "reward_id": 0, "recipient": WORKER, "audit_id": 1, "positive": False,
        })


class TestPersistence(unittest.TestCase):
    def test_reopen(self):
        import tempfile
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "reputation.db")
            registry = RewardRegistry(owner=ESCROW, db_path=path)
            registry.mint(WORKER, 1, 10, 1, 50, "r", True, caller=ESCROW)
            registry.close()

            reopened = RewardRegistry(owner=ESCROW, db_path=path)
            self.assertEqual(reopened.show_auditors_record(WORKER).successful_audits, 1)
            self.assertEqual(reopened.current_reward_id(), 1)
            self.assertEqual(reopened.show_reward_details(0).extensions, 1)
            reopened.close()


if __name__ == "__main__":
    unittest.main()
