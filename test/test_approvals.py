from datetime import datetime, timezone
from unittest import TestCase
from unittest.mock import ANY, create_autospec

from freezegun import freeze_time

from stagegate.approvals import (
    BulkDecisionResult,
    bulk_approve,
    bulk_reject,
    decide,
)
from stagegate.backend.client import BackendError, Client
from stagegate.backend.models import ApprovalStatus


class TestDecide(TestCase):
    def setUp(self) -> None:
        self.client = create_autospec(Client)

    @freeze_time("2024-03-01 09:30:00")
    def test_decide(self) -> None:
        self.client.decide_approval.return_value = True
        decided = decide(
            self.client, "a", ApprovalStatus.REJECTED, reason="Too costly"
        )
        self.assertTrue(decided)
        self.client.decide_approval.assert_called_once_with(
            "a",
            ApprovalStatus.REJECTED,
            decided_at=datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
            reason="Too costly",
            comments=None,
        )

    def test_already_decided(self) -> None:
        self.client.decide_approval.return_value = False
        self.assertFalse(decide(self.client, "a", ApprovalStatus.APPROVED))

    def test_not_a_decision(self) -> None:
        for status in (ApprovalStatus.PENDING, ApprovalStatus.CANCELLED):
            with self.subTest(status=status):
                with self.assertRaises(ValueError):
                    decide(self.client, "a", status)
        self.client.decide_approval.assert_not_called()


class TestBulkDecisions(TestCase):
    def setUp(self) -> None:
        self.client = create_autospec(Client)

    def test_bulk_approve(self) -> None:
        self.client.decide_approval.return_value = True
        result = bulk_approve(self.client, ["1", "2", "3"], comments="Batch")
        self.assertEqual(
            result, BulkDecisionResult(requested=3, succeeded=["1", "2", "3"])
        )
        self.assertTrue(result.all_succeeded)
        self.assertFalse(result.is_partial)
        self.client.decide_approval.assert_any_call(
            "2",
            ApprovalStatus.APPROVED,
            decided_at=ANY,
            reason=None,
            comments="Batch",
        )

    def test_partial_success(self) -> None:
        def decide_approval(approval_id, decision, **kwargs):  # type: ignore
            if approval_id == "2":
                raise BackendError("unavailable")
            return approval_id != "3"

        self.client.decide_approval.side_effect = decide_approval
        result = bulk_reject(self.client, ["1", "2", "3", "4"], reason="Obsolete")
        self.assertEqual(result.requested, 4)
        self.assertListEqual(result.succeeded, ["1", "4"])
        self.assertListEqual(result.failed, ["2", "3"])
        self.assertTrue(result.is_partial)
        self.assertFalse(result.all_succeeded)
        self.client.decide_approval.assert_any_call(
            "1",
            ApprovalStatus.REJECTED,
            decided_at=ANY,
            reason="Obsolete",
            comments=None,
        )

    def test_everything_fails(self) -> None:
        self.client.decide_approval.side_effect = BackendError()
        result = bulk_approve(self.client, ["1", "2"])
        self.assertListEqual(result.failed, ["1", "2"])
        self.assertFalse(result.is_partial)
        self.assertFalse(result.all_succeeded)

    def test_nothing_requested(self) -> None:
        result = bulk_approve(self.client, [])
        self.assertEqual(result, BulkDecisionResult(requested=0))
        self.assertTrue(result.all_succeeded)
