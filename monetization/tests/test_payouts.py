"""
Unit Tests for the Payout Workflow

Tests cover:
1. Payout request validation and balance checks
2. Approval writes a negative payout entry
3. Rejection leaves the balance untouched
4. One active payout per creator, including concurrent requests
5. State machine transitions and idempotent re-submission
6. Operator adjustments
"""

import threading
import uuid

import pytest

from monetization import notifications
from monetization.errors import (
    BelowMinimumError,
    DuplicateRequestError,
    InsufficientBalanceError,
    InvalidStateError,
    NotApprovedError,
    NotFoundError,
    ValidationError,
)
from monetization.models import LedgerEntryType, PayoutAction, PayoutStatus
from monetization.payouts import assert_transition
from monetization.service import MonetizationService
from monetization.storage import Database

OPERATOR = "admin@example.com"


def request(service, creator_id, amount_cents, method="bank_transfer"):
    return service.payouts.request_payout(
        creator_id, amount_cents, method, {"account": "****1234"}, creator_status="approved"
    )


class TestRequestPayout:
    """Tests for request_payout."""

    def test_no_earnings_is_insufficient(self, service, creator_id):
        """$0 earned, $10 requested."""
        with pytest.raises(InsufficientBalanceError) as exc:
            request(service, creator_id, 1000)

        assert exc.value.available_cents == 0
        assert service.payouts.list_payouts(creator_id=creator_id) == []

    def test_request_reserves_balance(self, service, notifier, creator_id, earn):
        earn(creator_id, 2500)

        payout = request(service, creator_id, 1000)

        assert payout.status == PayoutStatus.PENDING
        assert payout.payout_details == {"account": "****1234"}
        # Verify no ledger entry yet, but the amount is held back
        earnings = service.get_creator_earnings(creator_id)
        assert earnings.paid_out_cents == 0
        assert earnings.reserved_cents == 1000
        assert earnings.pending_earnings_cents == 1500
        assert notifications.PAYOUT_REQUESTED in notifier.events()

    def test_below_minimum(self, service, creator_id, earn):
        earn(creator_id, 2500)

        with pytest.raises(BelowMinimumError):
            request(service, creator_id, 999)

    def test_unapproved_creator(self, service, creator_id, earn):
        earn(creator_id, 2500)

        with pytest.raises(NotApprovedError):
            service.payouts.request_payout(creator_id, 1000, "paxum", creator_status="pending")

    def test_verification_registry_approves_creator(self, service, creator_id, earn):
        earn(creator_id, 2500)
        service.verification.apply_event("inq_1", creator_id, "completed", "evt_1")

        payout = service.payouts.request_payout(creator_id, 1000, "paxum")

        assert payout.status == PayoutStatus.PENDING

    @pytest.mark.parametrize("method", ["cash", "", "BANK_TRANSFER"])
    def test_invalid_method(self, service, creator_id, method):
        with pytest.raises(ValidationError):
            request(service, creator_id, 1000, method=method)

    @pytest.mark.parametrize("amount", [0, -500, 10.0])
    def test_invalid_amount(self, service, creator_id, amount):
        with pytest.raises(ValidationError):
            request(service, creator_id, amount)

    def test_second_active_request_is_duplicate(self, service, creator_id, earn):
        earn(creator_id, 5000)
        request(service, creator_id, 1000)

        with pytest.raises(DuplicateRequestError):
            request(service, creator_id, 1000)
        assert len(service.payouts.list_payouts(creator_id=creator_id)) == 1

    def test_constraint_catches_race_past_the_check(self, service, creator_id, earn, monkeypatch):
        """The unique index still rejects a second active payout if the read check misses it."""
        earn(creator_id, 5000)
        request(service, creator_id, 1000)
        monkeypatch.setattr(service.payouts, "_active_payout", lambda session, creator_id: None)

        with pytest.raises(DuplicateRequestError):
            request(service, creator_id, 1000)

    def test_concurrent_requests_create_one_payout(self, tmp_path, creator_id):
        """Two simultaneous requests: exactly one succeeds."""
        database = Database(f"sqlite:///{tmp_path / 'payouts.db'}")
        database.create_all()
        service = MonetizationService(database)
        try:
            with service.database.unit_of_work() as session:
                service.ledger.append(session, creator_id, 2000, LedgerEntryType.EARNINGS)

            barrier = threading.Barrier(2)
            results = []
            lock = threading.Lock()

            def worker():
                barrier.wait()
                try:
                    outcome = request(service, creator_id, 1500)
                except Exception as exc:
                    outcome = exc
                with lock:
                    results.append(outcome)

            threads = [threading.Thread(target=worker) for _ in range(2)]
            for t in threads:
                t.start()
            for t in threads:
                t.join(timeout=60)

            # Verify one payout and one duplicate rejection
            successes = [r for r in results if not isinstance(r, Exception)]
            failures = [r for r in results if isinstance(r, Exception)]
            assert len(successes) == 1
            assert len(failures) == 1
            assert isinstance(failures[0], DuplicateRequestError)
            assert len(service.payouts.list_payouts(creator_id=creator_id)) == 1
        finally:
            service.close()


class TestProcessPayout:
    """Tests for approving, rejecting and cancelling payouts."""

    def test_approve_writes_payout_entry(self, service, notifier, creator_id, earn):
        """$25 earned, $10 paid out, $15 left."""
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        result = service.payouts.process_payout(payout.id, PayoutAction.APPROVE, OPERATOR, notes="ok")

        assert result.payout.status == PayoutStatus.COMPLETED
        assert result.payout.processed_by == OPERATOR
        assert result.payout.processed_at is not None
        assert result.payout.admin_notes == "ok"
        assert result.ledger_entry.amount_cents == -1000
        assert result.ledger_entry.entry_type == LedgerEntryType.PAYOUT
        assert result.ledger_entry.description == "Payout processed - bank_transfer"
        assert result.payout.ledger_entry_id == result.ledger_entry.id

        earnings = service.get_creator_earnings(creator_id)
        assert earnings.total_earnings_cents == 2500
        assert earnings.paid_out_cents == 1000
        assert earnings.pending_earnings_cents == 1500
        assert notifications.PAYOUT_PROCESSED in notifier.events()

    def test_reject_keeps_balance(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        result = service.payouts.process_payout(
            payout.id, PayoutAction.REJECT, OPERATOR, failure_reason="bad bank info"
        )

        assert result.payout.status == PayoutStatus.FAILED
        assert result.payout.failure_reason == "bad bank info"
        assert result.ledger_entry is None
        assert service.get_creator_earnings(creator_id).pending_earnings_cents == 2500

    def test_reject_requires_reason(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        with pytest.raises(ValidationError):
            service.payouts.process_payout(payout.id, PayoutAction.REJECT, OPERATOR)

    def test_reject_resubmitted_without_reason_is_idempotent(self, service, creator_id, earn):
        """A retried reject only needs the reason the first time."""
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)
        service.payouts.process_payout(
            payout.id, PayoutAction.REJECT, OPERATOR, failure_reason="bad bank info"
        )

        again = service.payouts.process_payout(payout.id, PayoutAction.REJECT, OPERATOR)

        assert again.message == "Payout already failed"
        assert again.payout.failure_reason == "bad bank info"

    def test_new_request_allowed_after_rejection(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)
        service.payouts.process_payout(payout.id, "reject", OPERATOR, failure_reason="wrong iban")

        again = request(service, creator_id, 2000)

        assert again.status == PayoutStatus.PENDING

    def test_approve_twice_is_idempotent(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)
        first = service.payouts.process_payout(payout.id, PayoutAction.APPROVE, OPERATOR)

        second = service.payouts.process_payout(payout.id, PayoutAction.APPROVE, OPERATOR)

        assert second.message == "Payout already completed"
        assert second.ledger_entry.id == first.ledger_entry.id
        assert service.get_creator_earnings(creator_id).paid_out_cents == 1000

    def test_reject_after_approve_is_invalid(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)
        service.payouts.process_payout(payout.id, PayoutAction.APPROVE, OPERATOR)

        with pytest.raises(InvalidStateError):
            service.payouts.process_payout(
                payout.id, PayoutAction.REJECT, OPERATOR, failure_reason="too late"
            )

    def test_unknown_action(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        with pytest.raises(ValidationError):
            service.payouts.process_payout(payout.id, "pause", OPERATOR)

    def test_unknown_payout(self, service):
        with pytest.raises(NotFoundError):
            service.payouts.process_payout(uuid.uuid4(), PayoutAction.APPROVE, OPERATOR)

    def test_cancel_releases_reservation(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        result = service.payouts.process_payout(payout.id, PayoutAction.CANCEL, OPERATOR)

        assert result.payout.status == PayoutStatus.CANCELLED
        assert service.get_creator_earnings(creator_id).pending_earnings_cents == 2500

    def test_processing_then_complete(self, service, creator_id, earn):
        earn(creator_id, 2500)
        payout = request(service, creator_id, 1000)

        processing = service.payouts.mark_processing(payout.id, OPERATOR)
        assert processing.status == PayoutStatus.PROCESSING
        with pytest.raises(DuplicateRequestError):
            request(service, creator_id, 1000)

        result = service.payouts.process_payout(payout.id, PayoutAction.COMPLETE, OPERATOR)
        assert result.payout.status == PayoutStatus.COMPLETED

    def test_transition_table(self):
        assert_transition(PayoutStatus.PENDING, PayoutStatus.COMPLETED)
        assert_transition(PayoutStatus.PROCESSING, PayoutStatus.FAILED)
        for terminal in (PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED):
            with pytest.raises(InvalidStateError):
                assert_transition(terminal, PayoutStatus.PENDING)


class TestAdjustments:
    """Tests for operator adjustments."""

    def test_adjustment_changes_pending(self, service, creator_id, earn):
        earn(creator_id, 2500)

        entry = service.payouts.record_adjustment(creator_id, -500, OPERATOR, "fee correction")

        assert entry.entry_type == LedgerEntryType.ADJUSTMENT
        assert entry.amount_cents == -500
        assert service.get_creator_earnings(creator_id).pending_earnings_cents == 2000

    def test_adjustment_needs_description(self, service, creator_id):
        with pytest.raises(ValidationError):
            service.payouts.record_adjustment(creator_id, 100, OPERATOR, "")

    def test_bonus_adjustment_can_be_paid_out(self, service, creator_id, earn):
        earn(creator_id, 1000)
        service.payouts.record_adjustment(creator_id, 500, OPERATOR, "promo bonus")

        payout = request(service, creator_id, 1500)

        assert payout.amount_cents == 1500
        assert service.get_creator_earnings(creator_id).pending_earnings_cents == 0
