"""
Integration tests for LedgerStateMachine.

Covers:
- Deposit confirmation: fill, user status, referral commission (direct referrer only)
- Completion: fires once, credits the apex, emits formation_completed after commit
- Deposit rejection: slot freed, account banished, rejoin permitted once
- Payout requests: eligibility, balance checks, cancel, reject, expiry
- Terminal transactions are immutable
"""

from datetime import datetime, timedelta, timezone

import pytest

from extensions import db
from models import RejoinTicket, Transaction, TransactionStatus, TransactionType, Triangle, User
from triangle.atomic import run_atomically
from triangle.errors import (
    AlreadyFinalized,
    IllegalTransition,
    InsufficientBalance,
    NotEligibleForPayout,
)
from triangle.events import formation_completed, transaction_finalized
from triangle.ledger import LedgerStateMachine
from triangle.placement import PlacementResolver

PASSWORD = "secret123"


def confirm(tx_id):
    return run_atomically(LedgerStateMachine.confirm, tx_id)


class TestDepositConfirmation:
    """PENDING -> CONFIRMED on a deposit."""

    def test_confirm_fills_reserved_slot(self, make_user):
        user, placement = make_user(plan="King")

        tx = confirm(placement.deposit_transaction.id)

        formation = db.session.get(Triangle, placement.triangle_id)
        assert tx.status == TransactionStatus.CONFIRMED.value
        assert tx.confirmed_at is not None
        assert formation.filled_count == 1
        assert formation.position("A").occupant_user_id == user.id
        assert db.session.get(User, user.id).status == "CONFIRMED"

    def test_referrer_credited_ten_percent_once(self, make_user):
        referrer, _ = make_user(plan="King", confirm=True)
        _, placement = make_user(plan="King", referrer_code=referrer.referral_code)

        confirm(placement.deposit_transaction.id)
        with pytest.raises(AlreadyFinalized):
            confirm(placement.deposit_transaction.id)

        referrer = db.session.get(User, referrer.id)
        assert referrer.balance == 10
        assert referrer.referral_bonus == 10
        assert referrer.total_earned == 10
        credits = Transaction.query.filter_by(type=TransactionType.REFERRAL.value).all()
        assert len(credits) == 1
        assert credits[0].status == TransactionStatus.COMPLETED.value
        assert credits[0].source_transaction_id == placement.deposit_transaction.id

    def test_commission_goes_to_direct_referrer_only(self, make_user):
        grandparent, _ = make_user(plan="Queen", confirm=True)
        parent, _ = make_user(plan="Queen", referrer_code=grandparent.referral_code, confirm=True)
        _, placement = make_user(plan="Queen", referrer_code=parent.referral_code)

        confirm(placement.deposit_transaction.id)

        assert db.session.get(User, parent.id).referral_bonus == 5
        # Grandparent only earned from the parent's own deposit
        assert db.session.get(User, grandparent.id).referral_bonus == 5

    def test_complete_on_pending_applies_confirmation(self, make_user):
        user, placement = make_user(plan="Knight")

        tx = run_atomically(LedgerStateMachine.complete, placement.deposit_transaction.id)

        assert tx.status == TransactionStatus.COMPLETED.value
        assert tx.confirmed_at is not None
        assert db.session.get(Triangle, placement.triangle_id).filled_count == 1
        with pytest.raises(AlreadyFinalized):
            run_atomically(LedgerStateMachine.complete, placement.deposit_transaction.id)

    def test_confirm_then_complete(self, make_user):
        _, placement = make_user(plan="Knight", confirm=True)

        tx = run_atomically(LedgerStateMachine.complete, placement.deposit_transaction.id)

        assert tx.status == TransactionStatus.COMPLETED.value
        assert db.session.get(Triangle, placement.triangle_id).filled_count == 1

    def test_finalized_event_after_commit(self, make_user):
        _, placement = make_user(plan="Knight")
        seen = []

        def receiver(sender, **payload):
            seen.append(payload)

        with transaction_finalized.connected_to(receiver):
            confirm(placement.deposit_transaction.id)

        assert {"transaction_id": placement.deposit_transaction.id, "status": "CONFIRMED"}.items() <= seen[0].items()


class TestCompletion:
    """FILLING -> COMPLETE on the fifteenth confirmed deposit."""

    def test_fifteenth_fill_completes_once(self, fill_formation):
        events = []

        def receiver(sender, **payload):
            events.append(payload["triangle_id"])

        with formation_completed.connected_to(receiver):
            members = fill_formation(plan="King", count=15)

        formation = db.session.get(Triangle, members[0][1].triangle_id)
        assert formation.filled_count == 15
        assert formation.is_complete
        assert formation.status == "COMPLETE"
        assert formation.completed_at is not None
        assert events == [formation.id]

    def test_apex_credited_completion_earnings(self, fill_formation):
        members = fill_formation(plan="King", count=15)
        apex = db.session.get(User, members[0][0].id)

        assert apex.balance == 400
        assert apex.plan_earnings == 400
        bonus = Transaction.query.filter_by(type=TransactionType.BONUS.value, user_id=apex.id).all()
        assert len(bonus) == 1
        assert bonus[0].triangle_id == members[0][1].triangle_id

    def test_fourteen_fills_stay_filling(self, fill_formation):
        members = fill_formation(plan="King", count=14)
        formation = db.session.get(Triangle, members[0][1].triangle_id)

        assert formation.status == "FILLING"
        assert not formation.is_complete
        assert Transaction.query.filter_by(type=TransactionType.BONUS.value).count() == 0


class TestDepositRejection:
    """PENDING -> REJECTED on a deposit banishes the account."""

    def test_rejection_frees_slot_and_flags_account(self, make_user):
        make_user(plan="King")
        user, placement = make_user(plan="King")
        user_id = user.id
        assert placement.position_key == "B"

        tx = run_atomically(LedgerStateMachine.reject, placement.deposit_transaction.id, "Amount too low")

        formation = db.session.get(Triangle, placement.triangle_id)
        banished = db.session.get(User, user_id)
        assert tx.status == TransactionStatus.REJECTED.value
        assert tx.rejection_reason == "Amount too low"
        assert formation.position("B").is_open
        assert formation.reserved_count == 1
        assert banished.delete_account is True
        assert banished.is_active is False
        assert banished.triangle_id is None
        assert banished.username == f"deleted_{user_id}"

    def test_freed_slot_is_reused(self, make_user):
        make_user(plan="King")
        _, rejected = make_user(plan="King")
        run_atomically(LedgerStateMachine.reject, rejected.deposit_transaction.id)

        _, placement = make_user(plan="King")

        assert placement.position_key == "B"
        assert placement.triangle_id == rejected.triangle_id

    def test_rejoin_with_same_username_and_wallet(self, make_user):
        user, placement = make_user(plan="Bishop", username="carol")
        run_atomically(LedgerStateMachine.reject, placement.deposit_transaction.id)

        ticket = PlacementResolver.rejoin_prefill("carol")
        assert ticket.to_dict() == {"username": "carol", "walletAddress": "TWalletcarol", "plan": "Bishop"}

        rejoined, new_placement = run_atomically(
            PlacementResolver.register, "carol", PASSWORD, "TWalletcarol", None, None
        )

        assert rejoined.id != user.id
        assert rejoined.plan_name == "Bishop"
        assert new_placement.deposit_transaction.status == "PENDING"
        assert PlacementResolver.rejoin_prefill("carol") is None
        assert RejoinTicket.query.filter(RejoinTicket.consumed_at.isnot(None)).count() == 1

    def test_status_projection_of_rejected_deposit(self, make_user):
        _, placement = make_user(plan="King")
        tx = run_atomically(LedgerStateMachine.reject, placement.deposit_transaction.id)

        projection = LedgerStateMachine.status_projection(tx)

        assert projection["status"] == "REJECTED"
        assert projection["closable"] is True
        assert projection["deleteAccount"] is True
        assert projection["rejectionReason"] == "Payment not received or invalid amount."

    def test_status_projection_of_pending_deposit(self, make_user):
        _, placement = make_user(plan="King")

        projection = LedgerStateMachine.status_projection(placement.deposit_transaction)

        assert projection["closable"] is False
        assert projection["deleteAccount"] is False
        assert projection["deposit"]["coin"] == "USDT"

    def test_decision_on_rejected_is_final(self, make_user):
        _, placement = make_user(plan="King")
        run_atomically(LedgerStateMachine.reject, placement.deposit_transaction.id)

        with pytest.raises(AlreadyFinalized):
            confirm(placement.deposit_transaction.id)
        with pytest.raises(AlreadyFinalized):
            run_atomically(LedgerStateMachine.reject, placement.deposit_transaction.id)


class TestDepositMisc:
    """Declare-sent, decide and immutability."""

    def test_declare_sent_keeps_pending(self, make_user):
        user, placement = make_user(plan="King")

        tx = run_atomically(LedgerStateMachine.declare_sent, placement.deposit_transaction.id, user)

        assert tx.status == "PENDING"
        assert tx.declared_sent_at is not None

    @pytest.mark.parametrize("status", ["EXPIRED", "CANCELLED", "PENDING", "BOGUS"])
    def test_admin_cannot_choose_other_statuses(self, make_user, status):
        _, placement = make_user(plan="King")

        with pytest.raises(IllegalTransition):
            run_atomically(LedgerStateMachine.decide, placement.deposit_transaction.id, status)

    def test_deposit_cannot_be_cancelled(self, make_user):
        user, placement = make_user(plan="King")

        with pytest.raises(IllegalTransition):
            run_atomically(LedgerStateMachine.cancel, placement.deposit_transaction.id, user)

    def test_amount_is_immutable(self, make_user):
        _, placement = make_user(plan="King")

        with pytest.raises(ValueError):
            placement.deposit_transaction.amount = 1
        db.session.rollback()


class TestPayoutRequests:
    """requestPayout eligibility and the payout lifecycle short of a split."""

    @pytest.fixture
    def complete_formation(self, fill_formation):
        members = fill_formation(plan="King", count=15)
        return [user for user, _ in members]

    def test_non_apex_is_not_eligible(self, complete_formation):
        for member in complete_formation[1:]:
            with pytest.raises(NotEligibleForPayout):
                run_atomically(LedgerStateMachine.request_payout, member.id, "1.00")
        assert Transaction.query.filter_by(type=TransactionType.PAYOUT.value).count() == 0

    def test_apex_of_incomplete_formation_is_not_eligible(self, fill_formation):
        members = fill_formation(plan="Queen", count=14)

        with pytest.raises(NotEligibleForPayout):
            run_atomically(LedgerStateMachine.request_payout, members[0][0].id, "1.00")

    def test_amount_above_balance(self, complete_formation):
        with pytest.raises(InsufficientBalance):
            run_atomically(LedgerStateMachine.request_payout, complete_formation[0].id, "4.01")

    def test_apex_request_is_pending_and_not_debited(self, complete_formation):
        apex = complete_formation[0]

        payout = run_atomically(LedgerStateMachine.request_payout, apex.id, "4.00")

        assert payout.status == "PENDING"
        assert payout.amount == 400
        assert db.session.get(User, apex.id).balance == 400

    def test_one_pending_payout_per_formation(self, complete_formation):
        apex = complete_formation[0]
        run_atomically(LedgerStateMachine.request_payout, apex.id, "1.00")

        with pytest.raises(IllegalTransition):
            run_atomically(LedgerStateMachine.request_payout, apex.id, "1.00")

    def test_rejected_payout_keeps_balance(self, complete_formation):
        apex = complete_formation[0]
        payout = run_atomically(LedgerStateMachine.request_payout, apex.id, "4.00")

        tx = run_atomically(LedgerStateMachine.reject, payout.id, "Wallet mismatch")

        apex = db.session.get(User, apex.id)
        projection = LedgerStateMachine.status_projection(tx)
        assert apex.balance == 400
        assert apex.delete_account is False
        assert projection["rejectionReason"] == "Wallet mismatch"
        assert projection["deleteAccount"] is False
        assert db.session.get(Triangle, payout.triangle_id).status == "COMPLETE"

    def test_requester_can_cancel(self, complete_formation):
        apex = complete_formation[0]
        payout = run_atomically(LedgerStateMachine.request_payout, apex.id, "4.00")

        tx = run_atomically(LedgerStateMachine.cancel, payout.id, db.session.get(User, apex.id))

        assert tx.status == "CANCELLED"
        with pytest.raises(AlreadyFinalized):
            confirm(payout.id)

    def test_stale_payouts_expire(self, app_ctx, complete_formation):
        app_ctx.config["PAYOUT_HOLD_HOURS"] = 1
        payout = run_atomically(LedgerStateMachine.request_payout, complete_formation[0].id, "4.00")

        assert run_atomically(LedgerStateMachine.expire_stale_payouts) == []
        later = datetime.now(timezone.utc) + timedelta(hours=2)
        expired = run_atomically(LedgerStateMachine.expire_stale_payouts, later)

        assert [tx.id for tx in expired] == [payout.id]
        assert db.session.get(Transaction, payout.id).status == "EXPIRED"

    def test_expiry_disabled_by_default(self, complete_formation):
        run_atomically(LedgerStateMachine.request_payout, complete_formation[0].id, "4.00")
        later = datetime.now(timezone.utc) + timedelta(days=365)

        assert run_atomically(LedgerStateMachine.expire_stale_payouts, later) == []
