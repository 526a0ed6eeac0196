# triangle/ledger.py
from datetime import datetime, timedelta, timezone
from typing import List
from flask import current_app
from extensions import db
from logger import ledger_logger
from models import (
    RejoinTicket,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    UserStatus,
)
from triangle import events
from triangle.errors import (
    AlreadyFinalized,
    IllegalTransition,
    InsufficientBalance,
    TransactionNotFound,
)
from triangle.layout import APEX_KEY
from triangle.money import as_float, to_minor
from triangle.payout import PayoutCalculator, new_reference
from triangle.settings import SettingsHelper
from triangle.split import SplitOrchestrator
from triangle.state import TriangleStateMachine

TERMINAL_STATUSES = {
    TransactionStatus.COMPLETED.value,
    TransactionStatus.REJECTED.value,
    TransactionStatus.EXPIRED.value,
    TransactionStatus.CANCELLED.value,
}

DEFAULT_REJECTION_REASON = "Payment not received or invalid amount."

STATUS_MESSAGES = {
    TransactionStatus.PENDING.value: "Your transaction is pending admin review. Please wait for confirmation.",
    TransactionStatus.CONFIRMED.value: "Your transaction has been confirmed!",
    TransactionStatus.COMPLETED.value: "Your transaction has been completed.",
    TransactionStatus.REJECTED.value: "Your transaction has been rejected.",
    TransactionStatus.EXPIRED.value: "Your payout request expired before it was processed.",
    TransactionStatus.CANCELLED.value: "Your payout request was cancelled.",
}


class LedgerStateMachine:
    """
    Status lifecycle of deposits and payouts, and the balance and account
    effects each admin decision has. Every operation runs inside the
    caller's unit of work (`run_atomically`).

        PENDING -> CONFIRMED -> COMPLETED
        PENDING -> REJECTED
        PENDING -> EXPIRED | CANCELLED   (payouts only)
    """

    @staticmethod
    def load(transaction_id: int) -> Transaction:
        tx = (
            Transaction.query.filter_by(id=transaction_id)
            .with_for_update()
            .populate_existing()
            .first()
        )
        if not tx:
            raise TransactionNotFound(transaction_id=transaction_id)
        return tx

    @staticmethod
    def load_for(transaction_id: int, user: User) -> Transaction:
        """A transaction visible to `user`: their own, or any for admins."""
        tx = db.session.get(Transaction, transaction_id)
        if not tx or (tx.user_id != user.id and not user.is_admin):
            raise TransactionNotFound(transaction_id=transaction_id)
        return tx

    @staticmethod
    def _lock_user(user_id: int) -> User:
        return User.query.filter_by(id=user_id).with_for_update().populate_existing().first()

    @staticmethod
    def _finalized(tx: Transaction):
        ledger_logger.info(f"{tx.type} {tx.reference} -> {tx.status} ({as_float(tx.amount)}) user {tx.user_id}")
        events.queue(events.transaction_finalized, transaction_id=tx.id,
                     status=tx.status, type=tx.type, user_id=tx.user_id)

    # =========================================================
    # ADMIN DECISIONS
    # =========================================================

    @staticmethod
    def confirm(transaction_id: int, admin: User = None) -> Transaction:
        tx = LedgerStateMachine.load(transaction_id)
        if tx.status != TransactionStatus.PENDING.value:
            raise AlreadyFinalized(f"Transaction {tx.reference} is already {tx.status}", status=tx.status)

        LedgerStateMachine._apply_confirmation(tx)
        tx.status = TransactionStatus.CONFIRMED.value
        tx.confirmed_at = datetime.now(timezone.utc)
        tx.decided_by = admin.id if admin else None
        LedgerStateMachine._finalized(tx)
        return tx

    @staticmethod
    def complete(transaction_id: int, admin: User = None) -> Transaction:
        tx = LedgerStateMachine.load(transaction_id)
        now = datetime.now(timezone.utc)
        if tx.status == TransactionStatus.PENDING.value:
            LedgerStateMachine._apply_confirmation(tx)
            tx.confirmed_at = now
        elif tx.status != TransactionStatus.CONFIRMED.value:
            raise AlreadyFinalized(f"Transaction {tx.reference} is already {tx.status}", status=tx.status)

        tx.status = TransactionStatus.COMPLETED.value
        tx.completed_at = now
        tx.decided_by = admin.id if admin else tx.decided_by
        LedgerStateMachine._finalized(tx)
        return tx

    @staticmethod
    def reject(transaction_id: int, reason: str = None, admin: User = None) -> Transaction:
        tx = LedgerStateMachine.load(transaction_id)
        if tx.status != TransactionStatus.PENDING.value:
            raise AlreadyFinalized(f"Transaction {tx.reference} is already {tx.status}", status=tx.status)

        if tx.type == TransactionType.DEPOSIT.value:
            LedgerStateMachine._banish_depositor(tx)
        elif tx.type != TransactionType.PAYOUT.value:
            raise IllegalTransition(f"{tx.type} transactions cannot be rejected")

        tx.status = TransactionStatus.REJECTED.value
        tx.rejection_reason = (reason or "").strip() or DEFAULT_REJECTION_REASON
        tx.rejected_at = datetime.now(timezone.utc)
        tx.decided_by = admin.id if admin else None
        LedgerStateMachine._finalized(tx)
        return tx

    @staticmethod
    def decide(transaction_id: int, status: str, reason: str = None, admin: User = None) -> Transaction:
        """Single entry point for the admin decision endpoint."""
        status = (status or "").upper()
        if status == TransactionStatus.CONFIRMED.value:
            return LedgerStateMachine.confirm(transaction_id, admin)
        if status == TransactionStatus.COMPLETED.value:
            return LedgerStateMachine.complete(transaction_id, admin)
        if status == TransactionStatus.REJECTED.value:
            return LedgerStateMachine.reject(transaction_id, reason, admin)
        raise IllegalTransition(f"Admins cannot move a transaction to {status or 'an empty status'}",
                                status=status)

    # =========================================================
    # EFFECTS
    # =========================================================

    @staticmethod
    def _apply_confirmation(tx: Transaction):
        if tx.type == TransactionType.DEPOSIT.value:
            LedgerStateMachine._confirm_deposit(tx)
        elif tx.type == TransactionType.PAYOUT.value:
            LedgerStateMachine._confirm_payout(tx)
        else:
            raise IllegalTransition(f"{tx.type} transactions are recorded already settled")

    @staticmethod
    def _confirm_deposit(tx: Transaction):
        user = LedgerStateMachine._lock_user(tx.user_id)
        formation = TriangleStateMachine.lock(tx.triangle_id)
        completed = TriangleStateMachine.occupy(formation, tx.position, user)
        user.status = UserStatus.CONFIRMED.value

        PayoutCalculator.credit_referral(tx)
        if completed:
            PayoutCalculator.credit_completion(formation, tx)

    @staticmethod
    def _confirm_payout(tx: Transaction):
        user = LedgerStateMachine._lock_user(tx.user_id)
        if user.balance < tx.amount:
            raise InsufficientBalance(balance=as_float(user.balance), requested=as_float(tx.amount))

        formation = TriangleStateMachine.lock(tx.triangle_id)
        TriangleStateMachine.mark_cycled(formation)
        user.balance -= tx.amount
        SplitOrchestrator.split(formation)
        ledger_logger.info(f"PAYOUT {tx.reference}: -{as_float(tx.amount)} from user {user.id}, "
                           f"formation {formation.id} cycled")

    @staticmethod
    def _banish_depositor(tx: Transaction):
        """
        Rejected deposit: free the slot, flag the account and stage a one-time
        rejoin ticket with the details the user signed up with.
        """
        user = LedgerStateMachine._lock_user(tx.user_id)
        formation = TriangleStateMachine.lock(tx.triangle_id) if tx.triangle_id else None
        position = tx.position
        if formation is not None and position is not None and position.occupant_user_id is None \
                and position.reserved_user_id == user.id:
            TriangleStateMachine.release(formation, position)

        db.session.add(RejoinTicket(
            user_id=user.id,
            username=user.username,
            wallet_address=user.wallet_address,
            plan_name=user.plan_name,
        ))

        user.delete_account = True
        user.is_active = False
        user.deleted_at = datetime.now(timezone.utc)
        user.username = f"deleted_{user.id}"
        user.wallet_address = f"deleted_{user.id}"
        current_app.logger.warning(f"Deposit {tx.reference} rejected, account {user.id} banished")

    # =========================================================
    # USER-INITIATED
    # =========================================================

    @staticmethod
    def request_payout(user_id: int, amount=None) -> Transaction:
        """Apex of a complete formation asks for its earnings. Debited on approval."""
        user = LedgerStateMachine._lock_user(user_id)
        if not user:
            raise TransactionNotFound("User not found", user_id=user_id)
        formation = TriangleStateMachine.assert_payout_eligible(user)

        amount_minor = user.balance if amount is None else to_minor(amount)
        if amount_minor <= 0:
            raise InsufficientBalance("Payout amount must be greater than zero")
        if amount_minor > user.balance:
            raise InsufficientBalance(balance=as_float(user.balance), requested=as_float(amount_minor))

        pending = Transaction.query.filter_by(
            type=TransactionType.PAYOUT.value,
            status=TransactionStatus.PENDING.value,
            triangle_id=formation.id,
        ).first()
        if pending:
            raise IllegalTransition("A payout for this formation is already pending", transaction_id=pending.id)

        hold_hours = current_app.config.get("PAYOUT_HOLD_HOURS")
        payout = Transaction(
            reference=new_reference("WD"),
            user_id=user.id,
            type=TransactionType.PAYOUT.value,
            amount=amount_minor,
            status=TransactionStatus.PENDING.value,
            triangle_id=formation.id,
            position_id=formation.position(APEX_KEY).id,
            description=f"Payout for {formation.plan_name} formation #{formation.id}",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=hold_hours) if hold_hours else None,
        )
        db.session.add(payout)
        db.session.flush()
        ledger_logger.info(f"PAYOUT {payout.reference} requested: {as_float(amount_minor)} by user {user.id}")
        return payout

    @staticmethod
    def cancel(transaction_id: int, user: User) -> Transaction:
        tx = LedgerStateMachine.load(transaction_id)
        if tx.user_id != user.id:
            raise TransactionNotFound(transaction_id=transaction_id)
        if tx.type != TransactionType.PAYOUT.value:
            raise IllegalTransition("Only payout requests can be cancelled")
        if tx.status != TransactionStatus.PENDING.value:
            raise AlreadyFinalized(f"Transaction {tx.reference} is already {tx.status}", status=tx.status)

        tx.status = TransactionStatus.CANCELLED.value
        LedgerStateMachine._finalized(tx)
        return tx

    @staticmethod
    def declare_sent(transaction_id: int, user: User) -> Transaction:
        """The user says the deposit is on its way. Deposits never expire; status stays PENDING."""
        tx = LedgerStateMachine.load(transaction_id)
        if tx.user_id != user.id:
            raise TransactionNotFound(transaction_id=transaction_id)
        if tx.type != TransactionType.DEPOSIT.value:
            raise IllegalTransition("Only deposits can be declared as sent")
        if tx.status != TransactionStatus.PENDING.value:
            raise AlreadyFinalized(f"Transaction {tx.reference} is already {tx.status}", status=tx.status)

        tx.declared_sent_at = datetime.now(timezone.utc)
        current_app.logger.info(f"Deposit {tx.reference} declared sent by user {user.id}")
        return tx

    @staticmethod
    def expire_stale_payouts(now: datetime = None) -> List[Transaction]:
        if not current_app.config.get("PAYOUT_HOLD_HOURS"):
            return []
        now = now or datetime.now(timezone.utc)
        stale = (
            Transaction.query.filter(
                Transaction.type == TransactionType.PAYOUT.value,
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.expires_at.isnot(None),
                Transaction.expires_at <= now,
            )
            .with_for_update()
            .all()
        )
        for tx in stale:
            tx.status = TransactionStatus.EXPIRED.value
            LedgerStateMachine._finalized(tx)
        if stale:
            current_app.logger.info(f"Expired {len(stale)} stale payout request(s)")
        return stale

    # =========================================================
    # READ MODEL
    # =========================================================

    @staticmethod
    def status_projection(tx: Transaction) -> dict:
        rejected = tx.status == TransactionStatus.REJECTED.value
        projection = {
            "id": tx.id,
            "transactionId": tx.reference,
            "type": tx.type,
            "amount": as_float(tx.amount),
            "status": tx.status,
            "closable": tx.status != TransactionStatus.PENDING.value,
            "deleteAccount": rejected and tx.type == TransactionType.DEPOSIT.value,
            "rejectionReason": tx.rejection_reason if rejected else None,
            "message": STATUS_MESSAGES.get(tx.status, "Transaction status unknown."),
            "declaredSentAt": tx.declared_sent_at.isoformat() if tx.declared_sent_at else None,
        }
        if tx.type == TransactionType.DEPOSIT.value and tx.status == TransactionStatus.PENDING.value:
            projection["deposit"] = SettingsHelper.deposit_instructions()
        return projection
