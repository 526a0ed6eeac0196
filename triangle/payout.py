# triangle/payout.py
from datetime import datetime, timezone
from uuid import uuid4
from flask import current_app
from extensions import db
from logger import ledger_logger
from models import Transaction, TransactionStatus, TransactionType, User
from triangle import events
from triangle.layout import APEX_KEY, MAX_LEVEL
from triangle.money import percent_of, as_float


def new_reference(prefix: str) -> str:
    return f"{prefix}_{datetime.now(timezone.utc).strftime('%Y%m%d%H%M%S')}_{uuid4().hex[:8].upper()}"


class PayoutCalculator:
    """Earnings per position tier and referral commission. All amounts in minor units."""

    @staticmethod
    def multiplier_for_level(level: int, plan, table: dict = None) -> int:
        if level == 0:
            return plan.payout_multiplier
        if level < 0 or level > MAX_LEVEL:
            raise ValueError(f"Invalid position level: {level}")
        table = table or current_app.config["LEVEL_PAYOUT_MULTIPLIERS"]
        return int(table[level])

    @staticmethod
    def position_earnings(level: int, plan, table: dict = None) -> int:
        return plan.price * PayoutCalculator.multiplier_for_level(level, plan, table)

    @staticmethod
    def referral_commission(plan) -> int:
        return percent_of(plan.price, plan.referral_bonus_rate)

    # ------------------------------------------------------------------
    # Ledger credits
    # ------------------------------------------------------------------

    @staticmethod
    def _existing_credit(tx_type: TransactionType, source_id: int, user_id: int):
        return Transaction.query.filter_by(
            type=tx_type.value,
            source_transaction_id=source_id,
            user_id=user_id,
        ).first()

    @staticmethod
    def _credit(user: User, amount: int, earned_field: str):
        user.balance += amount
        user.total_earned += amount
        setattr(user, earned_field, getattr(user, earned_field) + amount)

    @staticmethod
    def credit_referral(deposit_tx: Transaction):
        """
        Pay the direct referrer of the depositor their commission. Keyed by the
        deposit id, so reprocessing the same deposit never credits twice.
        """
        depositor = deposit_tx.user
        if not depositor or not depositor.referred_by:
            return None

        referrer = User.query.filter_by(id=depositor.referred_by).with_for_update().first()
        if not referrer or referrer.delete_account:
            current_app.logger.info(f"No active referrer to credit for deposit {deposit_tx.reference}")
            return None

        existing = PayoutCalculator._existing_credit(TransactionType.REFERRAL, deposit_tx.id, referrer.id)
        if existing:
            return existing

        amount = PayoutCalculator.referral_commission(depositor.plan)
        now = datetime.now(timezone.utc)
        credit = Transaction(
            reference=new_reference("RB"),
            user_id=referrer.id,
            type=TransactionType.REFERRAL.value,
            amount=amount,
            status=TransactionStatus.COMPLETED.value,
            source_transaction_id=deposit_tx.id,
            triangle_id=deposit_tx.triangle_id,
            description=f"Referral bonus for {depositor.username}",
            confirmed_at=now,
            completed_at=now,
        )
        db.session.add(credit)
        PayoutCalculator._credit(referrer, amount, "referral_bonus")
        db.session.flush()

        ledger_logger.info(
            f"REFERRAL {credit.reference}: +{as_float(amount)} to user {referrer.id} for deposit {deposit_tx.reference}"
        )
        events.queue(events.transaction_finalized, transaction_id=credit.id,
                     status=credit.status, type=credit.type, user_id=referrer.id)
        return credit

    @staticmethod
    def credit_completion(formation, deposit_tx: Transaction):
        """Credit the apex its completion earnings once the formation is full."""
        apex = formation.position(APEX_KEY)
        if apex is None or apex.occupant_user_id is None:
            return None

        already = Transaction.query.filter_by(
            type=TransactionType.BONUS.value,
            triangle_id=formation.id,
            user_id=apex.occupant_user_id,
        ).first()
        if already:
            return already

        owner = User.query.filter_by(id=apex.occupant_user_id).with_for_update().first()
        amount = PayoutCalculator.position_earnings(0, formation.plan)
        now = datetime.now(timezone.utc)
        credit = Transaction(
            reference=new_reference("CE"),
            user_id=owner.id,
            type=TransactionType.BONUS.value,
            amount=amount,
            status=TransactionStatus.COMPLETED.value,
            source_transaction_id=deposit_tx.id,
            triangle_id=formation.id,
            position_id=apex.id,
            description=f"{formation.plan_name} formation #{formation.id} completed",
            confirmed_at=now,
            completed_at=now,
        )
        db.session.add(credit)
        PayoutCalculator._credit(owner, amount, "plan_earnings")
        db.session.flush()

        ledger_logger.info(
            f"BONUS {credit.reference}: +{as_float(amount)} to apex user {owner.id} of formation {formation.id}"
        )
        events.queue(events.transaction_finalized, transaction_id=credit.id,
                     status=credit.status, type=credit.type, user_id=owner.id)
        return credit
