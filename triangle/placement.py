# triangle/placement.py
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Tuple
from flask import current_app
from sqlalchemy import func, or_
from sqlalchemy.orm import selectinload
from extensions import db
from models import (
    FormationStatus,
    RejoinTicket,
    Transaction,
    TransactionStatus,
    TransactionType,
    Triangle,
    TrianglePosition,
    User,
    UserStatus,
)
from triangle.errors import (
    AlreadyPlaced,
    ConsistencyViolation,
    DuplicateAccount,
    InvalidReferrer,
    NoEligibleSlot,
    RegistrationClosed,
)
from triangle.layout import APEX_KEY, FORMATION_SIZE, POSITION_KEYS, subtree_keys
from triangle.money import as_float
from triangle.payout import new_reference
from triangle.plans import PlanCatalog
from triangle.settings import SettingsHelper
from triangle.state import TriangleStateMachine

REFERRAL_CODE_CHARS = string.ascii_uppercase + string.digits


@dataclass
class Placement:
    triangle_id: int
    position_key: str
    deposit_transaction: Transaction

    def to_dict(self):
        tx = self.deposit_transaction
        instructions = SettingsHelper.deposit_instructions()
        return {
            "triangleId": self.triangle_id,
            "positionKey": self.position_key,
            "depositTransaction": {
                "id": tx.id,
                "transactionId": tx.reference,
                "amount": as_float(tx.amount),
                "status": tx.status,
                "coin": instructions["coin"],
                "network": instructions["network"],
                "walletAddress": instructions["wallet"],
            },
        }


class PlacementResolver:
    """Decides where a registrant lands and claims that slot."""

    # =========================================================
    # REFERRER LOOKUP
    # =========================================================

    @staticmethod
    def find_referrer(code: str) -> Optional[User]:
        """Match by referral code first, then by username. Banished accounts never match."""
        if not code or not code.strip():
            return None
        code = code.strip()
        base = User.query.filter(User.is_active.is_(True), User.delete_account.is_(False))

        referrer = base.filter(func.upper(User.referral_code) == code.upper()).first()
        if referrer:
            return referrer
        return base.filter(func.lower(User.username) == code.lower()).first()

    @staticmethod
    def resolve_referrer(code: str) -> dict:
        referrer = PlacementResolver.find_referrer(code)
        if not referrer:
            raise InvalidReferrer(code=code)
        return {
            "id": referrer.id,
            "username": referrer.username,
            "plan": referrer.plan_name,
            "referralCode": referrer.referral_code,
        }

    # =========================================================
    # SLOT SEARCH
    # =========================================================

    @staticmethod
    def _open_slot(formation: Triangle, keys) -> Optional[TrianglePosition]:
        by_key = {p.position_key: p for p in formation.positions}
        for key in keys:
            position = by_key.get(key)
            if position is not None and position.is_open:
                return position
        return None

    @staticmethod
    def _referrer_slot(plan, referrer: User) -> Tuple[Optional[Triangle], Optional[TrianglePosition]]:
        if not referrer.triangle_id or not referrer.position_key:
            return None, None

        formation = TriangleStateMachine.lock(referrer.triangle_id)
        if (
            formation is None
            or formation.plan_name != plan.name
            or formation.status != FormationStatus.FILLING.value
            or formation.frozen
        ):
            return None, None

        below = subtree_keys(referrer.position_key, include_root=False)
        position = PlacementResolver._open_slot(formation, below)
        return (formation, position) if position else (None, None)

    @staticmethod
    def _oldest_open_slot(plan) -> Tuple[Optional[Triangle], Optional[TrianglePosition]]:
        formation = (
            Triangle.query.filter(
                Triangle.plan_name == plan.name,
                Triangle.status == FormationStatus.FILLING.value,
                Triangle.frozen.is_(False),
                Triangle.reserved_count < FORMATION_SIZE,
            )
            .order_by(Triangle.created_at.asc(), Triangle.id.asc())
            .options(selectinload(Triangle.positions))
            .with_for_update()
            .populate_existing()
            .first()
        )
        if formation is None:
            return None, None

        position = PlacementResolver._open_slot(formation, POSITION_KEYS)
        if position is None:
            raise ConsistencyViolation(
                f"Formation {formation.id} reports {formation.reserved_count} reservations but has no open slot",
                triangle_id=formation.id,
            )
        return formation, position

    @staticmethod
    def candidate_slot(plan, referrer: User = None) -> Tuple[Optional[Triangle], Optional[TrianglePosition]]:
        """
        Referrer branch first: open slots below the referrer in their own
        formation, breadth-first and leftmost-first. Then the oldest filling
        formation of the plan. (None, None) means a new formation is needed.
        """
        if referrer is not None:
            formation, position = PlacementResolver._referrer_slot(plan, referrer)
            if position is not None:
                return formation, position
        return PlacementResolver._oldest_open_slot(plan)

    # =========================================================
    # PLACEMENT
    # =========================================================

    @staticmethod
    def assign_position(user: User, plan_name: str = None, referrer_code: str = None) -> Placement:
        """
        Claim a slot for `user` and open the PENDING deposit that pays for it.
        Runs inside the caller's unit of work; see `run_atomically`.
        """
        if user.triangle_id is not None:
            raise AlreadyPlaced(triangle_id=user.triangle_id, position=user.position_key)
        pending = Transaction.query.filter_by(
            user_id=user.id,
            type=TransactionType.DEPOSIT.value,
            status=TransactionStatus.PENDING.value,
        ).first()
        if pending:
            raise AlreadyPlaced(transaction_id=pending.id)

        referrer = None
        if referrer_code:
            referrer = PlacementResolver.find_referrer(referrer_code)
            if referrer is None or referrer.id == user.id:
                raise InvalidReferrer(code=referrer_code)
            # A referral locks the plan to the referrer's plan.
            plan = PlanCatalog.get(referrer.plan_name)
        else:
            plan = PlanCatalog.get(plan_name or user.plan_name)

        formation, position = PlacementResolver.candidate_slot(plan, referrer)
        if position is None:
            formation = TriangleStateMachine.create_formation(plan)
            position = formation.position(APEX_KEY)
            if position is None or not position.is_open:
                raise NoEligibleSlot(f"New {plan.name} formation {formation.id} has no open apex")

        user.plan_name = plan.name
        if referrer is not None:
            user.referred_by = referrer.id
        TriangleStateMachine.reserve(formation, position, user)

        deposit = Transaction(
            reference=new_reference("DP"),
            user_id=user.id,
            type=TransactionType.DEPOSIT.value,
            amount=plan.price,
            status=TransactionStatus.PENDING.value,
            position_id=position.id,
            triangle_id=formation.id,
            description=f"Deposit for {plan.name} plan, position {position.position_key}",
        )
        db.session.add(deposit)
        db.session.flush()

        current_app.logger.info(
            f"User {user.id} reserved {position.position_key} in {plan.name} formation {formation.id} "
            f"(referrer={referrer.id if referrer else None})"
        )
        return Placement(formation.id, position.position_key, deposit)

    # =========================================================
    # REGISTRATION
    # =========================================================

    @staticmethod
    def generate_referral_code(username: str) -> str:
        prefix = "".join(ch for ch in username.upper() if ch.isalnum())[:3]
        while True:
            code = prefix + "".join(secrets.choice(REFERRAL_CODE_CHARS) for _ in range(6))
            if not User.query.filter_by(referral_code=code).first():
                return code

    @staticmethod
    def rejoin_prefill(identifier: str) -> Optional[RejoinTicket]:
        """Unconsumed rejoin ticket staged for a username or wallet, if any."""
        if not identifier:
            return None
        return (
            RejoinTicket.query.filter(
                RejoinTicket.consumed_at.is_(None),
                or_(RejoinTicket.username == identifier, RejoinTicket.wallet_address == identifier),
            )
            .order_by(RejoinTicket.created_at.desc(), RejoinTicket.id.desc())
            .first()
        )

    @staticmethod
    def register(username: str, password: str, wallet_address: str,
                 plan_name: str = None, referrer_code: str = None) -> Tuple[User, Placement]:
        """Create the account and place it, in the caller's unit of work."""
        if not SettingsHelper.registration_enabled():
            raise RegistrationClosed()

        username = username.strip()
        wallet_address = wallet_address.strip()

        existing = User.query.filter(
            or_(User.username == username, User.wallet_address == wallet_address)
        ).first()
        if existing:
            raise DuplicateAccount()

        ticket = PlacementResolver.rejoin_prefill(username) or PlacementResolver.rejoin_prefill(wallet_address)
        if ticket:
            plan_name = plan_name or ticket.plan_name
            ticket.consumed_at = datetime.now(timezone.utc)
            current_app.logger.info(f"Rejoin ticket {ticket.id} consumed by {username}")

        if referrer_code:
            referrer = PlacementResolver.find_referrer(referrer_code)
            if referrer is None:
                raise InvalidReferrer(code=referrer_code)
            plan = PlanCatalog.get(referrer.plan_name)
        else:
            plan = PlanCatalog.get(plan_name)

        user = User(
            username=username,
            wallet_address=wallet_address,
            plan_name=plan.name,
            referral_code=PlacementResolver.generate_referral_code(username),
            status=UserStatus.PENDING.value,
        )
        user.set_password(password)
        db.session.add(user)
        db.session.flush()

        placement = PlacementResolver.assign_position(user, plan.name, referrer_code)
        current_app.logger.info(f"Registered user {user.id} ({username}) on {plan.name}")
        return user, placement
