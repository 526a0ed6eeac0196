# models.py - Flask-SQLAlchemy models for the triangle engine
from datetime import datetime, timezone
from enum import Enum
from flask_login import UserMixin
from sqlalchemy import UniqueConstraint, Index, text
from sqlalchemy.orm import validates
from extensions import db
from werkzeug.security import check_password_hash, generate_password_hash
from triangle.errors import ConsistencyViolation
from triangle.layout import FORMATION_SIZE
from triangle.money import as_float

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class TransactionType(Enum):
    DEPOSIT = "DEPOSIT"
    PAYOUT = "PAYOUT"
    REFERRAL = "REFERRAL"
    BONUS = "BONUS"
    REFUND = "REFUND"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class FormationStatus(Enum):
    FILLING = "FILLING"
    COMPLETE = "COMPLETE"
    CYCLED = "CYCLED"


class UserStatus(Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


def utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None

# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=utcnow,
                           onupdate=utcnow)

# ===========================================================
# PLANS
# ===========================================================

class Plan(db.Model, BaseMixin):
    """One pricing tier. Exactly one row per tier name."""
    __tablename__ = 'plans'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(20), unique=True, nullable=False)
    price = db.Column(db.BigInteger, nullable=False)  # minor units
    payout_multiplier = db.Column(db.Integer, nullable=False, default=4)
    referral_bonus_rate = db.Column(db.Numeric(5, 4), nullable=False, default=0.10)
    description = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)

    __table_args__ = (
        db.CheckConstraint('price > 0', name='chk_plan_price_positive'),
        db.CheckConstraint('referral_bonus_rate >= 0 AND referral_bonus_rate <= 1', name='chk_plan_rate_range'),
    )

    def to_dict(self):
        from triangle.payout import PayoutCalculator
        return {
            "name": self.name,
            "price": as_float(self.price),
            "payout": as_float(PayoutCalculator.position_earnings(0, self)),
            "payoutMultiplier": self.payout_multiplier,
            "referralBonus": as_float(PayoutCalculator.referral_commission(self)),
            "referralBonusRate": float(self.referral_bonus_rate),
            "description": self.description,
        }

# ===========================================================
# USER MODEL
# ===========================================================

class User(UserMixin, db.Model, BaseMixin):
    """A participant. Balance fields are minor units and move only through the ledger."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    wallet_address = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    plan_name = db.Column(db.String(20), db.ForeignKey('plans.name'), nullable=False, index=True)
    triangle_id = db.Column(db.Integer, db.ForeignKey('triangles.id'), nullable=True, index=True)
    position_key = db.Column(db.String(8), nullable=True)

    balance = db.Column(db.BigInteger, nullable=False, default=0, server_default=text("0"))
    total_earned = db.Column(db.BigInteger, nullable=False, default=0, server_default=text("0"))
    plan_earnings = db.Column(db.BigInteger, nullable=False, default=0, server_default=text("0"))
    referral_bonus = db.Column(db.BigInteger, nullable=False, default=0, server_default=text("0"))

    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)

    status = db.Column(db.String(20), default=UserStatus.PENDING.value, nullable=False)
    is_admin = db.Column(db.Boolean, default=False)
    is_active = db.Column(db.Boolean, default=True)
    delete_account = db.Column(db.Boolean, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    plan = db.relationship('Plan', foreign_keys=[plan_name])
    referrer = db.relationship('User', remote_side=[id], backref='referrals')
    triangle = db.relationship('Triangle', foreign_keys=[triangle_id])

    __table_args__ = (
        Index('idx_user_referral_code', 'referral_code'),
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "walletAddress": self.wallet_address,
            "plan": self.plan_name,
            "triangleId": self.triangle_id,
            "positionKey": self.position_key,
            "balance": as_float(self.balance),
            "totalEarned": as_float(self.total_earned),
            "planEarnings": as_float(self.plan_earnings),
            "referralBonus": as_float(self.referral_bonus),
            "referralCode": self.referral_code,
            "referredBy": self.referred_by,
            "status": self.status,
            "isActive": self.is_active,
            "isAdmin": self.is_admin,
            "createdAt": _iso(self.created_at),
        }

# ===========================================================
# TRIANGLE FORMATIONS
# ===========================================================

class Triangle(db.Model, BaseMixin):
    """One 15-slot formation. `version` guards every write with an optimistic check."""
    __tablename__ = 'triangles'

    id = db.Column(db.Integer, primary_key=True)
    plan_name = db.Column(db.String(20), db.ForeignKey('plans.name'), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default=FormationStatus.FILLING.value, index=True)
    filled_count = db.Column(db.Integer, nullable=False, default=0)
    reserved_count = db.Column(db.Integer, nullable=False, default=0)
    payout_processed = db.Column(db.Boolean, nullable=False, default=False)
    frozen = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False)

    parent_id = db.Column(db.Integer, db.ForeignKey('triangles.id'), nullable=True, index=True)
    generation = db.Column(db.Integer, nullable=False, default=0)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cycled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    plan = db.relationship('Plan')
    positions = db.relationship(
        'TrianglePosition',
        back_populates='triangle',
        order_by='TrianglePosition.slot_index',
        cascade="all,delete-orphan",
    )
    children = db.relationship('Triangle', backref=db.backref('parent', remote_side=[id]))

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        db.CheckConstraint('filled_count >= 0 AND filled_count <= 15', name='chk_filled_range'),
        db.CheckConstraint('reserved_count >= filled_count AND reserved_count <= 15', name='chk_reserved_range'),
        Index('idx_triangle_plan_status_created', 'plan_name', 'status', 'created_at'),
    )

    @property
    def is_complete(self) -> bool:
        return self.filled_count == FORMATION_SIZE

    def position(self, key: str):
        for pos in self.positions:
            if pos.position_key == key:
                return pos
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "planType": self.plan_name,
            "status": self.status,
            "filledCount": self.filled_count,
            "reservedCount": self.reserved_count,
            "isComplete": self.is_complete,
            "payoutProcessed": self.payout_processed,
            "parentId": self.parent_id,
            "generation": self.generation,
            "createdAt": _iso(self.created_at),
            "completedAt": _iso(self.completed_at),
            "cycledAt": _iso(self.cycled_at),
        }


class TrianglePosition(db.Model, BaseMixin):
    """A slot inside a formation. The occupant is written once and never replaced."""
    __tablename__ = 'triangle_positions'

    id = db.Column(db.Integer, primary_key=True)
    triangle_id = db.Column(db.Integer, db.ForeignKey('triangles.id', ondelete='CASCADE'), nullable=False, index=True)
    position_key = db.Column(db.String(8), nullable=False)
    slot_index = db.Column(db.Integer, nullable=False)
    level = db.Column(db.Integer, nullable=False)

    reserved_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    reserved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    occupant_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    filled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Set on positions carried over by a split: the level the member held in the
    # predecessor formation. History only, earnings always follow `level`.
    inherited_level = db.Column(db.Integer, nullable=True)
    predecessor_position_id = db.Column(db.Integer, db.ForeignKey('triangle_positions.id'), nullable=True)

    triangle = db.relationship('Triangle', back_populates='positions')
    occupant = db.relationship('User', foreign_keys=[occupant_user_id])
    reserved_user = db.relationship('User', foreign_keys=[reserved_user_id])

    __table_args__ = (
        UniqueConstraint('triangle_id', 'position_key', name='uq_triangle_position_key'),
        db.CheckConstraint('level >= 0 AND level <= 3', name='chk_position_level'),
    )

    @validates('occupant_user_id')
    def _occupant_written_once(self, key, value):
        if self.occupant_user_id is not None and value != self.occupant_user_id:
            raise ConsistencyViolation(
                f"Position {self.position_key} of formation {self.triangle_id} is already occupied",
                triangle_id=self.triangle_id,
            )
        return value

    @property
    def is_open(self) -> bool:
        return self.reserved_user_id is None and self.occupant_user_id is None

    def to_dict(self):
        from triangle.payout import PayoutCalculator
        holder = self.occupant or self.reserved_user
        return {
            "positionKey": self.position_key,
            "level": self.level,
            "occupantUserId": self.occupant_user_id,
            "username": holder.username if holder else None,
            "reserved": self.reserved_user_id is not None and self.occupant_user_id is None,
            "inheritedLevel": self.inherited_level,
            "payoutTier": as_float(PayoutCalculator.position_earnings(self.level, self.triangle.plan))
            if self.triangle is not None and self.triangle.plan is not None else None,
            "filledAt": _iso(self.filled_at),
        }

# ===========================================================
# LEDGER
# ===========================================================

class Transaction(db.Model, BaseMixin):
    """One ledger event. Amount is immutable; status follows the ledger state machine."""
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(40), unique=True, nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    type = db.Column(db.String(20), nullable=False)
    amount = db.Column(db.BigInteger, nullable=False)  # minor units
    status = db.Column(db.String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)

    position_id = db.Column(db.Integer, db.ForeignKey('triangle_positions.id'), nullable=True, index=True)
    triangle_id = db.Column(db.Integer, db.ForeignKey('triangles.id'), nullable=True, index=True)
    # Credits point at the transaction that produced them; one credit per source.
    source_transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=True, index=True)

    description = db.Column(db.String(255))
    rejection_reason = db.Column(db.String(255))
    decided_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    declared_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('transactions', lazy='dynamic'))
    position = db.relationship('TrianglePosition')
    triangle = db.relationship('Triangle')

    __table_args__ = (
        UniqueConstraint('type', 'source_transaction_id', 'user_id', name='uq_credit_per_source'),
        db.CheckConstraint('amount >= 0', name='chk_transaction_amount'),
        Index('idx_transaction_type_status', 'type', 'status'),
    )

    @validates('amount')
    def _amount_is_immutable(self, key, value):
        if self.amount is not None and value != self.amount:
            raise ValueError(f"Transaction {self.reference} amount cannot change")
        return value

    def to_dict(self):
        return {
            "id": self.id,
            "reference": self.reference,
            "userId": self.user_id,
            "type": self.type,
            "amount": as_float(self.amount),
            "status": self.status,
            "triangleId": self.triangle_id,
            "positionKey": self.position.position_key if self.position else None,
            "description": self.description,
            "rejectionReason": self.rejection_reason,
            "createdAt": _iso(self.created_at),
            "confirmedAt": _iso(self.confirmed_at),
            "completedAt": _iso(self.completed_at),
            "rejectedAt": _iso(self.rejected_at),
            "expiresAt": _iso(self.expires_at),
        }

# ===========================================================
# REJOIN & SETTINGS
# ===========================================================

class RejoinTicket(db.Model, BaseMixin):
    """Pre-fill staged for a banished account; consumed by the next registration."""
    __tablename__ = 'rejoin_tickets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    username = db.Column(db.String(80), nullable=False, index=True)
    wallet_address = db.Column(db.String(120), nullable=False, index=True)
    plan_name = db.Column(db.String(20), nullable=False)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "username": self.username,
            "walletAddress": self.wallet_address,
            "plan": self.plan_name,
        }


class AdminSetting(db.Model, BaseMixin):
    """Typed key/value runtime settings editable by admins."""
    __tablename__ = 'admin_settings'

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(64), unique=True, nullable=False)
    value = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(16), nullable=False, default='string')
