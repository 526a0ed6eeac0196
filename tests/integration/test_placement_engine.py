"""
Integration tests for PlacementResolver.

Covers:
- New formation creation and oldest-first fallback in heap order
- Referrer branch: breadth-first below the referrer
- Plan lock through referral
- Reservation does not count toward filled_count
- Error paths: InvalidReferrer, AlreadyPlaced, DuplicateAccount, RegistrationClosed
- A miscounted formation is frozen and later registrants go elsewhere
"""

import pytest

from extensions import db
from models import Transaction, TransactionStatus, TransactionType, Triangle, User
from triangle.atomic import run_atomically
from triangle.errors import (
    AlreadyPlaced,
    ConsistencyViolation,
    DuplicateAccount,
    InvalidReferrer,
    RegistrationClosed,
)
from triangle.placement import PlacementResolver
from triangle.settings import SettingsHelper


class TestFallbackPlacement:
    """Registrants without referrers."""

    def test_first_registrant_opens_formation_on_apex(self, make_user):
        user, placement = make_user(plan="King")

        formation = db.session.get(Triangle, placement.triangle_id)
        assert placement.position_key == "A"
        assert user.triangle_id == formation.id
        assert user.position_key == "A"
        assert formation.plan_name == "King"
        assert formation.status == "FILLING"
        assert formation.filled_count == 0
        assert formation.reserved_count == 1

    def test_pending_deposit_sized_to_plan_price(self, make_user):
        _, placement = make_user(plan="Queen")

        deposit = placement.deposit_transaction
        assert deposit.type == TransactionType.DEPOSIT.value
        assert deposit.status == TransactionStatus.PENDING.value
        assert deposit.amount == 50
        assert deposit.position.position_key == "A"

    def test_fills_oldest_formation_in_heap_order(self, make_user):
        placements = [make_user(plan="King")[1] for _ in range(4)]

        assert [p.position_key for p in placements] == ["A", "B", "C", "B1"]
        assert len({p.triangle_id for p in placements}) == 1

    def test_plans_fill_separate_formations(self, make_user):
        _, king = make_user(plan="King")
        _, knight = make_user(plan="Knight")

        assert king.triangle_id != knight.triangle_id
        assert knight.position_key == "A"

    def test_sixteenth_registrant_starts_new_formation(self, fill_formation, make_user):
        members = fill_formation(plan="Bishop", count=15, confirm=False)
        first_formation = members[0][1].triangle_id

        _, placement = make_user(plan="Bishop")

        assert placement.triangle_id != first_formation
        assert placement.position_key == "A"
        assert db.session.get(Triangle, first_formation).reserved_count == 15
        assert db.session.get(Triangle, first_formation).filled_count == 0


class TestReferrerPlacement:
    """Registrants arriving through a referral code."""

    def test_lands_below_referrer_before_older_slots(self, make_user):
        make_user(plan="King")
        make_user(plan="King")
        referrer, _ = make_user(plan="King")
        assert referrer.position_key == "C"

        user, placement = make_user(plan="King", referrer_code=referrer.referral_code)

        # Oldest-first alone would have chosen B1
        assert placement.position_key == "C1"
        assert user.referred_by == referrer.id

    def test_breadth_first_below_referrer(self, make_user):
        apex, _ = make_user(plan="Knight")
        keys = [make_user(plan="Knight", referrer_code=apex.referral_code)[1].position_key for _ in range(4)]

        assert keys == ["B", "C", "B1", "B2"]

    def test_leaf_referrer_falls_back_to_oldest_open_slot(self, fill_formation, make_user):
        members = fill_formation(plan="King", count=8, confirm=False)
        leaf_user = members[-1][0]
        assert leaf_user.position_key == "B1a"

        _, placement = make_user(plan="King", referrer_code=leaf_user.referral_code)

        assert placement.position_key == "B1b"
        assert placement.triangle_id == members[0][1].triangle_id

    def test_referral_locks_plan(self, make_user):
        referrer, _ = make_user(plan="King")

        user, placement = make_user(plan="Knight", referrer_code=referrer.referral_code)

        assert user.plan_name == "King"
        assert db.session.get(Triangle, placement.triangle_id).plan_name == "King"
        assert placement.deposit_transaction.amount == 100

    def test_unknown_referral_code_creates_nothing(self, make_user):
        users_before = User.query.count()

        with pytest.raises(InvalidReferrer):
            make_user(plan="King", referrer_code="NOPE123")

        assert User.query.count() == users_before
        assert Triangle.query.count() == 0


class TestResolveReferrer:
    """Pure lookup used to pre-validate the plan."""

    def test_by_code_case_insensitive(self, make_user):
        referrer, _ = make_user(plan="Queen")

        result = PlacementResolver.resolve_referrer(referrer.referral_code.lower())

        assert result["username"] == referrer.username
        assert result["plan"] == "Queen"

    def test_by_username(self, make_user):
        referrer, _ = make_user(plan="Bishop", username="alice")

        assert PlacementResolver.resolve_referrer("ALICE")["plan"] == "Bishop"

    def test_unresolvable(self, app_ctx):
        with pytest.raises(InvalidReferrer):
            PlacementResolver.resolve_referrer("ghost")


class TestPlacementGuards:
    """Preconditions of a placement."""

    def test_already_placed(self, make_user):
        user, _ = make_user(plan="King")

        with pytest.raises(AlreadyPlaced):
            run_atomically(PlacementResolver.assign_position, user, "King")

        assert Transaction.query.filter_by(user_id=user.id).count() == 1

    def test_duplicate_username_or_wallet(self, make_user):
        make_user(plan="King", username="bob")

        with pytest.raises(DuplicateAccount):
            make_user(plan="King", username="bob")

    def test_registration_disabled(self, make_user):
        run_atomically(SettingsHelper.update, {"REGISTRATION_ENABLED": False})

        with pytest.raises(RegistrationClosed):
            make_user(plan="King")

    def test_no_commission_on_provisional_placement(self, make_user):
        referrer, _ = make_user(plan="King")
        make_user(plan="King", referrer_code=referrer.referral_code)

        db.session.refresh(referrer)
        assert referrer.balance == 0
        assert Transaction.query.filter_by(type=TransactionType.REFERRAL.value).count() == 0


class TestMiscountedFormation:
    """reserved_count disagrees with the open slots."""

    def test_frozen_and_skipped(self, fill_formation, make_user):
        members = fill_formation(plan="Knight", count=15, confirm=False)
        formation_id = members[0][1].triangle_id
        formation = db.session.get(Triangle, formation_id)
        formation.reserved_count = 14
        db.session.commit()

        with pytest.raises(ConsistencyViolation):
            make_user(plan="Knight")

        db.session.expire_all()
        assert db.session.get(Triangle, formation_id).frozen is True

        _, placement = make_user(plan="Knight")

        assert placement.triangle_id != formation_id
        assert placement.position_key == "A"
        assert Triangle.query.filter_by(plan_name="Knight").count() == 2
