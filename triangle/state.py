# triangle/state.py
from datetime import datetime, timezone
from flask import current_app
from sqlalchemy.orm import selectinload
from extensions import db
from models import FormationStatus, Triangle, TrianglePosition, User
from triangle import events
from triangle.errors import (
    AlreadyFinalized,
    ConsistencyViolation,
    IllegalTransition,
    NotEligibleForPayout,
)
from triangle.layout import APEX_KEY, FORMATION_SIZE, POSITION_KEYS, level_of


class TriangleStateMachine:
    """
    Lifecycle of one formation: FILLING -> COMPLETE -> CYCLED.

    Every write goes through a formation loaded with `lock()`. The formation
    row carries a version counter, so two units of work that both changed it
    from the same snapshot cannot both commit.
    """

    @staticmethod
    def lock(triangle_id: int) -> Triangle:
        return (
            Triangle.query.filter_by(id=triangle_id)
            .options(selectinload(Triangle.positions))
            .with_for_update()
            .populate_existing()
            .first()
        )

    @staticmethod
    def create_formation(plan, parent: Triangle = None) -> Triangle:
        formation = Triangle(
            plan_name=plan.name,
            status=FormationStatus.FILLING.value,
            filled_count=0,
            reserved_count=0,
            parent_id=parent.id if parent else None,
            generation=(parent.generation + 1) if parent else 0,
        )
        for index, key in enumerate(POSITION_KEYS):
            formation.positions.append(
                TrianglePosition(position_key=key, slot_index=index, level=level_of(key))
            )
        db.session.add(formation)
        db.session.flush()
        current_app.logger.info(f"Created {plan.name} formation {formation.id} (generation {formation.generation})")
        return formation

    @staticmethod
    def ensure_writable(formation: Triangle):
        if formation.frozen:
            raise ConsistencyViolation(
                f"Formation {formation.id} is frozen pending operator review",
                triangle_id=formation.id,
            )

    @staticmethod
    def reserve(formation: Triangle, position: TrianglePosition, user: User) -> TrianglePosition:
        """Hold an open slot for a user whose deposit is still pending."""
        TriangleStateMachine.ensure_writable(formation)
        if formation.status != FormationStatus.FILLING.value:
            raise IllegalTransition(f"Formation {formation.id} is {formation.status}, not accepting members")
        if position.triangle_id != formation.id or not position.is_open:
            raise ConsistencyViolation(
                f"Position {position.position_key} of formation {formation.id} is not open",
                triangle_id=formation.id,
            )

        position.reserved_user_id = user.id
        position.reserved_at = datetime.now(timezone.utc)
        formation.reserved_count += 1
        if formation.reserved_count > FORMATION_SIZE:
            raise ConsistencyViolation(
                f"Formation {formation.id} would hold {formation.reserved_count} reservations",
                triangle_id=formation.id,
            )

        user.triangle_id = formation.id
        user.position_key = position.position_key
        return position

    @staticmethod
    def release(formation: Triangle, position: TrianglePosition):
        """Give back a reservation whose deposit was never confirmed."""
        TriangleStateMachine.ensure_writable(formation)
        if position.occupant_user_id is not None:
            raise IllegalTransition(f"Position {position.position_key} is filled and cannot be released")
        if position.reserved_user_id is None:
            raise IllegalTransition(f"Position {position.position_key} holds no reservation")

        holder = db.session.get(User, position.reserved_user_id)
        if holder and holder.triangle_id == formation.id and holder.position_key == position.position_key:
            holder.triangle_id = None
            holder.position_key = None

        position.reserved_user_id = None
        position.reserved_at = None
        formation.reserved_count -= 1
        current_app.logger.info(f"Released {position.position_key} in formation {formation.id}")

    @staticmethod
    def occupy(formation: Triangle, position: TrianglePosition, user: User) -> bool:
        """
        Turn a paid reservation into an occupant and count it. Returns True
        when this fill completed the formation. The FILLING -> COMPLETE
        transition fires here and nowhere else, so it fires once.
        """
        TriangleStateMachine.ensure_writable(formation)
        if formation.status != FormationStatus.FILLING.value:
            raise IllegalTransition(f"Formation {formation.id} is {formation.status}, cannot fill positions")
        if position.reserved_user_id != user.id:
            raise ConsistencyViolation(
                f"Position {position.position_key} is not reserved for user {user.id}",
                triangle_id=formation.id,
            )

        position.occupant_user_id = user.id
        position.filled_at = datetime.now(timezone.utc)
        formation.filled_count += 1

        occupied = sum(1 for p in formation.positions if p.occupant_user_id is not None)
        if occupied != formation.filled_count or formation.filled_count > FORMATION_SIZE:
            raise ConsistencyViolation(
                f"Formation {formation.id} fill count {formation.filled_count} does not match {occupied} occupants",
                triangle_id=formation.id,
            )

        if formation.is_complete:
            formation.status = FormationStatus.COMPLETE.value
            formation.completed_at = datetime.now(timezone.utc)
            current_app.logger.info(f"Formation {formation.id} ({formation.plan_name}) is complete")
            events.queue(events.formation_completed, triangle_id=formation.id, plan_name=formation.plan_name)
            return True
        return False

    @staticmethod
    def assert_payout_eligible(user: User) -> Triangle:
        """The requester must sit on A of a complete formation. No side effects."""
        if not user.triangle_id or user.position_key != APEX_KEY:
            raise NotEligibleForPayout("Only the apex (position A) can request a payout",
                                       position=user.position_key)

        formation = TriangleStateMachine.lock(user.triangle_id)
        if formation is None or formation.status != FormationStatus.COMPLETE.value:
            raise NotEligibleForPayout(
                "Your formation is not complete yet",
                filled=formation.filled_count if formation else 0,
            )

        apex = formation.position(APEX_KEY)
        if apex is None or apex.occupant_user_id != user.id:
            raise NotEligibleForPayout("Only the apex (position A) can request a payout")
        return formation

    @staticmethod
    def mark_cycled(formation: Triangle):
        TriangleStateMachine.ensure_writable(formation)
        if formation.status == FormationStatus.CYCLED.value or formation.payout_processed:
            raise AlreadyFinalized(f"Formation {formation.id} has already cycled")
        if formation.status != FormationStatus.COMPLETE.value:
            raise IllegalTransition(f"Formation {formation.id} is {formation.status}, cannot cycle")

        formation.status = FormationStatus.CYCLED.value
        formation.payout_processed = True
        formation.cycled_at = datetime.now(timezone.utc)

    @staticmethod
    def formation_snapshot(formation: Triangle) -> dict:
        """Read model of a formation with its positions."""
        data = formation.to_dict()
        data["plan"] = formation.plan.to_dict() if formation.plan else None
        data["positions"] = [p.to_dict() for p in formation.positions]
        data["openSlots"] = sum(1 for p in formation.positions if p.is_open)
        data["frozen"] = formation.frozen
        return data
