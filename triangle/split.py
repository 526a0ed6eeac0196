# triangle/split.py
from datetime import datetime, timezone
from typing import List
from flask import current_app
from extensions import db
from models import FormationStatus, Triangle, User
from triangle import events
from triangle.errors import AlreadyFinalized, ConsistencyViolation, IllegalTransition
from triangle.layout import APEX_KEY, FORMATION_SIZE, POSITION_KEYS, is_ancestor, relative_key, subtree_keys
from triangle.state import TriangleStateMachine


class SplitOrchestrator:
    """
    Dissolves a cycled formation into two successors.

    Each configured split root becomes the apex of a new formation of the
    same plan and everyone below it moves to the matching relative slot.
    Members that are not carried (the old apex, by default) are retired
    with the old formation. The old formation keeps its positions as an
    archive; only the users' pointers move.
    """

    @staticmethod
    def split_roots(plan_name: str) -> tuple:
        table = current_app.config["SPLIT_APEX_KEYS"]
        roots = tuple(table.get(plan_name) or table["default"])
        if len(roots) != 2 or roots[0] == roots[1]:
            raise ValueError(f"Split for {plan_name} needs two distinct roots, got {roots}")
        for root in roots:
            if root == APEX_KEY or root not in POSITION_KEYS:
                raise ValueError(f"Invalid split root {root!r} for {plan_name}")
        if is_ancestor(roots[0], roots[1]) or is_ancestor(roots[1], roots[0]):
            raise ValueError(f"Split roots {roots} for {plan_name} overlap")
        return roots

    @staticmethod
    def split(formation: Triangle) -> List[Triangle]:
        if formation.status != FormationStatus.CYCLED.value:
            raise IllegalTransition(f"Formation {formation.id} must be CYCLED before it can split")
        if Triangle.query.filter_by(parent_id=formation.id).first() is not None:
            raise AlreadyFinalized(f"Formation {formation.id} has already split")

        by_key = {p.position_key: p for p in formation.positions}
        original = {key: pos.occupant_user_id for key, pos in by_key.items()}
        if len(original) != FORMATION_SIZE or any(uid is None for uid in original.values()):
            raise ConsistencyViolation(
                f"Formation {formation.id} cannot split with vacant positions",
                triangle_id=formation.id,
            )

        roots = SplitOrchestrator.split_roots(formation.plan_name)
        now = datetime.now(timezone.utc)
        successors = []
        carried = []

        for root in roots:
            successor = TriangleStateMachine.create_formation(formation.plan, parent=formation)
            for key in subtree_keys(root):
                old_position = by_key[key]
                target = successor.position(relative_key(root, key))
                member = db.session.get(User, old_position.occupant_user_id)

                target.reserved_user_id = member.id
                target.reserved_at = now
                target.occupant_user_id = member.id
                target.filled_at = old_position.filled_at or now
                target.inherited_level = old_position.level
                target.predecessor_position_id = old_position.id

                member.triangle_id = successor.id
                member.position_key = target.position_key

                successor.reserved_count += 1
                successor.filled_count += 1
                carried.append(member.id)
            successors.append(successor)

        retired = [uid for uid in original.values() if uid not in set(carried)]
        for user_id in retired:
            member = db.session.get(User, user_id)
            if member.triangle_id == formation.id:
                member.triangle_id = None
                member.position_key = None

        db.session.flush()
        SplitOrchestrator._verify(formation, successors, carried, retired, original)

        current_app.logger.info(
            f"Formation {formation.id} split into {', '.join(str(s.id) for s in successors)}; "
            f"retired users {retired}"
        )
        events.queue(
            events.formation_cycled,
            triangle_id=formation.id,
            plan_name=formation.plan_name,
            successor_ids=[s.id for s in successors],
            retired_user_ids=retired,
        )
        return successors

    @staticmethod
    def _verify(formation, successors, carried, retired, original):
        def fail(reason):
            raise ConsistencyViolation(f"Split of formation {formation.id} failed: {reason}",
                                       triangle_id=formation.id)

        if len(successors) != 2:
            fail(f"expected 2 successors, got {len(successors)}")

        apexes = [s.position(APEX_KEY).occupant_user_id for s in successors]
        if None in apexes or apexes[0] == apexes[1]:
            fail(f"successor apexes are not distinct: {apexes}")

        if len(carried) != len(set(carried)):
            fail("a member was carried into more than one successor")
        members = set(carried) | set(retired)
        if members != set(original.values()) or set(carried) & set(retired):
            fail("members of the successors and the retired positions do not match the original formation")

        for successor in successors:
            occupied = sum(1 for p in successor.positions if p.occupant_user_id is not None)
            if occupied != successor.filled_count or successor.filled_count >= FORMATION_SIZE:
                fail(f"successor {successor.id} count {successor.filled_count} does not match {occupied}")
            if successor.status != FormationStatus.FILLING.value or successor.plan_name != formation.plan_name:
                fail(f"successor {successor.id} is not a filling {formation.plan_name} formation")
