# triangle/plans.py
from decimal import Decimal
from typing import Dict, List
from flask import current_app
from extensions import db
from models import Plan
from triangle.errors import InvalidPlan
from triangle.money import to_minor

PLAN_NAMES = ("King", "Queen", "Bishop", "Knight")


class PlanCatalog:
    """The closed set of plan tiers, loaded from configuration into the plans table."""

    @staticmethod
    def seed_defaults(catalog: Dict[str, dict] = None) -> List[Plan]:
        """
        Upsert the configured plan table. Safe to run repeatedly: existing rows
        are updated in place, nothing is duplicated. Caller commits.
        """
        catalog = catalog or current_app.config["PLAN_CATALOG"]
        seeded = []
        for name, values in catalog.items():
            if name not in PLAN_NAMES:
                raise InvalidPlan(f"Unknown plan tier: {name}", plan=name)

            plan = Plan.query.filter_by(name=name).first()
            if not plan:
                plan = Plan(name=name)
                db.session.add(plan)

            plan.price = to_minor(values["price"])
            plan.payout_multiplier = int(values.get("payout_multiplier", 4))
            plan.referral_bonus_rate = Decimal(str(values.get("referral_bonus_rate", "0.10")))
            plan.description = values.get("description", plan.description)
            plan.is_active = values.get("is_active", True)
            seeded.append(plan)

        db.session.flush()
        PlanCatalog.validate()
        current_app.logger.info(f"Plan catalog seeded: {', '.join(p.name for p in seeded)}")
        return seeded

    @staticmethod
    def get(name: str) -> Plan:
        if not name:
            raise InvalidPlan("Plan is required")
        plan = Plan.query.filter(db.func.lower(Plan.name) == name.strip().lower()).first()
        if not plan or not plan.is_active:
            raise InvalidPlan(f"Invalid plan: {name}", plan=name)
        return plan

    @staticmethod
    def list_plans() -> List[Plan]:
        return Plan.query.filter_by(is_active=True).order_by(Plan.price.desc()).all()

    @staticmethod
    def validate():
        """Exactly one row per tier name, positive prices, referral rate within [0, 1]."""
        plans = Plan.query.all()
        seen = set()
        for plan in plans:
            if plan.name not in PLAN_NAMES:
                raise InvalidPlan(f"Unknown plan tier in catalog: {plan.name}", plan=plan.name)
            if plan.name in seen:
                raise InvalidPlan(f"Duplicate plan tier: {plan.name}", plan=plan.name)
            seen.add(plan.name)
            if plan.price <= 0:
                raise InvalidPlan(f"Plan {plan.name} must have a positive price", plan=plan.name)
            if plan.payout_multiplier <= 0:
                raise InvalidPlan(f"Plan {plan.name} must have a positive payout multiplier", plan=plan.name)
            rate = Decimal(str(plan.referral_bonus_rate))
            if rate < 0 or rate > 1:
                raise InvalidPlan(f"Plan {plan.name} referral rate must be between 0 and 1", plan=plan.name)
        return True
