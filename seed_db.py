# seed_db.py
# Usage: python seed_db.py
# Creates missing tables and loads the configured plan catalog. Safe to re-run.

from app import create_app
from extensions import db
from triangle.plans import PlanCatalog


def seed():
    app = create_app()
    with app.app_context():
        db.create_all()
        plans = PlanCatalog.seed_defaults()
        db.session.commit()
        for plan in plans:
            print(f"{plan.name:<8} price={plan.price / 100:.2f} x{plan.payout_multiplier} "
                  f"referral={float(plan.referral_bonus_rate):.0%}")


if __name__ == "__main__":
    seed()
