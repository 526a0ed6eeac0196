# triangle/stats.py
from typing import Any, Dict
from sqlalchemy import func
from extensions import db
from models import (
    FormationStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    Triangle,
    TrianglePosition,
    User,
)
from triangle.layout import FORMATION_SIZE
from triangle.money import as_float


class StatsHelper:
    """Read-only projections for dashboards."""

    @staticmethod
    def _count_pending(tx_type: TransactionType) -> int:
        return Transaction.query.filter_by(type=tx_type.value, status=TransactionStatus.PENDING.value).count()

    @staticmethod
    def admin_overview() -> Dict[str, Any]:
        formations = dict(
            db.session.query(Triangle.status, func.count(Triangle.id)).group_by(Triangle.status).all()
        )
        payout_volume = (
            db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(
                Transaction.type == TransactionType.PAYOUT.value,
                Transaction.status.in_([TransactionStatus.CONFIRMED.value, TransactionStatus.COMPLETED.value]),
            )
            .scalar()
        )

        recent = Transaction.query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(10).all()
        pending = (
            Transaction.query.filter(
                Transaction.status == TransactionStatus.PENDING.value,
                Transaction.type.in_([TransactionType.DEPOSIT.value, TransactionType.PAYOUT.value]),
            )
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(10)
            .all()
        )
        # Payouts first, they block a formation from cycling
        pending.sort(key=lambda tx: tx.type != TransactionType.PAYOUT.value)

        by_plan = {}
        rows = (
            db.session.query(Triangle.plan_name, Triangle.status, func.count(Triangle.id))
            .group_by(Triangle.plan_name, Triangle.status)
            .all()
        )
        for plan_name, status, count in rows:
            by_plan.setdefault(plan_name, {s.value: 0 for s in FormationStatus})[status] = count

        return {
            "stats": {
                "totalUsers": User.query.filter_by(delete_account=False).count(),
                "activeTriangles": formations.get(FormationStatus.FILLING.value, 0),
                "completedTriangles": formations.get(FormationStatus.COMPLETE.value, 0),
                "cycledTriangles": formations.get(FormationStatus.CYCLED.value, 0),
                "frozenTriangles": Triangle.query.filter_by(frozen=True).count(),
                "pendingDeposits": StatsHelper._count_pending(TransactionType.DEPOSIT),
                "pendingPayouts": StatsHelper._count_pending(TransactionType.PAYOUT),
                "totalPayoutVolume": as_float(payout_volume),
            },
            "recentTransactions": [
                {
                    "id": tx.id,
                    "user": tx.user.username if tx.user else None,
                    "type": tx.type,
                    "plan": tx.user.plan_name if tx.user else None,
                    "amount": as_float(tx.amount),
                    "status": tx.status,
                    "time": tx.created_at.isoformat() if tx.created_at else None,
                }
                for tx in recent
            ],
            "pendingActions": [
                {
                    "id": tx.id,
                    "type": "payout" if tx.type == TransactionType.PAYOUT.value else "deposit_approval",
                    "user": tx.user.username if tx.user else None,
                    "amount": as_float(tx.amount),
                    "priority": "high" if tx.type == TransactionType.PAYOUT.value else "medium",
                }
                for tx in pending
            ],
            "trianglesByPlan": by_plan,
        }

    @staticmethod
    def referral_summary(user: User) -> Dict[str, Any]:
        referrals = User.query.filter_by(referred_by=user.id).order_by(User.created_at.desc()).all()
        commissions = Transaction.query.filter_by(
            user_id=user.id, type=TransactionType.REFERRAL.value
        ).order_by(Transaction.created_at.desc()).all()

        return {
            "referralCode": user.referral_code,
            "totalReferrals": len(referrals),
            "totalCommission": as_float(sum(tx.amount for tx in commissions)),
            "referrals": [
                {
                    "id": r.id,
                    "username": r.username,
                    "plan": r.plan_name,
                    "status": r.status,
                    "joinedAt": r.created_at.isoformat() if r.created_at else None,
                }
                for r in referrals
            ],
            "history": [tx.to_dict() for tx in commissions],
        }

    @staticmethod
    def user_position(user: User) -> Dict[str, Any]:
        data = {
            "user": user.to_dict(),
            "triangle": None,
            "positionKey": user.position_key,
            "completion": 0.0,
            "canRequestPayout": False,
            "position": None,
            "history": [],
        }
        if not user.triangle_id:
            return data

        formation = db.session.get(Triangle, user.triangle_id)
        if formation is None:
            return data
        data["triangle"] = formation.to_dict()
        data["completion"] = round(formation.filled_count * 100.0 / FORMATION_SIZE, 1)

        # Payout-tier history: the current slot plus every slot it was carried from
        position = formation.position(user.position_key)
        data["position"] = position.to_dict() if position else None
        history = []
        while position is not None and position.predecessor_position_id:
            position = db.session.get(TrianglePosition, position.predecessor_position_id)
            if position is None:
                break
            history.append({"triangleId": position.triangle_id, **position.to_dict()})
        data["history"] = history
        data["canRequestPayout"] = (
            user.position_key == "A" and formation.status == FormationStatus.COMPLETE.value
        )
        return data
