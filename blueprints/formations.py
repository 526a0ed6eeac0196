from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from extensions import db
from models import Triangle, User
from triangle.atomic import run_atomically
from triangle.placement import PlacementResolver
from triangle.state import TriangleStateMachine
from triangle.stats import StatsHelper

bp = Blueprint("formations", __name__, url_prefix="/api")


def _assign(user_id, plan_name, referrer_code):
    user = db.session.get(User, user_id)
    return PlacementResolver.assign_position(user, plan_name, referrer_code)


#===========================================================================
#      ASSIGN POSITION (existing account without a slot)
#==============================================================================
@bp.route("/triangle/assign", methods=["POST"])
@login_required
def assign_position():
    data = request.get_json(silent=True) or {}
    plan_name = (data.get("planType") or data.get("plan") or "").strip() or None
    referrer_code = (data.get("referrerId") or data.get("referralCode") or "").strip() or None

    placement = run_atomically(_assign, current_user.id, plan_name, referrer_code)
    current_app.logger.info(f"User {current_user.id} assigned {placement.position_key} in {placement.triangle_id}")
    return jsonify(placement.to_dict()), 201


@bp.route("/triangle/<int:triangle_id>", methods=["GET"])
@login_required
def get_triangle(triangle_id):
    formation = db.session.get(Triangle, triangle_id)
    if not formation:
        return jsonify({"error": "Triangle not found"}), 404
    return jsonify(TriangleStateMachine.formation_snapshot(formation)), 200


@bp.route("/user/position", methods=["GET"])
@login_required
def user_position():
    return jsonify(StatsHelper.user_position(current_user)), 200


@bp.route("/user/referrals", methods=["GET"])
@login_required
def user_referrals():
    return jsonify(StatsHelper.referral_summary(current_user)), 200
