from flask import Blueprint, jsonify, request, session, current_app
from flask_login import login_user, logout_user, login_required, current_user
from sqlalchemy import or_
from models import User
from triangle.atomic import run_atomically
from triangle.placement import PlacementResolver

bp = Blueprint("auth", __name__, url_prefix="/api/auth")


#===========================================================================
#      REGISTER: create account + claim a slot
#==============================================================================
@bp.route("/register", methods=["POST"])
def register():
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Invalid or missing JSON body"}), 400

    username = (data.get("username") or "").strip()
    password = data.get("password") or ""
    wallet_address = (data.get("walletAddress") or "").strip()
    plan_name = (data.get("planType") or data.get("plan") or "").strip()
    referrer_code = (data.get("referrerId") or data.get("referralCode") or "").strip() or None

    # -----------------------------------------
    #  BASIC VALIDATION
    # -----------------------------------------
    if not username or not password or not wallet_address:
        return jsonify({"error": "All fields are required"}), 400
    if not plan_name and not referrer_code:
        return jsonify({"error": "Plan is required"}), 400
    if len(password) < 6:
        return jsonify({"error": "Password must be at least 6 characters"}), 400

    user, placement = run_atomically(
        PlacementResolver.register,
        username, password, wallet_address, plan_name or None, referrer_code,
    )

    session["user_id"] = user.id
    login_user(user)

    return jsonify({
        "success": True,
        "message": "Registration successful, send your deposit to activate your position",
        "user": user.to_dict(),
        **placement.to_dict(),
    }), 201


#===========================================================================
#      REFERRER LOOKUP (pre-validates and locks the plan)
#==============================================================================
@bp.route("/referrer", methods=["GET"])
def referrer():
    code = request.args.get("code", "").strip()
    if not code:
        return jsonify({"error": "Referrer code is required"}), 400
    return jsonify(PlacementResolver.resolve_referrer(code)), 200


@bp.route("/rejoin", methods=["GET"])
def rejoin():
    """Pre-fill for a banished user coming back; not consumed by this lookup."""
    identifier = (request.args.get("username") or request.args.get("walletAddress") or "").strip()
    ticket = PlacementResolver.rejoin_prefill(identifier)
    if not ticket:
        return jsonify({"rejoin": None}), 200
    return jsonify({"rejoin": ticket.to_dict()}), 200


#===========================================================================
#      LOGIN / LOGOUT
#==============================================================================
@bp.route("/login", methods=["POST"])
def login():
    data = request.get_json(silent=True) or {}
    identifier = (data.get("username") or data.get("walletAddress") or "").strip()
    password = data.get("password") or ""

    if not identifier or not password:
        return jsonify({"error": "Username and password are required"}), 400

    user = User.query.filter(
        or_(User.username == identifier, User.wallet_address == identifier)
    ).first()

    if not user or not user.check_password(password):
        current_app.logger.warning(f"Failed login for {identifier}")
        return jsonify({"error": "Invalid credentials"}), 401
    if user.delete_account or not user.is_active:
        return jsonify({"error": "Account has been deactivated"}), 403

    session["user_id"] = user.id
    login_user(user)
    current_app.logger.info(f"User {user.id} logged in")
    return jsonify({"success": True, "user": user.to_dict()}), 200


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    user_id = current_user.id
    logout_user()
    session.pop("user_id", None)
    current_app.logger.info(f"User {user_id} logged out")
    return jsonify({"success": True}), 200
