#======================================================================================
#
# ADMIN API: ledger decisions, formations, settings
#
#=======================================================================================
from functools import wraps
from flask import jsonify, request, Blueprint, current_app
from flask_login import current_user
from models import Transaction, Triangle
from triangle.atomic import run_atomically
from triangle.ledger import LedgerStateMachine
from triangle.settings import SettingsHelper
from triangle.state import TriangleStateMachine
from triangle.stats import StatsHelper


def admin_required(f):
    """
    Decorator to restrict access to admin-only routes.
    - 401 when nobody is logged in.
    - 403 when the logged-in user is not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return jsonify({"error": "Authentication required"}), 401
        if not current_user.is_admin:
            return jsonify({"error": "Unauthorized - Admin access required"}), 403
        return f(*args, **kwargs)

    return decorated_function


admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _admin():
    return current_user._get_current_object()


#===========================================================================
#      TRANSACTION DECISIONS
#==============================================================================
@admin_bp.route("/transactions/<int:transaction_id>", methods=["PATCH"])
@admin_required
def decide_transaction(transaction_id):
    data = request.get_json(silent=True) or {}
    status = (data.get("status") or "").strip().upper()
    if not status:
        return jsonify({"error": "Status is required"}), 400

    tx = run_atomically(
        LedgerStateMachine.decide, transaction_id, status, data.get("rejectionReason"), _admin()
    )
    current_app.logger.info(f"Admin {current_user.id} set transaction {tx.reference} to {tx.status}")
    return jsonify({"success": True, "transaction": tx.to_dict()}), 200


@admin_bp.route("/transactions/<int:transaction_id>/confirm", methods=["POST"])
@admin_required
def confirm_transaction(transaction_id):
    tx = run_atomically(LedgerStateMachine.confirm, transaction_id, _admin())
    return jsonify({"success": True, "status": tx.status, "transaction": tx.to_dict()}), 200


@admin_bp.route("/transactions", methods=["GET"])
@admin_required
def list_transactions():
    query = Transaction.query
    status = request.args.get("status")
    tx_type = request.args.get("type")
    if status:
        query = query.filter_by(status=status.upper())
    if tx_type:
        query = query.filter_by(type=tx_type.upper())

    page = request.args.get("page", 1, type=int)
    per_page = min(request.args.get("per_page", 50, type=int), 200)
    pagination = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).paginate(
        page=page, per_page=per_page, error_out=False
    )
    return jsonify({
        "transactions": [
            {**tx.to_dict(), "username": tx.user.username if tx.user else None}
            for tx in pagination.items
        ],
        "total": pagination.total,
        "page": pagination.page,
        "pages": pagination.pages,
    }), 200


@admin_bp.route("/payouts/expire", methods=["POST"])
@admin_required
def expire_payouts():
    expired = run_atomically(LedgerStateMachine.expire_stale_payouts)
    return jsonify({"expired": [tx.id for tx in expired]}), 200


#===========================================================================
#      FORMATIONS & OVERVIEW
#==============================================================================
@admin_bp.route("/triangles", methods=["GET"])
@admin_required
def list_triangles():
    query = Triangle.query
    plan = request.args.get("plan")
    status = request.args.get("status")
    if plan:
        query = query.filter_by(plan_name=plan)
    if status:
        query = query.filter_by(status=status.upper())

    formations = query.order_by(Triangle.created_at.desc(), Triangle.id.desc()).all()
    return jsonify({"triangles": [TriangleStateMachine.formation_snapshot(t) for t in formations]}), 200


@admin_bp.route("/overview", methods=["GET"])
@admin_required
def overview():
    return jsonify(StatsHelper.admin_overview()), 200


#===========================================================================
#      RUNTIME SETTINGS
#==============================================================================
@admin_bp.route("/config", methods=["GET"])
@admin_required
def get_config():
    return jsonify(SettingsHelper.all()), 200


@admin_bp.route("/config", methods=["PATCH"])
@admin_required
def update_config():
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data:
        return jsonify({"error": "Invalid or missing JSON body"}), 400
    config = run_atomically(SettingsHelper.update, data)
    return jsonify({"success": True, "config": config}), 200
