from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from models import Transaction
from triangle.atomic import run_atomically
from triangle.ledger import LedgerStateMachine

bp = Blueprint("transactions", __name__, url_prefix="/api")


@bp.route("/transactions", methods=["GET"])
@login_required
def list_transactions():
    query = Transaction.query.filter_by(user_id=current_user.id)
    tx_type = request.args.get("type")
    if tx_type:
        query = query.filter_by(type=tx_type.upper())
    transactions = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).all()
    return jsonify({"transactions": [tx.to_dict() for tx in transactions]}), 200


@bp.route("/transactions/<int:transaction_id>/status", methods=["GET"])
@login_required
def transaction_status(transaction_id):
    tx = LedgerStateMachine.load_for(transaction_id, current_user)
    return jsonify(LedgerStateMachine.status_projection(tx)), 200


@bp.route("/transactions/<int:transaction_id>/declare-sent", methods=["POST"])
@login_required
def declare_sent(transaction_id):
    user = current_user._get_current_object()
    tx = run_atomically(LedgerStateMachine.declare_sent, transaction_id, user)
    return jsonify(LedgerStateMachine.status_projection(tx)), 200


#===========================================================================
#      PAYOUT REQUESTS
#==============================================================================
@bp.route("/payout", methods=["POST"])
@login_required
def request_payout():
    data = request.get_json(silent=True) or {}
    amount = data.get("amount")

    payout = run_atomically(LedgerStateMachine.request_payout, current_user.id, amount)
    return jsonify({
        "success": True,
        "message": "Payout request submitted for admin review",
        "transactionId": payout.id,
        "reference": payout.reference,
        "transaction": payout.to_dict(),
    }), 201


@bp.route("/payout/<int:transaction_id>/cancel", methods=["POST"])
@login_required
def cancel_payout(transaction_id):
    user = current_user._get_current_object()
    tx = run_atomically(LedgerStateMachine.cancel, transaction_id, user)
    return jsonify(LedgerStateMachine.status_projection(tx)), 200
