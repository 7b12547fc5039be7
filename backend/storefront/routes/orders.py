# Overview: Flask API routes for back-office order handling; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..models import OrderLine, Payment
from ..extensions import db
from ..runtime import get_runtime
from ..services.ledger_store import OrderTransitionError

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    order = get_runtime().store.get_order(order_id)
    if not order:
        return jsonify({"error": "Order not found"}), 404

    lines = db.session.query(OrderLine).filter_by(order_id=order_id).order_by(OrderLine.id).all()
    payments = db.session.query(Payment).filter_by(order_id=order_id).all()

    return jsonify({
        "order": order.to_dict(),
        "lines": [line.to_dict() for line in lines],
        "payments": [p.to_dict() for p in payments],
    }), 200


@orders_bp.post("/<int:order_id>/status")
def update_status_route(order_id: int):
    """
    Move an order to a new status (pending -> processing -> completed, or cancelled).

    Publishes an order update to the notification feed.
    """
    try:
        data = request.get_json(silent=True) or {}
        status = (data.get("status") or "").strip().lower()
        if not status:
            return jsonify({"error": "status required"}), 400

        if not get_runtime().store.get_order(order_id):
            return jsonify({"error": "Order not found"}), 404

        order = get_runtime().store.update_order_status(order_id, status)
        return jsonify({"order": order.to_dict()}), 200

    except OrderTransitionError as e:
        return jsonify({"error": str(e), "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500
