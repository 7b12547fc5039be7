# Overview: Flask API routes for checkout sessions; parses input and returns JSON responses.

# backend/storefront/routes/checkout.py
"""Checkout session API: cart editing, discount preview and commit."""

from flask import Blueprint, Response, request, jsonify, current_app

from ..runtime import get_runtime
from ..services.checkout_service import CommitFailure, CommitInProgress, CommitCancelled
from ..services.ledger_store import InsufficientStock
from ..services.receipt_service import format_receipt
from ..services.session_service import SessionNotFound
from ..validation import (
    ConflictError,
    ValidationError,
    coerce_int,
    coerce_optional_int,
    require_quantity,
)


checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


def _error(exc, status: int):
    return jsonify({"error": str(exc), "details": getattr(exc, "details", {})}), status


def _session_payload(session) -> dict:
    return {"session": session.to_dict()}


@checkout_bp.post("/sessions")
def create_session_route():
    """Open a checkout session (one per terminal or shopper)."""
    try:
        data = request.get_json(silent=True) or {}
        session = get_runtime().sessions.create(
            customer_id=coerce_optional_int(data.get("customer_id"), "customer_id"),
            cashier_id=coerce_optional_int(data.get("cashier_id"), "cashier_id"),
            channel=data.get("channel", "pos"),
        )
        return jsonify(_session_payload(session)), 201

    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to create checkout session")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.get("/sessions/<sid>")
def get_session_route(sid: str):
    try:
        session = get_runtime().sessions.get(sid)
    except SessionNotFound as e:
        return _error(e, 404)
    return jsonify(_session_payload(session)), 200


@checkout_bp.delete("/sessions/<sid>")
def discard_session_route(sid: str):
    if not get_runtime().sessions.discard(sid):
        return jsonify({"error": "Checkout session not found"}), 404
    return jsonify({"discarded": True}), 200


@checkout_bp.get("/sessions/<sid>/receipt")
def last_receipt_route(sid: str):
    """
    Receipt of the session's last commit.

    ?format=text returns the printable plain-text rendering instead of JSON.
    """
    try:
        session = get_runtime().sessions.get(sid)
    except SessionNotFound as e:
        return _error(e, 404)

    receipt = session.last_receipt
    if receipt is None:
        return jsonify({"error": "No receipt for this session yet"}), 404

    if request.args.get("format") == "text":
        text = format_receipt(receipt, currency=current_app.config["CURRENCY"])
        return Response(text, mimetype="text/plain")
    return jsonify({"receipt": receipt.to_dict()}), 200


@checkout_bp.post("/sessions/<sid>/lines")
def add_line_route(sid: str):
    """
    Add a product (optionally a variant) to the cart.

    Returns 409 when the merged quantity would exceed stock.
    """
    try:
        data = request.get_json(silent=True) or {}
        product_id = coerce_int(data.get("product_id"), "product_id")
        quantity = require_quantity(data.get("quantity", 1))
        variant_id = coerce_optional_int(data.get("variant_id"), "variant_id")

        registry = get_runtime().sessions
        line = registry.add_item(sid, product_id, quantity, variant_id)
        return jsonify({"line": line.to_dict(), **_session_payload(registry.get(sid))}), 201

    except SessionNotFound as e:
        return _error(e, 404)
    except ValidationError as e:
        return _error(e, 400)
    except ConflictError as e:
        return _error(e, 409)
    except Exception:
        current_app.logger.exception("Failed to add cart line")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.patch("/sessions/<sid>/lines/<int:product_id>")
def change_quantity_route(sid: str, product_id: int):
    """Apply a quantity delta. Out-of-range results leave the line unchanged."""
    try:
        data = request.get_json(silent=True) or {}
        delta = coerce_int(data.get("delta"), "delta")
        variant_id = coerce_optional_int(data.get("variant_id"), "variant_id")

        registry = get_runtime().sessions
        line = registry.change_quantity(sid, product_id, delta, variant_id)
        if line is None:
            return jsonify({"error": "Line not found"}), 404
        return jsonify({"line": line.to_dict(), **_session_payload(registry.get(sid))}), 200

    except SessionNotFound as e:
        return _error(e, 404)
    except ValidationError as e:
        return _error(e, 400)
    except Exception:
        current_app.logger.exception("Failed to change cart quantity")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.delete("/sessions/<sid>/lines/<int:product_id>")
def remove_line_route(sid: str, product_id: int):
    try:
        variant_id = coerce_optional_int(request.args.get("variant_id"), "variant_id")
        registry = get_runtime().sessions
        if not registry.remove_item(sid, product_id, variant_id):
            return jsonify({"error": "Line not found"}), 404
        return jsonify(_session_payload(registry.get(sid))), 200

    except SessionNotFound as e:
        return _error(e, 404)
    except ValidationError as e:
        return _error(e, 400)


@checkout_bp.delete("/sessions/<sid>/lines")
def clear_cart_route(sid: str):
    try:
        registry = get_runtime().sessions
        registry.clear(sid)
        return jsonify(_session_payload(registry.get(sid))), 200
    except SessionNotFound as e:
        return _error(e, 404)


@checkout_bp.get("/sessions/<sid>/discounts")
def evaluate_discounts_route(sid: str):
    """Discount preview for every cart line, priced exactly as commit would."""
    try:
        evaluated = get_runtime().sessions.evaluate_discounts(sid)
        lines = []
        savings = 0
        for line, discount in evaluated:
            line_savings = discount.line_savings_cents(line.quantity) if discount else 0
            savings += line_savings
            lines.append({
                "line": line.to_dict(),
                "discount": discount.to_dict(line.quantity) if discount else None,
            })
        return jsonify({"lines": lines, "total_savings_cents": savings}), 200

    except SessionNotFound as e:
        return _error(e, 404)
    except Exception:
        current_app.logger.exception("Failed to evaluate discounts")
        return jsonify({"error": "Internal server error"}), 500


@checkout_bp.post("/sessions/<sid>/commit")
def commit_route(sid: str):
    """
    Commit the cart.

    Body: payment_method, idempotency_key (or Idempotency-Key header),
    tendered_cents (cash), authorized_by (cash), payment_reference (mpesa/card).

    Returns 201 with the receipt, or 200 with the original receipt when the
    idempotency key was already committed.
    """
    try:
        data = request.get_json(silent=True) or {}
        key = data.get("idempotency_key") or request.headers.get("Idempotency-Key")
        if not key:
            return jsonify({"error": "idempotency_key required"}), 400

        receipt = get_runtime().sessions.commit(
            sid,
            data.get("payment_method"),
            data.get("tendered_cents"),
            idempotency_key=str(key),
            authorized_by=coerce_optional_int(data.get("authorized_by"), "authorized_by"),
            payment_reference=data.get("payment_reference"),
        )
        return jsonify({"receipt": receipt.to_dict()}), 200 if receipt.replayed else 201

    except SessionNotFound as e:
        return _error(e, 404)
    except ValidationError as e:
        return _error(e, 400)
    except InsufficientStock as e:
        return _error(e, 409)
    except (CommitInProgress, CommitCancelled) as e:
        return _error(e, 409)
    except CommitFailure as e:
        if e.needs_reconciliation:
            current_app.logger.error("Checkout %s needs reconciliation: %s", sid, e.details)
        else:
            current_app.logger.exception("Checkout commit failed")
        return _error(e, 500)
    except Exception:
        current_app.logger.exception("Failed to commit checkout")
        return jsonify({"error": "Internal server error"}), 500
