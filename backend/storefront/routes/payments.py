# Overview: Flask API routes for payment confirmation; parses provider callbacks and returns JSON responses.

# backend/storefront/routes/payments.py
"""
Payment Confirmation API Routes

WHY: Online M-Pesa orders are committed before the customer approves the STK
push on their phone. The provider reports the outcome to this callback.

DESIGN:
- ResultCode 0 confirms the payment and moves the order to processing
- Any other ResultCode fails the payment and undoes the sale
- Redelivered callbacks are acknowledged without changing anything
"""

from flask import Blueprint, request, jsonify, current_app

from ..runtime import get_runtime
from ..services.checkout_service import CommitFailure
from ..services.ledger_store import PaymentNotFound, PaymentStateError
from ..validation import ValidationError


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/mpesa/callback")
def mpesa_callback_route():
    """
    M-Pesa STK callback.

    Request body:
    {
        "Body": {
            "stkCallback": {
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully."
            }
        }
    }
    """
    try:
        data = request.get_json(silent=True) or {}
        callback = (data.get("Body") or {}).get("stkCallback") or {}
        reference = callback.get("CheckoutRequestID")
        result_code = callback.get("ResultCode")
        if not reference or result_code is None:
            return jsonify({"success": False, "error": "CheckoutRequestID and ResultCode required"}), 400

        try:
            succeeded = int(result_code) == 0
        except (TypeError, ValueError):
            return jsonify({"success": False, "error": "ResultCode must be an integer"}), 400

        order = get_runtime().orchestrator.confirm_payment(
            str(reference),
            succeeded,
            result_code=str(result_code),
            result_desc=callback.get("ResultDesc"),
        )
        return jsonify({"success": True, "order": order.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"success": False, "error": str(e), "details": e.details}), 400
    except PaymentNotFound as e:
        return jsonify({"success": False, "error": str(e), "details": e.details}), 404
    except PaymentStateError as e:
        return jsonify({"success": False, "error": str(e), "details": e.details}), 409
    except CommitFailure as e:
        current_app.logger.error("Payment callback left order needing reconciliation: %s", e.details)
        return jsonify({"success": False, "error": str(e), "details": e.details}), 500
    except Exception:
        current_app.logger.exception("Failed to process M-Pesa callback")
        return jsonify({"success": False, "error": "Internal server error"}), 500
