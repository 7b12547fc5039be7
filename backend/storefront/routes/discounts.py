# Overview: Flask API routes for discount lookups; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, current_app

from ..runtime import get_runtime
from ..validation import ValidationError, coerce_int, coerce_optional_int

discounts_bp = Blueprint("discounts", __name__, url_prefix="/api/discounts")


@discounts_bp.get("/evaluate")
def evaluate_route():
    """
    Best discount for a product at a quantity.

    Query: product_id, quantity, customer_id?, variant_id?
    Returns {"discount": null} when nothing applies.
    """
    try:
        product_id = coerce_int(request.args.get("product_id"), "product_id")
        quantity = coerce_int(request.args.get("quantity"), "quantity")
        customer_id = coerce_optional_int(request.args.get("customer_id"), "customer_id")
        variant_id = coerce_optional_int(request.args.get("variant_id"), "variant_id")

        result = get_runtime().evaluator.evaluate(product_id, quantity, customer_id, variant_id)
        return jsonify({"discount": result.to_dict(quantity) if result else None}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to evaluate discount")
        return jsonify({"error": "Internal server error"}), 500
