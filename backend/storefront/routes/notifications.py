# Overview: Flask API routes for staff notifications; parses input and returns JSON responses.

from flask import Blueprint, jsonify

from ..runtime import get_runtime

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("")
def list_notifications_route():
    """Notification history (most recent first), unread count and feed connection state."""
    return jsonify(get_runtime().notifications.to_dict()), 200


@notifications_bp.post("/<notification_id>/read")
def mark_read_route(notification_id: str):
    center = get_runtime().notifications
    if not center.mark_as_read(notification_id):
        return jsonify({"error": "Notification not found"}), 404
    return jsonify({"unread_count": center.unread_count}), 200


@notifications_bp.post("/read-all")
def mark_all_read_route():
    center = get_runtime().notifications
    marked = center.mark_all_as_read()
    return jsonify({"marked": marked, "unread_count": center.unread_count}), 200


@notifications_bp.delete("")
def clear_notifications_route():
    get_runtime().notifications.clear_all()
    return jsonify({"cleared": True}), 200
