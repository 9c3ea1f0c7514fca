"""
Notification Blueprint.

Routes (prefix /api/notifications):
  GET    ""                   – inbox for ?recipient= (default: caller), ?unreadOnly=true
  PATCH  /<id>/read           – mark one notice read
  PATCH  /read-all            – mark every notice addressed to ?recipient= read
"""

from flask import Blueprint, jsonify, request

from grc.blueprints import current_user
from grc.services.notification import NotificationService
from grc.utils.helpers import int_arg
from grc.utils.errors import register_error_handlers

notification_bp = Blueprint("notification_bp", __name__, url_prefix="/api/notifications")
register_error_handlers(notification_bp)


def _recipient():
    return request.args.get("recipient") or current_user(default="all")


@notification_bp.route("", methods=["GET"])
def inbox():
    result = NotificationService.inbox(
        _recipient(),
        unread_only=request.args.get("unreadOnly", "").lower() in ("1", "true", "yes"),
        limit=int_arg("limit", 50, minimum=1, maximum=200),
        offset=int_arg("offset", 0),
    )
    return jsonify(result)


@notification_bp.route("/<int:notification_id>/read", methods=["PATCH"])
def mark_read(notification_id):
    return jsonify(NotificationService.mark_read(notification_id).to_dict())


@notification_bp.route("/read-all", methods=["PATCH"])
def mark_all_read():
    recipient = _recipient()
    return jsonify({"recipient": recipient, "updated": NotificationService.mark_all_read(recipient)})
