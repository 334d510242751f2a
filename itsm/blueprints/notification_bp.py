"""
Notification Blueprint.

Routes (prefix /api/v1), always scoped to the calling user:
  GET    /notifications                    – list (unread_only, limit, offset)
  PUT    /notifications/<id>               – mark one as read
  POST   /notifications/mark-all-read      – mark all as read
"""

from flask import Blueprint, jsonify, request

from itsm.auth import current_actor
from itsm.blueprints import pagination_args
from itsm.services.notification import NotificationService
from itsm.utils.errors import register_error_handlers

notification_bp = Blueprint("notification", __name__, url_prefix="/api/v1")
register_error_handlers(notification_bp)


@notification_bp.route("/notifications", methods=["GET"])
def list_notifications():
    actor = current_actor()
    limit, offset = pagination_args()
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    items, total = NotificationService.list_for_user(
        actor.user_id, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({
        "items": [n.to_dict() for n in items],
        "total": total,
        "unread_count": NotificationService.unread_count(actor.user_id),
        "limit": limit,
        "offset": offset,
    })


@notification_bp.route("/notifications/<notification_id>", methods=["PUT"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id, current_actor().user_id)
    return jsonify(notif.to_dict())


@notification_bp.route("/notifications/mark-all-read", methods=["POST"])
def mark_all_read():
    count = NotificationService.mark_all_read(current_actor().user_id)
    return jsonify({"marked_read": count})
