"""
ITSM Change Lifecycle Engine
Notification Service.

Change lifecycle events arrive here after their transaction has committed.
``deliver`` is the entry point for those callers: a failed notification is
logged and rolled back, never allowed to undo or mask the transition.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError

from itsm.core.exceptions import NotFoundError, ValidationError
from itsm.models import db
from itsm.models.notification import NOTIFICATION_TYPES, Notification
from itsm.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class NotificationService:

    @staticmethod
    def notify(recipients, notification_type, payload):
        """
        Write one notification per recipient and commit.

        Args:
            recipients: user ids, already de-duplicated.
            notification_type: one of NOTIFICATION_TYPES.
            payload: ``title`` and ``message``; optionally ``change_id``,
                ``organization_id`` and ``data``.

        Returns:
            The Notification rows written (empty when there are no recipients).
        """
        if notification_type not in NOTIFICATION_TYPES:
            raise ValidationError(f"Unknown notification type: {notification_type}")

        rows = [
            Notification(
                user_id=user_id,
                organization_id=payload.get("organization_id"),
                change_id=payload.get("change_id"),
                type=notification_type,
                title=payload["title"],
                message=payload.get("message", ""),
                data=payload.get("data") or {},
            )
            for user_id in recipients
        ]
        if rows:
            db.session.add_all(rows)
            db.session.commit()
        return rows

    @staticmethod
    def deliver(recipients, notification_type, payload):
        """``notify`` for post-commit callers; database errors are logged, not raised."""
        recipients = list(recipients)
        try:
            return NotificationService.notify(recipients, notification_type, payload)
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Could not deliver %s to %d recipient(s)", notification_type, len(recipients),
                extra={"change_id": payload.get("change_id")},
            )
            return []

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """``(page, total)`` of the user's notifications, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter(Notification.is_read.is_(False))
        total = q.count()
        page = (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return page, total

    @staticmethod
    def unread_count(user_id):
        return Notification.query.filter_by(user_id=user_id, is_read=False).count()

    @staticmethod
    def mark_read(notification_id, user_id):
        # Another user's notification is reported as missing
        row = db.session.get(Notification, notification_id)
        if row is None or row.user_id != user_id:
            raise NotFoundError("Notification", notification_id)
        row.mark_read()
        db.session.commit()
        return row

    @staticmethod
    def mark_all_read(user_id):
        """Number of notifications that were unread."""
        count = (
            Notification.query.filter_by(user_id=user_id, is_read=False)
            .update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
        )
        db.session.commit()
        return count
