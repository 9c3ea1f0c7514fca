"""
GRC Core Platform
Notification Service.

In-app inbox for escalation targets and approvers. Callers send after
their own transaction has committed; a notice that fails to send never
undoes the change it reports.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, or_, select, update

from grc.core.exceptions import NotFoundError, ValidationError
from grc.models import db
from grc.models.notification import BROADCAST, NOTICE_KINDS, NOTICE_SEVERITIES, Notification
from grc.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _addressed_to(recipient: str):
    return or_(Notification.recipient == recipient, Notification.recipient == BROADCAST)


class NotificationService:
    """Stateless notice operations."""

    @staticmethod
    def send(*, recipient: str, title: str, body: str = "", kind: str = "system",
             severity: str = "info", subject_type: str | None = None,
             subject_id: int | None = None) -> Notification:
        """Store one notice and commit it."""
        if kind not in NOTICE_KINDS:
            raise ValidationError(f"kind must be one of {sorted(NOTICE_KINDS)}", details={"kind": kind})
        if severity not in NOTICE_SEVERITIES:
            raise ValidationError(f"severity must be one of {sorted(NOTICE_SEVERITIES)}",
                                  details={"severity": severity})

        notice = Notification(
            recipient=recipient or BROADCAST,
            title=title,
            body=body or "",
            kind=kind,
            severity=severity,
            subject_type=subject_type,
            subject_id=subject_id,
        )
        db.session.add(notice)
        db.session.commit()
        logger.debug("Notice sent to %s: %s", notice.recipient, title)
        return notice

    @staticmethod
    def inbox(recipient: str, *, unread_only: bool = False, limit: int = 50, offset: int = 0) -> dict:
        """Notices for ``recipient`` plus broadcasts, newest first."""
        stmt = select(Notification).where(_addressed_to(recipient))
        if unread_only:
            stmt = stmt.where(Notification.read_at.is_(None))

        total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        unread = db.session.execute(
            select(func.count(Notification.id))
            .where(_addressed_to(recipient), Notification.read_at.is_(None))
        ).scalar_one()
        rows = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .limit(limit).offset(offset)
        ).scalars().all()
        return {
            "items": [n.to_dict() for n in rows],
            "total": total,
            "unread": unread,
            "limit": limit,
            "offset": offset,
        }

    @staticmethod
    def mark_read(notification_id: int) -> Notification:
        notice = db.session.get(Notification, notification_id)
        if notice is None:
            raise NotFoundError(resource="Notification", resource_id=notification_id)
        notice.mark_read(utcnow())
        db.session.commit()
        return notice

    @staticmethod
    def mark_all_read(recipient: str) -> int:
        """Mark every unread notice addressed to ``recipient`` (not broadcasts) read."""
        result = db.session.execute(
            update(Notification)
            .where(Notification.recipient == recipient, Notification.read_at.is_(None))
            .values(read_at=utcnow())
        )
        db.session.commit()
        return result.rowcount
