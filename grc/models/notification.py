"""
GRC Core Platform
In-app notices raised by the approval workflow.

A notice is addressed to a user name, an escalation level (``director``,
``executive``...) or ``all``, and points back at the record it is about
(``subject_type`` / ``subject_id``). A notice is unread while ``read_at``
is null.
"""

from datetime import datetime, timezone

from grc.models import db


NOTICE_KINDS = {"escalation", "approval", "prioritization", "system"}
NOTICE_SEVERITIES = {"info", "warning", "critical"}
BROADCAST = "all"


class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), nullable=False, default=BROADCAST, index=True,
                          comment="User name, escalation level or 'all'")
    kind = db.Column(db.String(30), nullable=False, default="system")
    severity = db.Column(db.String(20), nullable=False, default="info")
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")

    subject_type = db.Column(db.String(30), nullable=True, comment="approval_item, audit_plan")
    subject_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_notifications_recipient_unread", "recipient", "read_at"),
    )

    @property
    def is_read(self) -> bool:
        return self.read_at is not None

    def mark_read(self, now=None):
        if self.read_at is None:
            self.read_at = now or datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "kind": self.kind,
            "severity": self.severity,
            "title": self.title,
            "body": self.body,
            "subjectType": self.subject_type,
            "subjectId": self.subject_id,
            "isRead": self.is_read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "readAt": self.read_at.isoformat() if self.read_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id} -> {self.recipient}: {self.title[:40]}>"
