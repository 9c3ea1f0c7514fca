"""
GRC Core Platform
Approval workflow domain models.

Models:
    - ApprovalItem: one record awaiting (or having received) a decision
    - Escalation: routing of an item to a higher authority
    - ApprovalAuditTrail: append-only history of every transition
    - ApprovalRule: submit-time routing (automatic approval vs. manual queue)

State machine (ApprovalItem.approval_status):
    pending ──► approved   (terminal)
       │   ──► rejected   (terminal)
       └──► escalated ──► approved | rejected
"""

from datetime import datetime, timezone

from grc.models import db


# ── Constants ────────────────────────────────────────────────────────────────

APPROVAL_ITEM_TYPES = {
    "risk", "control", "action_plan", "audit_finding",
    "audit_test", "compliance_document", "process",
}
RISK_LEVELS = ("low", "medium", "high", "critical")
APPROVAL_STATUSES = {"pending", "approved", "rejected", "escalated"}
TERMINAL_STATUSES = {"approved", "rejected"}
DECISION_METHODS = {"manual", "automatic"}

ESCALATION_LEVELS = ("supervisor", "manager", "director", "executive", "board")
URGENCY_LEVELS = RISK_LEVELS

AUDIT_ACTIONS = {
    "submitted", "auto_approved", "approved", "rejected", "escalated", "auto_escalated",
    "escalation_timed_out", "escalation_expired",
}

SYSTEM_ACTOR = "system"


def _iso(dt):
    return dt.isoformat() if dt else None


class ApprovalItem(db.Model):
    """
    An entity awaiting approval.

    ``version`` is managed by SQLAlchemy (version_id_col): every UPDATE is
    issued as ``... WHERE id = :id AND version = :loaded_version`` so a
    concurrent writer causes a StaleDataError instead of a lost update.
    """

    __tablename__ = "approval_items"

    id = db.Column(db.Integer, primary_key=True)
    approval_item_type = db.Column(db.String(40), nullable=False)
    approval_item_id = db.Column(db.String(64), nullable=False, comment="Id of the entity under approval")
    risk_level = db.Column(db.String(20), nullable=False, default="medium")
    approval_status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    decision_method = db.Column(db.String(20), nullable=True, comment="manual, automatic")
    title = db.Column(db.String(300), default="")

    submitted_by = db.Column(db.String(150), nullable=False, default=SYSTEM_ACTOR)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=False,
                             default=lambda: datetime.now(timezone.utc))
    approver_id = db.Column(db.String(150), nullable=True)
    reasoning = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    escalations = db.relationship(
        "Escalation", back_populates="item",
        cascade="all, delete-orphan", order_by="Escalation.id",
    )
    audit_trail = db.relationship(
        "ApprovalAuditTrail", back_populates="item",
        cascade="all, delete-orphan", order_by="ApprovalAuditTrail.id",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.approval_status in TERMINAL_STATUSES

    @property
    def active_escalation(self):
        for esc in self.escalations:
            if esc.resolved_at is None:
                return esc
        return None

    def to_dict(self):
        return {
            "id": self.id,
            "approvalItemType": self.approval_item_type,
            "approvalItemId": self.approval_item_id,
            "title": self.title,
            "riskLevel": self.risk_level,
            "approvalStatus": self.approval_status,
            "decisionMethod": self.decision_method,
            "submittedBy": self.submitted_by,
            "submittedAt": _iso(self.submitted_at),
            "approverId": self.approver_id,
            "reasoning": self.reasoning,
            "decidedAt": _iso(self.decided_at),
            "version": self.version,
        }

    def __repr__(self):
        return f"<ApprovalItem {self.id} {self.approval_item_type}:{self.approval_item_id} [{self.approval_status}]>"


class Escalation(db.Model):
    """Routing of an ApprovalItem to a higher authority.

    At most one row per item has ``resolved_at IS NULL``. An escalation left
    open past ``timeout_hours`` is closed as ``timed_out`` and replaced by one
    at ``next_escalation_level``, or closed as ``expired`` at the top level.
    """

    __tablename__ = "approval_escalations"

    id = db.Column(db.Integer, primary_key=True)
    approval_item_id = db.Column(
        db.Integer, db.ForeignKey("approval_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    escalation_level = db.Column(db.String(20), nullable=False,
                                 comment="supervisor, manager, director, executive, board")
    next_escalation_level = db.Column(db.String(20), nullable=True)
    urgency = db.Column(db.String(20), nullable=False, default="medium")
    timeout_hours = db.Column(db.Integer, nullable=False, default=72)
    escalation_reason = db.Column(db.Text, nullable=False)
    escalated_by = db.Column(db.String(150), nullable=False)
    is_automatic = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_by = db.Column(db.String(150), nullable=True)
    resolution = db.Column(db.String(20), nullable=True, comment="approved, rejected, timed_out, expired")

    item = db.relationship("ApprovalItem", back_populates="escalations")

    @property
    def status(self) -> str:
        return "active" if self.resolved_at is None else "resolved"

    def to_dict(self):
        return {
            "id": self.id,
            "approvalItemId": self.approval_item_id,
            "escalationLevel": self.escalation_level,
            "nextEscalationLevel": self.next_escalation_level,
            "urgency": self.urgency,
            "timeoutHours": self.timeout_hours,
            "escalationReason": self.escalation_reason,
            "escalatedBy": self.escalated_by,
            "isAutomatic": self.is_automatic,
            "status": self.status,
            "createdAt": _iso(self.created_at),
            "resolvedAt": _iso(self.resolved_at),
            "resolvedBy": self.resolved_by,
            "resolution": self.resolution,
        }

    def __repr__(self):
        return f"<Escalation {self.id} item={self.approval_item_id} {self.escalation_level} [{self.status}]>"


class ApprovalAuditTrail(db.Model):
    """Append-only history row for one approval transition."""

    __tablename__ = "approval_audit_trail"

    id = db.Column(db.Integer, primary_key=True)
    approval_item_id = db.Column(
        db.Integer, db.ForeignKey("approval_items.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    action = db.Column(db.String(30), nullable=False)
    performed_by = db.Column(db.String(150), nullable=False)
    previous_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=False)
    reasoning = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, default=dict)
    timestamp = db.Column(db.DateTime(timezone=True), nullable=False,
                          default=lambda: datetime.now(timezone.utc))

    item = db.relationship("ApprovalItem", back_populates="audit_trail")

    def to_dict(self):
        return {
            "id": self.id,
            "approvalItemId": self.approval_item_id,
            "action": self.action,
            "performedBy": self.performed_by,
            "previousStatus": self.previous_status,
            "newStatus": self.new_status,
            "reasoning": self.reasoning,
            "details": self.details or {},
            "timestamp": _iso(self.timestamp),
        }

    def __repr__(self):
        return f"<ApprovalAuditTrail item={self.approval_item_id} {self.action}>"


# ── Submit-time routing rules ────────────────────────────────────────────────

RULE_ACTIONS = ("auto_approve", "require_review")
RULE_FIELDS = ("riskLevel", "approvalItemType", "title")
RULE_OPERATORS = ("equals", "not_equals", "in", "contains", "not_contains", "at_least", "at_most")


class ApprovalRule(db.Model):
    """
    Routing rule evaluated when an item is submitted.

    Active rules run in ``priority`` order (lowest first, then id). The first
    rule whose item types and conditions all match decides between automatic
    approval and the manual queue. ``conditions`` is a list of
    ``{"field", "operator", "value"}`` objects; every one must hold.
    """

    __tablename__ = "approval_rules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), unique=True, nullable=False)
    description = db.Column(db.Text, default="")
    priority = db.Column(db.Integer, nullable=False, default=100, comment="Lower runs first")
    action = db.Column(db.String(30), nullable=False, comment="auto_approve, require_review")
    item_types = db.Column(db.JSON, default=list, comment="Empty = every item type")
    conditions = db.Column(db.JSON, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(db.String(150), nullable=False, default=SYSTEM_ACTOR)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": self.priority,
            "action": self.action,
            "itemTypes": self.item_types or [],
            "conditions": self.conditions or [],
            "isActive": self.is_active,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ApprovalRule {self.id} {self.name!r} p={self.priority} -> {self.action}>"
