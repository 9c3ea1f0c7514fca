"""
GRC Core Platform
Audit planning domain models.

Models:
    - AuditPlan: yearly audit plan that owns a set of prioritization factors
    - AuditUniverseEntity: auditable process / subprocess
    - PrioritizationFactor: scoring inputs + derived score/level/rank for one
      entity inside one plan
"""

from datetime import datetime, timezone

from grc.models import db


# ── Constants ────────────────────────────────────────────────────────────────

PLAN_STATUSES = {"draft", "approved", "in_progress", "closed"}
ENTITY_TYPES = {"process", "subprocess"}
PREVIOUS_AUDIT_RESULTS = {"none", "good", "regular", "bad"}
PRIORITY_LEVELS = ("low", "medium", "high", "critical")

# Factor attributes a client may edit; each edit triggers plan recalculation
EDITABLE_FACTOR_FIELDS = {
    "riskScore": "risk_score",
    "previousAuditResult": "previous_audit_result",
    "strategicPriority": "strategic_priority",
    "fraudHistory": "fraud_history",
    "regulatoryRequirement": "regulatory_requirement",
    "managementRequest": "management_request",
    "estimatedAuditHours": "estimated_audit_hours",
    "timesSinceLastAudit": "times_since_last_audit",
    "riskJustification": "risk_justification",
    "strategicJustification": "strategic_justification",
}


def _iso(dt):
    return dt.isoformat() if dt else None


class AuditPlan(db.Model):
    """Yearly audit plan."""

    __tablename__ = "audit_plans"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name = db.Column(db.String(200), nullable=False)
    year = db.Column(db.Integer, nullable=False)
    description = db.Column(db.Text, default="")
    status = db.Column(db.String(20), default="draft", comment="draft, approved, in_progress, closed")
    created_by = db.Column(db.String(150), default="system")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    factors = db.relationship(
        "PrioritizationFactor",
        back_populates="plan",
        cascade="all, delete-orphan",
        order_by="PrioritizationFactor.id",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "year": self.year,
            "description": self.description,
            "status": self.status,
            "createdBy": self.created_by,
            "createdAt": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<AuditPlan {self.code} ({self.year})>"


class AuditUniverseEntity(db.Model):
    """An auditable process or subprocess."""

    __tablename__ = "audit_universe"

    id = db.Column(db.Integer, primary_key=True)
    auditable_entity = db.Column(db.String(200), nullable=False)
    entity_type = db.Column(db.String(20), default="process", comment="process, subprocess")
    process_name = db.Column(db.String(200), default="")
    is_active = db.Column(db.Boolean, default=True)
    mandatory_audit = db.Column(db.Boolean, default=False)
    audit_frequency = db.Column(db.Integer, default=3, comment="Years between audits")
    last_audit_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "auditableEntity": self.auditable_entity,
            "entityType": self.entity_type,
            "processName": self.process_name,
            "isActive": self.is_active,
            "mandatoryAudit": self.mandatory_audit,
            "auditFrequency": self.audit_frequency,
            "lastAuditDate": _iso(self.last_audit_date),
        }

    def __repr__(self):
        return f"<AuditUniverseEntity {self.id}: {self.auditable_entity}>"


class PrioritizationFactor(db.Model):
    """
    Scoring inputs for one auditable entity within one audit plan.

    total_priority_score, priority_level and calculated_ranking are derived
    and only written by the prioritization service.
    """

    __tablename__ = "audit_prioritization_factors"
    __table_args__ = (
        db.UniqueConstraint("plan_id", "universe_id", name="uq_factor_plan_universe"),
    )

    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(
        db.Integer, db.ForeignKey("audit_plans.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    universe_id = db.Column(
        db.Integer, db.ForeignKey("audit_universe.id", ondelete="CASCADE"), nullable=False,
    )

    # Inputs
    risk_score = db.Column(db.Integer, default=0, comment="Residual risk 0-100")
    previous_audit_result = db.Column(db.String(20), default="none", comment="none, good, regular, bad")
    strategic_priority = db.Column(db.Integer, default=1, comment="1 (low) - 3 (high)")
    fraud_history = db.Column(db.Boolean, default=False)
    regulatory_requirement = db.Column(db.Boolean, default=False)
    management_request = db.Column(db.Boolean, default=False)
    times_since_last_audit = db.Column(db.Integer, default=0, comment="Years since last audit")
    estimated_audit_hours = db.Column(db.Integer, default=40)
    risk_justification = db.Column(db.Text, nullable=True)
    strategic_justification = db.Column(db.Text, nullable=True)

    # Derived
    total_priority_score = db.Column(db.Integer, default=0)
    priority_level = db.Column(db.String(20), default="low")
    calculated_ranking = db.Column(db.Integer, nullable=True)
    calculated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    calculated_by = db.Column(db.String(150), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    plan = db.relationship("AuditPlan", back_populates="factors")
    entity = db.relationship("AuditUniverseEntity")

    def scoring_inputs(self) -> dict:
        """camelCase input mapping consumed by the scoring engine."""
        return {
            "riskScore": self.risk_score,
            "strategicPriority": self.strategic_priority,
            "previousAuditResult": self.previous_audit_result,
            "fraudHistory": self.fraud_history,
            "regulatoryRequirement": self.regulatory_requirement,
            "managementRequest": self.management_request,
        }

    def to_dict(self, include_entity=True):
        d = {
            "id": self.id,
            "planId": self.plan_id,
            "universeId": self.universe_id,
            **self.scoring_inputs(),
            "timesSinceLastAudit": self.times_since_last_audit,
            "estimatedAuditHours": self.estimated_audit_hours,
            "riskJustification": self.risk_justification,
            "strategicJustification": self.strategic_justification,
            "totalPriorityScore": self.total_priority_score,
            "priorityLevel": self.priority_level,
            "calculatedRanking": self.calculated_ranking,
            "calculatedAt": _iso(self.calculated_at),
            "calculatedBy": self.calculated_by,
        }
        if include_entity and self.entity is not None:
            d["entity"] = self.entity.to_dict()
        return d

    def __repr__(self):
        return f"<PrioritizationFactor plan={self.plan_id} entity={self.universe_id} score={self.total_priority_score}>"
