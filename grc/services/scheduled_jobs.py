"""
GRC Core Platform
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - approval_sla_escalation (every 15 min): escalates pending approvals past their SLA
    - prioritization_refresh (daily): re-scores every open audit plan
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from grc.core.exceptions import NotFoundError
from grc.models import db
from grc.models.audit_planning import AuditPlan
from grc.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Approval SLA escalation
# ═══════════════════════════════════════════════════════════════════════════

@register_job("approval_sla_escalation", every_minutes=15)
def escalate_overdue_approvals() -> dict[str, Any]:
    """Escalate pending approval items whose age exceeds the risk-level SLA."""
    from grc.services.escalation import run_escalation_sweep

    report = run_escalation_sweep()
    return {
        "evaluated": report["evaluated"],
        "escalated": len(report["escalated"]),
        "skipped": len(report["skipped"]),
        "escalationsAdvanced": len(report["timeouts"]["advanced"]),
        "escalationsExpired": len(report["timeouts"]["expired"]),
    }


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Prioritization refresh
# ═══════════════════════════════════════════════════════════════════════════

@register_job("prioritization_refresh", every_minutes=24 * 60)
def refresh_plan_prioritization() -> dict[str, Any]:
    """Recalculate scores and rankings of every audit plan that is not closed."""
    from grc.services.prioritization_service import recalculate_all

    results = {"plans": 0, "factors": 0, "failed_factors": 0, "errors": 0}
    plan_ids = db.session.execute(
        select(AuditPlan.id).where(AuditPlan.status != "closed").order_by(AuditPlan.id)
    ).scalars().all()

    for plan_id in plan_ids:
        try:
            report = recalculate_all(plan_id, calculated_by="system")
        except NotFoundError:
            # Plan deleted between listing and recalculation
            results["errors"] += 1
            continue
        results["plans"] += 1
        results["factors"] += report["total"]
        results["failed_factors"] += report["failed"]

    logger.info("Prioritization refresh: %s", results)
    return results
