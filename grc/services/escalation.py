"""
GRC Core Platform
Escalation policy and SLA escalation timer.

Two halves:
  - Pure: evaluate_escalations(items, now, sla_hours) decides which pending
    items are past their SLA and how they should be escalated;
    evaluate_timeouts(escalations, now) picks active escalations left open
    longer than their timeout_hours. No database, no clock; callers pass
    ``now``.
  - Apply: apply_escalations() / apply_timeouts() push each candidate
    through the same atomic transitions as a manual action
    (approval_service.escalate / time_out_escalation), so the sweep can run
    from any number of workers without extra locking.

A sweep first moves timed-out escalations one level up the ladder (or
marks them expired at ``board``), then escalates pending items past their
SLA. Re-running it never double-escalates: only ``pending`` items are SLA
candidates, and a timeout applies only to the item's active escalation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable

from flask import current_app
from sqlalchemy import select

from grc.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from grc.models import db
from grc.models.approval import ESCALATION_LEVELS, SYSTEM_ACTOR, ApprovalItem, Escalation
from grc.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Policy
# ═════════════════════════════════════════════════════════════════════════════

# Hours an escalation may stay open at each level before it times out
LEVEL_BASE_HOURS = {
    "supervisor": 24,
    "manager": 48,
    "director": 72,
    "executive": 96,
    "board": 168,
}

URGENCY_MULTIPLIER = {"critical": 0.5, "high": 0.75, "medium": 1.0, "low": 1.5}

# Authority an item is routed to when the timer escalates it
LEVEL_FOR_RISK = {
    "critical": "executive",
    "high": "director",
    "medium": "manager",
    "low": "supervisor",
}


def default_timeout_hours(escalation_level: str, urgency: str) -> int:
    """Timeout for a new escalation: level base hours scaled by urgency."""
    hours = LEVEL_BASE_HOURS[escalation_level] * URGENCY_MULTIPLIER[urgency]
    return max(1, int(round(hours)))


def next_escalation_level(escalation_level: str) -> str | None:
    """The authority above ``escalation_level``; None at the top."""
    idx = ESCALATION_LEVELS.index(escalation_level)
    if idx + 1 < len(ESCALATION_LEVELS):
        return ESCALATION_LEVELS[idx + 1]
    return None


def escalation_ladder() -> list[dict]:
    """Authorities from lowest to highest with their timeout per urgency."""
    return [
        {
            "level": level,
            "rank": idx + 1,
            "nextLevel": next_escalation_level(level),
            "baseHours": LEVEL_BASE_HOURS[level],
            "timeoutHours": {
                urgency: default_timeout_hours(level, urgency) for urgency in URGENCY_MULTIPLIER
            },
        }
        for idx, level in enumerate(ESCALATION_LEVELS)
    ]


# ═════════════════════════════════════════════════════════════════════════════
# Pure evaluation
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EscalationCandidate:
    item_id: int
    risk_level: str
    urgency: str
    escalation_level: str
    age_hours: float
    sla_hours: float

    @property
    def reason(self) -> str:
        return (
            f"SLA exceeded: pending {self.age_hours:.1f}h "
            f"(limit {self.sla_hours:g}h for {self.risk_level} risk)"
        )

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "riskLevel": self.risk_level,
            "urgency": self.urgency,
            "escalationLevel": self.escalation_level,
            "ageHours": round(self.age_hours, 2),
            "slaHours": self.sla_hours,
            "reason": self.reason,
        }


def is_overdue(item, now: datetime, sla_hours: dict) -> bool:
    """True when a pending item's age strictly exceeds its SLA."""
    if item.approval_status != "pending" or item.submitted_at is None:
        return False
    limit = sla_hours.get(item.risk_level)
    if limit is None:
        return False
    return as_utc(now) - as_utc(item.submitted_at) > timedelta(hours=limit)


def evaluate_escalations(
    items: Iterable, now: datetime, sla_hours: dict,
) -> list[EscalationCandidate]:
    """Select pending items whose age exceeds the SLA of their risk level.

    Args:
        items: Objects exposing ``id``, ``approval_status``, ``risk_level``
            and ``submitted_at`` (ApprovalItem rows or plain stand-ins).
        now: Evaluation instant.
        sla_hours: ``{risk_level: hours}``. Levels absent from the map are
            never escalated.

    Returns:
        One candidate per overdue item, in input order. Escalated and
        terminal items are skipped.
    """
    now = as_utc(now)
    candidates = []
    for item in items:
        if not is_overdue(item, now, sla_hours):
            continue
        age = now - as_utc(item.submitted_at)
        candidates.append(EscalationCandidate(
            item_id=item.id,
            risk_level=item.risk_level,
            urgency=item.risk_level,
            escalation_level=LEVEL_FOR_RISK.get(item.risk_level, "manager"),
            age_hours=age.total_seconds() / 3600,
            sla_hours=sla_hours[item.risk_level],
        ))
    return candidates


@dataclass(frozen=True)
class TimeoutCandidate:
    item_id: int
    escalation_id: int
    escalation_level: str
    next_level: str | None
    open_hours: float
    timeout_hours: int

    def to_dict(self) -> dict:
        return {
            "itemId": self.item_id,
            "escalationId": self.escalation_id,
            "escalationLevel": self.escalation_level,
            "nextLevel": self.next_level,
            "openHours": round(self.open_hours, 2),
            "timeoutHours": self.timeout_hours,
        }


def is_timed_out(esc, now: datetime) -> bool:
    """True when an unresolved escalation has been open strictly longer than its timeout."""
    if esc.resolved_at is not None or esc.created_at is None:
        return False
    return as_utc(now) - as_utc(esc.created_at) > timedelta(hours=esc.timeout_hours)


def evaluate_timeouts(escalations: Iterable, now: datetime) -> list[TimeoutCandidate]:
    """Select active escalations past their timeout, in input order.

    ``escalations`` expose ``id``, ``approval_item_id``, ``escalation_level``,
    ``next_escalation_level``, ``timeout_hours``, ``created_at`` and
    ``resolved_at``.
    """
    now = as_utc(now)
    candidates = []
    for esc in escalations:
        if not is_timed_out(esc, now):
            continue
        candidates.append(TimeoutCandidate(
            item_id=esc.approval_item_id,
            escalation_id=esc.id,
            escalation_level=esc.escalation_level,
            next_level=esc.next_escalation_level,
            open_hours=(now - as_utc(esc.created_at)).total_seconds() / 3600,
            timeout_hours=esc.timeout_hours,
        ))
    return candidates


# ═════════════════════════════════════════════════════════════════════════════
# Apply + sweep
# ═════════════════════════════════════════════════════════════════════════════

_STALE_CANDIDATE_ERRORS = (InvalidStateError, ConflictError, NotFoundError)


def apply_escalations(candidates: Iterable[EscalationCandidate]) -> dict:
    """Escalate each candidate as ``system``.

    Items that changed since evaluation (decided, escalated elsewhere, or
    deleted) are reported under ``skipped`` instead of failing the batch.
    """
    from grc.services import approval_service

    report = {"escalated": [], "skipped": []}
    for cand in candidates:
        try:
            approval_service.escalate(
                cand.item_id,
                escalation_level=cand.escalation_level,
                reason=cand.reason,
                urgency=cand.urgency,
                escalated_by=SYSTEM_ACTOR,
                is_automatic=True,
            )
        except _STALE_CANDIDATE_ERRORS as exc:
            db.session.rollback()
            report["skipped"].append({
                "id": cand.item_id,
                "error": type(exc).__name__,
                "message": str(exc),
            })
            continue
        report["escalated"].append(cand.item_id)
    return report


def apply_timeouts(candidates: Iterable[TimeoutCandidate], now: datetime | None = None) -> dict:
    """Advance or expire each timed-out escalation.

    Escalations resolved since evaluation (the item was decided, or another
    worker advanced it) are reported under ``skipped``.
    """
    from grc.services import approval_service

    report = {"advanced": [], "expired": [], "skipped": []}
    for cand in candidates:
        try:
            result = approval_service.time_out_escalation(cand.item_id, cand.escalation_id, now=now)
        except _STALE_CANDIDATE_ERRORS as exc:
            db.session.rollback()
            report["skipped"].append({
                "id": cand.item_id,
                "escalationId": cand.escalation_id,
                "error": type(exc).__name__,
                "message": str(exc),
            })
            continue
        bucket = "advanced" if result["escalation"] is not None else "expired"
        report[bucket].append(cand.item_id)
    return report


def _run_timeout_pass(now: datetime) -> dict:
    active = db.session.execute(
        select(Escalation)
        .join(ApprovalItem, Escalation.approval_item_id == ApprovalItem.id)
        .where(Escalation.resolved_at.is_(None), ApprovalItem.approval_status == "escalated")
        .order_by(Escalation.created_at, Escalation.id)
    ).scalars().all()

    report = apply_timeouts(evaluate_timeouts(active, now), now=now)
    report["evaluated"] = len(active)
    return report


def run_escalation_sweep(now: datetime | None = None) -> dict:
    """Time out stale escalations, then escalate pending items past their SLA.

    The SLA half reports ``escalated``/``skipped``/``evaluated``/``candidates``
    at the top level; the timeout half is nested under ``timeouts``.
    """
    now = now or utcnow()
    sla_hours = current_app.config["APPROVAL_SLA_HOURS"]

    timeouts = _run_timeout_pass(now)

    pending = db.session.execute(
        select(ApprovalItem)
        .where(ApprovalItem.approval_status == "pending")
        .order_by(ApprovalItem.submitted_at, ApprovalItem.id)
    ).scalars().all()

    candidates = evaluate_escalations(pending, now, sla_hours)
    report = apply_escalations(candidates)
    report["evaluated"] = len(pending)
    report["candidates"] = len(candidates)
    report["timeouts"] = timeouts

    logger.info(
        "SLA escalation sweep: %d evaluated, %d escalated, %d skipped; "
        "%d escalation(s) advanced, %d expired",
        report["evaluated"], len(report["escalated"]), len(report["skipped"]),
        len(timeouts["advanced"]), len(timeouts["expired"]),
    )
    return report


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

ESCALATION_STATUS_FILTERS = {"active", "resolved", "all"}


def list_escalations(status: str | None = None) -> list[dict]:
    """Escalations newest first, optionally filtered to active/resolved."""
    status = status or "all"
    if status not in ESCALATION_STATUS_FILTERS:
        raise ValidationError(
            f"status must be one of {sorted(ESCALATION_STATUS_FILTERS)}",
            details={"status": status},
        )

    stmt = select(Escalation).order_by(Escalation.created_at.desc(), Escalation.id.desc())
    if status == "active":
        stmt = stmt.where(Escalation.resolved_at.is_(None))
    elif status == "resolved":
        stmt = stmt.where(Escalation.resolved_at.is_not(None))
    rows = db.session.execute(stmt).scalars().all()
    return [
        {**esc.to_dict(), "item": esc.item.to_dict() if esc.item else None}
        for esc in rows
    ]
