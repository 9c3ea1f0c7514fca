"""
GRC Core Platform
Approval dashboard & metrics aggregation.

Pure builders (build_dashboard, build_escalation_analytics) take the item and
escalation collections plus ``now`` and return JSON-ready dicts. Every ratio
is zero-guarded, so empty input yields zeros and never NaN.

get_dashboard / get_metrics load the collections, call the builders and
cache the result; approval transitions invalidate the cache.

Rates are percentages (0-100) rounded to one decimal; durations are hours.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import date, datetime, timedelta

from flask import current_app
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from grc.models import db
from grc.models.approval import (
    ESCALATION_LEVELS,
    RISK_LEVELS,
    SYSTEM_ACTOR,
    TERMINAL_STATUSES,
    URGENCY_LEVELS,
    ApprovalItem,
    Escalation,
)
from grc.services import cache_service
from grc.services.escalation import is_overdue
from grc.utils.helpers import as_utc, utcnow

logger = logging.getLogger(__name__)


def _pct(part, whole) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _mean_hours(deltas) -> float:
    deltas = list(deltas)
    if not deltas:
        return 0.0
    return round(sum(d.total_seconds() for d in deltas) / len(deltas) / 3600, 2)


def _day(dt) -> date:
    return as_utc(dt).date()


# ═════════════════════════════════════════════════════════════════════════════
# Pure builders
# ═════════════════════════════════════════════════════════════════════════════


def build_dashboard(items, escalations, now: datetime, sla_hours: dict,
                    days: int = 7, top_n: int = 5) -> dict:
    """Summary, trends, performance and breakdown over the approval items.

    Args:
        items: ApprovalItem rows (or stand-ins with the same attributes).
        escalations: Escalation rows.
        now: Reference instant; "today" is its UTC date.
        sla_hours: ``{risk_level: hours}`` used to flag overdue items.
        days: Length of the daily trend series.
        top_n: Size of the approver leaderboard.
    """
    items = list(items)
    escalations = list(escalations)
    now = as_utc(now)
    today = now.date()
    yesterday = today - timedelta(days=1)

    decided = [i for i in items if i.approval_status in TERMINAL_STATUSES and i.decided_at]
    approved = [i for i in decided if i.approval_status == "approved"]
    rejected = [i for i in decided if i.approval_status == "rejected"]
    pending = [i for i in items if i.approval_status == "pending"]
    active_escalations = [e for e in escalations if e.resolved_at is None]

    automatic = [i for i in decided if i.approver_id == SYSTEM_ACTOR]
    avg_processing = _mean_hours(
        as_utc(i.decided_at) - as_utc(i.submitted_at) for i in decided
    )

    # ── trends ──────────────────────────────────────────────────────────
    approvals_by_day = Counter(_day(i.decided_at) for i in approved)
    rejections_by_day = Counter(_day(i.decided_at) for i in rejected)
    daily = []
    for offset in range(days - 1, -1, -1):
        d = today - timedelta(days=offset)
        daily.append({
            "date": d.isoformat(),
            "approvals": approvals_by_day.get(d, 0),
            "rejections": rejections_by_day.get(d, 0),
        })
    today_count = approvals_by_day.get(today, 0)
    yesterday_count = approvals_by_day.get(yesterday, 0)
    change = today_count - yesterday_count

    # ── performance ─────────────────────────────────────────────────────
    escalated_ids = {e.approval_item_id for e in escalations}
    escalated_ids.update(i.id for i in items if i.approval_status == "escalated")

    # ── breakdown ───────────────────────────────────────────────────────
    by_risk = {level: 0 for level in RISK_LEVELS}
    for i in items:
        if i.risk_level in by_risk:
            by_risk[i.risk_level] += 1

    board: dict[str, dict] = {}
    for i in decided:
        if not i.approver_id:
            continue
        row = board.setdefault(i.approver_id, {
            "approverId": i.approver_id, "decisions": 0, "approved": 0, "rejected": 0,
        })
        row["decisions"] += 1
        row[i.approval_status] += 1
    top_approvers = sorted(board.values(), key=lambda r: (-r["decisions"], r["approverId"]))[:top_n]

    return {
        "summary": {
            "todayDecisions": sum(1 for i in decided if _day(i.decided_at) == today),
            "pendingApprovals": len(pending),
            "overdueApprovals": sum(1 for i in pending if is_overdue(i, now, sla_hours)),
            "activeEscalations": len(active_escalations),
            "automaticApprovalRate": _pct(len(automatic), len(decided)),
            "avgProcessingTime": avg_processing,
        },
        "trends": {
            "daily": daily,
            "todayVsYesterday": {
                "today": today_count,
                "yesterday": yesterday_count,
                "change": change,
                "changePercent": _pct(change, yesterday_count),
            },
        },
        "performance": {
            "approvalRate": _pct(len(approved), len(approved) + len(rejected)),
            "avgProcessingTime": avg_processing,
            "escalationRate": _pct(len(escalated_ids), len(items)),
        },
        "breakdown": {
            "byRiskLevel": by_risk,
            "topApprovers": top_approvers,
        },
    }


def build_escalation_analytics(escalations, now: datetime) -> dict:
    """Counts by level/urgency/status, mean resolution time, timeout rate.

    An escalation timed out when it stayed open longer than its
    ``timeout_hours`` (resolved late, or still open past the deadline).
    """
    escalations = list(escalations)
    now = as_utc(now)

    by_level = {level: 0 for level in ESCALATION_LEVELS}
    by_urgency = {u: 0 for u in URGENCY_LEVELS}
    by_status = {"active": 0, "resolved": 0}
    resolution_times = []
    timed_out = 0

    for esc in escalations:
        if esc.escalation_level in by_level:
            by_level[esc.escalation_level] += 1
        if esc.urgency in by_urgency:
            by_urgency[esc.urgency] += 1
        created = as_utc(esc.created_at)
        if esc.resolved_at is None:
            by_status["active"] += 1
            open_for = now - created
        else:
            by_status["resolved"] += 1
            open_for = as_utc(esc.resolved_at) - created
            resolution_times.append(open_for)
        if open_for > timedelta(hours=esc.timeout_hours or 0):
            timed_out += 1

    return {
        "total": len(escalations),
        "byLevel": by_level,
        "byUrgency": by_urgency,
        "byStatus": by_status,
        "averageResolutionTime": _mean_hours(resolution_times),
        "timeoutRate": _pct(timed_out, len(escalations)),
    }


def empty_dashboard(days: int = 7) -> dict:
    """Zeroed dashboard with the full response shape."""
    return build_dashboard([], [], utcnow(), {}, days=days)


# ═════════════════════════════════════════════════════════════════════════════
# Read services
# ═════════════════════════════════════════════════════════════════════════════


def _load():
    items = db.session.execute(select(ApprovalItem).order_by(ApprovalItem.id)).scalars().all()
    escalations = db.session.execute(select(Escalation).order_by(Escalation.id)).scalars().all()
    return items, escalations


def get_dashboard(days: int | None = None) -> dict:
    """Dashboard read model (cached). Degrades to zeros on storage errors."""
    cfg = current_app.config
    days = days or cfg["APPROVAL_TREND_DAYS"]

    def _build():
        items, escalations = _load()
        return build_dashboard(
            items, escalations, utcnow(), cfg["APPROVAL_SLA_HOURS"],
            days=days, top_n=cfg["APPROVAL_TOP_APPROVERS"],
        )

    try:
        return cache_service.get_cached(
            cache_service.dashboard_key(days), ttl=cfg["READ_MODEL_CACHE_TTL"], loader=_build,
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Dashboard aggregation failed; returning empty dashboard")
        return empty_dashboard(days)


def get_metrics() -> dict:
    """Approval counts/performance, escalation analytics and bottlenecks."""
    cfg = current_app.config

    def _build():
        items, escalations = _load()
        now = utcnow()
        sla_hours = cfg["APPROVAL_SLA_HOURS"]
        dashboard = build_dashboard(items, escalations, now, sla_hours, days=1)
        by_status = {s: 0 for s in ("pending", "approved", "rejected", "escalated")}
        for i in items:
            by_status[i.approval_status] = by_status.get(i.approval_status, 0) + 1

        overdue = [i for i in items if is_overdue(i, now, sla_hours)]
        overdue.sort(key=lambda i: as_utc(i.submitted_at))
        bottlenecks = [
            {
                "id": i.id,
                "approvalItemType": i.approval_item_type,
                "riskLevel": i.risk_level,
                "ageHours": round((now - as_utc(i.submitted_at)).total_seconds() / 3600, 1),
                "slaHours": sla_hours[i.risk_level],
            }
            for i in overdue[:10]
        ]
        return {
            "approvals": {
                "total": len(items),
                "byStatus": by_status,
                **dashboard["performance"],
            },
            "escalations": build_escalation_analytics(escalations, now),
            "bottlenecks": bottlenecks,
        }

    try:
        return cache_service.get_cached(
            cache_service.metrics_key(), ttl=cfg["READ_MODEL_CACHE_TTL"], loader=_build,
        )
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Metrics aggregation failed; returning empty metrics")
        return {
            "approvals": {"total": 0, "byStatus": {}, **empty_dashboard(1)["performance"]},
            "escalations": build_escalation_analytics([], utcnow()),
            "bottlenecks": [],
        }
