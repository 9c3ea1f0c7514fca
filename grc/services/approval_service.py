"""
GRC Core Platform
Approval workflow service: the state machine over ApprovalItem.

    pending ──approve──► approved   (terminal)
       │    ──reject───► rejected   (terminal)
       └────escalate──► escalated ──approve/reject──► approved | rejected

Rules:
  - approve/reject are valid from pending or escalated; terminal items raise
    InvalidStateError.
  - reject needs non-blank reasoning (ValidationError otherwise).
  - escalate is valid from pending only. Escalating an item that is already
    escalated raises InvalidStateError.
  - A decision closes the item's active escalation.

Every transition is read-validate-write on one item inside one transaction.
ApprovalItem.version is a SQLAlchemy version_id_col, so a concurrent writer
surfaces as ConflictError instead of a lost update. Callers may also pass
the version they last saw (``expected_version``).

Notifications are sent after commit and never roll back a transition.
"""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from grc.core.exceptions import ConflictError, InvalidStateError, NotFoundError, ValidationError
from grc.models import db
from grc.models.approval import (
    APPROVAL_ITEM_TYPES,
    ESCALATION_LEVELS,
    RISK_LEVELS,
    SYSTEM_ACTOR,
    URGENCY_LEVELS,
    ApprovalAuditTrail,
    ApprovalItem,
    Escalation,
)
from grc.services import approval_rules, cache_service
from grc.services.escalation import default_timeout_hours, next_escalation_level
from grc.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def _require_text(value, field: str) -> str:
    if value is not None and not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: value})
    text = (value or "").strip()
    if not text:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return text


def _optional_text(value, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", details={field: value})
    return value.strip() or None


def _require_choice(value, allowed, field: str) -> str:
    # isinstance first: lists and dicts from JSON are unhashable
    if not isinstance(value, str) or value not in allowed:
        options = list(allowed) if isinstance(allowed, tuple) else sorted(allowed)
        raise ValidationError(f"{field} must be one of {options}", details={field: value})
    return value


def _get_item(item_id: int) -> ApprovalItem:
    item = db.session.get(ApprovalItem, item_id)
    if item is None:
        raise NotFoundError(resource="ApprovalItem", resource_id=item_id)
    return item


def _check_version(item: ApprovalItem, expected_version) -> None:
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expectedVersion must be an integer",
                              details={"expectedVersion": expected_version})
    if expected != item.version:
        raise ConflictError(resource="ApprovalItem", field="version", value=expected)


def _commit(item: ApprovalItem, expected_version=None) -> None:
    item_id, loaded_version = item.id, item.version
    try:
        db.session.commit()
    except StaleDataError:
        db.session.rollback()
        logger.warning("Lost update detected", extra={"item_id": item_id})
        raise ConflictError(
            resource="ApprovalItem",
            field="version",
            value=expected_version if expected_version is not None else loaded_version,
        )
    cache_service.invalidate_approval_cache()


def _trail(item, action, performed_by, previous_status, reasoning=None, details=None):
    db.session.add(ApprovalAuditTrail(
        item=item,
        action=action,
        performed_by=performed_by,
        previous_status=previous_status,
        new_status=item.approval_status,
        reasoning=reasoning,
        details=details or {},
    ))


def _decide(item, status, approver_id, reasoning, *, method, action, now, details=None):
    # Load escalations before mutating so the lazy load cannot autoflush
    # a stale UPDATE outside _commit().
    esc = item.active_escalation
    previous = item.approval_status
    item.approval_status = status
    item.approver_id = approver_id
    item.reasoning = reasoning
    item.decided_at = now
    item.decision_method = method

    details = dict(details or {})
    if esc is not None:
        esc.resolved_at = now
        esc.resolved_by = approver_id
        esc.resolution = status
        details["escalationId"] = esc.id

    _trail(item, action, approver_id, previous, reasoning, details=details)


# ═════════════════════════════════════════════════════════════════════════════
# Submission
# ═════════════════════════════════════════════════════════════════════════════


def submit_item(data: dict, submitted_by: str | None = None) -> dict:
    """Create an ApprovalItem and route it.

    The first active ApprovalRule that matches decides between automatic
    approval and the manual queue. Without a matching rule, items whose risk
    level is listed in APPROVAL_AUTO_APPROVE_RISK_LEVELS are approved on the
    spot. Automatic approvals are made by ``system`` with
    decisionMethod=automatic.

    Raises:
        ValidationError: unknown type/risk level, missing approvalItemId,
            or a field of the wrong JSON type.
    """
    item_type = _require_choice(data.get("approvalItemType"), APPROVAL_ITEM_TYPES, "approvalItemType")
    risk_level = _require_choice(data.get("riskLevel", "medium"), RISK_LEVELS, "riskLevel")
    ref = data.get("approvalItemId")
    if ref is None or (isinstance(ref, str) and not ref.strip()):
        raise ValidationError("approvalItemId is required", details={"approvalItemId": "required"})
    if isinstance(ref, bool) or not isinstance(ref, (str, int)):
        raise ValidationError("approvalItemId must be a string or integer",
                              details={"approvalItemId": ref})
    title = _optional_text(data.get("title"), "title") or ""
    submitter = _require_text(submitted_by or data.get("submittedBy") or SYSTEM_ACTOR, "submittedBy")

    routing = approval_rules.route_submission(
        {"approvalItemType": item_type, "riskLevel": risk_level, "title": title}
    )

    item = ApprovalItem(
        approval_item_type=item_type,
        approval_item_id=str(ref).strip(),
        risk_level=risk_level,
        title=title,
        approval_status="pending",
        submitted_by=submitter,
        submitted_at=utcnow(),
    )
    db.session.add(item)
    _trail(item, "submitted", submitter, None, details=routing.trail_details())

    if routing.auto_approve:
        _decide(
            item, "approved", SYSTEM_ACTOR, routing.reasoning,
            method="automatic", action="auto_approved", now=utcnow(),
            details=routing.trail_details(),
        )

    db.session.commit()
    cache_service.invalidate_approval_cache()
    logger.info(
        "Approval item submitted (%s)", item.approval_status,
        extra={"item_id": item.id},
    )
    return item.to_dict()


# ═════════════════════════════════════════════════════════════════════════════
# Transitions
# ═════════════════════════════════════════════════════════════════════════════


def approve(item_id: int, approver_id: str, reasoning: str | None = None,
            expected_version=None) -> dict:
    """Approve a pending or escalated item.

    Raises:
        NotFoundError: item missing.
        InvalidStateError: item already approved/rejected.
        ConflictError: version mismatch or concurrent update.
    """
    approver_id = _require_text(approver_id, "approverId")
    reasoning = _optional_text(reasoning, "reasoning")
    item = _get_item(item_id)
    _check_version(item, expected_version)
    if item.is_terminal:
        raise InvalidStateError("ApprovalItem", item.approval_status, "approve")

    _decide(
        item, "approved", approver_id, reasoning,
        method="automatic" if approver_id == SYSTEM_ACTOR else "manual",
        action="approved", now=utcnow(),
    )
    _commit(item, expected_version)
    logger.info("Approval item approved", extra={"item_id": item.id, "approver_id": approver_id})
    return item.to_dict()


def reject(item_id: int, approver_id: str, reasoning: str,
           expected_version=None) -> dict:
    """Reject a pending or escalated item. Reasoning is mandatory.

    Raises:
        ValidationError: blank reasoning or approverId.
        NotFoundError: item missing.
        InvalidStateError: item already approved/rejected.
        ConflictError: version mismatch or concurrent update.
    """
    reasoning = _require_text(reasoning, "reasoning")
    approver_id = _require_text(approver_id, "approverId")
    item = _get_item(item_id)
    _check_version(item, expected_version)
    if item.is_terminal:
        raise InvalidStateError("ApprovalItem", item.approval_status, "reject")

    _decide(
        item, "rejected", approver_id, reasoning,
        method="automatic" if approver_id == SYSTEM_ACTOR else "manual",
        action="rejected", now=utcnow(),
    )
    _commit(item, expected_version)
    logger.info("Approval item rejected", extra={"item_id": item.id, "approver_id": approver_id})
    return item.to_dict()


def escalate(item_id: int, escalation_level: str, reason: str, urgency: str = "medium",
             escalated_by: str = SYSTEM_ACTOR, *, timeout_hours: int | None = None,
             expected_version=None, is_automatic: bool = False) -> dict:
    """Route a pending item to a higher authority.

    Only ``pending`` items can be escalated; an already escalated item
    raises InvalidStateError, as does a terminal one.

    Returns:
        ``{"item": ..., "escalation": ...}``
    """
    escalation_level = _require_choice(escalation_level, ESCALATION_LEVELS, "escalationLevel")
    urgency = _require_choice(urgency, URGENCY_LEVELS, "urgency")
    reason = _require_text(reason, "reason")
    escalated_by = _require_text(escalated_by, "escalatedBy")
    if timeout_hours is not None and (isinstance(timeout_hours, bool)
                                      or not isinstance(timeout_hours, int)
                                      or timeout_hours <= 0):
        raise ValidationError("timeoutHours must be a positive integer",
                              details={"timeoutHours": timeout_hours})

    item = _get_item(item_id)
    _check_version(item, expected_version)
    if item.approval_status != "pending":
        raise InvalidStateError("ApprovalItem", item.approval_status, "escalate")

    now = utcnow()
    esc = Escalation(
        item=item,
        escalation_level=escalation_level,
        next_escalation_level=next_escalation_level(escalation_level),
        urgency=urgency,
        timeout_hours=timeout_hours or default_timeout_hours(escalation_level, urgency),
        escalation_reason=reason,
        escalated_by=escalated_by,
        is_automatic=is_automatic,
        created_at=now,
    )
    db.session.add(esc)
    previous = item.approval_status
    item.approval_status = "escalated"
    item.decided_at = now
    _trail(
        item, "auto_escalated" if is_automatic else "escalated", escalated_by, previous, reason,
        details={"escalationLevel": escalation_level, "urgency": urgency},
    )
    _commit(item, expected_version)

    logger.info(
        "Approval item escalated",
        extra={"item_id": item.id, "escalation_id": esc.id, "escalation_level": escalation_level},
    )
    _notify_escalation(item, esc)
    return {"item": item.to_dict(), "escalation": esc.to_dict()}


def time_out_escalation(item_id: int, escalation_id: int, now=None) -> dict:
    """Close an escalation that stayed open past its timeout.

    With a higher authority available the escalation is closed as
    ``timed_out`` and a new one opens at ``next_escalation_level``, keeping
    the urgency. At the top of the ladder it is closed as ``expired``: the
    item stays ``escalated`` awaiting a decision and its submitter is
    notified.

    Returns:
        ``{"item", "closed", "escalation"}``; ``escalation`` is the new
        escalation, or None when the ladder is exhausted.

    Raises:
        NotFoundError: item missing.
        InvalidStateError: item no longer escalated, or ``escalation_id`` is
            not its active escalation.
        ConflictError: concurrent update.
    """
    item = _get_item(item_id)
    esc = item.active_escalation
    if item.approval_status != "escalated":
        raise InvalidStateError("ApprovalItem", item.approval_status, "time out escalation of")
    if esc is None or esc.id != escalation_id:
        raise InvalidStateError("Escalation", "resolved", "time out")

    now = now or utcnow()
    next_level = esc.next_escalation_level
    esc.resolved_at = now
    esc.resolved_by = SYSTEM_ACTOR
    esc.resolution = "timed_out" if next_level else "expired"
    # UPDATE the item row too, so version_id_col guards against a decision racing the sweep
    item.updated_at = now

    new_esc = None
    if next_level:
        new_esc = Escalation(
            item=item,
            escalation_level=next_level,
            next_escalation_level=next_escalation_level(next_level),
            urgency=esc.urgency,
            timeout_hours=default_timeout_hours(next_level, esc.urgency),
            escalation_reason=(
                f"Escalated from {esc.escalation_level} after {esc.timeout_hours}h without a decision"
            ),
            escalated_by=SYSTEM_ACTOR,
            is_automatic=True,
            created_at=now,
        )
        db.session.add(new_esc)
        _trail(
            item, "escalation_timed_out", SYSTEM_ACTOR, item.approval_status, new_esc.escalation_reason,
            details={"escalationId": esc.id, "fromLevel": esc.escalation_level, "toLevel": next_level},
        )
    else:
        _trail(
            item, "escalation_expired", SYSTEM_ACTOR, item.approval_status,
            f"No authority above {esc.escalation_level}; awaiting decision",
            details={"escalationId": esc.id, "level": esc.escalation_level},
        )
    _commit(item)

    logger.info(
        "Escalation %s", esc.resolution.replace("_", " "),
        extra={"item_id": item.id, "escalation_id": esc.id, "escalation_level": next_level or esc.escalation_level},
    )
    if new_esc is not None:
        _notify_escalation(item, new_esc)
    else:
        _notify(
            item,
            recipient=item.submitted_by,
            title=f"Approval item #{item.id}: escalation expired at {esc.escalation_level}",
            body=f"No decision within {esc.timeout_hours}h at the highest level. The item is still open.",
            kind="escalation",
            severity="warning",
        )
    return {
        "item": item.to_dict(),
        "closed": esc.to_dict(),
        "escalation": new_esc.to_dict() if new_esc is not None else None,
    }


_SEVERITY_FOR_URGENCY = {"critical": "critical", "high": "warning"}


def _notify(item: ApprovalItem, **notice) -> None:
    """Fire-and-forget in-app notice about ``item``."""
    from grc.services.notification import NotificationService

    try:
        NotificationService.send(subject_type="approval_item", subject_id=item.id, **notice)
    except Exception:
        db.session.rollback()
        logger.exception("Approval notification failed", extra={"item_id": item.id})


def _notify_escalation(item: ApprovalItem, esc: Escalation) -> None:
    _notify(
        item,
        recipient=esc.escalation_level,
        title=f"Approval item #{item.id} escalated to {esc.escalation_level}",
        body=esc.escalation_reason,
        kind="escalation",
        severity=_SEVERITY_FOR_URGENCY.get(esc.urgency, "info"),
    )


# ═════════════════════════════════════════════════════════════════════════════
# Bulk operations (continue-on-error, one transaction per item)
# ═════════════════════════════════════════════════════════════════════════════

_PER_ITEM_ERRORS = (InvalidStateError, NotFoundError, ConflictError, ValidationError)


def _require_ids(item_ids) -> list:
    if not isinstance(item_ids, list) or not item_ids:
        raise ValidationError("itemIds must be a non-empty list", details={"itemIds": item_ids})
    bad = [i for i in item_ids if isinstance(i, bool) or not isinstance(i, int)]
    if bad:
        raise ValidationError("itemIds must contain integer ids only", details={"itemIds": bad})
    return item_ids


def _bulk(item_ids, action) -> list[dict]:
    results = []
    for item_id in item_ids:
        try:
            action(item_id)
        except _PER_ITEM_ERRORS as exc:
            db.session.rollback()
            results.append({
                "id": item_id,
                "success": False,
                "error": type(exc).__name__,
                "message": str(exc),
            })
            continue
        results.append({"id": item_id, "success": True})
    return results


def bulk_approve(item_ids: list, approver_id: str, reasoning: str | None = None) -> list[dict]:
    """Approve each id independently; per-item outcome list in input order."""
    item_ids = _require_ids(item_ids)
    approver_id = _require_text(approver_id, "approverId")
    results = _bulk(item_ids, lambda iid: approve(iid, approver_id, reasoning))
    logger.info(
        "Bulk approve: %d/%d succeeded",
        sum(1 for r in results if r["success"]), len(results),
        extra={"approver_id": approver_id},
    )
    return results


def bulk_reject(item_ids: list, approver_id: str, reasoning: str) -> list[dict]:
    """Reject each id independently with the same reasoning."""
    item_ids = _require_ids(item_ids)
    approver_id = _require_text(approver_id, "approverId")
    reasoning = _require_text(reasoning, "reasoning")
    results = _bulk(item_ids, lambda iid: reject(iid, approver_id, reasoning))
    logger.info(
        "Bulk reject: %d/%d succeeded",
        sum(1 for r in results if r["success"]), len(results),
        extra={"approver_id": approver_id},
    )
    return results


# ═════════════════════════════════════════════════════════════════════════════
# Queries
# ═════════════════════════════════════════════════════════════════════════════

AWAITING_DECISION = ("pending", "escalated")


def get_item(item_id: int) -> dict:
    """Item with its escalations and full audit trail."""
    item = _get_item(item_id)
    return {
        **item.to_dict(),
        "escalations": [e.to_dict() for e in item.escalations],
        "auditTrail": [t.to_dict() for t in item.audit_trail],
    }


def list_pending(*, risk_level: str | None = None, item_type: str | None = None,
                 status: str | None = None, limit: int = 50, offset: int = 0) -> dict:
    """Items awaiting a decision (pending + escalated), oldest first."""
    statuses = AWAITING_DECISION
    if status:
        if status not in AWAITING_DECISION:
            raise ValidationError(f"status must be one of {list(AWAITING_DECISION)}",
                                  details={"status": status})
        statuses = (status,)
    if risk_level and risk_level not in RISK_LEVELS:
        raise ValidationError(f"riskLevel must be one of {list(RISK_LEVELS)}",
                              details={"riskLevel": risk_level})

    stmt = select(ApprovalItem).where(ApprovalItem.approval_status.in_(statuses))
    if risk_level:
        stmt = stmt.where(ApprovalItem.risk_level == risk_level)
    if item_type:
        stmt = stmt.where(ApprovalItem.approval_item_type == item_type)

    total = db.session.execute(
        select(func.count()).select_from(stmt.subquery())
    ).scalar_one()
    rows = db.session.execute(
        stmt.order_by(ApprovalItem.submitted_at, ApprovalItem.id).limit(limit).offset(offset)
    ).scalars().all()
    return {
        "items": [r.to_dict() for r in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }
