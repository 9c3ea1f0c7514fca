"""
GRC Core Platform
Audit prioritization service.

Owns the persistence side of the scoring engine:
  - audit plans and audit-universe entities
  - adding an entity to a plan (creates its PrioritizationFactor)
  - manual factor edits, each followed by a full plan recalculation
  - recalculate_all: score every factor, rank 1..N, bulk write

Ranking is plan-relative, so every write path ends in recalculate_all.
All db.session.commit() calls happen here, never in blueprints.
"""

from __future__ import annotations

import logging

from flask import current_app
from sqlalchemy import select

from grc.core.exceptions import ConflictError, NotFoundError, ValidationError
from grc.models import db
from grc.models.audit_planning import (
    EDITABLE_FACTOR_FIELDS,
    ENTITY_TYPES,
    PLAN_STATUSES,
    AuditPlan,
    AuditUniverseEntity,
    PrioritizationFactor,
)
from grc.services import cache_service
from grc.services.scoring_engine import compute_score, rank_scores
from grc.utils.helpers import parse_date, utcnow

logger = logging.getLogger(__name__)


def _scoring_policy() -> tuple[dict, dict]:
    cfg = current_app.config
    return cfg["PRIORITIZATION_WEIGHTS"], cfg["PRIORITY_LEVEL_THRESHOLDS"]


def _get_plan(plan_id: int) -> AuditPlan:
    plan = db.session.get(AuditPlan, plan_id)
    if plan is None:
        raise NotFoundError(resource="AuditPlan", resource_id=plan_id)
    return plan


# ═════════════════════════════════════════════════════════════════════════════
# Plans & audit universe
# ═════════════════════════════════════════════════════════════════════════════


def create_plan(data: dict, created_by: str = "system") -> dict:
    """Create an audit plan.

    Raises:
        ValidationError: code/name/year missing or status unknown.
        ConflictError: plan code already used.
    """
    code = (data.get("code") or "").strip()
    name = (data.get("name") or "").strip()
    year = data.get("year")
    status = data.get("status", "draft")

    errors = {}
    if not code:
        errors["code"] = "required"
    if not name:
        errors["name"] = "required"
    if isinstance(year, bool) or not isinstance(year, int):
        errors["year"] = "must be an integer"
    if status not in PLAN_STATUSES:
        errors["status"] = f"must be one of {sorted(PLAN_STATUSES)}"
    if errors:
        raise ValidationError("Invalid audit plan", details=errors)

    existing = db.session.execute(
        select(AuditPlan.id).where(AuditPlan.code == code)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError(resource="AuditPlan", field="code", value=code)

    plan = AuditPlan(
        code=code,
        name=name,
        year=year,
        description=data.get("description") or "",
        status=status,
        created_by=created_by,
    )
    db.session.add(plan)
    db.session.commit()
    logger.info("Audit plan created", extra={"plan_id": plan.id})
    return plan.to_dict()


def create_universe_entity(data: dict) -> dict:
    """Register an auditable process/subprocess."""
    name = (data.get("auditableEntity") or "").strip()
    entity_type = data.get("entityType", "process")
    if not name:
        raise ValidationError("auditableEntity is required", details={"auditableEntity": "required"})
    if entity_type not in ENTITY_TYPES:
        raise ValidationError(
            f"entityType must be one of {sorted(ENTITY_TYPES)}",
            details={"entityType": entity_type},
        )

    raw_date = data.get("lastAuditDate")
    last_audit = parse_date(raw_date)
    if raw_date and last_audit is None:
        raise ValidationError("lastAuditDate must be a date (YYYY-MM-DD)",
                              details={"lastAuditDate": raw_date})

    entity = AuditUniverseEntity(
        auditable_entity=name,
        entity_type=entity_type,
        process_name=data.get("processName") or "",
        mandatory_audit=bool(data.get("mandatoryAudit", False)),
        audit_frequency=data.get("auditFrequency", 3),
        last_audit_date=last_audit,
    )
    db.session.add(entity)
    db.session.commit()
    return entity.to_dict()


_COUNT_FIELDS = ("estimatedAuditHours", "timesSinceLastAudit")
_NOTE_FIELDS = ("riskJustification", "strategicJustification")


def _check_planning_fields(data: dict) -> None:
    """Planning fields outside the score: whole non-negative counts and free-text notes."""
    errors = {}
    for key in _COUNT_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors[key] = value
    for key in _NOTE_FIELDS:
        if data.get(key) is not None and not isinstance(data[key], str):
            errors[key] = data[key]
    if errors:
        raise ValidationError(
            f"Invalid planning field(s): {', '.join(sorted(errors))}",
            details=errors,
        )


def _factor_kwargs(data: dict) -> dict:
    _check_planning_fields(data)
    return {
        attr: data[key]
        for key, attr in EDITABLE_FACTOR_FIELDS.items()
        if key in data
    }


def add_entity_to_plan(plan_id: int, data: dict, created_by: str = "system") -> dict:
    """Create the PrioritizationFactor for an entity and re-rank the plan.

    Raises:
        NotFoundError: plan or entity missing.
        ValidationError: scoring inputs out of range.
        ConflictError: entity already part of the plan.
    """
    plan = _get_plan(plan_id)
    universe_id = data.get("universeId")
    if universe_id is None:
        raise ValidationError("universeId is required", details={"universeId": "required"})
    if db.session.get(AuditUniverseEntity, universe_id) is None:
        raise NotFoundError(resource="AuditUniverseEntity", resource_id=universe_id)

    duplicate = db.session.execute(
        select(PrioritizationFactor.id).where(
            PrioritizationFactor.plan_id == plan.id,
            PrioritizationFactor.universe_id == universe_id,
        )
    ).scalar_one_or_none()
    if duplicate is not None:
        raise ConflictError(resource="PrioritizationFactor", field="universeId", value=universe_id)

    weights, thresholds = _scoring_policy()
    compute_score({**_default_inputs(), **_inputs_from(data)}, weights, thresholds)

    factor = PrioritizationFactor(plan_id=plan.id, universe_id=universe_id, **_factor_kwargs(data))
    db.session.add(factor)
    db.session.flush()
    recalculate_all(plan.id, calculated_by=created_by)
    return factor.to_dict()


def _default_inputs() -> dict:
    return {
        "riskScore": 0,
        "strategicPriority": 1,
        "previousAuditResult": "none",
        "fraudHistory": False,
        "regulatoryRequirement": False,
        "managementRequest": False,
    }


def _inputs_from(data: dict) -> dict:
    return {k: data[k] for k in _default_inputs() if k in data}


# ═════════════════════════════════════════════════════════════════════════════
# Prioritization
# ═════════════════════════════════════════════════════════════════════════════


def _load_plan_listing(plan_id: int) -> list[dict]:
    stmt = (
        select(PrioritizationFactor)
        .where(PrioritizationFactor.plan_id == plan_id)
        .order_by(
            PrioritizationFactor.calculated_ranking.is_(None),
            PrioritizationFactor.calculated_ranking,
            PrioritizationFactor.id,
        )
    )
    factors = db.session.execute(stmt).scalars().all()
    return [f.to_dict() for f in factors]


def list_plan_prioritization(plan_id: int) -> list[dict]:
    """Factors of a plan in ranking order, joined with entity details."""
    _get_plan(plan_id)
    return cache_service.get_cached(
        cache_service.plan_key(plan_id),
        ttl=current_app.config["READ_MODEL_CACHE_TTL"],
        loader=lambda: _load_plan_listing(plan_id),
    )


def update_factor(factor_id: int, data: dict, updated_by: str = "system") -> dict:
    """Edit one or more factor inputs, then recalculate the whole plan.

    Inputs are validated against the merged (stored + incoming) values
    before anything is written.

    Returns:
        ``{"factor": <factor dict>, "recalculation": <recalculate_all report>}``

    Raises:
        NotFoundError: factor missing.
        ValidationError: no editable field supplied, or value out of range.
    """
    factor = db.session.get(PrioritizationFactor, factor_id)
    if factor is None:
        raise NotFoundError(resource="PrioritizationFactor", resource_id=factor_id)

    changes = _factor_kwargs(data)
    if not changes:
        raise ValidationError(
            "No editable field supplied",
            details={"allowed": sorted(EDITABLE_FACTOR_FIELDS)},
        )

    weights, thresholds = _scoring_policy()
    compute_score({**factor.scoring_inputs(), **_inputs_from(data)}, weights, thresholds)

    for attr, value in changes.items():
        setattr(factor, attr, value)
    db.session.flush()
    logger.info(
        "Prioritization factor updated",
        extra={"plan_id": factor.plan_id, "factor_id": factor.id},
    )

    report = recalculate_all(factor.plan_id, calculated_by=updated_by)
    return {"factor": factor.to_dict(), "recalculation": report}


def recalculate_all(plan_id: int, calculated_by: str = "system") -> dict:
    """Score and rank every factor of a plan, then persist all of them.

    Rankings are 1..N by descending score; ties keep creation order (id).
    A factor whose stored inputs no longer validate keeps its previous score,
    still takes a rank, and is reported as failed. Nothing is raised for
    per-factor failures.

    Returns:
        ``{"planId", "total", "updated", "failed", "results": [...]}``;
        a plan with no factors yields ``total == 0`` and empty results.

    Raises:
        NotFoundError: plan missing.
    """
    _get_plan(plan_id)
    factors = db.session.execute(
        select(PrioritizationFactor)
        .where(PrioritizationFactor.plan_id == plan_id)
        .order_by(PrioritizationFactor.id)
    ).scalars().all()

    report = {"planId": plan_id, "total": len(factors), "updated": 0, "failed": 0, "results": []}
    if not factors:
        return report

    weights, thresholds = _scoring_policy()
    now = utcnow()
    errors: dict[int, str] = {}

    for factor in factors:
        try:
            result = compute_score(factor.scoring_inputs(), weights, thresholds)
        except ValidationError as exc:
            errors[factor.id] = str(exc)
            logger.warning(
                "Factor %s kept previous score: %s", factor.id, exc,
                extra={"plan_id": plan_id, "factor_id": factor.id},
            )
            continue
        factor.total_priority_score = result.total_priority_score
        factor.priority_level = result.risk_level
        factor.calculated_at = now
        factor.calculated_by = calculated_by

    rankings = rank_scores((f.id, f.total_priority_score or 0) for f in factors)
    for factor in factors:
        factor.calculated_ranking = rankings[factor.id]
        entry = {
            "id": factor.id,
            "success": factor.id not in errors,
            "totalPriorityScore": factor.total_priority_score,
            "priorityLevel": factor.priority_level,
            "calculatedRanking": factor.calculated_ranking,
        }
        if factor.id in errors:
            entry["error"] = errors[factor.id]
        report["results"].append(entry)

    db.session.commit()
    cache_service.invalidate_plan_cache(plan_id)

    report["failed"] = len(errors)
    report["updated"] = len(factors) - len(errors)
    logger.info(
        "Plan prioritization recalculated: %d updated, %d failed",
        report["updated"], report["failed"],
        extra={"plan_id": plan_id},
    )
    return report
