"""
Tests: audit prioritization service (persistence side of the scoring engine).

Covers:
    - Adding universe entities to a plan scores and ranks them
    - Re-ranking of the whole plan after every write
    - Factor edits validate merged inputs before writing
    - recalculate_all: empty plans, ties, factors with stale invalid inputs
    - Plan / universe validation and duplicate detection
    - Plan listing cache invalidation

All test data created via ORM helpers.
The `session` autouse fixture rolls back after every test.
"""

from __future__ import annotations

import pytest

import grc.services.prioritization_service as svc
from grc.core.exceptions import ConflictError, NotFoundError, ValidationError
from grc.models import db as _db
from grc.models.audit_planning import AuditPlan, AuditUniverseEntity, PrioritizationFactor


# ── ORM helpers ───────────────────────────────────────────────────────────────


def _make_plan(code: str = "AP-1", status: str = "draft") -> AuditPlan:
    """Create an audit plan."""
    p = AuditPlan(code=code, name=f"Plan {code}", year=2026, status=status)
    _db.session.add(p)
    _db.session.flush()
    return p


def _make_entity(name: str = "Procure to Pay") -> AuditUniverseEntity:
    """Create an auditable process."""
    e = AuditUniverseEntity(auditable_entity=name, entity_type="process")
    _db.session.add(e)
    _db.session.flush()
    return e


def _add(plan_id: int, entity_id: int, **inputs) -> dict:
    """Shorthand to add an entity to a plan via the service."""
    return svc.add_entity_to_plan(plan_id, {"universeId": entity_id, **inputs}, created_by="tester")


def _rankings(plan_id: int) -> dict[int, int]:
    rows = PrioritizationFactor.query.filter_by(plan_id=plan_id).all()
    return {r.universe_id: r.calculated_ranking for r in rows}


# ═════════════════════════════════════════════════════════════════════════════
# 1. ADDING ENTITIES
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_add_entity_scores_and_ranks_factor():
    """80*0.4 + 20 + 15 = 67 → high, rank 1 in a single-factor plan."""
    plan = _make_plan()
    ent = _make_entity()
    factor = _add(plan.id, ent.id, riskScore=80, strategicPriority=3, previousAuditResult="bad")

    assert factor["totalPriorityScore"] == 67
    assert factor["priorityLevel"] == "high"
    assert factor["calculatedRanking"] == 1
    assert factor["calculatedBy"] == "tester"
    assert factor["calculatedAt"] is not None
    assert factor["entity"]["auditableEntity"] == "Procure to Pay"


@pytest.mark.unit
def test_add_entity_uses_defaults_for_missing_inputs():
    """No inputs → riskScore 0, priority 1, none → score 7."""
    plan = _make_plan()
    factor = _add(plan.id, _make_entity().id)
    assert factor["totalPriorityScore"] == 7
    assert factor["priorityLevel"] == "low"


@pytest.mark.unit
def test_higher_scoring_entity_takes_rank_one():
    """Adding a stronger entity pushes existing ones down."""
    plan = _make_plan()
    low = _make_entity("Travel Expenses")
    high = _make_entity("Treasury")
    _add(plan.id, low.id, riskScore=20)
    _add(plan.id, high.id, riskScore=90, fraudHistory=True)

    assert _rankings(plan.id) == {high.id: 1, low.id: 2}


@pytest.mark.unit
def test_add_duplicate_entity_raises_conflict():
    """An entity can appear only once per plan."""
    plan = _make_plan()
    ent = _make_entity()
    _add(plan.id, ent.id)
    with pytest.raises(ConflictError):
        _add(plan.id, ent.id)


@pytest.mark.unit
def test_same_entity_allowed_in_two_plans():
    """Uniqueness is per plan."""
    ent = _make_entity()
    _add(_make_plan("AP-1").id, ent.id)
    factor = _add(_make_plan("AP-2").id, ent.id)
    assert factor["calculatedRanking"] == 1


@pytest.mark.unit
def test_add_entity_unknown_plan_raises_not_found():
    with pytest.raises(NotFoundError):
        _add(9999, _make_entity().id)


@pytest.mark.unit
def test_add_entity_unknown_universe_raises_not_found():
    with pytest.raises(NotFoundError):
        _add(_make_plan().id, 9999)


@pytest.mark.unit
def test_add_entity_without_universe_id_raises_validation():
    with pytest.raises(ValidationError) as exc_info:
        svc.add_entity_to_plan(_make_plan().id, {})
    assert exc_info.value.details == {"universeId": "required"}


@pytest.mark.unit
def test_add_entity_invalid_inputs_persist_nothing():
    """Validation runs before the factor row is created."""
    plan = _make_plan()
    with pytest.raises(ValidationError):
        _add(plan.id, _make_entity().id, riskScore=150)
    assert PrioritizationFactor.query.filter_by(plan_id=plan.id).count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# 2. FACTOR EDITS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_update_factor_rescores_and_reranks_plan():
    """Raising the weaker factor's risk flips the ranking."""
    plan = _make_plan()
    a = _make_entity("A")
    b = _make_entity("B")
    fa = _add(plan.id, a.id, riskScore=30)
    _add(plan.id, b.id, riskScore=60)
    assert _rankings(plan.id) == {b.id: 1, a.id: 2}

    result = svc.update_factor(fa["id"], {"riskScore": 100, "fraudHistory": True}, updated_by="editor")

    assert result["factor"]["totalPriorityScore"] == 62  # 40 + 6.67 + 15
    assert result["factor"]["calculatedRanking"] == 1
    assert result["recalculation"]["total"] == 2
    assert result["recalculation"]["updated"] == 2
    assert _rankings(plan.id) == {a.id: 1, b.id: 2}


@pytest.mark.unit
def test_update_factor_validates_merged_inputs():
    """An out-of-range edit leaves the stored value untouched."""
    plan = _make_plan()
    f = _add(plan.id, _make_entity().id, riskScore=40)
    with pytest.raises(ValidationError):
        svc.update_factor(f["id"], {"strategicPriority": 5})

    _db.session.rollback()
    row = _db.session.get(PrioritizationFactor, f["id"])
    assert row.strategic_priority == 1
    assert row.risk_score == 40


@pytest.mark.unit
def test_update_factor_without_editable_fields_raises():
    """Unknown keys alone are rejected."""
    f = _add(_make_plan().id, _make_entity().id)
    with pytest.raises(ValidationError) as exc_info:
        svc.update_factor(f["id"], {"totalPriorityScore": 99})
    assert "riskScore" in exc_info.value.details["allowed"]


@pytest.mark.unit
def test_update_factor_non_scoring_field_keeps_score():
    """Justification edits still trigger a recalculation but change nothing."""
    f = _add(_make_plan().id, _make_entity().id, riskScore=50)
    result = svc.update_factor(f["id"], {"riskJustification": "Carry-over finding"})
    assert result["factor"]["riskJustification"] == "Carry-over finding"
    assert result["factor"]["totalPriorityScore"] == f["totalPriorityScore"]


@pytest.mark.unit
@pytest.mark.parametrize("changes", [
    {"estimatedAuditHours": -5},
    {"estimatedAuditHours": 12.5},
    {"timesSinceLastAudit": "lots"},
    {"timesSinceLastAudit": True},
    {"riskJustification": 42},
    {"strategicJustification": ["board ask"]},
])
def test_update_factor_rejects_bad_planning_fields(changes):
    """Hours and years are whole non-negative numbers, justifications are text."""
    f = _add(_make_plan().id, _make_entity().id, riskScore=40)
    with pytest.raises(ValidationError) as exc_info:
        svc.update_factor(f["id"], changes)
    assert exc_info.value.details == changes

    _db.session.rollback()
    row = _db.session.get(PrioritizationFactor, f["id"])
    assert row.estimated_audit_hours == 40
    assert row.times_since_last_audit == 0
    assert row.risk_justification is None


@pytest.mark.unit
def test_add_entity_rejects_negative_audit_hours():
    plan = _make_plan()
    with pytest.raises(ValidationError) as exc_info:
        _add(plan.id, _make_entity().id, estimatedAuditHours=-1, timesSinceLastAudit=2)
    assert exc_info.value.details == {"estimatedAuditHours": -1}
    assert PrioritizationFactor.query.filter_by(plan_id=plan.id).count() == 0


@pytest.mark.unit
def test_update_missing_factor_raises_not_found():
    with pytest.raises(NotFoundError):
        svc.update_factor(424242, {"riskScore": 10})


# ═════════════════════════════════════════════════════════════════════════════
# 3. RECALCULATE ALL
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_recalculate_empty_plan_reports_zero():
    """A plan with no factors is a valid no-op."""
    plan = _make_plan()
    report = svc.recalculate_all(plan.id)
    assert report == {"planId": plan.id, "total": 0, "updated": 0, "failed": 0, "results": []}


@pytest.mark.unit
def test_recalculate_unknown_plan_raises_not_found():
    with pytest.raises(NotFoundError):
        svc.recalculate_all(31337)


@pytest.mark.unit
def test_recalculate_ties_are_ranked_by_creation_order():
    """Equal scores → the earlier factor ranks first."""
    plan = _make_plan()
    first = _make_entity("First")
    second = _make_entity("Second")
    third = _make_entity("Third")
    _add(plan.id, first.id, riskScore=50)
    _add(plan.id, second.id, riskScore=50)
    _add(plan.id, third.id, riskScore=90)

    assert _rankings(plan.id) == {third.id: 1, first.id: 2, second.id: 3}


@pytest.mark.unit
def test_recalculate_rankings_are_one_to_n():
    """Every factor of the plan gets a distinct rank."""
    plan = _make_plan()
    for i in range(5):
        _add(plan.id, _make_entity(f"E{i}").id, riskScore=i * 20)
    report = svc.recalculate_all(plan.id)
    assert sorted(r["calculatedRanking"] for r in report["results"]) == [1, 2, 3, 4, 5]
    assert report["updated"] == 5


@pytest.mark.unit
def test_recalculate_twice_gives_identical_results():
    """Re-scoring an unchanged plan moves neither scores nor ranks."""
    plan = _make_plan()
    for i, risk in enumerate((35, 80, 35, 60)):
        _add(plan.id, _make_entity(f"E{i}").id, riskScore=risk, fraudHistory=bool(i % 2))

    def outcome(report):
        return [
            (r["id"], r["totalPriorityScore"], r["priorityLevel"], r["calculatedRanking"])
            for r in report["results"]
        ]

    first = svc.recalculate_all(plan.id)
    second = svc.recalculate_all(plan.id)

    assert outcome(first) == outcome(second)
    assert second["updated"] == 4
    assert second["failed"] == 0


@pytest.mark.unit
def test_recalculate_reports_factor_with_invalid_stored_inputs():
    """A factor whose stored inputs no longer validate keeps its old score."""
    plan = _make_plan()
    good = _add(plan.id, _make_entity("Good").id, riskScore=10)
    bad = _add(plan.id, _make_entity("Bad").id, riskScore=90)

    row = _db.session.get(PrioritizationFactor, bad["id"])
    row.risk_score = 150  # bypasses the service validation
    _db.session.flush()

    report = svc.recalculate_all(plan.id)

    assert report["total"] == 2
    assert report["updated"] == 1
    assert report["failed"] == 1
    by_id = {r["id"]: r for r in report["results"]}
    assert by_id[good["id"]]["success"] is True
    assert by_id[bad["id"]]["success"] is False
    assert "riskScore" in by_id[bad["id"]]["error"]
    assert by_id[bad["id"]]["totalPriorityScore"] == bad["totalPriorityScore"]
    assert by_id[bad["id"]]["calculatedRanking"] == 1


# ═════════════════════════════════════════════════════════════════════════════
# 4. PLANS, UNIVERSE, LISTING
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_create_plan_duplicate_code_raises_conflict():
    svc.create_plan({"code": "AP-9", "name": "Plan", "year": 2026})
    with pytest.raises(ConflictError):
        svc.create_plan({"code": "AP-9", "name": "Other", "year": 2027})


@pytest.mark.unit
def test_create_plan_reports_every_invalid_field():
    with pytest.raises(ValidationError) as exc_info:
        svc.create_plan({"year": "2026", "status": "archived"})
    assert set(exc_info.value.details) == {"code", "name", "year", "status"}


@pytest.mark.unit
def test_create_universe_entity_parses_dates():
    """ISO and DD.MM.YYYY are both accepted."""
    iso = svc.create_universe_entity({"auditableEntity": "Payroll", "lastAuditDate": "2024-03-31"})
    tr = svc.create_universe_entity({"auditableEntity": "Sales", "lastAuditDate": "31.03.2024"})
    assert iso["lastAuditDate"] == "2024-03-31"
    assert tr["lastAuditDate"] == "2024-03-31"


@pytest.mark.unit
def test_create_universe_entity_rejects_bad_date():
    with pytest.raises(ValidationError):
        svc.create_universe_entity({"auditableEntity": "Payroll", "lastAuditDate": "yesterday"})


@pytest.mark.unit
def test_list_plan_prioritization_in_ranking_order():
    """Listing follows calculatedRanking and embeds entity details."""
    plan = _make_plan()
    _add(plan.id, _make_entity("Low").id, riskScore=10)
    _add(plan.id, _make_entity("High").id, riskScore=95)

    rows = svc.list_plan_prioritization(plan.id)
    assert [r["entity"]["auditableEntity"] for r in rows] == ["High", "Low"]
    assert [r["calculatedRanking"] for r in rows] == [1, 2]


@pytest.mark.unit
def test_list_plan_cache_invalidated_by_recalculation(app, monkeypatch):
    """With caching on, an edit is visible on the next read."""
    monkeypatch.setitem(app.config, "READ_MODEL_CACHE_TTL", 60)
    plan = _make_plan()
    f = _add(plan.id, _make_entity().id, riskScore=10)

    before = svc.list_plan_prioritization(plan.id)
    svc.update_factor(f["id"], {"riskScore": 100})
    after = svc.list_plan_prioritization(plan.id)

    assert before[0]["totalPriorityScore"] == 11
    assert after[0]["totalPriorityScore"] == 47
