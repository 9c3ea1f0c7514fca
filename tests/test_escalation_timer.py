"""
Tests: SLA escalation timer and escalation policy.

Covers:
    - Timeout hours per level / urgency and the escalation chain
    - Pure evaluation: strict SLA boundary, status filtering, naive datetimes
    - Sweep over the database: automatic escalations, idempotent re-runs
    - Candidates that went stale between evaluation and apply
    - Escalation timeouts: advancing up the ladder, expiry at board
    - Escalation listing filters
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import grc.services.escalation as esc_svc
from grc.core.exceptions import ValidationError
from grc.models import db as _db
from grc.models.approval import ApprovalItem, Escalation
from grc.models.notification import Notification
from grc.services import approval_service

SLA = {"critical": 4, "high": 24, "medium": 72, "low": 168}
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _stub(item_id, risk_level="medium", status="pending", hours_old=0.0, now=NOW):
    """Plain stand-in exposing the attributes the evaluator reads."""
    return SimpleNamespace(
        id=item_id,
        risk_level=risk_level,
        approval_status=status,
        submitted_at=now - timedelta(hours=hours_old),
    )


def _make_item(risk_level="medium", status="pending", hours_old=1.0) -> ApprovalItem:
    """Persist an approval item submitted ``hours_old`` hours ago."""
    item = ApprovalItem(
        approval_item_type="audit_finding",
        approval_item_id="F-1",
        risk_level=risk_level,
        approval_status=status,
        submitted_by="auditor",
        submitted_at=datetime.now(timezone.utc) - timedelta(hours=hours_old),
    )
    if status != "pending":
        item.approver_id = "someone"
        item.decided_at = datetime.now(timezone.utc)
    _db.session.add(item)
    _db.session.commit()
    return item


# ═════════════════════════════════════════════════════════════════════════════
# 1. POLICY
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
@pytest.mark.parametrize("level,urgency,hours", [
    ("supervisor", "medium", 24),
    ("supervisor", "low", 36),
    ("manager", "high", 36),
    ("director", "critical", 36),
    ("executive", "medium", 96),
    ("board", "critical", 84),
])
def test_default_timeout_hours(level, urgency, hours):
    """Level base hours scaled by the urgency multiplier."""
    assert esc_svc.default_timeout_hours(level, urgency) == hours


@pytest.mark.unit
def test_escalation_chain_ends_at_board():
    chain = ["supervisor"]
    nxt = esc_svc.next_escalation_level("supervisor")
    while nxt is not None:
        chain.append(nxt)
        nxt = esc_svc.next_escalation_level(nxt)
    assert chain == ["supervisor", "manager", "director", "executive", "board"]


# ═════════════════════════════════════════════════════════════════════════════
# 2. PURE EVALUATION
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_item_past_sla_becomes_candidate():
    """medium risk, 73h old, SLA 72h → escalate to manager."""
    [cand] = esc_svc.evaluate_escalations([_stub(1, "medium", hours_old=73)], NOW, SLA)
    assert cand.item_id == 1
    assert cand.escalation_level == "manager"
    assert cand.urgency == "medium"
    assert cand.sla_hours == 72
    assert cand.age_hours == pytest.approx(73)
    assert "SLA exceeded" in cand.reason


@pytest.mark.unit
def test_item_exactly_at_sla_is_not_overdue():
    """The SLA boundary is strict: age must exceed the limit."""
    assert esc_svc.evaluate_escalations([_stub(1, "high", hours_old=24)], NOW, SLA) == []


@pytest.mark.unit
@pytest.mark.parametrize("risk,level", [
    ("critical", "executive"), ("high", "director"), ("medium", "manager"), ("low", "supervisor"),
])
def test_risk_level_selects_escalation_target(risk, level):
    [cand] = esc_svc.evaluate_escalations([_stub(1, risk, hours_old=500)], NOW, SLA)
    assert cand.escalation_level == level


@pytest.mark.unit
@pytest.mark.parametrize("status", ["escalated", "approved", "rejected"])
def test_non_pending_items_are_never_candidates(status):
    """Already escalated or decided items are skipped, however old."""
    assert esc_svc.evaluate_escalations([_stub(1, status=status, hours_old=999)], NOW, SLA) == []


@pytest.mark.unit
def test_risk_level_without_sla_is_skipped():
    assert esc_svc.evaluate_escalations([_stub(1, "critical", hours_old=99)], NOW, {"low": 1}) == []


@pytest.mark.unit
def test_naive_submission_time_is_treated_as_utc():
    """SQLite hands back naive datetimes."""
    item = _stub(1, "critical", hours_old=5)
    item.submitted_at = item.submitted_at.replace(tzinfo=None)
    assert len(esc_svc.evaluate_escalations([item], NOW, SLA)) == 1


@pytest.mark.unit
def test_candidates_keep_input_order():
    items = [_stub(3, "critical", hours_old=10), _stub(1, "low", hours_old=1), _stub(2, "high", hours_old=30)]
    assert [c.item_id for c in esc_svc.evaluate_escalations(items, NOW, SLA)] == [3, 2]


# ═════════════════════════════════════════════════════════════════════════════
# 3. SWEEP
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_sweep_escalates_only_overdue_pending_items():
    overdue_medium = _make_item("medium", hours_old=80)
    fresh_high = _make_item("high", hours_old=2)
    overdue_critical = _make_item("critical", hours_old=5)
    _make_item("medium", status="approved", hours_old=100)

    report = esc_svc.run_escalation_sweep()

    assert report["evaluated"] == 3
    assert report["candidates"] == 2
    assert report["escalated"] == [overdue_medium.id, overdue_critical.id]
    assert report["skipped"] == []
    assert _db.session.get(ApprovalItem, fresh_high.id).approval_status == "pending"

    esc = Escalation.query.filter_by(approval_item_id=overdue_critical.id).one()
    assert esc.escalation_level == "executive"
    assert esc.urgency == "critical"
    assert esc.timeout_hours == 48  # executive 96h * 0.5
    assert esc.is_automatic is True
    assert esc.escalated_by == "system"


@pytest.mark.unit
def test_sweep_writes_auto_escalated_trail():
    item = _make_item("critical", hours_old=6)
    esc_svc.run_escalation_sweep()
    trail = approval_service.get_item(item.id)["auditTrail"]
    assert trail[-1]["action"] == "auto_escalated"
    assert trail[-1]["performedBy"] == "system"


@pytest.mark.unit
def test_sweep_is_idempotent():
    """A second run finds nothing new to escalate."""
    _make_item("critical", hours_old=6)
    first = esc_svc.run_escalation_sweep()
    second = esc_svc.run_escalation_sweep()
    assert len(first["escalated"]) == 1
    assert second["evaluated"] == 0
    assert second["escalated"] == []
    assert Escalation.query.count() == 1


@pytest.mark.unit
def test_sweep_accepts_explicit_now():
    """Passing a future ``now`` makes young items overdue."""
    item = _make_item("high", hours_old=1)
    report = esc_svc.run_escalation_sweep(now=datetime.now(timezone.utc) + timedelta(hours=30))
    assert report["escalated"] == [item.id]


@pytest.mark.unit
def test_apply_skips_candidate_decided_after_evaluation():
    """An item approved between evaluation and apply is reported, not escalated."""
    item = _make_item("critical", hours_old=6)
    candidates = esc_svc.evaluate_escalations([item], datetime.now(timezone.utc), SLA)
    approval_service.approve(item.id, "cfo")

    report = esc_svc.apply_escalations(candidates)

    assert report["escalated"] == []
    assert report["skipped"][0]["id"] == item.id
    assert report["skipped"][0]["error"] == "InvalidStateError"


@pytest.mark.unit
def test_sweep_with_no_pending_items():
    report = esc_svc.run_escalation_sweep()
    assert report == {
        "escalated": [], "skipped": [], "evaluated": 0, "candidates": 0,
        "timeouts": {"advanced": [], "expired": [], "skipped": [], "evaluated": 0},
    }


# ═════════════════════════════════════════════════════════════════════════════
# 4. LISTING
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_list_escalations_by_status():
    open_item = _make_item()
    closed_item = _make_item()
    approval_service.escalate(open_item.id, "manager", "stuck", "medium", "lead")
    approval_service.escalate(closed_item.id, "director", "stuck", "high", "lead")
    approval_service.approve(closed_item.id, "director")

    active = esc_svc.list_escalations("active")
    resolved = esc_svc.list_escalations("resolved")
    everything = esc_svc.list_escalations()

    assert [e["approvalItemId"] for e in active] == [open_item.id]
    assert [e["approvalItemId"] for e in resolved] == [closed_item.id]
    assert len(everything) == 2
    assert active[0]["item"]["approvalStatus"] == "escalated"


@pytest.mark.unit
def test_list_escalations_rejects_unknown_status():
    with pytest.raises(ValidationError):
        esc_svc.list_escalations("sleeping")


# ═════════════════════════════════════════════════════════════════════════════
# 5. ESCALATION TIMEOUTS
# ═════════════════════════════════════════════════════════════════════════════


def _escalated_item(level="director", urgency="high", hours_open=0.0):
    """Item escalated to ``level`` whose escalation was opened ``hours_open`` hours ago."""
    item = _make_item("high", hours_old=hours_open + 1)
    approval_service.escalate(item.id, level, "stuck", urgency, "lead")
    esc = Escalation.query.filter_by(approval_item_id=item.id).one()
    esc.created_at = datetime.now(timezone.utc) - timedelta(hours=hours_open)
    _db.session.commit()
    return item, esc


def _escalations_of(item_id):
    return Escalation.query.filter_by(approval_item_id=item_id).order_by(Escalation.id).all()


@pytest.mark.unit
def test_timeout_boundary_is_strict():
    esc = SimpleNamespace(resolved_at=None, created_at=NOW - timedelta(hours=54), timeout_hours=54)
    assert esc_svc.is_timed_out(esc, NOW) is False
    assert esc_svc.is_timed_out(esc, NOW + timedelta(seconds=1)) is True


@pytest.mark.unit
def test_resolved_escalation_never_times_out():
    esc = SimpleNamespace(resolved_at=NOW, created_at=NOW - timedelta(hours=500), timeout_hours=24)
    assert esc_svc.evaluate_timeouts([esc], NOW) == []


@pytest.mark.unit
def test_timed_out_escalation_moves_to_next_level():
    """director/high times out after 54h; the item moves to executive."""
    item, _ = _escalated_item("director", "high", hours_open=60)

    report = esc_svc.run_escalation_sweep()

    assert report["timeouts"]["advanced"] == [item.id]
    assert report["timeouts"]["expired"] == []
    old, new = _escalations_of(item.id)
    assert old.resolution == "timed_out"
    assert old.resolved_by == "system"
    assert new.escalation_level == "executive"
    assert new.next_escalation_level == "board"
    assert new.urgency == "high"
    assert new.timeout_hours == 72  # executive 96h * 0.75
    assert new.is_automatic is True
    assert new.resolved_at is None
    assert _db.session.get(ApprovalItem, item.id).approval_status == "escalated"

    trail = approval_service.get_item(item.id)["auditTrail"]
    assert trail[-1]["action"] == "escalation_timed_out"
    assert trail[-1]["details"]["toLevel"] == "executive"
    assert Notification.query.filter_by(recipient="executive").count() == 1


@pytest.mark.unit
def test_item_keeps_a_single_active_escalation():
    item, _ = _escalated_item("supervisor", "medium", hours_open=30)

    esc_svc.run_escalation_sweep()
    second = esc_svc.run_escalation_sweep()

    assert second["timeouts"]["advanced"] == []
    escalations = _escalations_of(item.id)
    assert [e.escalation_level for e in escalations] == ["supervisor", "manager"]
    assert sum(1 for e in escalations if e.resolved_at is None) == 1


@pytest.mark.unit
def test_timeout_at_board_expires_escalation():
    """No authority above board: the escalation expires, the item stays open."""
    item, _ = _escalated_item("board", "critical", hours_open=100)

    report = esc_svc.run_escalation_sweep()

    assert report["timeouts"]["expired"] == [item.id]
    [esc] = _escalations_of(item.id)
    assert esc.resolution == "expired"
    assert esc.resolved_at is not None
    assert _db.session.get(ApprovalItem, item.id).approval_status == "escalated"
    assert approval_service.get_item(item.id)["auditTrail"][-1]["action"] == "escalation_expired"
    assert Notification.query.filter_by(recipient="auditor").count() == 1

    # still decidable
    assert approval_service.approve(item.id, "chair")["approvalStatus"] == "approved"


@pytest.mark.unit
def test_escalation_within_timeout_is_left_alone():
    item, _ = _escalated_item("director", "high", hours_open=50)
    report = esc_svc.run_escalation_sweep()
    assert report["timeouts"]["evaluated"] == 1
    assert report["timeouts"]["advanced"] == []
    assert len(_escalations_of(item.id)) == 1


@pytest.mark.unit
def test_timeout_skips_item_decided_after_evaluation():
    item, esc = _escalated_item("manager", "medium", hours_open=60)
    candidates = esc_svc.evaluate_timeouts([esc], datetime.now(timezone.utc))
    approval_service.approve(item.id, "manager")

    report = esc_svc.apply_timeouts(candidates)

    assert report["advanced"] == []
    assert report["skipped"][0]["id"] == item.id
    assert report["skipped"][0]["error"] == "InvalidStateError"
    assert [e.resolution for e in _escalations_of(item.id)] == ["approved"]


@pytest.mark.unit
def test_decision_after_timeout_closes_the_new_escalation():
    item, _ = _escalated_item("director", "high", hours_open=60)
    esc_svc.run_escalation_sweep()

    approval_service.reject(item.id, "ceo", "Out of appetite")

    assert [e.resolution for e in _escalations_of(item.id)] == ["timed_out", "rejected"]


@pytest.mark.unit
def test_escalation_ladder_lists_levels_in_order():
    ladder = esc_svc.escalation_ladder()
    assert [step["level"] for step in ladder] == ["supervisor", "manager", "director", "executive", "board"]
    assert ladder[-1]["nextLevel"] is None
    assert ladder[2]["timeoutHours"]["high"] == 54
