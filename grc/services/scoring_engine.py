"""
GRC Core Platform
Audit prioritization scoring engine.

Pure functions with no database or Flask context. The prioritization service
feeds them plain dicts and persists the results.

Score policy (weights configurable, defaults in Config.PRIORITIZATION_WEIGHTS):

    riskScore * 0.4                         up to 40
    (strategicPriority / 3) * 20            up to 20
    previousAuditResult bad/regular/good    15 / 8 / 2 (none = 0)
    fraudHistory                            +15
    regulatoryRequirement                   +5
    managementRequest                       +5

The sum is rounded half-up and clamped to [0, 100].
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Mapping

from grc.core.exceptions import ValidationError

DEFAULT_WEIGHTS: dict = {
    "risk_score": 0.4,
    "strategic_priority": 20,
    "previous_audit_result": {"bad": 15, "regular": 8, "good": 2, "none": 0},
    "fraud_history": 15,
    "regulatory_requirement": 5,
    "management_request": 5,
}

DEFAULT_THRESHOLDS: dict = {"critical": 80, "high": 60, "medium": 40}

MAX_STRATEGIC_PRIORITY = 3


@dataclass(frozen=True)
class ScoreResult:
    total_priority_score: int
    risk_level: str

    def to_dict(self) -> dict:
        return {"totalPriorityScore": self.total_priority_score, "riskLevel": self.risk_level}


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _validate(factor: Mapping, result_weights: Mapping) -> tuple[float, int, str]:
    errors: dict[str, str] = {}

    risk_score = factor.get("riskScore", 0)
    if risk_score is None:
        risk_score = 0
    if isinstance(risk_score, bool) or not isinstance(risk_score, (int, float)):
        errors["riskScore"] = "must be a number"
    elif not 0 <= risk_score <= 100:
        errors["riskScore"] = "must be between 0 and 100"

    priority = factor.get("strategicPriority", 1)
    if isinstance(priority, bool) or not isinstance(priority, int):
        errors["strategicPriority"] = "must be an integer"
    elif not 1 <= priority <= MAX_STRATEGIC_PRIORITY:
        errors["strategicPriority"] = "must be between 1 and 3"

    previous = factor.get("previousAuditResult") or "none"
    if previous not in result_weights:
        errors["previousAuditResult"] = f"must be one of {sorted(result_weights)}"

    if errors:
        field = next(iter(errors))
        raise ValidationError(f"{field} {errors[field]}", details=errors)
    return float(risk_score), priority, previous


def level_for_score(score: int, thresholds: Mapping | None = None) -> str:
    """Map a 0-100 score to critical/high/medium/low."""
    thresholds = thresholds or DEFAULT_THRESHOLDS
    if score >= thresholds["critical"]:
        return "critical"
    if score >= thresholds["high"]:
        return "high"
    if score >= thresholds["medium"]:
        return "medium"
    return "low"


def compute_score(
    factor: Mapping,
    weights: Mapping | None = None,
    thresholds: Mapping | None = None,
) -> ScoreResult:
    """Compute the priority score and level for one factor.

    Args:
        factor: camelCase scoring inputs (riskScore, strategicPriority,
            previousAuditResult, fraudHistory, regulatoryRequirement,
            managementRequest).
        weights: Override of DEFAULT_WEIGHTS.
        thresholds: Override of DEFAULT_THRESHOLDS.

    Raises:
        ValidationError: riskScore outside 0-100, strategicPriority outside
            1-3, or an unknown previousAuditResult.
    """
    weights = weights or DEFAULT_WEIGHTS
    result_weights = weights["previous_audit_result"]
    risk_score, priority, previous = _validate(factor, result_weights)

    total = (
        risk_score * weights["risk_score"]
        + (priority / MAX_STRATEGIC_PRIORITY) * weights["strategic_priority"]
        + result_weights[previous]
    )
    if factor.get("fraudHistory"):
        total += weights["fraud_history"]
    if factor.get("regulatoryRequirement"):
        total += weights["regulatory_requirement"]
    if factor.get("managementRequest"):
        total += weights["management_request"]

    score = min(100, max(0, _round_half_up(total)))
    return ScoreResult(total_priority_score=score, risk_level=level_for_score(score, thresholds))


def rank_scores(scores: Iterable[tuple[int, int]]) -> dict[int, int]:
    """Assign rankings 1..N by descending score.

    Args:
        scores: ``(key, score)`` pairs in insertion order.

    Returns:
        ``{key: ranking}``. Equal scores keep their insertion order.
    """
    ordered = sorted(scores, key=lambda pair: -pair[1])  # sorted() is stable
    return {key: position for position, (key, _score) in enumerate(ordered, start=1)}
