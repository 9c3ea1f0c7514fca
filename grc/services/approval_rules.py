"""
GRC Core Platform
Approval routing rules.

Decides at submit time whether a new item is approved automatically or
queued for a human decision.

  - Evaluation (pure): condition_matches / rule_matches / select_rule work
    on a dict of the item's fields and anything exposing the ApprovalRule
    attributes.
  - Persistence: list_rules, create_rule, set_rule_active, and
    route_submission, which approval_service.submit_item calls before the
    item is written.

When no active rule matches, APPROVAL_AUTO_APPROVE_RISK_LEVELS decides.

Condition operators:
    equals / not_equals     exact string comparison
    in                      field value is one of a list
    contains / not_contains case-insensitive substring (title)
    at_least / at_most      riskLevel compared on low < medium < high < critical
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from flask import current_app
from sqlalchemy import select

from grc.core.exceptions import ConflictError, NotFoundError, ValidationError
from grc.models import db
from grc.models.approval import (
    APPROVAL_ITEM_TYPES,
    RISK_LEVELS,
    RULE_ACTIONS,
    RULE_FIELDS,
    RULE_OPERATORS,
    SYSTEM_ACTOR,
    ApprovalRule,
)

logger = logging.getLogger(__name__)

_RISK_ORDER_OPERATORS = ("at_least", "at_most")


# ═════════════════════════════════════════════════════════════════════════════
# Evaluation
# ═════════════════════════════════════════════════════════════════════════════


def condition_matches(condition: dict, fields: dict) -> bool:
    """Test one ``{"field", "operator", "value"}`` condition."""
    actual = fields.get(condition.get("field"))
    operator = condition.get("operator")
    expected = condition.get("value")

    if operator == "equals":
        return actual == expected
    if operator == "not_equals":
        return actual != expected
    if operator == "in":
        return actual in (expected or [])
    if operator in ("contains", "not_contains"):
        found = str(expected).lower() in str(actual or "").lower()
        return found if operator == "contains" else not found
    if operator in _RISK_ORDER_OPERATORS:
        if actual not in RISK_LEVELS or expected not in RISK_LEVELS:
            return False
        diff = RISK_LEVELS.index(actual) - RISK_LEVELS.index(expected)
        return diff >= 0 if operator == "at_least" else diff <= 0
    return False


def rule_matches(rule, fields: dict) -> bool:
    """Item type is in scope and every condition holds. No conditions, no match."""
    if rule.item_types and fields.get("approvalItemType") not in rule.item_types:
        return False
    conditions = rule.conditions or []
    return bool(conditions) and all(condition_matches(c, fields) for c in conditions)


def select_rule(rules: Iterable, fields: dict):
    """First active matching rule by (priority, id), or None."""
    for rule in sorted(rules, key=lambda r: (r.priority, r.id or 0)):
        if rule.is_active and rule_matches(rule, fields):
            return rule
    return None


@dataclass(frozen=True)
class RoutingDecision:
    action: str
    reasoning: str
    rule_id: int | None = None
    rule_name: str | None = None

    @property
    def auto_approve(self) -> bool:
        return self.action == "auto_approve"

    def trail_details(self) -> dict:
        if self.rule_id is None:
            return {}
        return {"ruleId": self.rule_id, "ruleName": self.rule_name}


def route_submission(fields: dict) -> RoutingDecision:
    """Routing for a new item described by ``fields``
    (``approvalItemType``, ``riskLevel``, ``title``)."""
    rules = db.session.execute(
        select(ApprovalRule).where(ApprovalRule.is_active.is_(True))
    ).scalars().all()
    rule = select_rule(rules, fields)
    if rule is not None:
        return RoutingDecision(rule.action, f"Rule '{rule.name}' matched", rule.id, rule.name)

    risk_level = fields.get("riskLevel")
    if risk_level in current_app.config["APPROVAL_AUTO_APPROVE_RISK_LEVELS"]:
        return RoutingDecision("auto_approve", f"Automatically approved: {risk_level} risk")
    return RoutingDecision("require_review", "Manual review required")


# ═════════════════════════════════════════════════════════════════════════════
# Rule management
# ═════════════════════════════════════════════════════════════════════════════


def _invalid(where: str, message: str, value) -> ValidationError:
    return ValidationError(f"{where} {message}", details={where: value})


def _clean_condition(idx: int, cond) -> dict:
    where = f"conditions[{idx}]"
    if not isinstance(cond, dict):
        raise _invalid(where, "must be an object", cond)
    field, operator, value = cond.get("field"), cond.get("operator"), cond.get("value")

    if not isinstance(field, str) or field not in RULE_FIELDS:
        raise _invalid(where, f"field must be one of {list(RULE_FIELDS)}", cond)
    if not isinstance(operator, str) or operator not in RULE_OPERATORS:
        raise _invalid(where, f"operator must be one of {list(RULE_OPERATORS)}", cond)

    if operator in _RISK_ORDER_OPERATORS:
        if field != "riskLevel" or not isinstance(value, str) or value not in RISK_LEVELS:
            raise _invalid(where, f"{operator} compares riskLevel with one of {list(RISK_LEVELS)}", cond)
    elif operator == "in":
        if not isinstance(value, list) or not value or not all(isinstance(v, str) for v in value):
            raise _invalid(where, "value must be a non-empty list of strings", cond)
    elif not isinstance(value, str) or not value:
        raise _invalid(where, "value must be a non-empty string", cond)

    return {"field": field, "operator": operator, "value": value}


def create_rule(data: dict, created_by: str | None = None) -> dict:
    """Create a routing rule.

    Raises:
        ValidationError: missing name/conditions, unknown action, field,
            operator or item type, or a value of the wrong shape.
        ConflictError: rule name already used.
    """
    name = data.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required", details={"name": "required"})
    name = name.strip()

    action = data.get("action")
    if not isinstance(action, str) or action not in RULE_ACTIONS:
        raise ValidationError(f"action must be one of {list(RULE_ACTIONS)}", details={"action": action})

    priority = data.get("priority", 100)
    if isinstance(priority, bool) or not isinstance(priority, int) or priority < 0:
        raise ValidationError("priority must be a non-negative integer", details={"priority": priority})

    item_types = data.get("itemTypes") or []
    if not isinstance(item_types, list) or not all(
        isinstance(t, str) and t in APPROVAL_ITEM_TYPES for t in item_types
    ):
        raise ValidationError(
            f"itemTypes must be a list drawn from {sorted(APPROVAL_ITEM_TYPES)}",
            details={"itemTypes": item_types},
        )

    conditions = data.get("conditions")
    if not conditions:
        raise ValidationError("conditions is required", details={"conditions": "required"})
    if not isinstance(conditions, list):
        raise ValidationError("conditions must be a list", details={"conditions": conditions})
    conditions = [_clean_condition(i, c) for i, c in enumerate(conditions)]

    description = data.get("description") or ""
    if not isinstance(description, str):
        raise ValidationError("description must be a string", details={"description": description})
    is_active = data.get("isActive", True)
    if not isinstance(is_active, bool):
        raise ValidationError("isActive must be a boolean", details={"isActive": is_active})

    existing = db.session.execute(
        select(ApprovalRule.id).where(ApprovalRule.name == name)
    ).scalar_one_or_none()
    if existing is not None:
        raise ConflictError(resource="ApprovalRule", field="name", value=name)

    rule = ApprovalRule(
        name=name,
        description=description,
        priority=priority,
        action=action,
        item_types=sorted(set(item_types)),
        conditions=conditions,
        is_active=is_active,
        created_by=created_by or SYSTEM_ACTOR,
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("Approval rule created (%s)", action, extra={"rule_id": rule.id})
    return rule.to_dict()


def list_rules(*, item_type: str | None = None, is_active: bool | None = None) -> list[dict]:
    """Rules in evaluation order, optionally narrowed to one item type."""
    stmt = select(ApprovalRule).order_by(ApprovalRule.priority, ApprovalRule.id)
    if is_active is not None:
        stmt = stmt.where(ApprovalRule.is_active.is_(is_active))
    rules = db.session.execute(stmt).scalars().all()
    if item_type:
        rules = [r for r in rules if not r.item_types or item_type in r.item_types]
    return [r.to_dict() for r in rules]


def set_rule_active(rule_id: int, is_active) -> dict:
    if not isinstance(is_active, bool):
        raise ValidationError("isActive must be a boolean", details={"isActive": is_active})
    rule = db.session.get(ApprovalRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="ApprovalRule", resource_id=rule_id)
    rule.is_active = is_active
    db.session.commit()
    logger.info("Approval rule %s", "enabled" if is_active else "disabled",
                extra={"rule_id": rule.id})
    return rule.to_dict()
