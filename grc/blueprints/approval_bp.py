"""
Approval Workflow Blueprint.

Routes (prefix /api/approval):
  POST   /submit                    – submit an item for approval
  GET    /pending                   – items awaiting a decision (paginated)
  GET    /records/<item_id>         – item with escalations + audit trail
  POST   /approve/<item_id>         – approve
  POST   /reject/<item_id>          – reject (reasoning required)
  POST   /escalate/<item_id>        – escalate to a higher authority
  POST   /bulk-approve              – approve many, per-item results
  POST   /bulk-reject               – reject many, per-item results
  GET    /escalations               – escalations (?status=active|resolved)
  POST   /escalations/evaluate      – run the SLA escalation sweep now
  GET    /dashboard                 – summary / trends / performance / breakdown
  GET    /metrics                   – approval + escalation analytics
  GET    /rules                     – routing rules in evaluation order (?itemType, ?isActive)
  POST   /rules                     – create a routing rule
  PATCH  /rules/<rule_id>           – enable / disable a rule
  GET    /hierarchy                 – escalation ladder with timeouts per urgency

Error mapping: ValidationError 400, NotFoundError 404,
InvalidStateError 409, ConflictError 409.
"""

from flask import Blueprint, jsonify, request

from grc.blueprints import current_user, json_body
from grc.services import approval_analytics, approval_rules, approval_service, escalation
from grc.utils.helpers import int_arg
from grc.utils.errors import register_error_handlers

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/approval")
register_error_handlers(approval_bp)


def _actor(data, key):
    return data.get(key) or current_user(default="")


# ═════════════════════════════════════════════════════════════════════════════
# SUBMISSION & QUERIES
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/submit", methods=["POST"])
def submit():
    """Body: { approvalItemType, approvalItemId, riskLevel?, title?, submittedBy? }"""
    data = json_body()
    item = approval_service.submit_item(data, submitted_by=_actor(data, "submittedBy") or None)
    return jsonify(item), 201


@approval_bp.route("/pending", methods=["GET"])
def pending():
    """Query: riskLevel, itemType, status (pending|escalated), limit, offset."""
    result = approval_service.list_pending(
        risk_level=request.args.get("riskLevel"),
        item_type=request.args.get("itemType"),
        status=request.args.get("status"),
        limit=int_arg("limit", 50, minimum=1, maximum=500),
        offset=int_arg("offset", 0),
    )
    return jsonify(result)


@approval_bp.route("/records/<int:item_id>", methods=["GET"])
def record(item_id):
    return jsonify(approval_service.get_item(item_id))


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/approve/<int:item_id>", methods=["POST"])
def approve(item_id):
    """Body: { approverId, reasoning?, expectedVersion? }"""
    data = json_body()
    item = approval_service.approve(
        item_id,
        _actor(data, "approverId"),
        data.get("reasoning"),
        expected_version=data.get("expectedVersion"),
    )
    return jsonify(item)


@approval_bp.route("/reject/<int:item_id>", methods=["POST"])
def reject(item_id):
    """Body: { approverId, reasoning, expectedVersion? }"""
    data = json_body()
    item = approval_service.reject(
        item_id,
        _actor(data, "approverId"),
        data.get("reasoning"),
        expected_version=data.get("expectedVersion"),
    )
    return jsonify(item)


@approval_bp.route("/escalate/<int:item_id>", methods=["POST"])
def escalate(item_id):
    """Body: { escalationLevel, reason, urgency?, escalatedBy, timeoutHours?, expectedVersion? }"""
    data = json_body()
    result = approval_service.escalate(
        item_id,
        escalation_level=data.get("escalationLevel"),
        reason=data.get("reason"),
        urgency=data.get("urgency") or "medium",
        escalated_by=_actor(data, "escalatedBy"),
        timeout_hours=data.get("timeoutHours"),
        expected_version=data.get("expectedVersion"),
    )
    return jsonify(result)


def _bulk_response(results):
    succeeded = sum(1 for r in results if r["success"])
    return jsonify({
        "results": results,
        "successCount": succeeded,
        "failureCount": len(results) - succeeded,
    })


@approval_bp.route("/bulk-approve", methods=["POST"])
def bulk_approve():
    """Body: { itemIds: [...], approverId, reasoning? }"""
    data = json_body()
    results = approval_service.bulk_approve(
        data.get("itemIds"), _actor(data, "approverId"), data.get("reasoning"),
    )
    return _bulk_response(results)


@approval_bp.route("/bulk-reject", methods=["POST"])
def bulk_reject():
    """Body: { itemIds: [...], approverId, reasoning }"""
    data = json_body()
    results = approval_service.bulk_reject(
        data.get("itemIds"), _actor(data, "approverId"), data.get("reasoning"),
    )
    return _bulk_response(results)


# ═════════════════════════════════════════════════════════════════════════════
# ESCALATIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/escalations", methods=["GET"])
def list_escalations():
    return jsonify(escalation.list_escalations(request.args.get("status")))


@approval_bp.route("/escalations/evaluate", methods=["POST"])
def evaluate_escalations():
    """Run the SLA sweep immediately (same code path as the scheduled job)."""
    return jsonify(escalation.run_escalation_sweep())


@approval_bp.route("/hierarchy", methods=["GET"])
def hierarchy():
    return jsonify({"levels": escalation.escalation_ladder()})


# ═════════════════════════════════════════════════════════════════════════════
# ROUTING RULES
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/rules", methods=["GET"])
def list_rules():
    """Query: itemType, isActive (true|false)."""
    flag = request.args.get("isActive", "").lower()
    is_active = {"true": True, "false": False}.get(flag)
    return jsonify(approval_rules.list_rules(item_type=request.args.get("itemType"), is_active=is_active))


@approval_bp.route("/rules", methods=["POST"])
def create_rule():
    """Body: { name, action, conditions: [{field, operator, value}], priority?, itemTypes?, description?, isActive? }"""
    rule = approval_rules.create_rule(json_body(), created_by=current_user())
    return jsonify(rule), 201


@approval_bp.route("/rules/<int:rule_id>", methods=["PATCH"])
def update_rule(rule_id):
    """Body: { isActive }"""
    return jsonify(approval_rules.set_rule_active(rule_id, json_body().get("isActive")))


# ═════════════════════════════════════════════════════════════════════════════
# ANALYTICS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/dashboard", methods=["GET"])
def dashboard():
    days = int_arg("days", 0, minimum=0, maximum=90) or None
    return jsonify(approval_analytics.get_dashboard(days))


@approval_bp.route("/metrics", methods=["GET"])
def metrics():
    return jsonify(approval_analytics.get_metrics())
