"""
Audit Prioritization Blueprint.

Routes:
  POST   /api/audit-plans                                       – create plan
  POST   /api/audit-universe                                    – register auditable entity
  GET    /api/audit-plans/<plan_id>/prioritization              – ranked factors + entity details
  POST   /api/audit-plans/<plan_id>/prioritization              – add entity to plan
  PUT    /api/audit-prioritization/<factor_id>                  – edit factor, recalculates plan
  POST   /api/audit-plans/<plan_id>/calculate-all-priorities    – force full recalculation

Blueprints parse input and shape responses; all writes go through
grc.services.prioritization_service.
"""

from flask import Blueprint, jsonify

from grc.blueprints import current_user, json_body
from grc.services import prioritization_service as svc
from grc.utils.errors import register_error_handlers

prioritization_bp = Blueprint("prioritization_bp", __name__, url_prefix="/api")
register_error_handlers(prioritization_bp)


# ═════════════════════════════════════════════════════════════════════════════
# PLANS & UNIVERSE
# ═════════════════════════════════════════════════════════════════════════════

@prioritization_bp.route("/audit-plans", methods=["POST"])
def create_plan():
    """Create an audit plan.

    Body: { code, name, year, description?, status? }
    """
    plan = svc.create_plan(json_body(), created_by=current_user())
    return jsonify(plan), 201


@prioritization_bp.route("/audit-universe", methods=["POST"])
def create_universe_entity():
    """Body: { auditableEntity, entityType?, processName?, mandatoryAudit?, auditFrequency?, lastAuditDate? }"""
    return jsonify(svc.create_universe_entity(json_body())), 201


# ═════════════════════════════════════════════════════════════════════════════
# PRIORITIZATION
# ═════════════════════════════════════════════════════════════════════════════

@prioritization_bp.route("/audit-plans/<int:plan_id>/prioritization", methods=["GET"])
def list_prioritization(plan_id):
    return jsonify(svc.list_plan_prioritization(plan_id))


@prioritization_bp.route("/audit-plans/<int:plan_id>/prioritization", methods=["POST"])
def add_entity(plan_id):
    """Add an audit-universe entity to the plan.

    Body: { universeId, riskScore?, strategicPriority?, previousAuditResult?,
            fraudHistory?, regulatoryRequirement?, managementRequest?, ... }
    """
    factor = svc.add_entity_to_plan(plan_id, json_body(), created_by=current_user())
    return jsonify(factor), 201


@prioritization_bp.route("/audit-prioritization/<int:factor_id>", methods=["PUT"])
def update_factor(factor_id):
    """Edit factor inputs; the whole plan is re-scored and re-ranked."""
    result = svc.update_factor(factor_id, json_body(), updated_by=current_user())
    return jsonify(result)


@prioritization_bp.route("/audit-plans/<int:plan_id>/calculate-all-priorities", methods=["POST"])
def calculate_all(plan_id):
    report = svc.recalculate_all(plan_id, calculated_by=current_user())
    return jsonify(report)
