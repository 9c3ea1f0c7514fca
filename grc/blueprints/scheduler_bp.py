"""
Scheduled Job Blueprint.

Routes (prefix /api/scheduler):
  GET    /jobs                       – registered jobs with last run + next run
  POST   /jobs/<job_name>/trigger    – run a job now
  POST   /run-due                    – run every job whose interval has elapsed
  PATCH  /jobs/<job_name>/toggle     – enable / disable a job
"""

from flask import Blueprint, jsonify

from grc.blueprints import json_body
from grc.core.exceptions import ValidationError
from grc.services.scheduler_service import SchedulerService
from grc.utils.errors import register_error_handlers

scheduler_bp = Blueprint("scheduler_bp", __name__, url_prefix="/api/scheduler")
register_error_handlers(scheduler_bp)


@scheduler_bp.route("/jobs", methods=["GET"])
def list_jobs():
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>/trigger", methods=["POST"])
def trigger_job(job_name):
    return jsonify(SchedulerService.run_job(job_name))


@scheduler_bp.route("/run-due", methods=["POST"])
def run_due():
    runs = SchedulerService.run_due_jobs()
    return jsonify({"runs": runs, "total": len(runs)})


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["PATCH"])
def toggle_job(job_name):
    """Body: { enabled: true|false }"""
    enabled = json_body().get("enabled")
    if not isinstance(enabled, bool):
        raise ValidationError("enabled is required (true/false)", details={"enabled": "required"})
    return jsonify(SchedulerService.toggle_job(job_name, enabled))
