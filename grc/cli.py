"""
Flask CLI commands for cron and operators.

    flask run-due-jobs              run every scheduled job whose interval elapsed
    flask run-job <job_name>        run one job now
    flask escalation-sweep          time out stale escalations, escalate approvals past their SLA
    flask recalculate-plan <id>     re-score and re-rank one audit plan
"""

import logging

import click

from grc.core.exceptions import NotFoundError

logger = logging.getLogger(__name__)


def register_cli(app):
    @app.cli.command("run-due-jobs")
    def run_due_jobs_cmd():
        from grc.services.scheduler_service import SchedulerService

        runs = SchedulerService.run_due_jobs()
        failed = [r["jobName"] for r in runs if r["status"] == "failed"]
        click.echo(f"{len(runs)} job(s) run, {len(failed)} failed")
        if failed:
            raise click.ClickException(f"failed jobs: {', '.join(failed)}")

    @app.cli.command("run-job")
    @click.argument("job_name")
    def run_job_cmd(job_name):
        from grc.services.scheduler_service import SchedulerService

        try:
            result = SchedulerService.run_job(job_name)
        except NotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"{job_name}: {result['status']} ({result['durationMs']}ms)")
        if result["status"] == "failed":
            raise click.ClickException(result["error"] or "job failed")

    @app.cli.command("escalation-sweep")
    def escalation_sweep_cmd():
        from grc.services.escalation import run_escalation_sweep

        report = run_escalation_sweep()
        click.echo(
            f"{report['evaluated']} evaluated, {len(report['escalated'])} escalated, "
            f"{len(report['skipped'])} skipped"
            f"; {len(report['timeouts']['advanced'])} advanced, "
            f"{len(report['timeouts']['expired'])} expired"
        )

    @app.cli.command("recalculate-plan")
    @click.argument("plan_id", type=int)
    def recalculate_plan_cmd(plan_id):
        from grc.services.prioritization_service import recalculate_all

        try:
            report = recalculate_all(plan_id, calculated_by="system")
        except NotFoundError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(f"plan {plan_id}: {report['updated']} updated, {report['failed']} failed")
