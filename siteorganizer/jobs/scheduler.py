import os

from apscheduler.schedulers.background import BackgroundScheduler

from siteorganizer.services.links import sweep_links
from siteorganizer.services.postgrest import UpstreamError


scheduler = BackgroundScheduler()


def run_link_sweep(app):
    with app.app_context():
        client = app.extensions["supabase"]
        try:
            summary = sweep_links(
                client,
                workers=app.config["ADMIN_LINK_CHECK_WORKERS"],
                timeout=app.config["ADMIN_LINK_CHECK_TIMEOUT"],
            )
        except UpstreamError as exc:
            app.logger.warning("Link sweep failed: %s", exc)
            return None
        app.logger.info(
            "Link sweep checked %s sites, %s broken",
            summary["checked"],
            summary["brokenCount"],
        )
        return summary


def start_scheduler(app):
    if not app.config.get("SCHEDULER_ENABLED", True):
        return
    if os.environ.get("WERKZEUG_RUN_MAIN") == "false":
        return
    if not app.extensions["supabase"].has_service_key:
        app.logger.info("Link sweep disabled: no service role key configured")
        return

    interval_minutes = app.config["LINK_SWEEP_INTERVAL_MINUTES"]
    if not scheduler.get_jobs():
        scheduler.add_job(
            run_link_sweep,
            "interval",
            minutes=interval_minutes,
            kwargs={"app": app},
            id="link_sweep",
            replace_existing=True,
        )
        scheduler.start()
