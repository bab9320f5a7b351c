import logging

from tenantlink.core.errors import log_exception_with_context
from tenantlink.db.session import SessionLocal
from tenantlink.services.cleanup import run_cleanup
from tenantlink.worker import celery_app

logger = logging.getLogger("tenantlink.cleanup")


@celery_app.task(name="tenantlink.tasks.cleanup_tasks.cleanup_invite_tokens")
def cleanup_invite_tokens():
    """
    Scheduled sweep of terminal invite tokens and closed rate-limit windows.

    Not retried in-run: a failure is logged and the next scheduled run picks
    up whatever this one left behind.
    """
    db = SessionLocal()
    try:
        result = run_cleanup(db)
        return result.as_dict()
    except Exception:
        log_exception_with_context("Invite cleanup run failed", extra={"task": "cleanup_invite_tokens"})
        raise
    finally:
        db.close()
