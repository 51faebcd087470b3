"""
Periodic tasks for the NetBill hotspot core.
Scheduled through django-crontab (see CRONJOBS in settings); each returns a
result dict and never raises, so one failing run doesn't break the crontab.
"""

import logging

from .services import get_core

logger = logging.getLogger(__name__)


def poll_devices():
    """
    Poll every active router of every active tenant.
    Run every 5 minutes.
    """
    try:
        report = get_core().monitor.poll_all()
        result = report.as_dict()
        logger.info(
            f"📡 Device poll: {result['online']} online, {result['offline']} offline, "
            f"{result['error']} error ({len(result['errors'])} problem(s))"
        )
        return result
    except Exception as e:
        logger.error(f"Error in poll_devices task: {str(e)}", exc_info=True)
        return {"success": False, "error": str(e)}


def expire_vouchers():
    """
    Expire active vouchers whose validity window has passed.
    Run every 5 minutes; the nightly cleanup does the same as its first step.
    """
    try:
        result = get_core().cleanup.expire()
        if result.expired or result.errors:
            logger.info(f"⏰ Expired {result.expired} vouchers ({len(result.errors)} errors)")
        return {"success": True, "expired": result.expired, "errors": result.errors}
    except Exception as e:
        logger.error(f"Error in expire_vouchers task: {str(e)}", exc_info=True)
        return {"success": False, "error": str(e)}


def process_due_jobs(limit=100):
    """
    Drain due background jobs once. Run every minute when no long-running
    ``run_workers`` process is deployed.
    """
    try:
        core = get_core()
        summary = core.jobs.run_pending(core.handlers, limit=limit)
        if summary["processed"]:
            logger.info(
                f"📋 Jobs: {summary['succeeded']} succeeded, {summary['retrying']} retrying, "
                f"{summary['failed']} failed"
            )
        return summary
    except Exception as e:
        logger.error(f"Error in process_due_jobs task: {str(e)}", exc_info=True)
        return {"success": False, "error": str(e)}


def cleanup_vouchers():
    """
    Apply the retention policy (expire, auto-disable, delete).
    Run daily.
    """
    try:
        result = get_core().cleanup.cleanup()
        return {"success": True, **result.as_dict()}
    except Exception as e:
        logger.error(f"Error in cleanup_vouchers task: {str(e)}", exc_info=True)
        return {"success": False, "error": str(e)}
