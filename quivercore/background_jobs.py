"""
Scheduled billing jobs.

Run these from a system scheduler as an alternative to the /api/cron
endpoints:
1. Zero usage counters for monthly plans on the 1st of each month
2. Zero usage counters for annual plans on their enrollment anniversary
3. Invoice the previous month's unbilled overage on the 1st

Every job is idempotent, so a retried or overlapping run is harmless.
"""

import logging
import sys
from typing import Callable, Dict

from sqlalchemy.orm import Session

from database import SessionLocal

from .config import config, require_stripe_config
from .overage import bill_monthly_overages
from .usage_tracking import reset_annual_anniversaries, reset_monthly_usage

logger = logging.getLogger(__name__)


# ============ DATABASE SETUP ============

def get_db_session() -> Session:
    """Create database session for background jobs"""
    return SessionLocal()


def _run(name: str, job: Callable[[Session], Dict]) -> Dict:
    logger.info(f"Starting {name}")
    db = get_db_session()
    try:
        result = job(db)
        logger.info(f"Finished {name}: {len(result.get('errors', []))} error(s)")
        return result
    except Exception as e:
        logger.error(f"Error running {name}: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


# ============ JOBS ============

def run_reset_usage() -> Dict:
    return _run("monthly usage reset", reset_monthly_usage)


def run_reset_anniversaries() -> Dict:
    return _run("annual anniversary reset", reset_annual_anniversaries)


def run_bill_overages() -> Dict:
    require_stripe_config()
    return _run("overage billing", bill_monthly_overages)


def run_daily_jobs() -> Dict[str, Dict]:
    """
    Run every daily job.

    The monthly reset and overage billing only find work on the 1st;
    on other days they open no new periods and bill nothing.
    """
    logger.info("=" * 60)
    logger.info("Starting daily billing jobs")
    logger.info("=" * 60)

    results = {
        "reset_usage": run_reset_usage(),
        "reset_anniversaries": run_reset_anniversaries(),
    }
    if config.STRIPE_SECRET_KEY:
        results["bill_overages"] = run_bill_overages()
    else:
        logger.warning("STRIPE_SECRET_KEY not set, skipping overage billing")

    logger.info("=" * 60)
    logger.info("Daily jobs completed")
    for name, result in results.items():
        logger.info(f"   - {name}: {result}")
    logger.info("=" * 60)
    return results


JOBS = {
    "reset-usage": run_reset_usage,
    "reset-anniversaries": run_reset_anniversaries,
    "bill-overages": run_bill_overages,
    "daily": run_daily_jobs,
}


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    name = argv[0] if argv else "daily"
    job = JOBS.get(name)
    if job is None:
        print(f"Unknown job '{name}'. Choose one of: {', '.join(JOBS)}")
        return 2
    job()
    return 0


if __name__ == "__main__":
    """
    Example crontab entries:
    5 0 * * * cd /path/to/quivercore && python -m quivercore.background_jobs daily
    0 1 1 * * cd /path/to/quivercore && python -m quivercore.background_jobs bill-overages
    """
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    sys.exit(main())
