#!/usr/bin/env python3
"""
Order and position lifecycle job runner.

Runs one lifecycle job and exits, for use from cron or any external
scheduler (the scheduler is responsible for not overlapping runs).

Usage:
    python run_lifecycle.py <job> [--live]

Jobs:
    sync-orders      Pull broker status for open orders (fills, cancels, rejects)
    replace-orders   Reprice stale limit/stop orders
    check-triggers   Fire conditional orders whose trigger is met
    expire           Expire conditional orders past their expiry
    check-exits      Refresh prices, trail stops, report positions to close
    sync             Reconcile local positions with the broker
    all              Run every job above in that order

Options:
    --live    Replace orders at the broker (default follows DRY_RUN, which defaults to true)
"""

import argparse
import logging
import os
import sys

from dotenv import load_dotenv

# Load environment variables first
load_dotenv()

from lifecycle.config import LifecycleConfig
from lifecycle.database import init_db
from lifecycle.service import LifecycleService

os.makedirs('logs', exist_ok=True)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(message)s',
    datefmt='%H:%M:%S',
)
logger = logging.getLogger(__name__)

# File handler for all lifecycle logs (tail -f logs/dev.log)
dev_handler = logging.FileHandler('logs/dev.log')
dev_handler.setFormatter(logging.Formatter(
    '%(asctime)s [%(name)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logging.getLogger().addHandler(dev_handler)

# Reduce noise from some loggers
logging.getLogger('urllib3').setLevel(logging.WARNING)
logging.getLogger('yfinance').setLevel(logging.WARNING)

JOBS = ["sync-orders", "replace-orders", "check-triggers", "expire", "check-exits", "sync"]


def run_job(service: LifecycleService, job: str) -> bool:
    """Run a single job. Returns False if it reported errors."""
    if job == "sync-orders":
        result = service.sync_orders()
        if result is None:
            return True
        logger.info(
            f"sync-orders: synced={result.synced} filled={result.filled} "
            f"cancelled={result.cancelled} failed={result.failed}"
        )
        for error in result.errors:
            logger.error(error)
        return not result.errors

    if job == "replace-orders":
        result = service.replace_orders()
        logger.info(
            f"replace-orders: checked={result.checked} replaced={result.replaced} "
            f"skipped={result.skipped} filled_during_cancel={result.filled_during_cancel}"
        )
        for error in result.errors:
            logger.error(error)
        return not result.errors

    if job == "check-triggers":
        actions = service.check_triggers()
        logger.info(f"check-triggers: {len(actions)} triggered")
        return True

    if job == "expire":
        count = service.expire_orders()
        logger.info(f"expire: {count} expired")
        return True

    if job == "check-exits":
        result = service.check_exits()
        logger.info(f"check-exits: {len(result.positions_to_close)} positions to close")
        return True

    if job == "sync":
        result = service.sync_positions()
        if result is None:
            return True
        logger.info(
            f"sync: closed_externally={result.closed_externally} unmanaged={result.unmanaged} "
            f"mismatched={result.mismatched}"
        )
        return result.error is None

    raise ValueError(f"Unknown job: {job}")


def main():
    parser = argparse.ArgumentParser(description='Run an order/position lifecycle job')
    parser.add_argument('job', choices=JOBS + ["all"], help='Job to run')
    parser.add_argument('--live', action='store_true', help='Act on the broker instead of simulating')
    args = parser.parse_args()

    config = LifecycleConfig.from_env()
    if args.live:
        config.dry_run = False

    mode_str = "DRY RUN" if config.dry_run else "LIVE"
    logger.info(f"Lifecycle runner - {mode_str} ({config.broker.environment})")

    init_db()
    service = LifecycleService(config)

    jobs = JOBS if args.job == "all" else [args.job]
    ok = True
    for job in jobs:
        try:
            ok = run_job(service, job) and ok
        except Exception as e:
            logger.exception(f"Job {job} failed: {e}")
            ok = False

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
