"""
Scheduled billing maintenance.

Jobs:
- sweep: move elapsed subscriptions to cancelled/expired
- rollover: advance the quota period when the calendar month changes
- purge: drop webhook idempotency records past the retention window

Each run is recorded in billing_job_runs. Intended to run from cron, e.g.

    python -m teammove.workers.billing_maintenance all
"""
from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert

from teammove.core.config import settings
from teammove.core.database import billing_job_runs, get_db_session
from teammove.core.logging import configure_logging
from teammove.core.timeutil import normalize_now, utc_now
from teammove.features.billing.webhooks import purge_processed_webhook_events
from teammove.features.quota.service import rollover_quota_period
from teammove.features.subscriptions.service import sweep_expirations

logger = logging.getLogger("teammove")


def _record_run(job_name: str, started_at: datetime, status: str, stats: Dict[str, Any]) -> None:
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=job_name,
                started_at=started_at,
                finished_at=utc_now(),
                status=status,
                stats_json=json.dumps(stats, default=str),
            )
        )


def _run_job(job_name: str, body: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    started_at = utc_now()
    try:
        stats = body()
    except Exception as e:
        logger.error("[jobs] job failed", exc_info=True, extra={"job": job_name})
        _record_run(job_name, started_at, "failed", {"error": str(e)})
        raise
    _record_run(job_name, started_at, "success", stats)
    return stats


def run_subscription_sweep(now: Optional[datetime] = None, grace_days: Optional[int] = None) -> Dict[str, Any]:
    now = normalize_now(now)
    return _run_job("billing.sweep", lambda: sweep_expirations(now, grace_days=grace_days))


def run_quota_rollover(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = normalize_now(now)
    return _run_job("billing.quota_rollover", lambda: rollover_quota_period(now))


def run_webhook_purge(now: Optional[datetime] = None, retention_days: Optional[int] = None) -> Dict[str, Any]:
    now = normalize_now(now)
    return _run_job(
        "billing.webhook_purge",
        lambda: {"purged": purge_processed_webhook_events(now, retention_days)},
    )


JOBS = {
    "sweep": run_subscription_sweep,
    "rollover": run_quota_rollover,
    "purge": run_webhook_purge,
}


def run_all(now: Optional[datetime] = None) -> Dict[str, Dict[str, Any]]:
    # Rollover first so the sweep and purge log against the new period
    now = normalize_now(now)
    return {
        "rollover": run_quota_rollover(now),
        "sweep": run_subscription_sweep(now),
        "purge": run_webhook_purge(now),
    }


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Run scheduled billing maintenance.")
    parser.add_argument("job", choices=sorted(JOBS) + ["all"], help="Job to run.")
    parser.add_argument("--now", help="ISO-8601 timestamp to run as (defaults to current time).")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    now = normalize_now(datetime.fromisoformat(args.now)) if args.now else utc_now()

    if args.job == "all":
        report: Dict[str, Any] = run_all(now)
    else:
        report = JOBS[args.job](now)
    print(json.dumps(report, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
