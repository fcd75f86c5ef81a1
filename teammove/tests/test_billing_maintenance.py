"""Tests for the scheduled billing maintenance jobs."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from teammove.core.database import billing_job_runs, get_db_session
from teammove.features.subscriptions.service import apply_plan_change, get_subscription
from teammove.models.subscription import ExternalRefs, SubscriptionStatus
from teammove.workers import billing_maintenance
from teammove.workers.billing_maintenance import (
    main,
    run_all,
    run_quota_rollover,
    run_subscription_sweep,
)

NOW = datetime(2025, 1, 15, 8, 0, tzinfo=timezone.utc)


def _job_runs():
    with get_db_session() as session:
        return session.execute(
            select(billing_job_runs.c.job_name, billing_job_runs.c.status, billing_job_runs.c.stats_json)
            .order_by(billing_job_runs.c.id)
        ).fetchall()


def test_sweep_job_records_run(tenant, catalog):
    refs = ExternalRefs(customer_ref="cus_lyon", session_ref="cs_single")
    apply_plan_change(tenant, "event_single", refs, now=NOW, catalog=catalog)

    stats = run_subscription_sweep(NOW + timedelta(days=400))

    assert stats["expired"] == 1
    assert get_subscription(tenant).status == SubscriptionStatus.EXPIRED
    runs = _job_runs()
    assert [(r.job_name, r.status) for r in runs] == [("billing.sweep", "success")]
    assert json.loads(runs[0].stats_json)["expired"] == 1


def test_rollover_job_is_idempotent():
    first = run_quota_rollover(NOW)
    second = run_quota_rollover(NOW + timedelta(days=3))
    third = run_quota_rollover(NOW + timedelta(days=20))

    assert first["current"] == "2025-01"
    assert second["advanced"] is False
    assert third == {"previous": "2025-01", "current": "2025-02", "advanced": True}
    assert len(_job_runs()) == 3


def test_failed_job_is_recorded_and_reraised():
    with patch.object(billing_maintenance, "sweep_expirations", side_effect=RuntimeError("db gone")):
        with pytest.raises(RuntimeError):
            run_subscription_sweep(NOW)

    runs = _job_runs()
    assert runs[0].status == "failed"
    assert json.loads(runs[0].stats_json) == {"error": "db gone"}


def test_run_all_order():
    report = run_all(NOW)
    assert list(report) == ["rollover", "sweep", "purge"]
    assert [r.job_name for r in _job_runs()] == [
        "billing.quota_rollover",
        "billing.sweep",
        "billing.webhook_purge",
    ]


def test_cli_runs_single_job(capsys):
    assert main(["rollover", "--now", "2025-06-01T00:00:00+00:00"]) == 0
    # Log lines share stdout; the report is printed last
    report = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert report["current"] == "2025-06"


def test_cli_rejects_unknown_job():
    with pytest.raises(SystemExit):
        main(["vacuum"])
