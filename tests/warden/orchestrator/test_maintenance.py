from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from warden.common import store
from warden.common.db.models import AuditLogEntry, MetricsSnapshot, WorkerStatus
from warden.orchestrator.auth_client import WorkerUnreachableError
from warden.orchestrator.maintenance import cleanup_old_records, collect_metrics


def test_cleanup_old_records(session_factory):
    now = store.utcnow()
    with session_factory() as session:
        store.create_user(session, 1)
        session.add_all(
            [
                AuditLogEntry(user_id=1, event_type="old", timestamp=now - timedelta(days=40)),
                AuditLogEntry(user_id=1, event_type="new", timestamp=now - timedelta(days=1)),
                MetricsSnapshot(user_id=1, timestamp=now - timedelta(days=100)),
                MetricsSnapshot(user_id=1, timestamp=now - timedelta(days=60)),
            ]
        )

    removed = cleanup_old_records(audit_days=30, metrics_days=90, session_factory=session_factory)

    assert removed == {"audit_log": 1, "metrics": 1}
    with session_factory() as session:
        assert session.query(AuditLogEntry).count() == 1
        assert session.query(MetricsSnapshot).count() == 1


@pytest.mark.asyncio
async def test_collect_metrics_from_running_workers(session_factory):
    with session_factory() as session:
        for user_id, status in [(1, WorkerStatus.RUNNING), (2, WorkerStatus.RUNNING), (3, WorkerStatus.STARTING)]:
            store.create_user(session, user_id)
            store.create_worker_record(session, user_id, f"c{user_id}", status=status)

    async def get_metrics(user_id):
        if user_id == 1:
            return {"msgProcessedTotal": 100, "spamDetectedTotal": 10, "spamArchivedTotal": 8}
        raise WorkerUnreachableError("down")

    coordinator = MagicMock()
    coordinator.get_metrics = AsyncMock(side_effect=get_metrics)

    assert await collect_metrics(coordinator, session_factory=session_factory) == 1
    assert {c.args[0] for c in coordinator.get_metrics.await_args_list} == {1, 2}

    with session_factory() as session:
        snapshot = store.get_latest_metrics(session, 1)
        assert snapshot.messages_processed == 100
        assert snapshot.spam_detected == 10
        assert snapshot.spam_archived == 8
        assert snapshot.spam_blocked == 0
        assert snapshot.spam_rate == 0.1
        assert store.get_latest_metrics(session, 2) is None
