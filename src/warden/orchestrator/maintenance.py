"""
Housekeeping jobs: retention cleanup and worker metrics collection.
"""

import logging

from warden.common import settings, store
from warden.common.db.connection import make_session
from warden.common.db.models import WorkerStatus
from warden.orchestrator.auth_client import AuthCoordinator, AuthCoordinatorError

logger = logging.getLogger(__name__)


def cleanup_old_records(
    audit_days: int = settings.AUDIT_LOG_RETENTION_DAYS,
    metrics_days: int = settings.METRICS_RETENTION_DAYS,
    session_factory=make_session,
) -> dict[str, int]:
    """Purge audit entries and metrics snapshots past their retention window."""
    with session_factory() as session:
        audit_removed = store.clean_old_audit_logs(session, days=audit_days)
        metrics_removed = store.clean_old_metrics(session, days=metrics_days)

    logger.info(
        f"Retention cleanup removed {audit_removed} audit entries "
        f"and {metrics_removed} metrics snapshots"
    )
    return {"audit_log": audit_removed, "metrics": metrics_removed}


def _metric_counts(raw: dict) -> dict[str, int]:
    # Workers report camelCase totals, e.g. msgProcessedTotal
    aliases = {
        "messages_processed": ("messages_processed", "msgProcessedTotal"),
        "spam_detected": ("spam_detected", "spamDetectedTotal"),
        "spam_archived": ("spam_archived", "spamArchivedTotal"),
        "spam_blocked": ("spam_blocked", "spamBlockedTotal"),
    }
    counts = {}
    for field, keys in aliases.items():
        value = next((raw[key] for key in keys if key in raw), 0)
        counts[field] = int(value or 0)
    return counts


async def collect_metrics(
    coordinator: AuthCoordinator, session_factory=make_session
) -> int:
    """
    Append a metrics snapshot for every running worker.

    Returns the number of snapshots written.
    """
    with session_factory() as session:
        users = [
            record.user_id
            for record in store.list_active_workers(session)
            if record.status == WorkerStatus.RUNNING.value
        ]

    written = 0
    for user_id in users:
        try:
            raw = await coordinator.get_metrics(user_id)
        except AuthCoordinatorError as e:
            logger.warning(f"Could not read metrics of user {user_id}: {e}")
            continue

        counts = _metric_counts(raw)
        with session_factory() as session:
            store.add_metrics_snapshot(session, user_id, **counts)
        written += 1

    logger.debug(f"Collected metrics from {written}/{len(users)} workers")
    return written
