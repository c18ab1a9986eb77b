"""
Health reconciliation between the store and the container runtime.

Each pass looks at every worker record the store believes is active and
corrects it to match what the runtime reports. It never starts or stops
containers itself.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta

from warden.common import settings, store
from warden.common.db.connection import make_session
from warden.common.db.models import WorkerRecord, WorkerStatus
from warden.orchestrator.containers import WorkerLifecycleManager, container_name

logger = logging.getLogger(__name__)


@dataclass
class RecordSnapshot:
    id: int
    user_id: int
    container_id: str
    status: str
    created_at: datetime


class HealthReconciler:
    def __init__(
        self,
        lifecycle: WorkerLifecycleManager,
        *,
        grace_period: int = settings.STARTING_GRACE_PERIOD,
        session_factory=make_session,
    ):
        self.lifecycle = lifecycle
        self.grace_period = timedelta(seconds=grace_period)
        self.session_factory = session_factory

    def _active_records(self) -> list[RecordSnapshot]:
        with self.session_factory() as session:
            return [
                RecordSnapshot(
                    id=record.id,
                    user_id=record.user_id,
                    container_id=record.container_id,
                    status=record.status,
                    created_at=store.as_utc(record.created_at),
                )
                for record in store.list_active_workers(session)
            ]

    def _apply(self, record: RecordSnapshot, status: WorkerStatus, reason: str) -> bool:
        with self.session_factory() as session:
            current = session.get(WorkerRecord, record.id)
            # Someone else moved the record while the runtime was being queried
            if not current or current.status != record.status:
                return False
            store.update_worker_status(session, record.id, status)
            if status != WorkerStatus.RUNNING:
                store.add_audit_log(
                    session,
                    record.user_id,
                    "worker_" + status.value,
                    {"container_id": record.container_id, "reason": reason},
                )
        logger.info(
            f"Worker {record.container_id[:12]} of user {record.user_id} marked {status.value}: {reason}"
        )
        return True

    async def reconcile(self, record: RecordSnapshot) -> str | None:
        """
        Bring one record in line with the runtime.

        Returns the new status, or None if nothing changed.
        """
        is_starting = record.status == WorkerStatus.STARTING.value
        if is_starting and store.utcnow() - record.created_at > self.grace_period:
            if self._apply(record, WorkerStatus.FAILED, "stuck in starting"):
                return WorkerStatus.FAILED.value
            return None

        runtime = await self.lifecycle.status(container_name(record.user_id))
        if runtime.container_id and runtime.container_id != record.container_id:
            # A container with the user's name exists but it is not this record's
            change = (WorkerStatus.FAILED, "replaced by another container")
        elif runtime.state == "not_found":
            change = (WorkerStatus.FAILED, "container vanished")
        elif runtime.state == "stopped":
            change = (WorkerStatus.STOPPED, "container stopped externally")
        elif is_starting:
            change = (WorkerStatus.RUNNING, "container is running")
        else:
            return None

        status, reason = change
        if self._apply(record, status, reason):
            return status.value
        return None

    async def run_once(self) -> dict[str, int]:
        """
        Reconcile every active record.

        A failure on one record is logged and does not stop the sweep.
        """
        results: Counter[str] = Counter()
        for record in self._active_records():
            try:
                outcome = await self.reconcile(record)
            except Exception:
                logger.exception(
                    f"Failed to reconcile worker record {record.id} of user {record.user_id}"
                )
                results["errors"] += 1
                continue
            results[outcome or "unchanged"] += 1

        if results:
            logger.info(f"Health check finished: {dict(results)}")
        return dict(results)
