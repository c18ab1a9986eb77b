"""
Persistent store operations for users, workers, auth state, audit events and metrics.

Every function takes the SQLAlchemy session as its first argument and only
flushes; committing is left to the caller (usually ``make_session``).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, cast

from sqlalchemy import delete
from sqlalchemy.orm import Session, scoped_session

from warden.common.auth_phases import AuthPhase
from warden.common.db.models import (
    ACTIVE_WORKER_STATUSES,
    FINISHED_WORKER_STATUSES,
    AuditLogEntry,
    AuthState,
    DefaultAction,
    MetricsSnapshot,
    User,
    UserSettings,
    UserStatus,
    WorkerRecord,
    WorkerStatus,
)

logger = logging.getLogger(__name__)

DBSession = Session | scoped_session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to timestamps read back from backends that drop the zone."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# --- Users -----------------------------------------------------------------


def create_user(session: DBSession, user_id: int, username: str | None = None) -> User:
    """
    Create a user on first contact, or refresh the username of a known one.

    Settings and auth state rows are created in the same flush so a user never
    exists without them.
    """
    user = session.get(User, user_id)
    if user:
        if username and user.username != username:
            user.username = username
        user.last_active = utcnow()
        session.flush()
        return user

    user = User(
        id=user_id,
        username=username,
        status=UserStatus.STOPPED.value,
        settings=UserSettings(user_id=user_id),
        auth_state=AuthState(user_id=user_id, phase=AuthPhase.NONE.value),
    )
    session.add(user)
    session.flush()
    logger.info(f"Registered user {user_id}")
    return user


def get_user(session: DBSession, user_id: int) -> User | None:
    return session.get(User, user_id)


def update_user_status(
    session: DBSession, user_id: int, status: UserStatus | str
) -> User:
    user = session.get(User, user_id)
    if not user:
        raise ValueError(f"User {user_id} not found")
    user.status = UserStatus(status).value
    user.last_active = utcnow()
    session.flush()
    return user


def touch_user(session: DBSession, user_id: int) -> None:
    """Record activity without changing anything else."""
    if user := session.get(User, user_id):
        user.last_active = utcnow()
        session.flush()


# --- Settings --------------------------------------------------------------

SETTINGS_FIELDS = {
    "low_threshold": float,
    "action_threshold": float,
    "default_action": str,
    "enable_deletion": bool,
    "enable_blocking": bool,
}


def get_settings(session: DBSession, user_id: int) -> UserSettings | None:
    return session.get(UserSettings, user_id)


def update_settings(session: DBSession, user_id: int, **changes: Any) -> UserSettings:
    """
    Update a user's worker settings.

    Args:
        session: Database session
        user_id: Owner of the settings
        **changes: Any of the fields in SETTINGS_FIELDS

    Returns:
        The updated settings row

    Raises:
        ValueError: If a field is unknown or a value is out of range
    """
    settings_row = session.get(UserSettings, user_id)
    if not settings_row:
        raise ValueError(f"Settings for user {user_id} not found")

    unknown = set(changes) - set(SETTINGS_FIELDS)
    if unknown:
        raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

    for field in ("low_threshold", "action_threshold"):
        if field in changes and not 0 <= float(changes[field]) <= 1:
            raise ValueError(f"{field} must be between 0 and 1")
    if "default_action" in changes:
        changes["default_action"] = DefaultAction(changes["default_action"]).value

    low = float(changes.get("low_threshold", settings_row.low_threshold))
    action = float(changes.get("action_threshold", settings_row.action_threshold))
    if low > action:
        raise ValueError("low_threshold cannot be above action_threshold")

    for field, value in changes.items():
        setattr(settings_row, field, SETTINGS_FIELDS[field](value))
    session.flush()
    return settings_row


# --- Workers ---------------------------------------------------------------


def _retire_active_workers(
    session: DBSession, user_id: int, keep_id: int | None = None
) -> int:
    """Fail every active record of the user except `keep_id`."""
    query = session.query(WorkerRecord).filter(
        WorkerRecord.user_id == user_id,
        WorkerRecord.status.in_(ACTIVE_WORKER_STATUSES),
    )
    if keep_id is not None:
        query = query.filter(WorkerRecord.id != keep_id)

    retired = 0
    for record in query.all():
        logger.warning(
            f"Retiring worker record {record.id} ({record.container_id}) of user {user_id}"
        )
        record.status = WorkerStatus.FAILED.value
        record.stopped_at = utcnow()
        retired += 1
    if retired:
        session.flush()
    return retired


def create_worker_record(
    session: DBSession,
    user_id: int,
    container_id: str,
    status: WorkerStatus | str = WorkerStatus.STARTING,
) -> WorkerRecord:
    """
    Insert a record for a freshly created container.

    Any other active record of the user is moved to failed first, so at most
    one record per user is ever starting or running.
    """
    _retire_active_workers(session, user_id)
    record = WorkerRecord(
        user_id=user_id,
        container_id=container_id,
        status=WorkerStatus(status).value,
    )
    session.add(record)
    session.flush()
    return record


def get_active_worker(session: DBSession, user_id: int) -> WorkerRecord | None:
    return (
        session.query(WorkerRecord)
        .filter(
            WorkerRecord.user_id == user_id,
            WorkerRecord.status.in_(ACTIVE_WORKER_STATUSES),
        )
        .order_by(WorkerRecord.created_at.desc(), WorkerRecord.id.desc())
        .first()
    )


def get_latest_worker(session: DBSession, user_id: int) -> WorkerRecord | None:
    """The most recent record of the user, whatever its status."""
    return (
        session.query(WorkerRecord)
        .filter(WorkerRecord.user_id == user_id)
        .order_by(WorkerRecord.created_at.desc(), WorkerRecord.id.desc())
        .first()
    )


def list_active_workers(session: DBSession) -> list[WorkerRecord]:
    return (
        session.query(WorkerRecord)
        .filter(WorkerRecord.status.in_(ACTIVE_WORKER_STATUSES))
        .order_by(WorkerRecord.id)
        .all()
    )


def update_worker_status(
    session: DBSession, record_id: int, status: WorkerStatus | str
) -> WorkerRecord:
    """
    Move a worker record to a new status.

    Finishing statuses stamp ``stopped_at``. Reactivating a record fails any
    other active record of the same user.
    """
    record = session.get(WorkerRecord, record_id)
    if not record:
        raise ValueError(f"Worker record {record_id} not found")

    status = WorkerStatus(status).value
    if status in ACTIVE_WORKER_STATUSES:
        _retire_active_workers(session, record.user_id, keep_id=record.id)
        record.stopped_at = None
    elif status in FINISHED_WORKER_STATUSES and record.stopped_at is None:
        record.stopped_at = utcnow()

    if record.status != status:
        logger.info(
            f"Worker record {record.id} of user {record.user_id}: {record.status} -> {status}"
        )
    record.status = status
    session.flush()
    return record


# --- Auth state ------------------------------------------------------------


def get_auth_state(session: DBSession, user_id: int) -> AuthState | None:
    return session.get(AuthState, user_id)


def init_auth_state(session: DBSession, user_id: int) -> AuthState:
    """Reset the user's handshake to the beginning, keeping the stored phone."""
    state = session.get(AuthState, user_id)
    if not state:
        state = AuthState(user_id=user_id)
        session.add(state)
    state.phase = AuthPhase.NONE.value
    state.qr_link = None
    state.last_auth_attempt = None
    session.flush()
    return state


def update_auth_state(
    session: DBSession,
    user_id: int,
    phase: AuthPhase | str,
    phone_number: str | None = None,
    qr_link: str | None = None,
) -> AuthState:
    """
    Record a new handshake phase for the user.

    The stored phone number is only replaced when a new one is given. Reaching
    ``ready`` always clears the QR payload.
    """
    state = session.get(AuthState, user_id)
    if not state:
        state = AuthState(user_id=user_id)
        session.add(state)

    phase = AuthPhase(phase)
    state.phase = phase.value
    if phone_number is not None:
        state.phone_number = phone_number
    if phase == AuthPhase.READY:
        state.qr_link = None
    elif qr_link is not None:
        state.qr_link = qr_link
    state.last_auth_attempt = utcnow()
    session.flush()
    return state


# --- Audit log -------------------------------------------------------------


def add_audit_log(
    session: DBSession,
    user_id: int,
    event_type: str,
    details: dict | None = None,
) -> AuditLogEntry:
    entry = AuditLogEntry(user_id=user_id, event_type=event_type, details=details)
    session.add(entry)
    session.flush()
    return entry


def get_audit_logs(
    session: DBSession,
    user_id: int,
    since: datetime | None = None,
    until: datetime | None = None,
    limit: int = 50,
) -> list[AuditLogEntry]:
    """Audit entries of a user in a time range, newest first."""
    query = session.query(AuditLogEntry).filter(AuditLogEntry.user_id == user_id)
    if since:
        query = query.filter(AuditLogEntry.timestamp >= since)
    if until:
        query = query.filter(AuditLogEntry.timestamp <= until)
    return (
        query.order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.id.desc())
        .limit(limit)
        .all()
    )


def clean_old_audit_logs(session: DBSession, days: int = 30) -> int:
    cutoff = utcnow() - timedelta(days=days)
    result = session.execute(
        delete(AuditLogEntry).where(AuditLogEntry.timestamp < cutoff)
    )
    return cast(int, getattr(result, "rowcount", 0) or 0)


# --- Metrics ---------------------------------------------------------------


def add_metrics_snapshot(
    session: DBSession,
    user_id: int,
    messages_processed: int = 0,
    spam_detected: int = 0,
    spam_archived: int = 0,
    spam_blocked: int = 0,
    spam_rate: float | None = None,
) -> MetricsSnapshot:
    if spam_rate is None:
        spam_rate = spam_detected / messages_processed if messages_processed else 0.0
    snapshot = MetricsSnapshot(
        user_id=user_id,
        messages_processed=messages_processed,
        spam_detected=spam_detected,
        spam_archived=spam_archived,
        spam_blocked=spam_blocked,
        spam_rate=spam_rate,
    )
    session.add(snapshot)
    session.flush()
    return snapshot


def get_latest_metrics(session: DBSession, user_id: int) -> MetricsSnapshot | None:
    return (
        session.query(MetricsSnapshot)
        .filter(MetricsSnapshot.user_id == user_id)
        .order_by(MetricsSnapshot.timestamp.desc(), MetricsSnapshot.id.desc())
        .first()
    )


def get_metrics_history(
    session: DBSession, user_id: int, hours: int = 24
) -> list[MetricsSnapshot]:
    """Snapshots from the last `hours` hours, newest first."""
    since = utcnow() - timedelta(hours=hours)
    return (
        session.query(MetricsSnapshot)
        .filter(MetricsSnapshot.user_id == user_id, MetricsSnapshot.timestamp >= since)
        .order_by(MetricsSnapshot.timestamp.desc(), MetricsSnapshot.id.desc())
        .all()
    )


def clean_old_metrics(session: DBSession, days: int = 90) -> int:
    cutoff = utcnow() - timedelta(days=days)
    result = session.execute(
        delete(MetricsSnapshot).where(MetricsSnapshot.timestamp < cutoff)
    )
    return cast(int, getattr(result, "rowcount", 0) or 0)
