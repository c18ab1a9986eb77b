from warden.common.db.models.base import Base
from warden.common.db.models.users import (
    DefaultAction,
    SettingsPayload,
    User,
    UserSettings,
    UserStatus,
)
from warden.common.db.models.workers import (
    ACTIVE_WORKER_STATUSES,
    FINISHED_WORKER_STATUSES,
    WorkerRecord,
    WorkerStatus,
)
from warden.common.db.models.auth import AuthState
from warden.common.db.models.audit import AuditLogEntry, MetricsSnapshot

__all__ = [
    "Base",
    "DefaultAction",
    "SettingsPayload",
    "User",
    "UserSettings",
    "UserStatus",
    "ACTIVE_WORKER_STATUSES",
    "FINISHED_WORKER_STATUSES",
    "WorkerRecord",
    "WorkerStatus",
    "AuthState",
    "AuditLogEntry",
    "MetricsSnapshot",
]
