"""
Wiring of the long-lived orchestrator components.

One ``Services`` instance is shared by the HTTP API, the command channel and
the periodic jobs.
"""

import logging
from dataclasses import dataclass
from functools import partial

from warden.common import settings
from warden.orchestrator.auth_client import AuthCoordinator
from warden.orchestrator.containers import WorkerLifecycleManager
from warden.orchestrator.locks import UserLocks
from warden.orchestrator.maintenance import cleanup_old_records, collect_metrics
from warden.orchestrator.reconciler import HealthReconciler
from warden.orchestrator.scheduler import PeriodicTask
from warden.api.login import LoginService
from warden.api.tokens import TokenStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    lifecycle: WorkerLifecycleManager
    coordinator: AuthCoordinator
    tokens: TokenStore
    locks: UserLocks
    login: LoginService
    reconciler: HealthReconciler

    def periodic_tasks(self) -> list[PeriodicTask]:
        return [
            PeriodicTask(
                "health-check",
                settings.HEALTH_CHECK_INTERVAL,
                self.reconciler.run_once,
                run_immediately=True,
            ),
            PeriodicTask(
                "retention-cleanup",
                settings.RETENTION_CLEANUP_INTERVAL,
                cleanup_old_records,
            ),
            PeriodicTask("token-sweep", settings.TOKEN_SWEEP_INTERVAL, self.tokens.sweep),
            PeriodicTask(
                "metrics-collection",
                settings.METRICS_COLLECTION_INTERVAL,
                partial(collect_metrics, self.coordinator),
            ),
        ]

    async def close(self) -> None:
        await self.coordinator.close()


def build_services(lifecycle: WorkerLifecycleManager | None = None) -> Services:
    lifecycle = lifecycle or WorkerLifecycleManager()
    coordinator = AuthCoordinator(lifecycle)
    tokens = TokenStore()
    locks = UserLocks()
    return Services(
        lifecycle=lifecycle,
        coordinator=coordinator,
        tokens=tokens,
        locks=locks,
        login=LoginService(lifecycle, coordinator, tokens, locks),
        reconciler=HealthReconciler(lifecycle),
    )


_services: Services | None = None


def get_services() -> Services:
    """Get or create the process-wide services."""
    global _services
    if _services is None:
        _services = build_services()
    return _services


def set_services(services: Services | None) -> None:
    global _services
    _services = services


def get_login_service() -> LoginService:
    return get_services().login


def get_token_store() -> TokenStore:
    return get_services().tokens
