"""
Web login flow: from a pre-auth token to an authenticated worker.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from warden.common import settings, store
from warden.common.auth_phases import QR_REQUESTABLE_PHASES, AuthPhase
from warden.common.db.connection import make_session
from warden.common.db.models import WorkerStatus
from warden.orchestrator.auth_client import AuthCoordinator
from warden.orchestrator.containers import (
    RuntimeStatus,
    WorkerConfig,
    WorkerLifecycleManager,
    container_name,
)
from warden.orchestrator.locks import UserLocks
from warden.api.tokens import LoginSession, LoginStatus, TokenStore

logger = logging.getLogger(__name__)


class LoginError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class UnknownUserError(LoginError):
    status_code = 400

    def __init__(self, user_id: int):
        super().__init__(f"User {user_id} is not registered")
        self.user_id = user_id


class WorkerStartTimeout(LoginError):
    status_code = 504


def bot_link(session_token: str) -> str:
    return f"{settings.BOT_LINK_URL}?start={session_token}"


@dataclass
class LoginResult:
    token: str
    user_id: int
    status: LoginStatus
    phase: AuthPhase
    bot_link: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "token": self.token,
            "status": self.status.value,
            "phase": self.phase.value,
            "already_authenticated": self.status == LoginStatus.AUTHENTICATED,
            "bot_link": self.bot_link,
        }


class LoginService:
    def __init__(
        self,
        lifecycle: WorkerLifecycleManager,
        coordinator: AuthCoordinator,
        tokens: TokenStore,
        locks: UserLocks,
        *,
        start_timeout: float = settings.WORKER_START_TIMEOUT,
        poll_interval: float = 1.0,
        session_factory=make_session,
    ):
        self.lifecycle = lifecycle
        self.coordinator = coordinator
        self.tokens = tokens
        self.locks = locks
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.session_factory = session_factory

    async def wait_for_worker(self, user_id: int, timeout: float | None = None) -> None:
        """
        Wait until the runtime reports the worker running and its control
        surface answers.

        Timing out only stops the waiting; the container keeps starting.
        """
        name = container_name(user_id)
        timeout = self.start_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while loop.time() < deadline:
            if (await self.lifecycle.status(name)).running:
                break
            await asyncio.sleep(self.poll_interval)
        else:
            raise WorkerStartTimeout(f"Worker {name} did not start within {timeout}s")

        while loop.time() < deadline:
            if await self.coordinator.ping(user_id):
                logger.info(f"Worker {name} is up")
                return
            await asyncio.sleep(self.poll_interval)
        raise WorkerStartTimeout(f"Worker {name} did not become reachable within {timeout}s")

    def _adopt(self, user_id: int, runtime: RuntimeStatus) -> None:
        """Make sure the store has an active record for a container that is running."""
        with self.session_factory() as session:
            record = store.get_active_worker(session, user_id)
            if record and record.container_id == runtime.container_id:
                return
            logger.info(f"Recording running container {runtime.container_id} of user {user_id}")
            store.create_worker_record(
                session, user_id, runtime.container_id or "", status=WorkerStatus.RUNNING
            )

    async def _provision(self, user_id: int, settings_env: dict[str, str]) -> None:
        name = container_name(user_id)
        container_id = await self.lifecycle.create(
            WorkerConfig(user_id=user_id, settings_env=settings_env)
        )
        self.coordinator.reset(user_id)
        with self.session_factory() as session:
            store.create_worker_record(session, user_id, container_id)
            store.add_audit_log(
                session, user_id, "worker_created", {"container_id": container_id}
            )
        logger.info(f"Provisioned worker {name} for user {user_id}")

    async def ensure_worker(self, user_id: int, settings_env: dict[str, str]) -> AuthPhase:
        """
        Get the user a running worker and return its auth phase.

        Callers must hold the user's lock.
        """
        name = container_name(user_id)
        runtime = await self.lifecycle.status(name)

        if runtime.running:
            self._adopt(user_id, runtime)
            return await self.coordinator.current_phase(user_id)

        if runtime.state == "stopped":
            logger.info(f"Removing stopped worker {name} before recreating it")
            await self.lifecycle.remove(name)

        await self._provision(user_id, settings_env)
        await self.wait_for_worker(user_id)
        return await self.coordinator.current_phase(user_id)

    async def init_login(self, preauth_token: str) -> LoginResult:
        """
        Start a web login with a pre-auth token.

        The token is consumed before any worker work starts, so a replay while
        the worker is being created fails.
        """
        entry = await self.tokens.consume_preauth(preauth_token)
        user_id = entry.user_id
        name = container_name(user_id)

        with self.session_factory() as session:
            user = store.get_user(session, user_id)
            if not user:
                raise UnknownUserError(user_id)
            settings_env = user.settings.as_environment() if user.settings else {}
            store.add_audit_log(session, user_id, "web_login_started")

        async with self.locks.hold(user_id):
            phase = await self.ensure_worker(user_id, settings_env)

            if phase == AuthPhase.READY:
                login = await self.tokens.create_login(user_id, name)
                login = await self._complete(login)
                return LoginResult(
                    token=login.token,
                    user_id=user_id,
                    status=login.status,
                    phase=phase,
                    bot_link=bot_link(login.session_token or ""),
                )

            if phase in QR_REQUESTABLE_PHASES:
                await self.coordinator.request_qr_code(user_id)
                phase = AuthPhase.WAIT_QR

        login = await self.tokens.create_login(user_id, name)
        logger.info(f"Login flow started for user {user_id} in phase {phase.value}")
        return LoginResult(token=login.token, user_id=user_id, status=login.status, phase=phase)

    async def _complete(self, login: LoginSession) -> LoginSession:
        login = await self.tokens.complete_login(login.token)
        with self.session_factory() as session:
            record = store.get_active_worker(session, login.user_id)
            if record and record.status == WorkerStatus.STARTING.value:
                store.update_worker_status(session, record.id, WorkerStatus.RUNNING)
            store.add_audit_log(session, login.user_id, "web_auth_completed")
        return login

    async def get_qr(self, token: str) -> dict[str, Any]:
        login = await self.tokens.get_login(token)
        if login.authenticated:
            return {"qr_link": None, "status": AuthPhase.READY.value, "authenticated": True}

        payload = await self.coordinator.get_qr_code(login.user_id)
        if payload.phase == AuthPhase.READY:
            await self._complete(login)
        elif payload.qr_link:
            await self.tokens.update_login(
                token, status=LoginStatus.QR_READY, qr_link=payload.qr_link
            )
        return {
            "qr_link": payload.qr_link,
            "status": payload.phase.value,
            "authenticated": payload.phase == AuthPhase.READY,
        }

    async def submit_password(self, token: str, password: str) -> dict[str, Any]:
        login = await self.tokens.get_login(token)
        await self.coordinator.submit_password(login.user_id, password)
        with self.session_factory() as session:
            store.add_audit_log(session, login.user_id, "password_submitted")
        return {"success": True}

    async def check_status(self, token: str) -> dict[str, Any]:
        login = await self.tokens.get_login(token)
        if not login.authenticated:
            phase = await self.coordinator.get_phase(login.user_id)
            if phase != AuthPhase.READY:
                return {"status": phase.value, "authenticated": False}
            login = await self._complete(login)

        return {
            "status": AuthPhase.READY.value,
            "authenticated": True,
            "bot_link": bot_link(login.session_token or ""),
        }
