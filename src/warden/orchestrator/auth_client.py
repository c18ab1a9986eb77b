"""
Client for the control surface every worker exposes on the private network.

The coordinator drives a worker through its authentication handshake and
mirrors the worker's phase into the store, only ever moving it forward.
Transport failures on credential submissions are retried with exponential
backoff; rejections by the worker never are.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

import httpx

from warden.common import settings, store
from warden.common.auth_phases import (
    QR_REQUESTABLE_PHASES,
    AuthPhase,
    can_transition,
    phase_from_logs,
)
from warden.common.db.connection import make_session
from warden.orchestrator.containers import WorkerLifecycleManager, container_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AuthCoordinatorError(Exception):
    """Base class for handshake failures."""


class WorkerRejectedError(AuthCoordinatorError):
    """The worker answered and refused the request (wrong code, bad password...)."""

    def __init__(self, detail: str, status_code: int | None = None):
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class WorkerUnreachableError(AuthCoordinatorError):
    """The worker's control surface could not be reached."""


class InvalidPhaseTransition(AuthCoordinatorError):
    def __init__(self, current: AuthPhase, requested: AuthPhase):
        super().__init__(f"Cannot move from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested


@dataclass
class QrPayload:
    phase: AuthPhase
    qr_link: str | None = None


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("details") or body.get("error") or body)
    return str(body)


def _parse_phase(body: dict[str, Any]) -> AuthPhase:
    value = body.get("status") or AuthPhase.NONE.value
    try:
        return AuthPhase(value)
    except ValueError:
        raise AuthCoordinatorError(f"Worker reported an unknown phase: {value!r}")


class AuthCoordinator:
    def __init__(
        self,
        lifecycle: WorkerLifecycleManager,
        *,
        port: int = settings.WORKER_CONTROL_PORT,
        timeout: float = settings.WORKER_REQUEST_TIMEOUT,
        health_timeout: float = settings.WORKER_HEALTH_TIMEOUT,
        max_attempts: int = settings.AUTH_RETRY_ATTEMPTS,
        initial_delay: float = settings.AUTH_RETRY_DELAY,
        max_delay: float = settings.AUTH_RETRY_MAX_DELAY,
        backoff: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        session_factory=make_session,
    ):
        self.lifecycle = lifecycle
        self.port = port
        self.health_timeout = health_timeout
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff = backoff
        self.session_factory = session_factory
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        # Last phase seen per user, so callers never ask for a QR code twice
        self._phases: dict[int, AuthPhase] = {}

    async def close(self) -> None:
        await self.client.aclose()

    def base_url(self, user_id: int) -> str:
        return f"http://{container_name(user_id)}:{self.port}"

    # --- Phase tracking ----------------------------------------------------

    def tracked_phase(self, user_id: int) -> AuthPhase:
        """Last phase seen for the user, seeded from the store after a restart."""
        if user_id not in self._phases:
            with self.session_factory() as session:
                state = store.get_auth_state(session, user_id)
                self._phases[user_id] = state.auth_phase if state else AuthPhase.NONE
        return self._phases[user_id]

    def forget(self, user_id: int) -> None:
        """Drop the tracked phase, used when the worker is recreated."""
        self._phases.pop(user_id, None)

    def reset(self, user_id: int) -> None:
        """Start the handshake over for a worker that is being recreated."""
        self.forget(user_id)
        with self.session_factory() as session:
            store.init_auth_state(session, user_id)

    def observe(
        self,
        user_id: int,
        phase: AuthPhase,
        phone_number: str | None = None,
        qr_link: str | None = None,
    ) -> bool:
        """
        Record a phase reported by the worker.

        Returns False (and records nothing) when the report would move the
        handshake backwards.
        """
        current = self.tracked_phase(user_id)
        if not can_transition(current, phase):
            logger.warning(
                f"Ignoring phase regression for user {user_id}: {current.value} -> {phase.value}"
            )
            return False

        if current != phase:
            logger.info(f"User {user_id} auth phase: {current.value} -> {phase.value}")
        self._phases[user_id] = phase
        with self.session_factory() as session:
            store.update_auth_state(
                session, user_id, phase, phone_number=phone_number, qr_link=qr_link
            )
        return True

    # --- Transport -----------------------------------------------------------

    async def _with_retry(self, description: str, call: Callable[[], Awaitable[T]]) -> T:
        delay = self.initial_delay
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await call()
            except httpx.TransportError as e:
                if attempt == self.max_attempts:
                    raise WorkerUnreachableError(
                        f"{description} failed after {attempt} attempts: {e}"
                    ) from e
                logger.warning(
                    f"{description} attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * self.backoff, self.max_delay)
        raise AssertionError("unreachable")

    async def _request(
        self,
        method: str,
        user_id: int,
        path: str,
        json: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {}
        if json is not None:
            kwargs["json"] = json
        if timeout is not None:
            kwargs["timeout"] = timeout
        response = await self.client.request(
            method, f"{self.base_url(user_id)}{path}", **kwargs
        )
        if response.is_error:
            raise WorkerRejectedError(_error_detail(response), response.status_code)
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    async def _submit(self, user_id: int, path: str, payload: dict[str, Any]) -> dict:
        return await self._with_retry(
            f"POST {path} for user {user_id}",
            lambda: self._request("POST", user_id, path, json=payload),
        )

    # --- Handshake commands ------------------------------------------------

    async def submit_phone(self, user_id: int, phone_number: str) -> dict:
        result = await self._submit(user_id, "/auth/phone", {"phone_number": phone_number})
        with self.session_factory() as session:
            store.update_auth_state(
                session,
                user_id,
                self.tracked_phase(user_id),
                phone_number=phone_number,
            )
        return result

    async def submit_code(self, user_id: int, code: str) -> dict:
        return await self._submit(user_id, "/auth/code", {"code": code})

    async def submit_password(self, user_id: int, password: str) -> dict:
        return await self._submit(user_id, "/auth/password", {"password": password})

    async def request_qr_code(self, user_id: int) -> dict:
        """
        Ask the worker to start a QR login.

        Raises:
            InvalidPhaseTransition: If the handshake is already past the point
                where a QR login can be requested
        """
        current = self.tracked_phase(user_id)
        if current not in QR_REQUESTABLE_PHASES and current != AuthPhase.WAIT_QR:
            raise InvalidPhaseTransition(current, AuthPhase.WAIT_QR)
        result = await self._submit(user_id, "/auth/qr/request", {})
        self.observe(user_id, AuthPhase.WAIT_QR)
        return result

    # --- Reads ---------------------------------------------------------------

    async def get_phase(self, user_id: int) -> AuthPhase:
        """Read the worker's current phase from its control surface."""
        try:
            body = await self._request("GET", user_id, "/auth/status")
        except httpx.TransportError as e:
            raise WorkerUnreachableError(f"Worker of user {user_id} unreachable: {e}") from e
        phase = _parse_phase(body)
        self.observe(user_id, phase)
        return phase

    async def get_qr_code(self, user_id: int) -> QrPayload:
        try:
            body = await self._request("GET", user_id, "/auth/qr")
        except httpx.TransportError as e:
            raise WorkerUnreachableError(f"Worker of user {user_id} unreachable: {e}") from e
        phase = _parse_phase(body)
        qr_link = body.get("qr_link") if phase != AuthPhase.READY else None
        self.observe(user_id, phase, qr_link=qr_link)
        return QrPayload(phase=phase, qr_link=qr_link)

    async def phase_from_logs(self, user_id: int, tail: int = 200) -> AuthPhase | None:
        """Fallback for workers whose control surface is not up yet."""
        logs = await self.lifecycle.logs(container_name(user_id), tail=tail)
        phase = phase_from_logs(logs)
        if phase:
            self.observe(user_id, phase)
        return phase

    async def current_phase(self, user_id: int) -> AuthPhase:
        """Phase from the control surface, or from the logs if it cannot be reached."""
        try:
            return await self.get_phase(user_id)
        except WorkerUnreachableError as e:
            logger.info(f"Falling back to log markers for user {user_id}: {e}")
        return await self.phase_from_logs(user_id) or self.tracked_phase(user_id)

    async def ping(self, user_id: int) -> bool:
        """Whether the worker's control surface is accepting requests."""
        try:
            body = await self._request(
                "GET", user_id, "/health", timeout=self.health_timeout
            )
        except (httpx.HTTPError, WorkerRejectedError):
            return False
        return body.get("status") == "ok"

    async def get_metrics(self, user_id: int) -> dict[str, Any]:
        try:
            return await self._request("GET", user_id, "/metrics")
        except httpx.TransportError as e:
            raise WorkerUnreachableError(f"Worker of user {user_id} unreachable: {e}") from e
