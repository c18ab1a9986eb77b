"""
Worker-side view of the messaging client's authorization state.

The handler turns the client's authorization updates into the phases the
orchestrator understands, keeps the current QR link and prints a marker line
for every phase change so the orchestrator can follow along in the logs.
"""

import logging
from typing import Any, Protocol

from warden.common.auth_phases import AuthPhase, LOG_MARKERS

logger = logging.getLogger(__name__)

PHASE_MARKERS = {phase: marker for marker, phase in LOG_MARKERS.items()}

STATE_PHASES = {
    "authorizationStateWaitPhoneNumber": AuthPhase.WAIT_PHONE,
    "authorizationStateWaitOtherDeviceConfirmation": AuthPhase.WAIT_QR_CONFIRMATION,
    "authorizationStateWaitCode": AuthPhase.WAIT_CODE,
    "authorizationStateWaitPassword": AuthPhase.WAIT_PASSWORD,
    "authorizationStateReady": AuthPhase.READY,
}

# States that need nothing from the user
QUIET_STATES = {
    "authorizationStateWaitTdlibParameters",
    "authorizationStateLoggingOut",
    "authorizationStateClosing",
    "authorizationStateClosed",
}

QR_LINK_PREFIX = "tg://login?token="


class MessagingClient(Protocol):
    async def invoke(self, request: dict[str, Any]) -> Any: ...


def web_qr_link(raw_link: str | None) -> str | None:
    """Turn a tg:// login link into one that opens in a browser."""
    if raw_link and raw_link.startswith(QR_LINK_PREFIX):
        return f"https://t.me/login/{raw_link[len(QR_LINK_PREFIX):]}"
    return raw_link


class AuthHandler:
    def __init__(self, client: MessagingClient):
        self.client = client
        self.phase = AuthPhase.NONE
        self.qr_link: str | None = None
        self.phone_number: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.phase == AuthPhase.READY

    def _set_phase(self, phase: AuthPhase) -> None:
        self.phase = phase
        if phase == AuthPhase.READY:
            self.qr_link = None
        logger.info(f"{PHASE_MARKERS[phase]} authorization phase is now {phase.value}")

    def handle_update(self, update: dict[str, Any]) -> None:
        """Process one update from the messaging client."""
        if update.get("_") != "updateAuthorizationState":
            return

        state = update.get("authorization_state") or {}
        state_type = state.get("_")
        if state_type in QUIET_STATES:
            logger.info(f"Authorization state: {state_type}")
            return

        phase = STATE_PHASES.get(state_type)
        if not phase:
            logger.warning(f"Unknown authorization state: {state_type}")
            return

        if phase == AuthPhase.WAIT_QR_CONFIRMATION:
            self.qr_link = web_qr_link(state.get("link"))
        self._set_phase(phase)

    async def _invoke(self, description: str, request: dict[str, Any]) -> Any:
        logger.info(f"Submitting {description}")
        try:
            return await self.client.invoke(request)
        except Exception as e:
            logger.error(f"Failed to submit {description}: {e}")
            raise

    async def submit_phone(self, phone_number: str) -> None:
        self.phone_number = phone_number
        await self._invoke(
            "phone number",
            {"_": "setAuthenticationPhoneNumber", "phone_number": phone_number},
        )

    async def submit_code(self, code: str) -> None:
        await self._invoke(
            "authentication code", {"_": "checkAuthenticationCode", "code": code}
        )

    async def submit_password(self, password: str) -> None:
        await self._invoke(
            "2FA password", {"_": "checkAuthenticationPassword", "password": password}
        )

    async def request_qr_code(self) -> None:
        before = self.phase
        await self._invoke(
            "QR code request",
            {"_": "requestQrCodeAuthentication", "other_user_ids": []},
        )
        # The confirmation update may already have arrived while waiting
        if self.phase == before:
            self._set_phase(AuthPhase.WAIT_QR)
