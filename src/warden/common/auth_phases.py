"""
Authentication phases a worker moves through before it is usable.

The orchestrator mirrors the worker's phase and only ever lets it move
forward. The only way back to ``none`` is recreating the worker.
"""

import enum
import re


class AuthPhase(str, enum.Enum):
    NONE = "none"
    WAIT_PHONE = "wait_phone"
    WAIT_CODE = "wait_code"
    WAIT_PASSWORD = "wait_password"
    WAIT_QR = "wait_qr"
    WAIT_QR_CONFIRMATION = "wait_qr_confirmation"
    READY = "ready"


# Phone branch: none -> wait_phone -> wait_code -> (wait_password) -> ready
# QR branch:    none -> wait_qr -> wait_qr_confirmation -> ready
FORWARD_TRANSITIONS: dict[AuthPhase, frozenset[AuthPhase]] = {
    AuthPhase.NONE: frozenset(
        {AuthPhase.WAIT_PHONE, AuthPhase.WAIT_QR, AuthPhase.READY}
    ),
    # A fresh worker parks in wait_phone until told which branch to take
    AuthPhase.WAIT_PHONE: frozenset({AuthPhase.WAIT_CODE, AuthPhase.WAIT_QR}),
    AuthPhase.WAIT_CODE: frozenset({AuthPhase.WAIT_PASSWORD, AuthPhase.READY}),
    AuthPhase.WAIT_PASSWORD: frozenset({AuthPhase.READY}),
    AuthPhase.WAIT_QR: frozenset({AuthPhase.WAIT_QR_CONFIRMATION}),
    # Accounts with a second factor ask for the password after the scan
    AuthPhase.WAIT_QR_CONFIRMATION: frozenset(
        {AuthPhase.WAIT_PASSWORD, AuthPhase.READY}
    ),
    AuthPhase.READY: frozenset(),
}

# Phases in which asking the worker for a QR login is still safe
QR_REQUESTABLE_PHASES = frozenset({AuthPhase.NONE, AuthPhase.WAIT_PHONE})


def can_transition(current: AuthPhase | str, new: AuthPhase | str) -> bool:
    """Whether moving from `current` to `new` keeps the handshake moving forward.

    Re-reporting the current phase is allowed and changes nothing.
    """
    current, new = AuthPhase(current), AuthPhase(new)
    return current == new or new in FORWARD_TRANSITIONS[current]


LOG_MARKERS: dict[str, AuthPhase] = {
    "AUTH_WAIT_PHONE": AuthPhase.WAIT_PHONE,
    "AUTH_WAIT_CODE": AuthPhase.WAIT_CODE,
    "AUTH_WAIT_PASSWORD": AuthPhase.WAIT_PASSWORD,
    "AUTH_QR_REQUESTED": AuthPhase.WAIT_QR,
    "AUTH_QR_READY": AuthPhase.WAIT_QR_CONFIRMATION,
    "AUTH_READY": AuthPhase.READY,
}

MARKER_PATTERN = re.compile(r"\b(" + "|".join(LOG_MARKERS) + r")\b")


def phase_from_logs(logs: str) -> AuthPhase | None:
    """Find the most recent phase marker in a worker's log output.

    Returns None when no marker has been printed yet.
    """
    matches = MARKER_PATTERN.findall(logs)
    if not matches:
        return None
    return LOG_MARKERS[matches[-1]]
