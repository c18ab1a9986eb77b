import pytest

from warden.common.auth_phases import (
    AuthPhase,
    FORWARD_TRANSITIONS,
    can_transition,
    phase_from_logs,
)


@pytest.mark.parametrize(
    "path",
    [
        [AuthPhase.NONE, AuthPhase.WAIT_PHONE, AuthPhase.WAIT_CODE, AuthPhase.READY],
        [
            AuthPhase.NONE,
            AuthPhase.WAIT_PHONE,
            AuthPhase.WAIT_CODE,
            AuthPhase.WAIT_PASSWORD,
            AuthPhase.READY,
        ],
        [
            AuthPhase.NONE,
            AuthPhase.WAIT_QR,
            AuthPhase.WAIT_QR_CONFIRMATION,
            AuthPhase.READY,
        ],
        [
            AuthPhase.WAIT_PHONE,
            AuthPhase.WAIT_QR,
            AuthPhase.WAIT_QR_CONFIRMATION,
            AuthPhase.WAIT_PASSWORD,
            AuthPhase.READY,
        ],
        [AuthPhase.NONE, AuthPhase.READY],
    ],
)
def test_documented_paths_move_forward(path):
    for current, new in zip(path, path[1:]):
        assert can_transition(current, new)


@pytest.mark.parametrize(
    "current, new",
    [
        (AuthPhase.READY, AuthPhase.NONE),
        (AuthPhase.READY, AuthPhase.WAIT_QR),
        (AuthPhase.WAIT_CODE, AuthPhase.WAIT_PHONE),
        (AuthPhase.WAIT_QR_CONFIRMATION, AuthPhase.WAIT_QR),
        (AuthPhase.WAIT_QR, AuthPhase.WAIT_CODE),
        (AuthPhase.WAIT_CODE, AuthPhase.WAIT_QR),
        (AuthPhase.WAIT_PASSWORD, AuthPhase.WAIT_CODE),
        (AuthPhase.WAIT_PHONE, AuthPhase.NONE),
    ],
)
def test_backward_and_cross_branch_moves_are_rejected(current, new):
    assert not can_transition(current, new)


@pytest.mark.parametrize("phase", list(AuthPhase))
def test_repeating_a_phase_is_allowed(phase):
    assert can_transition(phase, phase)


def test_nothing_is_reachable_after_ready():
    assert FORWARD_TRANSITIONS[AuthPhase.READY] == frozenset()


def test_can_transition_accepts_strings():
    assert can_transition("none", "wait_qr")
    assert not can_transition("ready", "none")


def test_phase_from_logs_uses_latest_marker():
    logs = "\n".join(
        [
            "2024-01-01T00:00:00Z INFO AUTH_WAIT_PHONE authorization phase is now wait_phone",
            "2024-01-01T00:00:01Z INFO Submitting QR code request",
            "2024-01-01T00:00:02Z INFO AUTH_QR_REQUESTED authorization phase is now wait_qr",
            "2024-01-01T00:00:03Z INFO AUTH_QR_READY authorization phase is now wait_qr_confirmation",
        ]
    )
    assert phase_from_logs(logs) == AuthPhase.WAIT_QR_CONFIRMATION


def test_phase_from_logs_ready():
    assert phase_from_logs("AUTH_WAIT_CODE\nAUTH_WAIT_PASSWORD\nAUTH_READY done") == AuthPhase.READY


def test_phase_from_logs_without_markers():
    assert phase_from_logs("starting up\nconnecting") is None
    assert phase_from_logs("") is None


def test_phase_from_logs_ignores_partial_words():
    assert phase_from_logs("XAUTH_READY and AUTH_READYISH") is None
