from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from warden.agent.control_server import create_control_app, serve
from warden.agent.metrics import WorkerMetrics
from warden.common.auth_phases import AuthPhase


@pytest.fixture
def handler():
    handler = MagicMock()
    handler.phase = AuthPhase.WAIT_PHONE
    handler.qr_link = None
    handler.submit_phone = AsyncMock()
    handler.submit_code = AsyncMock()
    handler.submit_password = AsyncMock()
    handler.request_qr_code = AsyncMock()
    return handler


@pytest.fixture
def metrics():
    return WorkerMetrics(messages_processed=40, spam_detected=10, spam_archived=9)


@pytest.fixture
def client(handler, metrics):
    return TestClient(create_control_app(handler, metrics))


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


@pytest.mark.parametrize(
    "path, field, value, method",
    [
        ("/auth/phone", "phone_number", "+15550000", "submit_phone"),
        ("/auth/code", "code", "12345", "submit_code"),
        ("/auth/password", "password", "hunter2", "submit_password"),
    ],
)
def test_submissions(client, handler, path, field, value, method):
    response = client.post(path, json={field: value})

    assert response.status_code == 200
    assert response.json() == {"success": True}
    getattr(handler, method).assert_awaited_once_with(value)


@pytest.mark.parametrize(
    "path, field", [("/auth/phone", "phone_number"), ("/auth/code", "code"), ("/auth/password", "password")]
)
def test_missing_fields(client, path, field):
    response = client.post(path, json={})

    assert response.status_code == 400
    assert response.json() == {"error": f"{field} is required"}


def test_missing_body(client):
    response = client.post("/auth/code")
    assert response.status_code == 400


def test_failed_submission(client, handler):
    handler.submit_code.side_effect = RuntimeError("PHONE_CODE_INVALID")

    response = client.post("/auth/code", json={"code": "00000"})

    assert response.status_code == 500
    assert response.json() == {
        "error": "Code submission failed",
        "details": "PHONE_CODE_INVALID",
    }


def test_request_qr(client, handler):
    response = client.post("/auth/qr/request")

    assert response.status_code == 200
    assert response.json() == {"success": True, "message": "QR code requested"}
    handler.request_qr_code.assert_awaited_once()


def test_get_qr_and_status(client, handler):
    handler.phase = AuthPhase.WAIT_QR_CONFIRMATION
    handler.qr_link = "https://t.me/login/abc"

    assert client.get("/auth/qr").json() == {
        "qr_link": "https://t.me/login/abc",
        "status": "wait_qr_confirmation",
    }
    assert client.get("/auth/status").json() == {"status": "wait_qr_confirmation"}


def test_metrics(client):
    body = client.get("/metrics").json()

    assert body["messages_processed"] == 40
    assert body["spam_detected"] == 10
    assert body["spam_archived"] == 9
    assert body["spam_rate"] == 0.25


@pytest.mark.asyncio
async def test_serve_runs_control_app_on_port(handler, metrics):
    with patch("warden.agent.control_server.uvicorn.Server") as server_cls:
        server_cls.return_value.serve = AsyncMock()

        await serve(handler, metrics, port=4100)

    config = server_cls.call_args.args[0]
    assert config.port == 4100
    assert config.host == "0.0.0.0"
    server_cls.return_value.serve.assert_awaited_once()
