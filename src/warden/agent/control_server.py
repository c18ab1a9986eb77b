"""
Control surface a worker exposes to the orchestrator on the private network.
"""

import logging
from typing import Any, Awaitable, Callable

import uvicorn
from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from warden.agent.auth_handler import AuthHandler
from warden.agent.metrics import WorkerMetrics
from warden.common import settings

logger = logging.getLogger(__name__)


def _missing(field: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": f"{field} is required"})


async def _run(
    action: str, call: Callable[[], Awaitable[Any]], **extra: Any
) -> JSONResponse | dict:
    try:
        await call()
    except Exception as e:
        logger.error(f"{action} failed: {e}")
        return JSONResponse(
            status_code=500, content={"error": f"{action} failed", "details": str(e)}
        )
    return {"success": True, **extra}


def create_control_app(handler: AuthHandler, metrics: WorkerMetrics | None = None) -> FastAPI:
    metrics = metrics or WorkerMetrics()
    app = FastAPI(title="Warden Agent Control")

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/auth/phone")
    async def submit_phone(payload: dict | None = Body(default=None)):
        phone_number = (payload or {}).get("phone_number")
        if not phone_number:
            return _missing("phone_number")
        return await _run("Phone submission", lambda: handler.submit_phone(phone_number))

    @app.post("/auth/code")
    async def submit_code(payload: dict | None = Body(default=None)):
        code = (payload or {}).get("code")
        if not code:
            return _missing("code")
        return await _run("Code submission", lambda: handler.submit_code(code))

    @app.post("/auth/password")
    async def submit_password(payload: dict | None = Body(default=None)):
        password = (payload or {}).get("password")
        if not password:
            return _missing("password")
        return await _run("Password submission", lambda: handler.submit_password(password))

    @app.post("/auth/qr/request")
    async def request_qr():
        return await _run(
            "QR code request", handler.request_qr_code, message="QR code requested"
        )

    @app.get("/auth/qr")
    def get_qr():
        return {"qr_link": handler.qr_link, "status": handler.phase.value}

    @app.get("/auth/status")
    def get_status():
        return {"status": handler.phase.value}

    @app.get("/metrics")
    def get_metrics():
        return metrics.as_payload()

    return app


async def serve(
    handler: AuthHandler,
    metrics: WorkerMetrics | None = None,
    port: int = settings.WORKER_CONTROL_PORT,
) -> None:
    """Run the control surface until the process is stopped."""
    config = uvicorn.Config(
        create_control_app(handler, metrics), host="0.0.0.0", port=port, log_level="info"
    )
    logger.info(f"Control surface listening on port {port}")
    await uvicorn.Server(config).serve()
