"""API endpoints used by the web login front-end.

The front-end gets a pre-auth token from a link the command channel sent to
the user, starts a login with it and then polls until the worker is
authenticated, at which point it gets a link back into the command channel.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from warden.api.login import LoginError, LoginService
from warden.api.services import get_login_service, get_token_store
from warden.api.tokens import TokenExpiredError, TokenStore, TokenUnknownError
from warden.common.limits import ProvisioningError
from warden.orchestrator.auth_client import (
    AuthCoordinatorError,
    InvalidPhaseTransition,
    WorkerRejectedError,
    WorkerUnreachableError,
)
from warden.orchestrator.containers import WorkerExistsError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["login"])


class InitLoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    preauth_token: str = Field(alias="preAuthToken", min_length=1)


class PasswordRequest(BaseModel):
    password: str = Field(min_length=1)


def to_http_error(error: Exception) -> HTTPException:
    """Map login and worker failures to the status codes the front-end expects."""
    if isinstance(error, TokenExpiredError):
        return HTTPException(status_code=410, detail=error.message)
    if isinstance(error, TokenUnknownError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, LoginError):
        return HTTPException(status_code=error.status_code, detail=error.message)
    if isinstance(error, WorkerRejectedError):
        return HTTPException(status_code=422, detail=error.detail)
    if isinstance(error, WorkerUnreachableError):
        return HTTPException(status_code=503, detail=f"Worker unreachable: {error}")
    if isinstance(error, (InvalidPhaseTransition, WorkerExistsError)):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ProvisioningError):
        return HTTPException(status_code=500, detail=f"Could not create worker: {error}")
    if isinstance(error, AuthCoordinatorError):
        return HTTPException(status_code=502, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


HANDLED_ERRORS = (
    TokenExpiredError,
    TokenUnknownError,
    LoginError,
    AuthCoordinatorError,
    WorkerExistsError,
    ProvisioningError,
)


@router.get("/validate-token/{token}")
async def validate_token(token: str, tokens: TokenStore = Depends(get_token_store)):
    """Read-only check of a pre-auth token."""
    try:
        await tokens.validate_preauth(token)
    except (TokenExpiredError, TokenUnknownError) as e:
        raise to_http_error(e)
    return {"valid": True}


@router.post("/init-login-with-token")
async def init_login_with_token(
    request: InitLoginRequest,
    login: LoginService = Depends(get_login_service),
):
    try:
        result = await login.init_login(request.preauth_token)
    except HANDLED_ERRORS as e:
        logger.warning(f"init-login failed: {e}")
        raise to_http_error(e)
    return result.as_dict()


@router.get("/get-qr/{token}")
async def get_qr(token: str, login: LoginService = Depends(get_login_service)):
    try:
        return await login.get_qr(token)
    except HANDLED_ERRORS as e:
        raise to_http_error(e)


@router.post("/submit-password/{token}")
async def submit_password(
    token: str,
    request: PasswordRequest,
    login: LoginService = Depends(get_login_service),
):
    try:
        return await login.submit_password(token, request.password)
    except HANDLED_ERRORS as e:
        logger.info(f"Password submission failed: {e}")
        raise to_http_error(e)


@router.get("/check-status/{token}")
async def check_status(token: str, login: LoginService = Depends(get_login_service)):
    try:
        return await login.check_status(token)
    except HANDLED_ERRORS as e:
        raise to_http_error(e)
