"""
In-memory handoff tokens.

Three kinds of token are tracked:

* pre-auth tokens let a user start a web login and are consumed by it,
* login tokens are the web front-end's handle for polling one login flow,
* session tokens are minted once a login flow reaches ``ready`` and are
  exchanged exactly once for re-entry into the command channel.

All of them expire ``settings.TOKEN_TTL`` seconds after issuance. Expiry is
checked on every lookup; the periodic sweep only bounds memory. Tokens live
only in this process and are lost on restart.
"""

import asyncio
import enum
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from warden.common import settings

logger = logging.getLogger(__name__)


class TokenError(Exception):
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)
        self.message = message


class TokenUnknownError(TokenError):
    def __init__(self):
        super().__init__("Invalid or already used token")


class TokenExpiredError(TokenError):
    def __init__(self):
        super().__init__("Token expired")


class LoginStatus(str, enum.Enum):
    PENDING = "pending"
    QR_READY = "qr_ready"
    AUTHENTICATED = "authenticated"


class VerifyOutcome(str, enum.Enum):
    OK = "ok"
    MISMATCH = "mismatch"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


def new_token() -> str:
    return secrets.token_hex(32)


@dataclass
class UserToken:
    token: str
    user_id: int
    created_at: float


@dataclass
class LoginSession:
    token: str
    user_id: int
    container_name: str
    created_at: float
    status: LoginStatus = LoginStatus.PENDING
    qr_link: str | None = None
    # Minted when the login completes
    session_token: str | None = None

    @property
    def authenticated(self) -> bool:
        return self.status == LoginStatus.AUTHENTICATED


class TokenStore:
    """
    Owner of all outstanding tokens.

    Every read-modify-write happens under one lock, so consuming a token is
    atomic with respect to other requests.
    """

    def __init__(
        self, ttl: float = settings.TOKEN_TTL, clock: Callable[[], float] = time.time
    ):
        self.ttl = ttl
        self.clock = clock
        self._lock = asyncio.Lock()
        self._preauth: dict[str, UserToken] = {}
        self._logins: dict[str, LoginSession] = {}
        self._sessions: dict[str, UserToken] = {}

    def __len__(self) -> int:
        return len(self._preauth) + len(self._logins) + len(self._sessions)

    def _expired(self, created_at: float) -> bool:
        return self.clock() - created_at > self.ttl

    def _lookup(self, tokens: dict, token: str):
        entry = tokens.get(token)
        if not entry:
            raise TokenUnknownError()
        if self._expired(entry.created_at):
            del tokens[token]
            raise TokenExpiredError()
        return entry

    # --- Pre-auth tokens ---------------------------------------------------

    async def issue_preauth(self, user_id: int) -> str:
        async with self._lock:
            token = new_token()
            self._preauth[token] = UserToken(token, user_id, self.clock())
        logger.info(f"Issued pre-auth token for user {user_id}")
        return token

    async def validate_preauth(self, token: str) -> UserToken:
        """Check a pre-auth token without consuming it."""
        async with self._lock:
            return self._lookup(self._preauth, token)

    async def consume_preauth(self, token: str) -> UserToken:
        """Take a pre-auth token out of circulation. Only one caller ever succeeds."""
        async with self._lock:
            entry = self._lookup(self._preauth, token)
            del self._preauth[token]
        logger.info(f"Consumed pre-auth token of user {entry.user_id}")
        return entry

    # --- Login flows ---------------------------------------------------------

    async def create_login(
        self,
        user_id: int,
        container_name: str,
        status: LoginStatus = LoginStatus.PENDING,
    ) -> LoginSession:
        async with self._lock:
            login = LoginSession(
                token=new_token(),
                user_id=user_id,
                container_name=container_name,
                created_at=self.clock(),
                status=status,
            )
            self._logins[login.token] = login
        return login

    async def get_login(self, token: str) -> LoginSession:
        async with self._lock:
            return self._lookup(self._logins, token)

    async def update_login(
        self,
        token: str,
        status: LoginStatus | None = None,
        qr_link: str | None = None,
    ) -> LoginSession:
        async with self._lock:
            login = self._lookup(self._logins, token)
            # A finished login never goes back to an earlier status
            if status and not login.authenticated:
                login.status = status
            if qr_link is not None and not login.authenticated:
                login.qr_link = qr_link
            return login

    async def complete_login(self, token: str) -> LoginSession:
        """
        Mark a login flow as finished and mint its session token.

        Completing an already completed login returns the same session token.
        """
        async with self._lock:
            login = self._lookup(self._logins, token)
            login.status = LoginStatus.AUTHENTICATED
            login.qr_link = None
            if not login.session_token:
                session_token = new_token()
                self._sessions[session_token] = UserToken(
                    session_token, login.user_id, self.clock()
                )
                login.session_token = session_token
        logger.info(f"Login of user {login.user_id} completed")
        return login

    # --- Session tokens ----------------------------------------------------

    async def verify(self, token: str, user_id: int) -> VerifyOutcome:
        """
        Exchange a session token for re-entry into the command channel.

        Succeeds at most once, and only for the user the token was issued to.
        A mismatched user does not use the token up.
        """
        async with self._lock:
            try:
                entry = self._lookup(self._sessions, token)
            except TokenExpiredError:
                return VerifyOutcome.EXPIRED
            except TokenUnknownError:
                return VerifyOutcome.UNKNOWN

            if entry.user_id != user_id:
                logger.warning(
                    f"User {user_id} tried to use a session token issued to user {entry.user_id}"
                )
                return VerifyOutcome.MISMATCH

            del self._sessions[token]
        logger.info(f"Session token verified for user {user_id}")
        return VerifyOutcome.OK

    # --- Housekeeping ------------------------------------------------------

    async def sweep(self) -> int:
        """Drop every expired token. Returns how many were removed."""
        removed = 0
        async with self._lock:
            for tokens in (self._preauth, self._logins, self._sessions):
                expired = [
                    token
                    for token, entry in tokens.items()
                    if self._expired(entry.created_at)
                ]
                for token in expired:
                    del tokens[token]
                removed += len(expired)

        if removed:
            logger.info(f"Swept {removed} expired tokens")
        return removed
