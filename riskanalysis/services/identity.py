"""
RiskAnalysis - Identity Provider
=================================

Email/password accounts stored in the ``users`` table, with bcrypt hashes.

Features:
- Sign-up with password strength rules
- Sign-in / sign-out with a stream of current-user changes
- Biometric unlock gate for an existing session
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

import bcrypt
import structlog
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from riskanalysis.config import settings
from riskanalysis.db.models import User
from riskanalysis.exceptions import AuthError, StoreError
from riskanalysis.schemas import Credentials, Registration, UserResponse

logger = structlog.get_logger(__name__)

# Error codes
EMAIL_ALREADY_IN_USE = "email-already-in-use"
WEAK_PASSWORD = "weak-password"
INVALID_EMAIL = "invalid-email"
USER_NOT_FOUND = "user-not-found"
WRONG_PASSWORD = "wrong-password"

ERROR_MESSAGES = {
    EMAIL_ALREADY_IN_USE: "An account already exists for this email",
    WEAK_PASSWORD: "The password provided is too weak",
    INVALID_EMAIL: "Please enter a valid email",
    USER_NOT_FOUND: "No user found with this email",
    WRONG_PASSWORD: "Wrong password provided",
}

DEFAULT_UNLOCK_REASON = "Please authenticate to access the app"

_CLOSED = object()


def hash_password(password: str, rounds: Optional[int] = None) -> str:
    salt = bcrypt.gensalt(rounds=rounds or settings.password_hash_rounds)
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, password_hash: str) -> bool:
    return bcrypt.checkpw(password.encode(), password_hash.encode())


def _auth_error_from_validation(error: ValidationError) -> AuthError:
    """Map the first failing field to an identity error code."""
    first = error.errors()[0]
    if first.get("loc") and first["loc"][0] == "email":
        return AuthError(INVALID_EMAIL, ERROR_MESSAGES[INVALID_EMAIL])
    detail = str(first.get("msg", "")).removeprefix("Value error, ")
    return AuthError(WEAK_PASSWORD, detail or ERROR_MESSAGES[WEAK_PASSWORD])


class UserChanges:
    """Async iterator of current-user values; the current value comes first."""

    def __init__(self, provider: "IdentityProvider", current: Optional[UserResponse]):
        self._provider = provider
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queue.put_nowait(current)
        self._closed = False

    def __aiter__(self) -> "UserChanges":
        return self

    async def __anext__(self) -> Optional[UserResponse]:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        value = await self._queue.get()
        if value is _CLOSED:
            raise StopAsyncIteration
        return value

    def _push(self, user: Optional[UserResponse]) -> None:
        self._queue.put_nowait(user)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._provider._listeners.remove(self)
        self._queue.put_nowait(_CLOSED)


class IdentityProvider:
    """Email/password identity over a SQLAlchemy async session factory."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        rounds: Optional[int] = None,
    ):
        if session_factory is None:
            from riskanalysis.db.database import AsyncSessionLocal
            session_factory = AsyncSessionLocal
        self._session_factory = session_factory
        self.rounds = rounds or settings.password_hash_rounds
        self.current_user: Optional[UserResponse] = None
        self._listeners: List[UserChanges] = []

    # ============== ACCOUNTS ==============

    async def sign_up(self, email: str, password: str, confirm_password: Optional[str] = None) -> UserResponse:
        """
        Register a new account. Does not sign in.

        Raises:
            AuthError: invalid-email, weak-password or email-already-in-use
        """
        try:
            registration = Registration(email=email, password=password, confirm_password=confirm_password)
        except ValidationError as e:
            raise _auth_error_from_validation(e) from e

        password_hash = await asyncio.to_thread(hash_password, registration.password, self.rounds)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    existing = await session.execute(
                        select(User).where(User.email == registration.email)
                    )
                    if existing.scalar_one_or_none():
                        raise AuthError(EMAIL_ALREADY_IN_USE, ERROR_MESSAGES[EMAIL_ALREADY_IN_USE])

                    user = User(email=registration.email, password_hash=password_hash)
                    session.add(user)
                    await session.flush()
                    response = UserResponse.model_validate(user)
        except IntegrityError as e:
            raise AuthError(EMAIL_ALREADY_IN_USE, ERROR_MESSAGES[EMAIL_ALREADY_IN_USE]) from e
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create user: {e}") from e

        logger.info("user_registered", user_id=response.id)
        return response

    async def sign_in(self, email: str, password: str) -> UserResponse:
        """
        Sign in and publish the user on the change stream.

        Raises:
            AuthError: invalid-email, user-not-found or wrong-password
        """
        try:
            credentials = Credentials(email=email, password=password)
        except ValidationError as e:
            first = e.errors()[0]
            if first.get("loc") and first["loc"][0] == "email":
                raise AuthError(INVALID_EMAIL, ERROR_MESSAGES[INVALID_EMAIL]) from e
            raise AuthError(WRONG_PASSWORD, ERROR_MESSAGES[WRONG_PASSWORD]) from e

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(User).where(User.email == credentials.email)
                    )
                    user = result.scalar_one_or_none()
                    if not user:
                        logger.info("sign_in_failed", reason=USER_NOT_FOUND)
                        raise AuthError(USER_NOT_FOUND, ERROR_MESSAGES[USER_NOT_FOUND])

                    matches = await asyncio.to_thread(verify_password, credentials.password, user.password_hash)
                    if not matches:
                        logger.info("sign_in_failed", reason=WRONG_PASSWORD, user_id=user.id)
                        raise AuthError(WRONG_PASSWORD, ERROR_MESSAGES[WRONG_PASSWORD])

                    user.last_login_at = datetime.now(timezone.utc)
                    await session.flush()
                    response = UserResponse.model_validate(user)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to sign in: {e}") from e

        logger.info("user_signed_in", user_id=response.id)
        self._set_current(response)
        return response

    async def sign_out(self) -> None:
        if self.current_user:
            logger.info("user_signed_out", user_id=self.current_user.id)
        self._set_current(None)

    # ============== CHANGE STREAM ==============

    def current_user_changes(self) -> UserChanges:
        changes = UserChanges(self, self.current_user)
        self._listeners.append(changes)
        return changes

    def _set_current(self, user: Optional[UserResponse]) -> None:
        self.current_user = user
        for listener in list(self._listeners):
            listener._push(user)


class BiometricAuthenticator(ABC):
    """Platform biometric prompt."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the device can check biometrics."""

    @abstractmethod
    async def authenticate(self, reason: str) -> bool:
        """Show the prompt; True when the user confirmed."""


class BiometricGate:
    """Unlocks an existing session with a biometric check."""

    failure_message = "Biometric authentication failed"

    def __init__(self, authenticator: BiometricAuthenticator):
        self.authenticator = authenticator

    async def unlock(self, reason: str = DEFAULT_UNLOCK_REASON) -> bool:
        try:
            if not await self.authenticator.is_available():
                logger.info("biometrics_unavailable")
                return False
            confirmed = await self.authenticator.authenticate(reason)
        except Exception as e:
            logger.warning("biometric_unlock_failed", error=str(e))
            return False

        if not confirmed:
            logger.info("biometric_unlock_declined")
        return bool(confirmed)
