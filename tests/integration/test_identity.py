"""
RiskAnalysis - Identity Provider Tests
=======================================
Test sign-up, sign-in, the user change stream and biometric unlock.
"""

import asyncio

import pytest
import pytest_asyncio

from riskanalysis.exceptions import AuthError
from riskanalysis.services.identity import (
    BiometricAuthenticator,
    BiometricGate,
    DEFAULT_UNLOCK_REASON,
    IdentityProvider,
    hash_password,
    verify_password,
)

EMAIL = "user@riskanalysis.io"
PASSWORD = "Secret123"


@pytest_asyncio.fixture
async def identity(session_factory) -> IdentityProvider:
    return IdentityProvider(session_factory, rounds=4)


class TestPasswordHashing:
    """Test bcrypt helpers."""

    def test_hash_and_verify(self):
        hashed = hash_password(PASSWORD, rounds=4)

        assert hashed != PASSWORD
        assert verify_password(PASSWORD, hashed)
        assert not verify_password("Secret124", hashed)


class TestSignUp:
    """Test account creation."""

    @pytest.mark.asyncio
    async def test_sign_up_then_sign_in(self, identity):
        user = await identity.sign_up(EMAIL, PASSWORD)
        assert user.email == EMAIL
        assert user.email_verified is False
        assert identity.current_user is None

        signed_in = await identity.sign_in(EMAIL, PASSWORD)
        assert signed_in.id == user.id
        assert signed_in.last_login_at is not None
        assert identity.current_user == signed_in

    @pytest.mark.asyncio
    async def test_email_is_case_insensitive(self, identity):
        await identity.sign_up("User@RiskAnalysis.IO", PASSWORD)
        user = await identity.sign_in(EMAIL, PASSWORD)
        assert user.email == EMAIL

    @pytest.mark.asyncio
    async def test_duplicate_email(self, identity):
        await identity.sign_up(EMAIL, PASSWORD)

        with pytest.raises(AuthError) as exc:
            await identity.sign_up(EMAIL, "Another123")
        assert exc.value.code == "email-already-in-use"
        assert exc.value.message == "An account already exists for this email"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("password", ["Ab1", "secret123", "SecretPass"])
    async def test_weak_passwords(self, identity, password):
        with pytest.raises(AuthError) as exc:
            await identity.sign_up(EMAIL, password)
        assert exc.value.code == "weak-password"

    @pytest.mark.asyncio
    async def test_invalid_email(self, identity):
        with pytest.raises(AuthError) as exc:
            await identity.sign_up("not-an-email", PASSWORD)
        assert exc.value.code == "invalid-email"


class TestSignIn:
    """Test credential checks."""

    @pytest.mark.asyncio
    async def test_unknown_email(self, identity):
        with pytest.raises(AuthError) as exc:
            await identity.sign_in(EMAIL, PASSWORD)
        assert exc.value.code == "user-not-found"
        assert exc.value.message == "No user found with this email"

    @pytest.mark.asyncio
    async def test_wrong_password(self, identity):
        await identity.sign_up(EMAIL, PASSWORD)

        with pytest.raises(AuthError) as exc:
            await identity.sign_in(EMAIL, "Secret124")
        assert exc.value.code == "wrong-password"
        assert identity.current_user is None


class TestUserChanges:
    """Test the current-user stream."""

    @pytest.mark.asyncio
    async def test_stream_reflects_sign_in_and_sign_out(self, identity):
        await identity.sign_up(EMAIL, PASSWORD)
        changes = identity.current_user_changes()

        assert await asyncio.wait_for(changes.__anext__(), timeout=1) is None

        await identity.sign_in(EMAIL, PASSWORD)
        user = await asyncio.wait_for(changes.__anext__(), timeout=1)
        assert user.email == EMAIL

        await identity.sign_out()
        assert await asyncio.wait_for(changes.__anext__(), timeout=1) is None

        changes.close()
        with pytest.raises(StopAsyncIteration):
            await changes.__anext__()

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_current_user(self, identity):
        await identity.sign_up(EMAIL, PASSWORD)
        await identity.sign_in(EMAIL, PASSWORD)

        changes = identity.current_user_changes()
        user = await asyncio.wait_for(changes.__anext__(), timeout=1)

        assert user.email == EMAIL
        changes.close()


class FakeBiometrics(BiometricAuthenticator):

    def __init__(self, available=True, confirm=True, error=None):
        self.available = available
        self.confirm = confirm
        self.error = error
        self.reasons = []

    async def is_available(self) -> bool:
        return self.available

    async def authenticate(self, reason: str) -> bool:
        self.reasons.append(reason)
        if self.error:
            raise self.error
        return self.confirm


class TestBiometricGate:
    """Test biometric unlock."""

    @pytest.mark.asyncio
    async def test_confirmed(self):
        biometrics = FakeBiometrics()
        assert await BiometricGate(biometrics).unlock() is True
        assert biometrics.reasons == [DEFAULT_UNLOCK_REASON]

    @pytest.mark.asyncio
    async def test_declined(self):
        assert await BiometricGate(FakeBiometrics(confirm=False)).unlock() is False

    @pytest.mark.asyncio
    async def test_unavailable_skips_prompt(self):
        biometrics = FakeBiometrics(available=False)
        assert await BiometricGate(biometrics).unlock() is False
        assert biometrics.reasons == []

    @pytest.mark.asyncio
    async def test_errors_count_as_failure(self):
        assert await BiometricGate(FakeBiometrics(error=RuntimeError("sensor"))).unlock() is False
