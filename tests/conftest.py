"""
RiskAnalysis - Test Configuration
==================================
Pytest fixtures and configuration for all test types.
"""

import os
import tempfile
from typing import AsyncGenerator, Optional, Set

import pytest
import pytest_asyncio
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment before importing the package
TEST_DB_PATH = os.path.join(tempfile.gettempdir(), f"riskanalysis-test-{os.getpid()}.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["DEBUG"] = "false"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["SCAN_INTERVAL_SECONDS"] = "0.01"
os.environ.pop("PROBE_URL", None)

from riskanalysis.db.database import Base
from riskanalysis.db import models  # noqa: F401
from riskanalysis.exceptions import ProbeError
from riskanalysis.services.probe import (
    DeviceProbe,
    DeviceSecurityInfo,
    PermissionKind,
    PermissionStatus,
)
from riskanalysis.services.store import DocumentStore


# ===========================================
# Database Fixtures
# ===========================================

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """Create async engine for testing with a per-test SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory bound to the test engine."""
    yield async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def store(session_factory) -> DocumentStore:
    return DocumentStore(session_factory)


# ===========================================
# Store Doubles
# ===========================================

class RecordingStore(DocumentStore):
    """
    Store that records every applied write and can be told to fail
    writes to chosen collections.
    """

    def __init__(self, session_factory, fail_collections: Optional[Set[str]] = None):
        super().__init__(session_factory)
        self.fail_collections = set(fail_collections or ())
        self.writes = []

    async def _apply_one(self, session, write, now):
        if write.collection in self.fail_collections:
            raise OperationalError("INSERT", {}, Exception(f"{write.collection} unavailable"))
        await super()._apply_one(session, write, now)
        self.writes.append(write)

    def writes_to(self, path: str, merge: Optional[bool] = None):
        collection, document_id = path.split("/")
        return [
            w for w in self.writes
            if w.collection == collection
            and w.document_id == document_id
            and (merge is None or w.merge == merge)
        ]

    def adds_to(self, collection: str):
        return [w for w in self.writes if w.collection == collection]


@pytest_asyncio.fixture
async def recording_store(session_factory) -> RecordingStore:
    return RecordingStore(session_factory)


@pytest.fixture
def make_recording_store(session_factory):
    """Build a RecordingStore that fails writes to the given collections."""
    def factory(*fail_collections: str) -> RecordingStore:
        return RecordingStore(session_factory, set(fail_collections))
    return factory


# ===========================================
# Probe Doubles
# ===========================================

class FakeProbe(DeviceProbe):
    """Configurable probe that counts calls and can fail on a chosen tick."""

    def __init__(
        self,
        encrypted: Optional[bool] = True,
        sdk_version: Optional[int] = 33,
        patch_level: Optional[str] = "2024-01-01",
        network_name: Optional[str] = "HomeWiFi",
    ):
        self.encrypted = encrypted
        self.sdk_version = sdk_version
        self.patch_level = patch_level
        self.network_name = network_name
        self.permission_status = PermissionStatus.GRANTED
        self.permission_error: Optional[Exception] = None
        self.fail_on_call: Optional[int] = None
        self.permission_requests = []
        self.info_calls = 0

    async def request_permission(self, kind: PermissionKind) -> PermissionStatus:
        self.permission_requests.append(kind)
        if self.permission_error:
            raise self.permission_error
        return self.permission_status

    async def get_device_security_info(self) -> DeviceSecurityInfo:
        self.info_calls += 1
        if self.fail_on_call is not None and self.info_calls == self.fail_on_call:
            raise ProbeError("device agent went away")
        return DeviceSecurityInfo(self.encrypted, self.sdk_version, self.patch_level)

    async def get_network_name(self) -> Optional[str]:
        return self.network_name


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


# ===========================================
# CLI Fixtures
# ===========================================

@pytest.fixture
def cli_db(monkeypatch):
    """Fresh on-disk database for CLI commands; logging left unconfigured."""
    import riskanalysis.logging_config

    monkeypatch.setattr(riskanalysis.logging_config, "configure_logging", lambda: None)

    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    yield TEST_DB_PATH
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
