"""
RiskAnalysis - Scan Orchestrator
=================================

Drives a bounded, fixed-cadence device security scan.

States: IDLE -> SCANNING -> IDLE

Each tick probes the device, merge-writes the snapshot into the scan
record and appends one activity entry. The final tick marks the scan
completed and derives recommendations from its snapshot. Any error
aborts the loop and leaves the scan record ``in_progress``.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import structlog

from riskanalysis.config import settings
from riskanalysis.schemas import ActivityType, Recommendation, ScanRunStatus, ScanSnapshot
from riskanalysis.services.probe import DeviceProbe, PermissionKind, PermissionStatus
from riskanalysis.services.recommendations import derive_recommendations, persist_recommendations
from riskanalysis.services.store import SERVER_TIMESTAMP, DocumentStore

logger = structlog.get_logger(__name__)

SCANS_COLLECTION = "scans"
ACTIVITY_COLLECTION = "activity"
SCAN_ACTIVITY_TITLE = "Security Scan in Progress"

REQUIRED_PERMISSIONS = (PermissionKind.LOCATION, PermissionKind.STORAGE)


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"


class ScanEventType(str, Enum):
    STARTED = "started"
    TICK = "tick"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ScanEvent:
    """Published to listeners on every state-relevant step."""
    type: ScanEventType
    scan_id: str
    state: ScanState
    tick: int = 0
    snapshot: Optional[ScanSnapshot] = None
    error: Optional[BaseException] = None


@dataclass
class ScanOutcome:
    """How one scan run ended."""
    scan_id: str
    status: ScanEventType
    ticks_completed: int
    snapshot: Optional[ScanSnapshot] = None
    recommendations: List[Recommendation] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ScanEventType.COMPLETED


ScanListener = Callable[[ScanEvent], None]


class ScanOrchestrator:
    """
    Owns the scan state and the single scheduled tick task.

    Only one scan runs at a time; ``start_scan()`` while scanning is a
    no-op. Cancelling revokes the task; writes already made stay.
    """

    def __init__(
        self,
        store: DocumentStore,
        probe: DeviceProbe,
        tick_count: Optional[int] = None,
        interval: Optional[float] = None,
        min_sdk_version: Optional[int] = None,
    ):
        self.store = store
        self.probe = probe
        self.tick_count = tick_count or settings.scan_tick_count
        self.interval = settings.scan_interval_seconds if interval is None else interval
        self.min_sdk_version = min_sdk_version

        self._state = ScanState.IDLE
        self._scan_id: Optional[str] = None
        self._task: Optional[asyncio.Task] = None
        self._runner: Optional[asyncio.Task] = None
        self._listeners: List[ScanListener] = []
        self.last_outcome: Optional[ScanOutcome] = None

    # ============== State ==============

    @property
    def state(self) -> ScanState:
        return self._state

    @property
    def is_scanning(self) -> bool:
        return self._state is ScanState.SCANNING

    @property
    def scan_id(self) -> Optional[str]:
        return self._scan_id

    def current_state(self) -> ScanState:
        return self._state

    def add_listener(self, listener: ScanListener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _emit(self, event: ScanEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(
                    "scan_listener_failed",
                    event=event.type.value,
                    error=str(e),
                    exc_info=True,
                )

    def _stop_ticks(self, scan_id: str) -> bool:
        """Return to IDLE unless a newer scan has taken over."""
        if self._scan_id != scan_id:
            return False
        self._task = None
        self._state = ScanState.IDLE
        return True

    # ============== Control ==============

    async def start_scan(self) -> Optional[str]:
        """
        Start a scan.

        Returns:
            The new scan id, or None if a scan is already running
        """
        if self._state is ScanState.SCANNING:
            logger.debug("scan_already_running", scan_id=self._scan_id)
            return None

        self._state = ScanState.SCANNING
        scan_id = self.store.new_id()
        self._scan_id = scan_id

        await self._request_permissions(scan_id)

        try:
            await self.store.set(f"{SCANS_COLLECTION}/{scan_id}", {
                "status": ScanRunStatus.IN_PROGRESS.value,
                "started_at": SERVER_TIMESTAMP,
            })
        except Exception as e:
            logger.error("scan_start_failed", scan_id=scan_id, error=str(e))
            self._stop_ticks(scan_id)
            self.last_outcome = ScanOutcome(scan_id, ScanEventType.FAILED, 0, error=e)
            self._emit(ScanEvent(ScanEventType.FAILED, scan_id, self._state, error=e))
            raise

        self._task = self._runner = asyncio.create_task(self._run(scan_id), name=f"scan-{scan_id}")

        logger.info(
            "scan_started",
            scan_id=scan_id,
            ticks=self.tick_count,
            interval=self.interval,
        )
        self._emit(ScanEvent(ScanEventType.STARTED, scan_id, self._state))
        return scan_id

    async def cancel(self) -> Optional[ScanOutcome]:
        """Revoke the running scan, if any."""
        task = self._task
        if task is None or task.done():
            return None

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        return self.last_outcome

    async def wait(self) -> Optional[ScanOutcome]:
        """Wait for the running scan to end and return its outcome."""
        task = self._runner
        if task is None:
            return self.last_outcome

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self.last_outcome
            raise

    async def _request_permissions(self, scan_id: str) -> None:
        """Best-effort: denials and errors never stop the scan."""
        for kind in REQUIRED_PERMISSIONS:
            try:
                status = await self.probe.request_permission(kind)
            except Exception as e:
                logger.warning("permission_request_failed", scan_id=scan_id, permission=kind.value, error=str(e))
                continue

            if status != PermissionStatus.GRANTED:
                logger.info("permission_denied", scan_id=scan_id, permission=kind.value)

    # ============== Tick Loop ==============

    async def _run(self, scan_id: str) -> ScanOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        scan_path = f"{SCANS_COLLECTION}/{scan_id}"
        snapshot: Optional[ScanSnapshot] = None
        ticks_completed = 0

        try:
            for tick in range(1, self.tick_count + 1):
                # Fixed-rate deadlines; an overrunning tick delays the next, never overlaps it
                delay = started + tick * self.interval - loop.time()
                await asyncio.sleep(max(0.0, delay))

                snapshot = await self._run_tick(scan_path, tick)
                ticks_completed = tick
                self._emit(ScanEvent(ScanEventType.TICK, scan_id, self._state, tick=tick, snapshot=snapshot))

            self._stop_ticks(scan_id)

            await self.store.set(scan_path, {
                "status": ScanRunStatus.COMPLETED.value,
                "completion_time": SERVER_TIMESTAMP,
            }, merge=True)

            recommendations = derive_recommendations(snapshot, self.min_sdk_version)
            await persist_recommendations(self.store, recommendations)

        except asyncio.CancelledError:
            current = self._stop_ticks(scan_id)
            logger.info("scan_cancelled", scan_id=scan_id, ticks_completed=ticks_completed)
            if current:
                self.last_outcome = ScanOutcome(scan_id, ScanEventType.CANCELLED, ticks_completed, snapshot)
            self._emit(ScanEvent(ScanEventType.CANCELLED, scan_id, self._state, tick=ticks_completed))
            raise

        except Exception as e:
            current = self._stop_ticks(scan_id)
            logger.error(
                "scan_failed",
                scan_id=scan_id,
                tick=ticks_completed + 1,
                error=str(e),
                exc_info=True,
            )
            outcome = ScanOutcome(scan_id, ScanEventType.FAILED, ticks_completed, snapshot, error=e)
            if current:
                self.last_outcome = outcome
            self._emit(ScanEvent(ScanEventType.FAILED, scan_id, self._state, tick=ticks_completed, error=e))
            return outcome

        logger.info(
            "scan_completed",
            scan_id=scan_id,
            ticks_completed=ticks_completed,
            recommendations=len(recommendations),
        )
        outcome = ScanOutcome(scan_id, ScanEventType.COMPLETED, ticks_completed, snapshot, recommendations)
        if self._scan_id == scan_id:
            self.last_outcome = outcome
        self._emit(ScanEvent(ScanEventType.COMPLETED, scan_id, self._state, tick=ticks_completed, snapshot=snapshot))
        return outcome

    async def _run_tick(self, scan_path: str, tick: int) -> ScanSnapshot:
        info = await self.probe.get_device_security_info()
        network_name = await self.probe.get_network_name()

        snapshot = ScanSnapshot(
            device_encrypted=info.encrypted,
            sdk_version=info.sdk_version,
            security_patch=info.patch_level,
            network_name=network_name,
        )
        checks = {**snapshot.to_fields(), "timestamp": SERVER_TIMESTAMP}

        await self.store.set(scan_path, checks, merge=True)
        await self.store.add(ACTIVITY_COLLECTION, {
            "title": SCAN_ACTIVITY_TITLE,
            "time": SERVER_TIMESTAMP,
            "type": ActivityType.SCAN.value,
            "details": checks,
        })

        logger.debug("scan_tick", scan_path=scan_path, tick=tick, sdk_version=snapshot.sdk_version)
        return snapshot
