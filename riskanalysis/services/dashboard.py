"""
RiskAnalysis - Dashboard State
===============================

Presentation model for the security dashboard.

Keeps scores, threat categories, recent activity, recommendations and the
scanning flag in one ``DashboardState``, fed by store subscriptions and
scan orchestrator events.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Type

import structlog
from pydantic import BaseModel, ValidationError

from riskanalysis.config import settings
from riskanalysis.exceptions import StoreError
from riskanalysis.schemas import ActivityEntry, Recommendation, SecurityMetrics, Threat
from riskanalysis.services.recommendations import RECOMMENDATIONS_COLLECTION
from riskanalysis.services.scan import ACTIVITY_COLLECTION, ScanEvent, ScanOrchestrator, ScanState
from riskanalysis.services.seeding import METRICS_PATH, ensure_default_data
from riskanalysis.services.store import DocumentSnapshot, DocumentStore, Query, Subscription

logger = structlog.get_logger(__name__)

THREATS_COLLECTION = "threats"


@dataclass
class DashboardState:
    secure_score: float = 0
    risk_score: float = 0
    threats: List[Threat] = field(default_factory=list)
    recent_activity: List[ActivityEntry] = field(default_factory=list)
    recommendations: List[Recommendation] = field(default_factory=list)
    is_scanning: bool = False


DashboardObserver = Callable[[DashboardState], None]


def _with_id(snapshot: DocumentSnapshot) -> dict:
    return {**snapshot.data, "id": snapshot.id}


def _parse_all(model: Type[BaseModel], snapshots: List[DocumentSnapshot], stream: str) -> list:
    """Validate each document, skipping the ones that do not fit the model."""
    parsed = []
    for snapshot in snapshots:
        try:
            parsed.append(model.model_validate(_with_id(snapshot)))
        except ValidationError as e:
            logger.warning("dashboard_document_invalid", stream=stream, path=snapshot.path, error=str(e))
    return parsed


class Dashboard:
    """
    Dashboard presentation model.

    Usage:
        dashboard = Dashboard(store, orchestrator)
        await dashboard.start()
        await dashboard.load_initial_data()
        await dashboard.start_scan()
        ...
        await dashboard.close()
    """

    def __init__(
        self,
        store: DocumentStore,
        orchestrator: ScanOrchestrator,
        activity_limit: Optional[int] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.activity_limit = activity_limit or settings.activity_feed_limit
        self.state = DashboardState(is_scanning=orchestrator.is_scanning)

        self._observers: List[DashboardObserver] = []
        self._subscriptions: List[Subscription] = []
        self._tasks: List[asyncio.Task] = []
        self._remove_listener: Optional[Callable[[], None]] = None

    def add_observer(self, observer: DashboardObserver) -> Callable[[], None]:
        self._observers.append(observer)

        def remove():
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def _publish(self) -> None:
        for observer in list(self._observers):
            try:
                observer(self.state)
            except Exception as e:
                logger.warning("dashboard_observer_failed", error=str(e), exc_info=True)

    # ============== Lifecycle ==============

    async def start(self) -> None:
        """Open the metrics, threats and recent-activity subscriptions."""
        if self._subscriptions:
            return

        recent = Query(ACTIVITY_COLLECTION).ordered("time", descending=True).limited(self.activity_limit)

        self._watch(self.store.subscribe(METRICS_PATH), self._apply_metrics, "metrics")
        self._watch(self.store.subscribe(THREATS_COLLECTION), self._apply_threats, "threats")
        self._watch(self.store.subscribe(recent), self._apply_activity, "activity")

        self._remove_listener = self.orchestrator.add_listener(self._on_scan_event)
        logger.debug("dashboard_started", activity_limit=self.activity_limit)

    def _watch(self, subscription: Subscription, apply: Callable, stream: str) -> None:
        self._subscriptions.append(subscription)
        self._tasks.append(asyncio.create_task(
            self._consume(subscription, apply, stream),
            name=f"dashboard-{stream}",
        ))

    async def _consume(self, subscription: Subscription, apply: Callable, stream: str) -> None:
        try:
            async for value in subscription:
                apply(value)
                self._publish()
        except StoreError as e:
            logger.error("dashboard_stream_failed", stream=stream, error=str(e))

    async def close(self) -> None:
        """Tear down subscriptions and revoke a running scan."""
        for subscription in self._subscriptions:
            subscription.close()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

        self._subscriptions = []
        self._tasks = []

        if self._remove_listener:
            self._remove_listener()
            self._remove_listener = None

        await self.orchestrator.cancel()
        self.state.is_scanning = False
        logger.debug("dashboard_closed")

    # ============== Stream Handlers ==============

    def _apply_metrics(self, snapshot: DocumentSnapshot) -> None:
        if not snapshot.exists:
            self.state.secure_score = 0
            self.state.risk_score = 0
            return
        try:
            metrics = SecurityMetrics.model_validate(snapshot.data)
        except ValidationError as e:
            logger.warning("dashboard_document_invalid", stream="metrics", path=snapshot.path, error=str(e))
            return
        self.state.secure_score = metrics.secure_score
        self.state.risk_score = metrics.risk_score

    def _apply_threats(self, snapshots: List[DocumentSnapshot]) -> None:
        self.state.threats = _parse_all(Threat, snapshots, "threats")

    def _apply_activity(self, snapshots: List[DocumentSnapshot]) -> None:
        self.state.recent_activity = _parse_all(ActivityEntry, snapshots, "activity")

    def _on_scan_event(self, event: ScanEvent) -> None:
        is_scanning = event.state is ScanState.SCANNING
        if is_scanning != self.state.is_scanning:
            self.state.is_scanning = is_scanning
            self._publish()

    # ============== Actions ==============

    async def load_initial_data(self) -> List[Recommendation]:
        """Load recommendations, seeding defaults on first use."""
        try:
            snapshots = await self.store.query(RECOMMENDATIONS_COLLECTION)
            if not snapshots and await ensure_default_data(self.store):
                snapshots = await self.store.query(RECOMMENDATIONS_COLLECTION)
        except StoreError as e:
            logger.error("initial_data_load_failed", error=str(e))
            return self.state.recommendations

        self.state.recommendations = _parse_all(Recommendation, snapshots, "recommendations")
        self._publish()
        return self.state.recommendations

    async def refresh(self) -> DashboardState:
        """Pull every stream once instead of waiting for pushes."""
        recent = Query(ACTIVITY_COLLECTION).ordered("time", descending=True).limited(self.activity_limit)

        await self.load_initial_data()
        self._apply_metrics(await self.store.get(METRICS_PATH))
        self._apply_threats(await self.store.query(THREATS_COLLECTION))
        self._apply_activity(await self.store.query(recent))
        self._publish()
        return self.state

    async def start_scan(self) -> Optional[str]:
        return await self.orchestrator.start_scan()

    async def activity_history(self) -> List[ActivityEntry]:
        """Full activity log, newest first."""
        snapshots = await self.store.query(Query(ACTIVITY_COLLECTION).ordered("time", descending=True))
        return _parse_all(ActivityEntry, snapshots, "activity")
