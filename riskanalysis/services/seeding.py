"""
RiskAnalysis - Default Data Seeding
====================================
First-use defaults for the dashboard collections.
"""

import structlog

from riskanalysis.exceptions import StoreError
from riskanalysis.schemas import Level, Recommendation, RecommendationType, SecurityMetrics, Threat, ThreatType
from riskanalysis.services.store import SERVER_TIMESTAMP, DocumentStore

logger = structlog.get_logger(__name__)

METRICS_PATH = "security_metrics/current"

DEFAULT_METRICS = SecurityMetrics(secure_score=75, risk_score=25)

DEFAULT_THREATS = {
    "threat1": Threat(title="Malware Protection", level=Level.MEDIUM.value, type=ThreatType.APPLICATION.value),
    "threat2": Threat(title="Network Security", level=Level.LOW.value, type=ThreatType.NETWORK.value),
}

DEFAULT_RECOMMENDATIONS = {
    "rec1": Recommendation(
        title="Update System",
        description="Your system needs security updates",
        type=RecommendationType.SYSTEM_UPDATE.value,
        priority=Level.HIGH.value,
    ),
}


async def seed_default_data(store: DocumentStore) -> None:
    """Write the default metrics, threats and recommendation in one batch."""
    batch = store.batch()

    batch.set(METRICS_PATH, {
        "secure_score": DEFAULT_METRICS.secure_score,
        "risk_score": DEFAULT_METRICS.risk_score,
        "last_updated": SERVER_TIMESTAMP,
    })

    for doc_id, threat in DEFAULT_THREATS.items():
        batch.set(f"threats/{doc_id}", threat.model_dump())

    for doc_id, recommendation in DEFAULT_RECOMMENDATIONS.items():
        batch.set(f"recommendations/{doc_id}", recommendation.model_dump(exclude_none=True))

    await batch.commit()


async def ensure_default_data(store: DocumentStore) -> bool:
    """
    Seed defaults when the recommendations collection is empty.

    Recommendations are the only gate: metrics and threats are not
    checked on their own.

    Returns:
        True if defaults were written
    """
    try:
        existing = await store.query("recommendations")
        if existing:
            return False

        await seed_default_data(store)
    except StoreError as e:
        logger.error("default_data_seed_failed", error=str(e))
        return False

    logger.info("default_data_seeded", threats=len(DEFAULT_THREATS))
    return True
