"""
RiskAnalysis - Recommendation Rules
====================================

Derives follow-up recommendations from the final scan snapshot.

Rules:
- Outdated OS (SDK version below the secure minimum) -> system update
- Unencrypted device -> enable encryption

Derivation never reads existing recommendations, so repeated scans append
duplicates.
"""

from typing import List, Optional

import structlog

from riskanalysis.config import settings
from riskanalysis.exceptions import StoreError
from riskanalysis.schemas import Level, Recommendation, RecommendationType, ScanSnapshot
from riskanalysis.services.store import SERVER_TIMESTAMP, DocumentStore

logger = structlog.get_logger(__name__)

RECOMMENDATIONS_COLLECTION = "recommendations"

SYSTEM_UPDATE_RECOMMENDATION = {
    "title": "System Update Required",
    "description": "Your Android version is outdated and may have security vulnerabilities",
    "priority": Level.HIGH.value,
    "type": RecommendationType.SYSTEM_UPDATE.value,
}

ENCRYPTION_RECOMMENDATION = {
    "title": "Enable Device Encryption",
    "description": "Your device is not encrypted. Enable encryption to protect your data",
    "priority": Level.HIGH.value,
    "type": RecommendationType.ENCRYPTION.value,
}


def derive_recommendations(
    snapshot: ScanSnapshot,
    min_sdk_version: Optional[int] = None,
) -> List[Recommendation]:
    """
    Apply the recommendation rules to one snapshot.

    Args:
        snapshot: Device attributes from the final scan tick
        min_sdk_version: Lowest SDK version that needs no update
            (defaults to ``settings.min_secure_sdk_version``)

    Returns:
        Zero, one or two recommendations
    """
    if min_sdk_version is None:
        min_sdk_version = settings.min_secure_sdk_version

    recommendations = []

    if snapshot.sdk_version is not None and snapshot.sdk_version < min_sdk_version:
        recommendations.append(Recommendation(**SYSTEM_UPDATE_RECOMMENDATION))

    # A missing flag is treated as unencrypted
    if not snapshot.device_encrypted:
        recommendations.append(Recommendation(**ENCRYPTION_RECOMMENDATION))

    return recommendations


async def persist_recommendations(
    store: DocumentStore,
    recommendations: List[Recommendation],
) -> bool:
    """
    Append recommendations in one atomic batch.

    Returns:
        True if the batch committed (or there was nothing to write)
    """
    if not recommendations:
        return True

    batch = store.batch()
    for recommendation in recommendations:
        fields = recommendation.model_dump(exclude={"timestamp"})
        fields["timestamp"] = SERVER_TIMESTAMP
        batch.add(RECOMMENDATIONS_COLLECTION, fields)

    try:
        await batch.commit()
    except StoreError as e:
        logger.error(
            "recommendations_batch_failed",
            count=len(recommendations),
            error=str(e),
        )
        return False

    logger.info(
        "recommendations_added",
        count=len(recommendations),
        types=[r.type for r in recommendations],
    )
    return True
