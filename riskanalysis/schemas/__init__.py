from riskanalysis.schemas.auth import Credentials, Registration, UserResponse
from riskanalysis.schemas.dashboard import (
    ActivityEntry,
    ActivityType,
    Level,
    Recommendation,
    RecommendationType,
    ScanRun,
    ScanRunStatus,
    ScanSnapshot,
    SecurityMetrics,
    Threat,
    ThreatType,
)

__all__ = [
    "ActivityEntry",
    "ActivityType",
    "Credentials",
    "Level",
    "Recommendation",
    "RecommendationType",
    "Registration",
    "ScanRun",
    "ScanRunStatus",
    "ScanSnapshot",
    "SecurityMetrics",
    "Threat",
    "ThreatType",
    "UserResponse",
]
