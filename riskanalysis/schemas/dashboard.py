"""
RiskAnalysis - Dashboard Schemas
=================================
Pydantic models for the documents shown on the dashboard.
"""

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Level(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ThreatType(str, Enum):
    APPLICATION = "application"
    NETWORK = "network"
    DEVICE = "device"


class RecommendationType(str, Enum):
    SYSTEM_UPDATE = "system_update"
    ENCRYPTION = "encryption"
    NETWORK = "network"


class ActivityType(str, Enum):
    SCAN = "scan"
    THREAT = "threat"
    UPDATE = "update"


class ScanRunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class _Document(BaseModel):
    """Base for document shapes; unknown fields are kept."""
    model_config = ConfigDict(extra="allow", use_enum_values=True)


class SecurityMetrics(_Document):
    """Aggregate score singleton (``security_metrics/current``)."""
    secure_score: float = Field(default=0, ge=0, le=100)
    risk_score: float = Field(default=0, ge=0, le=100)
    last_updated: Optional[str] = None


class Threat(_Document):
    """A named risk category."""
    title: str
    level: str = Level.LOW.value
    type: str = ThreatType.APPLICATION.value


class Recommendation(_Document):
    """An actionable suggestion."""
    title: str
    description: str
    priority: str = Level.LOW.value
    type: str
    timestamp: Optional[str] = None


class ActivityEntry(_Document):
    """One audit log line."""
    title: str
    type: str
    time: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class ScanSnapshot(BaseModel):
    """Device/network attributes collected in one tick."""
    device_encrypted: Optional[bool] = None
    sdk_version: Optional[int] = None
    security_patch: Optional[str] = None
    network_name: Optional[str] = None

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump()


class ScanRun(_Document):
    """One scan invocation, merge-written on every tick."""
    status: str = ScanRunStatus.IN_PROGRESS.value
    started_at: Optional[str] = None
    completion_time: Optional[str] = None
    device_encrypted: Optional[bool] = None
    sdk_version: Optional[int] = None
    security_patch: Optional[str] = None
    network_name: Optional[str] = None
    timestamp: Optional[str] = None
