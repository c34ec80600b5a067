"""
RiskAnalysis - Device/Network Probe
====================================

Point-in-time device security attributes and runtime permissions.

Implementations:
- StaticDeviceProbe: fixed values from configuration
- HttpDeviceProbe: queries an on-device agent over HTTP
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import httpx
import structlog

from riskanalysis.config import Settings, settings as default_settings
from riskanalysis.exceptions import ProbeError

logger = structlog.get_logger(__name__)


class PermissionKind(str, Enum):
    LOCATION = "location"
    STORAGE = "storage"


class PermissionStatus(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"


@dataclass(frozen=True)
class DeviceSecurityInfo:
    """Device attributes reported by the OS."""
    encrypted: Optional[bool]
    sdk_version: Optional[int]
    patch_level: Optional[str]


class DeviceProbe(ABC):
    """Collaborator answering device and network questions."""

    @abstractmethod
    async def request_permission(self, kind: PermissionKind) -> PermissionStatus:
        """Ask the user/OS for a runtime permission."""

    @abstractmethod
    async def get_device_security_info(self) -> DeviceSecurityInfo:
        """Current encryption state, SDK version and patch level."""

    @abstractmethod
    async def get_network_name(self) -> Optional[str]:
        """Name of the connected network, if any."""

    async def aclose(self) -> None:
        pass


class StaticDeviceProbe(DeviceProbe):
    """Probe returning configured values; every permission is granted."""

    def __init__(
        self,
        encrypted: Optional[bool] = True,
        sdk_version: Optional[int] = 33,
        patch_level: Optional[str] = None,
        network_name: Optional[str] = None,
    ):
        self.info = DeviceSecurityInfo(encrypted, sdk_version, patch_level)
        self.network_name = network_name

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "StaticDeviceProbe":
        settings = settings or default_settings
        return cls(
            encrypted=settings.device_encrypted,
            sdk_version=settings.device_sdk_version,
            patch_level=settings.device_security_patch,
            network_name=settings.device_network_name,
        )

    async def request_permission(self, kind: PermissionKind) -> PermissionStatus:
        return PermissionStatus.GRANTED

    async def get_device_security_info(self) -> DeviceSecurityInfo:
        return self.info

    async def get_network_name(self) -> Optional[str]:
        return self.network_name


class HttpDeviceProbe(DeviceProbe):
    """
    Probe backed by an on-device agent.

    Endpoints:
        POST /permissions/{kind}  -> {"status": "granted" | "denied"}
        GET  /device/security     -> {"encrypted", "sdk_version", "patch_level"}
        GET  /network             -> {"name": str | null}
    """

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def request_permission(self, kind: PermissionKind) -> PermissionStatus:
        data = await self._request("POST", f"/permissions/{PermissionKind(kind).value}")
        try:
            return PermissionStatus(data.get("status", PermissionStatus.DENIED.value))
        except ValueError:
            return PermissionStatus.DENIED

    async def get_device_security_info(self) -> DeviceSecurityInfo:
        data = await self._request("GET", "/device/security")
        try:
            sdk_version = data.get("sdk_version")
            return DeviceSecurityInfo(
                encrypted=data.get("encrypted"),
                sdk_version=int(sdk_version) if sdk_version is not None else None,
                patch_level=data.get("patch_level"),
            )
        except (TypeError, ValueError) as e:
            raise ProbeError(f"Malformed device info: {e}") from e

    async def get_network_name(self) -> Optional[str]:
        data = await self._request("GET", "/network")
        return data.get("name")

    async def _request(self, method: str, path: str) -> dict:
        try:
            response = await self._client.request(method, path)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.warning("probe_request_failed", method=method, path=path, error=str(e))
            raise ProbeError(f"{method} {path} failed: {e}") from e
        except ValueError as e:
            raise ProbeError(f"{method} {path} returned invalid JSON") from e

        if not isinstance(data, dict):
            raise ProbeError(f"{method} {path} returned {type(data).__name__}, expected object")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()


def get_probe(settings: Optional[Settings] = None) -> DeviceProbe:
    """Build the probe selected by configuration."""
    settings = settings or default_settings
    if settings.probe_url:
        return HttpDeviceProbe(settings.probe_url, timeout=settings.probe_timeout_seconds)
    return StaticDeviceProbe.from_settings(settings)
