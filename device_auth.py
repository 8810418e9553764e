# device_auth.py
"""Device approval workflow as seen from the client.

The backend owns the device lifecycle:

    UNKNOWN --registerDevice--> PENDING --(operator)--> APPROVED
                                       \\--(operator)--> REVOKED

This module only observes it (checkDeviceAuthorization) and triggers the first
transition (registerDevice). Approval and revocation happen out-of-band.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol


log = logging.getLogger(__name__)


class DeviceStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REVOKED = "REVOKED"

    @classmethod
    def parse(cls, value: Any) -> "DeviceStatus":
        raw = str(value or "").strip().upper()
        try:
            return cls(raw)
        except ValueError:
            log.warning("Unrecognized device status %r; treating as UNKNOWN", value)
            return cls.UNKNOWN


@dataclass(frozen=True)
class DeviceRecord:
    id: str
    name: str
    fingerprint: str
    status: DeviceStatus
    permissions: list[str] = field(default_factory=list)
    created_at: Optional[str] = None
    approved_at: Optional[str] = None
    last_seen_at: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["DeviceRecord"]:
        if not isinstance(payload, dict):
            return None
        perms = payload.get("permissions")
        return cls(
            id=str(payload.get("id") or ""),
            name=str(payload.get("name") or ""),
            fingerprint=str(payload.get("fingerprint") or ""),
            status=DeviceStatus.parse(payload.get("status")),
            permissions=[str(p) for p in perms] if isinstance(perms, list) else ([str(perms)] if perms else []),
            created_at=payload.get("createdAt"),
            approved_at=payload.get("approvedAt"),
            last_seen_at=payload.get("lastSeenAt"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "fingerprint": self.fingerprint,
            "status": self.status.value,
            "permissions": list(self.permissions),
            "created_at": self.created_at,
            "approved_at": self.approved_at,
            "last_seen_at": self.last_seen_at,
        }


@dataclass(frozen=True)
class DeviceCheckResult:
    status: DeviceStatus
    device: Optional[DeviceRecord]
    message: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "DeviceCheckResult":
        payload = payload if isinstance(payload, dict) else {}
        status = DeviceStatus.parse(payload.get("status"))
        # An unknown fingerprint has no device record, whatever the server sent.
        device = None if status is DeviceStatus.UNKNOWN else DeviceRecord.from_payload(payload.get("device"))
        return cls(status=status, device=device, message=str(payload.get("message") or ""))

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "device": self.device.to_dict() if self.device else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class DeviceRegistrationResult:
    success: bool
    device: Optional[DeviceRecord]
    message: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "DeviceRegistrationResult":
        payload = payload if isinstance(payload, dict) else {}
        return cls(
            success=bool(payload.get("success")),
            device=DeviceRecord.from_payload(payload.get("device")),
            message=str(payload.get("message") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "device": self.device.to_dict() if self.device else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class AuthSettings:
    auth_enabled: bool
    device_auth_enabled: bool

    @classmethod
    def from_payload(cls, payload: Any) -> "AuthSettings":
        payload = payload if isinstance(payload, dict) else {}
        return cls(
            auth_enabled=bool(payload.get("authEnabled")),
            device_auth_enabled=bool(payload.get("deviceAuthEnabled")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"auth_enabled": self.auth_enabled, "device_auth_enabled": self.device_auth_enabled}


class DeviceGateway(Protocol):
    def set_fingerprint(self, fingerprint: Optional[str]) -> None: ...

    def get_auth_settings(self) -> AuthSettings: ...

    def check_device(self, fingerprint: str) -> DeviceCheckResult: ...

    def register_device(self, fingerprint: str, name: str) -> DeviceRegistrationResult: ...


@dataclass(frozen=True)
class DeviceAccessReport:
    status: DeviceStatus
    fingerprint: str
    device: Optional[DeviceRecord] = None
    message: str = ""
    registered: bool = False
    device_auth_enabled: bool = True

    @property
    def has_access(self) -> bool:
        return (not self.device_auth_enabled) or self.status is DeviceStatus.APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "fingerprint": self.fingerprint,
            "device": self.device.to_dict() if self.device else None,
            "message": self.message,
            "registered": self.registered,
            "device_auth_enabled": self.device_auth_enabled,
            "has_access": self.has_access,
        }


def ensure_device_access(gateway: DeviceGateway, fingerprint: str, name: str) -> DeviceAccessReport:
    """Startup handshake: attach the fingerprint, then check and register if needed.

    PENDING and REVOKED are reported, not raised. Transport failures propagate.
    """

    gateway.set_fingerprint(fingerprint)

    settings = gateway.get_auth_settings()
    if not settings.device_auth_enabled:
        log.info("Device authorization is disabled on the backend")
        return DeviceAccessReport(
            status=DeviceStatus.APPROVED,
            fingerprint=fingerprint,
            message="Device authorization is not enforced by the backend; access is granted",
            device_auth_enabled=False,
        )

    check = gateway.check_device(fingerprint)
    if check.status is not DeviceStatus.UNKNOWN:
        _log_status(check.status, name)
        return DeviceAccessReport(
            status=check.status,
            fingerprint=fingerprint,
            device=check.device,
            message=check.message,
        )

    reg = gateway.register_device(fingerprint, name)
    if not reg.success:
        log.warning("Device registration rejected: %s", reg.message or "no reason given")
        return DeviceAccessReport(
            status=DeviceStatus.UNKNOWN,
            fingerprint=fingerprint,
            message=reg.message or "Device registration was rejected",
        )

    status = reg.device.status if reg.device else DeviceStatus.PENDING
    _log_status(status, name)
    return DeviceAccessReport(
        status=status,
        fingerprint=fingerprint,
        device=reg.device,
        message=reg.message,
        registered=True,
    )


def _log_status(status: DeviceStatus, name: str) -> None:
    if status is DeviceStatus.APPROVED:
        log.info("Device %r is approved", name)
    elif status is DeviceStatus.PENDING:
        log.info("Device %r is awaiting operator approval", name)
    elif status is DeviceStatus.REVOKED:
        log.warning("Device %r has been revoked; backend calls will be denied", name)
