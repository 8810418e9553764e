"""Device status parsing and the startup handshake."""

import pytest

from device_auth import (
    AuthSettings,
    DeviceCheckResult,
    DeviceRecord,
    DeviceRegistrationResult,
    DeviceStatus,
    ensure_device_access,
)
from graphql_transport import NetworkError


DEVICE_PAYLOAD = {
    "id": "dev-1",
    "name": "stage-laptop (MCP)",
    "fingerprint": "fp-123",
    "status": "PENDING",
    "permissions": "READ_WRITE",
    "createdAt": "2025-01-01T00:00:00Z",
    "approvedAt": None,
    "lastSeenAt": "2025-01-02T00:00:00Z",
}


class FakeDeviceGateway:
    def __init__(self, settings=None, check=None, registration=None, fail_with=None):
        self.settings = settings or AuthSettings(auth_enabled=True, device_auth_enabled=True)
        self.check = check or DeviceCheckResult(status=DeviceStatus.UNKNOWN, device=None)
        self.registration = registration
        self.fail_with = fail_with
        self.fingerprint = None
        self.calls = []

    def set_fingerprint(self, fingerprint):
        self.calls.append("set_fingerprint")
        self.fingerprint = fingerprint

    def get_auth_settings(self):
        self.calls.append("get_auth_settings")
        if self.fail_with:
            raise self.fail_with
        return self.settings

    def check_device(self, fingerprint):
        self.calls.append("check_device")
        return self.check

    def register_device(self, fingerprint, name):
        self.calls.append("register_device")
        return self.registration


# ---------- parsing ----------


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("APPROVED", DeviceStatus.APPROVED),
        ("pending", DeviceStatus.PENDING),
        ("REVOKED", DeviceStatus.REVOKED),
        ("UNKNOWN", DeviceStatus.UNKNOWN),
        ("SOMETHING_NEW", DeviceStatus.UNKNOWN),
        (None, DeviceStatus.UNKNOWN),
    ],
)
def test_status_parse(raw, expected):
    assert DeviceStatus.parse(raw) is expected


def test_device_record_from_payload():
    rec = DeviceRecord.from_payload(DEVICE_PAYLOAD)
    assert rec is not None
    assert rec.id == "dev-1"
    assert rec.status is DeviceStatus.PENDING
    assert rec.approved_at is None
    assert rec.permissions == ["READ_WRITE"]
    assert rec.to_dict()["fingerprint"] == "fp-123"


def test_unknown_check_has_no_device_even_if_server_sends_one():
    result = DeviceCheckResult.from_payload({"status": "UNKNOWN", "device": DEVICE_PAYLOAD, "message": "not found"})
    assert result.status is DeviceStatus.UNKNOWN
    assert result.device is None


def test_pending_check_keeps_device():
    result = DeviceCheckResult.from_payload({"status": "PENDING", "device": DEVICE_PAYLOAD})
    assert result.status is DeviceStatus.PENDING
    assert result.device is not None and result.device.name == "stage-laptop (MCP)"


def test_auth_settings_from_payload():
    s = AuthSettings.from_payload({"authEnabled": False, "deviceAuthEnabled": True})
    assert s.auth_enabled is False
    assert s.device_auth_enabled is True


# ---------- handshake ----------


def test_handshake_sets_fingerprint_before_anything_else():
    gw = FakeDeviceGateway(check=DeviceCheckResult(status=DeviceStatus.APPROVED, device=None))
    ensure_device_access(gw, "fp-123", "laptop")
    assert gw.calls[0] == "set_fingerprint"
    assert gw.fingerprint == "fp-123"


def test_handshake_skips_checks_when_device_auth_disabled():
    gw = FakeDeviceGateway(settings=AuthSettings(auth_enabled=False, device_auth_enabled=False))
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert report.device_auth_enabled is False
    assert report.has_access is True
    assert report.status is DeviceStatus.APPROVED
    assert report.to_dict()["status"] == "APPROVED"
    assert "check_device" not in gw.calls


def test_handshake_approved_device_is_not_registered():
    device = DeviceRecord.from_payload({**DEVICE_PAYLOAD, "status": "APPROVED"})
    gw = FakeDeviceGateway(check=DeviceCheckResult(status=DeviceStatus.APPROVED, device=device))
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert report.status is DeviceStatus.APPROVED
    assert report.has_access is True
    assert report.registered is False
    assert "register_device" not in gw.calls


@pytest.mark.parametrize("status", [DeviceStatus.PENDING, DeviceStatus.REVOKED])
def test_handshake_reports_pending_and_revoked_without_registering(status):
    gw = FakeDeviceGateway(check=DeviceCheckResult(status=status, device=None, message="waiting"))
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert report.status is status
    assert report.has_access is False
    assert "register_device" not in gw.calls


def test_handshake_registers_unknown_device():
    device = DeviceRecord.from_payload(DEVICE_PAYLOAD)
    gw = FakeDeviceGateway(registration=DeviceRegistrationResult(success=True, device=device, message="Registered"))
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert gw.calls == ["set_fingerprint", "get_auth_settings", "check_device", "register_device"]
    assert report.registered is True
    assert report.status is DeviceStatus.PENDING
    assert report.to_dict()["device"]["id"] == "dev-1"


def test_handshake_registration_without_device_assumes_pending():
    gw = FakeDeviceGateway(registration=DeviceRegistrationResult(success=True, device=None))
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert report.status is DeviceStatus.PENDING


def test_handshake_rejected_registration_is_reported():
    gw = FakeDeviceGateway(
        registration=DeviceRegistrationResult(success=False, device=None, message="Registration closed")
    )
    report = ensure_device_access(gw, "fp-123", "laptop")
    assert report.status is DeviceStatus.UNKNOWN
    assert report.registered is False
    assert report.message == "Registration closed"


def test_handshake_propagates_transport_failures():
    gw = FakeDeviceGateway(fail_with=NetworkError("connection refused"))
    with pytest.raises(NetworkError):
        ensure_device_access(gw, "fp-123", "laptop")


# ---------- over the wire ----------


def test_check_device_over_http_unknown(graphql_server):
    from lacylights_gateway import Config, LacyLightsGateway

    graphql_server.respond_json(
        {"data": {"checkDeviceAuthorization": {"status": "UNKNOWN", "message": "Device not registered", "device": None}}}
    )
    gw = LacyLightsGateway(config=Config(endpoint=graphql_server.url))
    try:
        result = gw.check_device("fp-123")
    finally:
        gw.close()

    assert result.status is DeviceStatus.UNKNOWN
    assert result.device is None
    assert graphql_server.received[0].body["variables"] == {"fingerprint": "fp-123"}


def test_register_device_over_http(graphql_server):
    from lacylights_gateway import Config, LacyLightsGateway

    graphql_server.respond_json(
        {"data": {"registerDevice": {"success": True, "message": "Registered", "device": DEVICE_PAYLOAD}}}
    )
    gw = LacyLightsGateway(config=Config(endpoint=graphql_server.url))
    try:
        result = gw.register_device("fp-123", "laptop")
    finally:
        gw.close()

    assert result.success is True
    assert result.device is not None and result.device.status is DeviceStatus.PENDING
    assert graphql_server.received[0].body["variables"] == {"fingerprint": "fp-123", "name": "laptop"}
