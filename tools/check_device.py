"""Check (and optionally register) this machine's device with a LacyLights backend.

Why this exists:
- With device authorization on, every GraphQL call from an unapproved device is
  rejected. This prints the fingerprint an operator needs to approve.

Usage:
    python tools/check_device.py
    python tools/check_device.py --register --device-name "Stage laptop (MCP)"
    python tools/check_device.py --endpoint http://10.0.0.5:4000/graphql --json

Exit codes:
- 0: approved (or device authorization disabled on the backend)
- 2: unknown / pending (not yet approved)
- 3: backend unreachable or returned an error
- 4: revoked
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace

# Allow running this script directly from the repo root.
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from device_auth import DeviceStatus, ensure_device_access  # noqa: E402
from device_fingerprint import get_device_fingerprint, get_device_name  # noqa: E402
from graphql_transport import GraphQLClientError  # noqa: E402
from lacylights_gateway import LacyLightsGateway, load_config  # noqa: E402
from logging_config import setup_logging  # noqa: E402


EXIT_OK = 0
EXIT_NOT_APPROVED = 2
EXIT_BACKEND_ERROR = 3
EXIT_REVOKED = 4


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    ap.add_argument("--endpoint", help="GraphQL endpoint (overrides config/env)")
    ap.add_argument("--fingerprint", help="Fingerprint to check (default: this machine's)")
    ap.add_argument("--register", action="store_true", help="Register the device if it is unknown")
    ap.add_argument("--device-name", help="Name to register with (default: '<hostname> (MCP)')")
    ap.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    ap.add_argument("--json", action="store_true", help="Print the result as JSON")
    ap.add_argument("--verbose", action="store_true")
    return ap.parse_args(argv)


def _exit_code(status: DeviceStatus, auth_enabled: bool) -> int:
    if not auth_enabled or status is DeviceStatus.APPROVED:
        return EXIT_OK
    if status is DeviceStatus.REVOKED:
        return EXIT_REVOKED
    return EXIT_NOT_APPROVED


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    setup_logging("DEBUG" if args.verbose else "WARNING")

    cfg = replace(load_config(), request_timeout_s=float(args.timeout))
    if args.endpoint:
        cfg = replace(cfg, endpoint=args.endpoint.strip())

    fingerprint = args.fingerprint or cfg.device_fingerprint or get_device_fingerprint()
    name = args.device_name or cfg.device_name or get_device_name()

    gw = LacyLightsGateway(config=cfg)
    try:
        if args.register:
            report = ensure_device_access(gw, fingerprint, name)
            result = report.to_dict()
            status, auth_enabled = report.status, report.device_auth_enabled
        else:
            gw.set_fingerprint(fingerprint)
            auth_enabled = gw.get_auth_settings().device_auth_enabled
            check = gw.check_device(fingerprint)
            result = {"fingerprint": fingerprint, "device_auth_enabled": auth_enabled, **check.to_dict()}
            status = check.status
    except GraphQLClientError as e:
        if args.json:
            print(json.dumps({"ok": False, **e.to_dict()}, indent=2))
        else:
            print(f"FAIL ({e.kind}): {e.message}", file=sys.stderr)
        return EXIT_BACKEND_ERROR
    finally:
        gw.close()

    if args.json:
        print(json.dumps({"ok": True, "endpoint": cfg.endpoint, **result}, indent=2, default=str))
    else:
        print(f"Endpoint:    {cfg.endpoint}")
        print(f"Fingerprint: {fingerprint}")
        if not auth_enabled:
            print("Device authorization is disabled on this backend.")
        else:
            print(f"Status:      {status.value}")
            if result.get("message"):
                print(f"Message:     {result['message']}")
            if status is not DeviceStatus.APPROVED:
                print("Ask an operator to approve this fingerprint in LacyLights.")

    return _exit_code(status, auth_enabled)


if __name__ == "__main__":
    raise SystemExit(main())
