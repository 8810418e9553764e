"""Validate the Claude Desktop MCP method surface over STDIO.

This simulates what Claude Desktop does (initialize -> tools/list -> tools/call)
against a live LacyLights backend.

Usage:
    python tools/validate_claude_stdio.py
    python tools/validate_claude_stdio.py --skip-backend   # surface only, no GraphQL calls
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys

REQUIRED_TOOLS = (
    "ping",
    "lacylights_device_status",
    "lacylights_list_projects",
    "lacylights_bulk_delete_looks",
    "lacylights_get_fade_update_rate",
)


def _text_of(wrapped: dict) -> str:
    content = wrapped.get("content") or []
    if isinstance(content, list) and content and isinstance(content[0], dict):
        return str(content[0].get("text") or "")
    return str(wrapped)


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--skip-backend", action="store_true", help="Do not call tools that reach the backend")
    args = ap.parse_args()

    repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    server_py = os.path.join(repo_root, "claude_stdio_server.py")

    cmd = [sys.executable, "-u", server_py]
    requests = [
        {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {"protocolVersion": "2024-11-05", "capabilities": {}, "clientInfo": {"name": "validator"}},
        },
        {"jsonrpc": "2.0", "id": 2, "method": "tools/list", "params": {}},
        {"jsonrpc": "2.0", "id": 3, "method": "tools/call", "params": {"name": "ping", "arguments": {}}},
        {"jsonrpc": "2.0", "id": 4, "method": "no/such/method", "params": {}},
    ]
    if not args.skip_backend:
        requests += [
            {
                "jsonrpc": "2.0",
                "id": 5,
                "method": "tools/call",
                "params": {"name": "lacylights_device_status", "arguments": {}},
            },
            {
                "jsonrpc": "2.0",
                "id": 6,
                "method": "tools/call",
                "params": {"name": "lacylights_list_projects", "arguments": {"include_details": False}},
            },
        ]
    input_text = "\n".join(json.dumps(r) for r in requests) + "\n"

    env = os.environ.copy()
    if args.skip_backend:
        env["LACYLIGHTS_DEVICE_AUTH"] = "false"

    proc = subprocess.Popen(
        cmd,
        cwd=repo_root,
        env=env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )

    try:
        stdout, stderr = proc.communicate(input=input_text, timeout=60)
        responses = {}
        for line in (stdout or "").splitlines():
            try:
                msg = json.loads(line)
            except ValueError:
                continue
            if isinstance(msg, dict) and "id" in msg:
                responses[msg["id"]] = msg

        if 1 not in responses or "error" in responses[1]:
            raise RuntimeError(f"initialize failed: {responses.get(1)}\n{stderr}")
        if 2 not in responses or "error" in responses[2]:
            raise RuntimeError(f"tools/list failed: {responses.get(2)}\n{stderr}")

        tools = (responses[2].get("result") or {}).get("tools") or []
        names = {t.get("name") for t in tools if isinstance(t, dict)}
        missing = [t for t in REQUIRED_TOOLS if t not in names]
        if missing:
            raise RuntimeError(f"tools/list is missing: {', '.join(missing)}")

        if 3 not in responses or "error" in responses[3]:
            raise RuntimeError(f"tools/call ping failed: {responses.get(3)}\n{stderr}")

        err = (responses.get(4) or {}).get("error") or {}
        if err.get("code") != -32601:
            raise RuntimeError(f"unknown method did not return -32601: {responses.get(4)}")

        # Claude-style tools/call responses are wrapped as { result: { content:[{text:...}], isError: bool } }
        for rid in (5, 6) if not args.skip_backend else ():
            if rid not in responses:
                raise RuntimeError(f"missing response id={rid}\n{stderr}")
            wrapped = responses[rid].get("result") or {}
            if wrapped.get("isError") is True:
                raise RuntimeError(f"tools/call id={rid} returned isError=true: {_text_of(wrapped)}\n{stderr}")

        print("OK: Claude-style initialize/tools/list/tools/call works")
        return 0

    except Exception as e:
        print(f"FAIL: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
