r"""Claude Desktop STDIO MCP server shim.

Claude Desktop speaks the official MCP JSON-RPC method names:
- initialize
- tools/list
- tools/call

This shim serves those methods from the tool registry built in app.py, one
JSON-RPC message per line.

Run (for Claude):
    python claude_stdio_server.py

Notes:
- All logs go to stderr (stdout is reserved for JSON-RPC responses).
- Tools are sourced from flask_mcp_server.registry.default_registry.
- Set LACYLIGHTS_DEVICE_AUTH=false to skip the startup device handshake.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any, Dict, Optional

log = logging.getLogger("claude_stdio_server")

DEVICE_DENIED_HINT = (
    "This MCP server's device is not approved. Run the lacylights_device_status tool for its fingerprint, "
    "approve it in LacyLights, then retry."
)


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


def _result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _error(request_id: Any, code: int, message: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    err: dict[str, Any] = {"code": code, "message": message}
    if data is not None:
        err["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": err}


def _send(resp: dict[str, Any]) -> None:
    sys.stdout.write(_json_dumps(resp) + "\n")
    sys.stdout.flush()


def _tool_to_mcp(tool: Dict[str, Any]) -> dict[str, Any]:
    return {
        "name": tool.get("name"),
        "description": tool.get("description") or "",
        "inputSchema": tool.get("input_schema") or {"type": "object", "properties": {}},
    }


def _wrap_tool_result(value: Any) -> dict[str, Any]:
    # Claude expects a content array. Keep it simple and return JSON as text.
    if isinstance(value, str):
        text = value
    else:
        text = json.dumps(value, ensure_ascii=False, indent=2, default=str)
    return {
        "content": [{"type": "text", "text": text}],
        "isError": False,
    }


def _wrap_tool_error(message: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    if data:
        details = json.dumps(data, ensure_ascii=False, indent=2, default=str)
        message = f"{message}\n\n{details}"
    return {
        "content": [{"type": "text", "text": message}],
        "isError": True,
    }


def _tool_error_data(e: Exception) -> dict[str, Any]:
    to_dict = getattr(e, "to_dict", None)
    data: dict[str, Any] = to_dict() if callable(to_dict) else {"kind": "internal"}
    if data.get("kind") == "device_denied":
        data.setdefault("hint", DEVICE_DENIED_HINT)
    return data


def server_info() -> dict[str, Any]:
    return {"name": "lacylights-mcp", "version": os.getenv("LACYLIGHTS_MCP_VERSION", "dev")}


def handle_request(req: Any, registry: Any) -> Optional[dict[str, Any]]:
    """Handle one decoded JSON-RPC message; None means "send nothing"."""

    if not isinstance(req, dict):
        return _error(None, -32600, "Invalid Request")

    request_id = req.get("id")
    method = req.get("method")
    params = req.get("params") or {}

    # JSON-RPC notifications: no id => no response.
    if request_id is None:
        return None

    if method == "initialize":
        return _result(
            request_id,
            {
                "protocolVersion": params.get("protocolVersion") or "2024-11-05",
                "capabilities": {
                    "tools": {},
                    "resources": {},
                    "prompts": {},
                },
                "serverInfo": server_info(),
            },
        )

    if method in ("notifications/initialized", "initialized"):
        # Some clients may send this as a request; acknowledge.
        return _result(request_id, {})

    if method == "tools/list":
        tools = [_tool_to_mcp(t) for _, t in sorted(registry.tools.items())]
        return _result(request_id, {"tools": tools})

    if method == "tools/call":
        name = params.get("name")
        arguments = params.get("arguments") or {}
        if not name:
            return _error(request_id, -32602, "Missing params.name")
        if not isinstance(arguments, dict):
            return _error(request_id, -32602, "params.arguments must be an object")
        if str(name) not in registry.tools:
            return _error(request_id, -32602, f"Unknown tool: {name}")

        try:
            value = registry.call_tool(str(name), **arguments)
        except Exception as e:
            # Tool failures are results with isError, not JSON-RPC errors.
            msg = str(e).strip() or e.__class__.__name__
            log.warning("Tool error in %s: %s", name, msg, exc_info=not hasattr(e, "to_dict"))
            return _result(request_id, _wrap_tool_error(msg, _tool_error_data(e)))
        return _result(request_id, _wrap_tool_result(value))

    if method == "resources/list":
        return _result(request_id, {"resources": []})

    if method == "prompts/list":
        return _result(request_id, {"prompts": []})

    if method == "ping":
        return _result(request_id, {})

    return _error(request_id, -32601, f"Method not found: {method}")


def handle_line(raw_line: str, registry: Any) -> Optional[dict[str, Any]]:
    raw_line = raw_line.strip()
    if not raw_line:
        return None
    try:
        req = json.loads(raw_line)
    except json.JSONDecodeError as e:
        return _error(None, -32700, f"Invalid JSON: {e}")
    try:
        return handle_request(req, registry)
    except Exception as e:
        log.exception("Unhandled error")
        request_id = req.get("id") if isinstance(req, dict) else None
        if request_id is None:
            return None
        return _error(request_id, -32603, str(e))


def main() -> int:
    from logging_config import setup_logging

    setup_logging()

    # Import app.py for side effects: it registers all @Mcp.tool functions.
    # This must happen before accessing default_registry.
    import app

    from flask_mcp_server.registry import default_registry

    log.info("Claude STDIO shim starting (lacylights-mcp)")
    log.info("Registered tools: %s", len(default_registry.tools))

    app.run_startup_handshake()

    for raw_line in sys.stdin:
        resp = handle_line(raw_line, default_registry)
        if resp is not None:
            _send(resp)

    log.info("Claude STDIO shim exiting")
    app.adapter_gateway.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
