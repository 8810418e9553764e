"""JSON-RPC method surface of the Claude STDIO shim."""

import json

import pytest

from claude_stdio_server import handle_line, handle_request
from graphql_transport import DeviceNotApprovedError
from lacylights_adapter import ToolOperationError, ToolValidationError


class FakeRegistry:
    def __init__(self):
        self.tools = {
            "ping": {"name": "ping", "description": "Health check", "input_schema": None},
            "lacylights_activate_look": {
                "name": "lacylights_activate_look",
                "description": "Activate",
                "input_schema": {"type": "object", "properties": {"look_id": {"type": "string"}}},
            },
            "boom": {"name": "boom", "description": "", "input_schema": None},
        }

    def call_tool(self, name, **kwargs):
        if name == "ping":
            return {"ok": True}
        if name == "lacylights_activate_look":
            raise ToolOperationError("activate look", DeviceNotApprovedError("Device not approved", "fp-123"))
        raise RuntimeError("kaboom")


@pytest.fixture
def registry():
    return FakeRegistry()


def _req(method, params=None, rid=1):
    return {"jsonrpc": "2.0", "id": rid, "method": method, "params": params or {}}


def test_initialize_reports_server_info(registry):
    resp = handle_request(_req("initialize", {"protocolVersion": "2025-03-26"}), registry)
    result = resp["result"]
    assert result["protocolVersion"] == "2025-03-26"
    assert result["serverInfo"]["name"] == "lacylights-mcp"
    assert set(result["capabilities"]) == {"tools", "resources", "prompts"}


def test_notifications_get_no_response(registry):
    assert handle_request({"jsonrpc": "2.0", "method": "notifications/initialized"}, registry) is None


def test_tools_list_is_sorted_with_default_schema(registry):
    tools = handle_request(_req("tools/list"), registry)["result"]["tools"]
    assert [t["name"] for t in tools] == ["boom", "lacylights_activate_look", "ping"]
    assert tools[2]["inputSchema"] == {"type": "object", "properties": {}}


def test_tools_call_wraps_result_as_text(registry):
    result = handle_request(_req("tools/call", {"name": "ping", "arguments": {}}), registry)["result"]
    assert result["isError"] is False
    assert json.loads(result["content"][0]["text"]) == {"ok": True}


def test_tool_failure_is_error_result_with_hint(registry):
    result = handle_request(
        _req("tools/call", {"name": "lacylights_activate_look", "arguments": {"look_id": "l1"}}), registry
    )["result"]
    assert result["isError"] is True
    text = result["content"][0]["text"]
    assert text.startswith("Failed to activate look: Device not approved")
    assert '"kind": "device_denied"' in text
    assert '"fingerprint": "fp-123"' in text


def test_unexpected_tool_exception_is_error_result(registry):
    result = handle_request(_req("tools/call", {"name": "boom"}), registry)["result"]
    assert result["isError"] is True
    assert result["content"][0]["text"].startswith("kaboom")


@pytest.mark.parametrize(
    "params, fragment",
    [
        ({}, "Missing params.name"),
        ({"name": "ping", "arguments": [1]}, "must be an object"),
        ({"name": "nope"}, "Unknown tool"),
    ],
)
def test_bad_tool_calls_are_invalid_params(registry, params, fragment):
    err = handle_request(_req("tools/call", params), registry)["error"]
    assert err["code"] == -32602
    assert fragment in err["message"]


def test_unknown_method(registry):
    err = handle_request(_req("sampling/createMessage"), registry)["error"]
    assert err["code"] == -32601


@pytest.mark.parametrize("method, key", [("resources/list", "resources"), ("prompts/list", "prompts")])
def test_empty_lists(registry, method, key):
    assert handle_request(_req(method), registry)["result"] == {key: []}


def test_invalid_json_line(registry):
    resp = handle_line("{not json", registry)
    assert resp["error"]["code"] == -32700
    assert resp["id"] is None


def test_blank_line_is_ignored(registry):
    assert handle_line("   \n", registry) is None


def test_app_registers_every_tool():
    import app  # noqa: F401
    from flask_mcp_server.registry import default_registry

    expected = {
        "ping",
        "lacylights_server_info",
        "lacylights_device_status",
        "lacylights_device_register",
        "lacylights_auth_settings",
        "lacylights_list_projects",
        "lacylights_get_project_details",
        "lacylights_create_project",
        "lacylights_delete_project",
        "lacylights_bulk_delete_projects",
        "lacylights_list_fixtures",
        "lacylights_bulk_delete_fixtures",
        "lacylights_list_looks",
        "lacylights_get_look",
        "lacylights_activate_look",
        "lacylights_fade_to_black",
        "lacylights_get_current_active_look",
        "lacylights_bulk_delete_looks",
        "lacylights_get_cue_list",
        "lacylights_update_cue",
        "lacylights_bulk_delete_cues",
        "lacylights_bulk_delete_cue_lists",
        "lacylights_start_cue_list",
        "lacylights_next_cue",
        "lacylights_previous_cue",
        "lacylights_go_to_cue",
        "lacylights_stop_cue_list",
        "lacylights_get_cue_list_status",
        "lacylights_list_look_boards",
        "lacylights_activate_look_from_board",
        "lacylights_bulk_delete_look_boards",
        "lacylights_bulk_delete_look_board_buttons",
        "lacylights_get_fade_update_rate",
        "lacylights_set_fade_update_rate",
        "lacylights_get_build_info",
        "lacylights_undo",
        "lacylights_redo",
        "lacylights_get_undo_redo_status",
    }
    assert expected <= set(default_registry.tools)

    resp = handle_request(_req("tools/call", {"name": "ping", "arguments": {}}), default_registry)
    assert resp["result"]["isError"] is False


def test_flask_tool_error_handler_maps_kind_to_status():
    import app

    err = ToolOperationError("list projects", ToolValidationError("bad input"))
    with app.app.test_request_context():
        resp, status = app._handle_tool_error(err)
    assert status == 400
    assert resp.get_json()["error"] == "Failed to list projects: bad input"


def test_flask_tool_error_handler_treats_internal_errors_as_server_side():
    import app

    err = ToolOperationError("list projects", UnicodeDecodeError("utf-8", b"\xff", 0, 1, "invalid start byte"))
    with app.app.test_request_context():
        _, status = app._handle_tool_error(err)
    assert status == 500
