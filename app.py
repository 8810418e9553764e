# app.py

from __future__ import annotations

import logging
import os
import sys

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException
from flask_mcp_server import Mcp, mount_mcp
from flask_mcp_server.http_integrated import mw_auth, mw_cors, mw_ratelimit

import flask_mcp_server

from graphql_transport import GraphQLClientError
from lacylights_adapter import (
    ToolOperationError,
    gateway as adapter_gateway,
    activate_look,
    activate_look_from_board,
    auth_settings,
    bulk_delete_cue_lists,
    bulk_delete_cues,
    bulk_delete_fixtures,
    bulk_delete_look_board_buttons,
    bulk_delete_look_boards,
    bulk_delete_looks,
    bulk_delete_projects,
    create_project,
    delete_project,
    device_register,
    device_status,
    fade_to_black,
    get_build_info,
    get_cue_list,
    get_cue_list_status,
    get_current_active_look,
    get_fade_update_rate,
    get_look,
    get_project_details,
    get_undo_redo_status,
    go_to_cue,
    list_fixtures,
    list_look_boards,
    list_looks,
    list_projects,
    next_cue,
    previous_cue,
    redo,
    set_fade_update_rate,
    start_cue_list,
    startup_handshake,
    stop_cue_list,
    undo,
    update_cue,
)
from logging_config import setup_logging

log = logging.getLogger(__name__)

# ---------- App / Gateway ----------
app = Flask(__name__)

_STATUS_BY_KIND = {
    "validation": 400,
    "device_denied": 403,
    "timeout": 504,
    "cancelled": 499,
    "client": 500,
}


# Return JSON errors, but preserve correct HTTP status codes (e.g., 404).
@app.errorhandler(HTTPException)
def _handle_http_exception(e: HTTPException):
    return (
        jsonify(
            {
                "ok": False,
                "error": e.name,
                "status": int(getattr(e, "code", 500) or 500),
                "details": str(getattr(e, "description", "")) or None,
            }
        ),
        int(getattr(e, "code", 500) or 500),
    )


@app.errorhandler(ToolOperationError)
def _handle_tool_error(e: ToolOperationError):
    return jsonify({"ok": False, **e.to_dict()}), _STATUS_BY_KIND.get(e.kind, 502)


@app.errorhandler(Exception)
def _handle_any_exception(e: Exception):
    log.exception("Unhandled error")
    return jsonify({"ok": False, "error": repr(e)}), 500


# ---------- MCP tools (REGISTER ON GLOBAL REGISTRY via Mcp.tool) ----------

@Mcp.tool(name="ping", description="Health check tool to verify the MCP server is reachable.")
def ping() -> dict:
    return {"ok": True}


@Mcp.tool(
    name="lacylights_server_info",
    description=(
        "Return process/runtime info for the running MCP server (PID, exe, cwd, argv), the configured "
        "GraphQL endpoint and device fingerprint state, plus a tool-registry summary."
    ),
)
def lacylights_server_info_tool() -> dict:
    reg = getattr(flask_mcp_server, "default_registry", None)
    tools_dict = getattr(reg, "tools", None) if reg is not None else None
    tool_names = sorted(tools_dict.keys()) if isinstance(tools_dict, dict) else []

    cfg = adapter_gateway.config
    return {
        "ok": True,
        "pid": os.getpid(),
        "python_executable": sys.executable,
        "argv": list(sys.argv),
        "cwd": os.getcwd(),
        "graphql": {
            "endpoint": cfg.endpoint,
            "request_timeout_s": cfg.request_timeout_s,
            "device_auth": cfg.device_auth,
            "fingerprint_attached": adapter_gateway.get_fingerprint() is not None,
        },
        "registry": {
            "tool_count": len(tool_names),
            "tools": tool_names,
        },
    }


# ---- Device authorization ----

@Mcp.tool(
    name="lacylights_device_status",
    description="Check whether this MCP server's device fingerprint is approved to control LacyLights.",
)
def lacylights_device_status_tool() -> dict:
    return device_status()


@Mcp.tool(
    name="lacylights_device_register",
    description=(
        "Register this MCP server as a device with LacyLights. An operator must then approve it "
        "before lighting control works. device_name is optional (defaults to '<hostname> (MCP)')."
    ),
)
def lacylights_device_register_tool(device_name: str | None = None) -> dict:
    return device_register(device_name)


@Mcp.tool(name="lacylights_auth_settings", description="Get the backend's authentication settings (auth / device auth enabled).")
def lacylights_auth_settings_tool() -> dict:
    return auth_settings()


# ---- Projects ----

@Mcp.tool(
    name="lacylights_list_projects",
    description="List all lighting projects. Set include_details=true for timestamps and fixture/look/cue list counts.",
)
def lacylights_list_projects_tool(include_details: bool = False) -> dict:
    return list_projects(include_details=include_details)


@Mcp.tool(
    name="lacylights_get_project_details",
    description="Get a project with its fixtures, looks and cue lists, plus a summary of DMX channels in use.",
)
def lacylights_get_project_details_tool(project_id: str) -> dict:
    return get_project_details(project_id)


@Mcp.tool(name="lacylights_create_project", description="Create a new lighting project.")
def lacylights_create_project_tool(project_name: str, description: str | None = None) -> dict:
    return create_project(project_name, description)


@Mcp.tool(
    name="lacylights_delete_project",
    description="Delete a project and everything in it. Requires confirm_delete=true.",
)
def lacylights_delete_project_tool(project_id: str, confirm_delete: bool = False) -> dict:
    return delete_project(project_id, confirm_delete=confirm_delete)


@Mcp.tool(
    name="lacylights_bulk_delete_projects",
    description="Delete several projects at once. Requires confirm_delete=true. Reports per-id failures.",
)
def lacylights_bulk_delete_projects_tool(project_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_projects(project_ids, confirm_delete=confirm_delete)


# ---- Fixtures ----

@Mcp.tool(name="lacylights_list_fixtures", description="List fixtures in a project, ordered by universe and start channel.")
def lacylights_list_fixtures_tool(project_id: str) -> dict:
    return list_fixtures(project_id)


@Mcp.tool(
    name="lacylights_bulk_delete_fixtures",
    description="Delete several fixtures at once. Requires confirm_delete=true. Reports per-id failures.",
)
def lacylights_bulk_delete_fixtures_tool(fixture_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_fixtures(fixture_ids, confirm_delete=confirm_delete)


# ---- Looks ----

@Mcp.tool(name="lacylights_list_looks", description="List looks (scenes) in a project.")
def lacylights_list_looks_tool(project_id: str) -> dict:
    return list_looks(project_id)


@Mcp.tool(name="lacylights_get_look", description="Get a look with its per-fixture channel values.")
def lacylights_get_look_tool(look_id: str) -> dict:
    return get_look(look_id)


@Mcp.tool(name="lacylights_activate_look", description="Make a look live on stage.")
def lacylights_activate_look_tool(look_id: str) -> dict:
    return activate_look(look_id)


@Mcp.tool(name="lacylights_fade_to_black", description="Fade all lights out over fade_out_time seconds (default 3).")
def lacylights_fade_to_black_tool(fade_out_time: float = 3.0) -> dict:
    return fade_to_black(fade_out_time)


@Mcp.tool(name="lacylights_get_current_active_look", description="Get the look that is currently live, if any.")
def lacylights_get_current_active_look_tool() -> dict:
    return get_current_active_look()


@Mcp.tool(
    name="lacylights_bulk_delete_looks",
    description="Delete several looks at once. Requires confirm_delete=true. Reports per-id failures.",
)
def lacylights_bulk_delete_looks_tool(look_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_looks(look_ids, confirm_delete=confirm_delete)


# ---- Cue lists / cues ----

@Mcp.tool(name="lacylights_get_cue_list", description="Get a cue list and its cues ordered by cue number.")
def lacylights_get_cue_list_tool(cue_list_id: str) -> dict:
    return get_cue_list(cue_list_id)


@Mcp.tool(
    name="lacylights_update_cue",
    description=(
        "Update a cue. Only the fields you pass change; everything else keeps its current value. "
        "Set clear_follow_time=true to remove an auto-follow."
    ),
)
def lacylights_update_cue_tool(
    cue_id: str,
    cue_name: str | None = None,
    cue_number: float | None = None,
    look_id: str | None = None,
    fade_in_time: float | None = None,
    fade_out_time: float | None = None,
    follow_time: float | None = None,
    clear_follow_time: bool = False,
    notes: str | None = None,
) -> dict:
    kwargs = {}
    if follow_time is not None or clear_follow_time:
        kwargs["follow_time"] = None if clear_follow_time else follow_time
    return update_cue(
        cue_id,
        cue_name=cue_name,
        cue_number=cue_number,
        look_id=look_id,
        fade_in_time=fade_in_time,
        fade_out_time=fade_out_time,
        notes=notes,
        **kwargs,
    )


@Mcp.tool(
    name="lacylights_bulk_delete_cues",
    description="Delete several cues at once. Requires confirm_delete=true. Reports per-id failures.",
)
def lacylights_bulk_delete_cues_tool(cue_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_cues(cue_ids, confirm_delete=confirm_delete)


@Mcp.tool(
    name="lacylights_bulk_delete_cue_lists",
    description="Delete several cue lists (and their cues) at once. Requires confirm_delete=true.",
)
def lacylights_bulk_delete_cue_lists_tool(cue_list_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_cue_lists(cue_list_ids, confirm_delete=confirm_delete)


# ---- Playback ----

@Mcp.tool(
    name="lacylights_start_cue_list",
    description="Start playing a cue list, optionally from a given cue index and with a fade-in override.",
)
def lacylights_start_cue_list_tool(
    cue_list_id: str, start_from_cue: int | None = None, fade_in_time: float | None = None
) -> dict:
    return start_cue_list(cue_list_id, start_from_cue, fade_in_time)


@Mcp.tool(name="lacylights_next_cue", description="Advance a playing cue list to its next cue.")
def lacylights_next_cue_tool(cue_list_id: str, fade_in_time: float | None = None) -> dict:
    return next_cue(cue_list_id, fade_in_time)


@Mcp.tool(name="lacylights_previous_cue", description="Step a playing cue list back to its previous cue.")
def lacylights_previous_cue_tool(cue_list_id: str, fade_in_time: float | None = None) -> dict:
    return previous_cue(cue_list_id, fade_in_time)


@Mcp.tool(name="lacylights_go_to_cue", description="Jump to a cue by zero-based index within the cue list.")
def lacylights_go_to_cue_tool(cue_list_id: str, cue_index: int, fade_in_time: float | None = None) -> dict:
    return go_to_cue(cue_list_id, cue_index, fade_in_time)


@Mcp.tool(name="lacylights_stop_cue_list", description="Stop a playing cue list.")
def lacylights_stop_cue_list_tool(cue_list_id: str) -> dict:
    return stop_cue_list(cue_list_id)


@Mcp.tool(
    name="lacylights_get_cue_list_status",
    description="Get playback status for a cue list (playing/paused/fading, current/next/previous cue).",
)
def lacylights_get_cue_list_status_tool(cue_list_id: str) -> dict:
    return get_cue_list_status(cue_list_id)


# ---- Look boards ----

@Mcp.tool(name="lacylights_list_look_boards", description="List look boards in a project.")
def lacylights_list_look_boards_tool(project_id: str) -> dict:
    return list_look_boards(project_id)


@Mcp.tool(
    name="lacylights_activate_look_from_board",
    description="Activate a look through a look board (uses the board's default fade unless overridden).",
)
def lacylights_activate_look_from_board_tool(
    look_board_id: str, look_id: str, fade_time_override: float | None = None
) -> dict:
    return activate_look_from_board(look_board_id, look_id, fade_time_override)


@Mcp.tool(
    name="lacylights_bulk_delete_look_boards",
    description="Delete several look boards at once. Requires confirm_delete=true. Reports per-id failures.",
)
def lacylights_bulk_delete_look_boards_tool(look_board_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_look_boards(look_board_ids, confirm_delete=confirm_delete)


@Mcp.tool(
    name="lacylights_bulk_delete_look_board_buttons",
    description="Remove several buttons from look boards at once. Requires confirm_delete=true.",
)
def lacylights_bulk_delete_look_board_buttons_tool(button_ids: list[str], confirm_delete: bool = False) -> dict:
    return bulk_delete_look_board_buttons(button_ids, confirm_delete=confirm_delete)


# ---- Settings / system ----

@Mcp.tool(name="lacylights_get_fade_update_rate", description="Get the DMX fade engine update rate in Hz (default 60).")
def lacylights_get_fade_update_rate_tool() -> dict:
    return get_fade_update_rate()


@Mcp.tool(name="lacylights_set_fade_update_rate", description="Set the DMX fade engine update rate (10-120 Hz).")
def lacylights_set_fade_update_rate_tool(rate_hz: int) -> dict:
    return set_fade_update_rate(rate_hz)


@Mcp.tool(name="lacylights_get_build_info", description="Get the LacyLights backend version and git commit.")
def lacylights_get_build_info_tool() -> dict:
    return get_build_info()


# ---- Undo / redo ----

@Mcp.tool(name="lacylights_undo", description="Undo the most recent change in a project.")
def lacylights_undo_tool(project_id: str) -> dict:
    return undo(project_id)


@Mcp.tool(name="lacylights_redo", description="Redo the most recently undone change in a project.")
def lacylights_redo_tool(project_id: str) -> dict:
    return redo(project_id)


@Mcp.tool(name="lacylights_get_undo_redo_status", description="Get whether undo/redo is available for a project.")
def lacylights_get_undo_redo_status_tool(project_id: str) -> dict:
    return get_undo_redo_status(project_id)


# In 0.6.1: mount without passing a registry object or Mcp() instance
mount_mcp(app, url_prefix="/mcp", middlewares=[mw_auth, mw_ratelimit, mw_cors])


def run_startup_handshake() -> None:
    """Attach the device fingerprint and log whether this server may control lights.

    A backend that is down at startup is not fatal; tools will report the
    failure when they are called.
    """
    try:
        report = startup_handshake()
    except GraphQLClientError as e:
        log.warning("Device handshake failed (%s): %s", e.kind, e.message)
        return
    if report.get("skipped"):
        return
    if not report.get("has_access"):
        log.warning("Device %s is %s: %s", report.get("fingerprint"), report.get("status"), report.get("message"))


if __name__ == "__main__":
    setup_logging()
    run_startup_handshake()
    app.run(host="127.0.0.1", port=3334, debug=False, use_reloader=False, threaded=True)
