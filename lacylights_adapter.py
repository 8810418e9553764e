# lacylights_adapter.py
from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Dict, List, Optional, TypeVar

from bulk_results import bulk_tool_result
from device_auth import DeviceStatus, ensure_device_access
from device_fingerprint import get_device_fingerprint, get_device_name
from graphql_transport import DeviceNotApprovedError, GraphQLClientError
from lacylights_gateway import LacyLightsGateway

Json = Dict[str, Any]
F = TypeVar("F", bound=Callable[..., Any])

log = logging.getLogger(__name__)

# Single shared gateway instance for the process
gateway = LacyLightsGateway()

DEFAULT_FADE_UPDATE_RATE_HZ = 60
FADE_UPDATE_RATE_KEY = "fade_update_rate"


class ToolValidationError(ValueError):
    """Bad tool arguments, or a referenced entity that does not exist."""

    kind = "validation"


class ToolOperationError(Exception):
    """A tool call failed; message is 'Failed to <operation>: <cause>'."""

    def __init__(self, operation: str, cause: Exception) -> None:
        reason = getattr(cause, "message", None) or str(cause) or cause.__class__.__name__
        super().__init__(f"Failed to {operation}: {reason}")
        self.operation = operation
        self.cause = cause
        self.kind = getattr(cause, "kind", "client")

    def to_dict(self) -> Json:
        out: Json = {"operation": self.operation, "kind": self.kind, "error": str(self)}
        if isinstance(self.cause, DeviceNotApprovedError):
            out["fingerprint"] = self.cause.fingerprint
            out["hint"] = "Approve this device's fingerprint in LacyLights, then retry."
        return out


def tool_operation(operation: str) -> Callable[[F], F]:
    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return fn(*args, **kwargs)
            except (GraphQLClientError, ValueError, TypeError) as e:
                raise ToolOperationError(operation, e) from e

        return wrapper  # type: ignore[return-value]

    return decorator


def _require_ids(ids: Any, what: str) -> List[str]:
    if not isinstance(ids, (list, tuple)) or not ids:
        raise ToolValidationError(f"No {what} IDs provided")
    return [str(i) for i in ids]


def _require_confirm(confirm_delete: bool, what: str) -> None:
    if not confirm_delete:
        raise ToolValidationError(f"confirm_delete must be true to delete {what}")


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ToolValidationError(f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ToolValidationError(f"{name} must be an integer") from None


def _as_float(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ToolValidationError(f"{name} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ToolValidationError(f"{name} must be a number") from None


def _opt_float(value: Any, name: str) -> Optional[float]:
    return None if value is None else _as_float(value, name)


# --------- Device authorization ---------


def startup_handshake() -> Json:
    """Attach this machine's fingerprint and run the approval handshake (if enabled)."""
    cfg = gateway.config
    fingerprint = cfg.device_fingerprint or get_device_fingerprint()
    if not cfg.device_auth:
        gateway.set_fingerprint(fingerprint)
        log.info("Device handshake disabled by configuration")
        return {"ok": True, "skipped": True, "fingerprint": fingerprint}
    report = ensure_device_access(gateway, fingerprint, cfg.device_name or get_device_name())
    return {"ok": True, "skipped": False, **report.to_dict()}


@tool_operation("check device status")
def device_status() -> Json:
    fingerprint = gateway.get_fingerprint() or gateway.config.device_fingerprint or get_device_fingerprint()
    result = gateway.check_device(fingerprint)
    hints = {
        DeviceStatus.UNKNOWN: "This device is not registered. Use lacylights_device_register to request access.",
        DeviceStatus.PENDING: "Registration is awaiting approval by an operator in LacyLights.",
        DeviceStatus.APPROVED: None,
        DeviceStatus.REVOKED: "Access for this device was revoked by an operator.",
    }
    return {"ok": True, "fingerprint": fingerprint, **result.to_dict(), "hint": hints[result.status]}


@tool_operation("register device")
def device_register(device_name: Optional[str] = None) -> Json:
    fingerprint = gateway.get_fingerprint() or gateway.config.device_fingerprint or get_device_fingerprint()
    name = (device_name or "").strip() or gateway.config.device_name or get_device_name()
    result = gateway.register_device(fingerprint, name)
    # A rejected registration is an answer, not a failure.
    return {"ok": True, "fingerprint": fingerprint, "name": name, **result.to_dict()}


@tool_operation("get auth settings")
def auth_settings() -> Json:
    return {"ok": True, **gateway.get_auth_settings().to_dict()}


# --------- Projects ---------


@tool_operation("list projects")
def list_projects(include_details: bool = False) -> Json:
    projects = gateway.get_projects(with_counts=bool(include_details))
    rows = []
    for p in projects:
        row = {"id": p.get("id"), "name": p.get("name"), "description": p.get("description")}
        if include_details:
            row.update(
                {
                    "created_at": p.get("createdAt"),
                    "updated_at": p.get("updatedAt"),
                    "fixture_count": p.get("fixtureCount"),
                    "look_count": p.get("lookCount"),
                    "cue_list_count": p.get("cueListCount"),
                }
            )
        rows.append(row)
    return {"ok": True, "projects": rows, "total_projects": len(rows)}


def _channel_ranges(fixtures: List[Json]) -> str:
    spans = sorted(
        (int(f.get("universe") or 0), int(f.get("startChannel") or 0), int(f.get("channelCount") or 0))
        for f in fixtures
        if isinstance(f, dict)
    )
    if not spans:
        return "None"
    merged: list[list[int]] = []
    for universe, start, count in spans:
        end = start + max(count, 1) - 1
        if merged and merged[-1][0] == universe and start <= merged[-1][2] + 1:
            merged[-1][2] = max(merged[-1][2], end)
        else:
            merged.append([universe, start, end])
    return ", ".join(f"U{u}:{s}" if s == e else f"U{u}:{s}-{e}" for u, s, e in merged)


@tool_operation("get project details")
def get_project_details(project_id: str) -> Json:
    project = gateway.get_project(str(project_id))
    if project is None:
        raise ToolValidationError(f"Project {project_id} not found")
    fixtures = list(project.get("fixtures") or [])
    return {
        "ok": True,
        "project": {
            "id": project.get("id"),
            "name": project.get("name"),
            "description": project.get("description"),
            "created_at": project.get("createdAt"),
            "updated_at": project.get("updatedAt"),
        },
        "fixtures": fixtures,
        "looks": list(project.get("looks") or []),
        "cue_lists": list(project.get("cueLists") or []),
        "summary": {
            "fixture_count": project.get("fixtureCount", len(fixtures)),
            "look_count": project.get("lookCount"),
            "cue_list_count": project.get("cueListCount"),
            "channels_used": _channel_ranges(fixtures),
        },
    }


@tool_operation("create project")
def create_project(project_name: str, description: Optional[str] = None) -> Json:
    name = str(project_name or "").strip()
    if not name:
        raise ToolValidationError("project_name is required")
    project = gateway.create_project(name, description)
    return {
        "ok": True,
        "project": {
            "id": project.get("id"),
            "name": project.get("name"),
            "description": project.get("description"),
            "created_at": project.get("createdAt"),
        },
        "message": f"Created project {project.get('name')!r}",
    }


@tool_operation("delete project")
def delete_project(project_id: str, confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "a project")
    deleted = gateway.delete_project(str(project_id))
    return {
        "ok": True,
        "success": deleted,
        "project_id": str(project_id),
        "message": "Project deleted" if deleted else "Project was not deleted",
    }


@tool_operation("bulk delete projects")
def bulk_delete_projects(project_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "projects")
    ids = _require_ids(project_ids, "project")
    return bulk_tool_result(gateway.bulk_delete_projects(ids), ids, "projects")


# --------- Fixtures ---------


@tool_operation("list fixtures")
def list_fixtures(project_id: str) -> Json:
    fixtures = gateway.get_project_fixtures(str(project_id))
    if fixtures is None:
        raise ToolValidationError(f"Project {project_id} not found")
    rows = []
    for f in fixtures:
        start = int(f.get("startChannel") or 0)
        count = int(f.get("channelCount") or 0)
        rows.append(
            {
                "id": f.get("id"),
                "name": f.get("name"),
                "manufacturer": f.get("manufacturer"),
                "model": f.get("model"),
                "mode": f.get("modeName"),
                "type": f.get("type"),
                "universe": f.get("universe"),
                "start_channel": start,
                "channel_count": count,
                "channel_range": f"{start}-{start + count - 1}" if count > 0 else str(start),
                "tags": list(f.get("tags") or []),
            }
        )
    rows.sort(key=lambda r: (r.get("universe") or 0, r.get("start_channel") or 0))
    return {"ok": True, "project_id": str(project_id), "count": len(rows), "fixtures": rows}


@tool_operation("bulk delete fixtures")
def bulk_delete_fixtures(fixture_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "fixtures")
    ids = _require_ids(fixture_ids, "fixture")
    return bulk_tool_result(gateway.bulk_delete_fixtures(ids), ids, "fixtures")


# --------- Looks ---------


@tool_operation("list looks")
def list_looks(project_id: str) -> Json:
    looks = gateway.get_project_looks(str(project_id))
    if looks is None:
        raise ToolValidationError(f"Project {project_id} not found")
    return {"ok": True, "project_id": str(project_id), "count": len(looks), "looks": looks}


@tool_operation("get look")
def get_look(look_id: str) -> Json:
    look = gateway.get_look(str(look_id))
    if look is None:
        raise ToolValidationError(f"Look {look_id} not found")
    fixture_values = list(look.get("fixtureValues") or [])
    return {
        "ok": True,
        "look": {
            "id": look.get("id"),
            "name": look.get("name"),
            "description": look.get("description"),
            "project": look.get("project"),
            "updated_at": look.get("updatedAt"),
        },
        "fixture_values": [
            {
                "fixture_id": (fv.get("fixture") or {}).get("id"),
                "fixture_name": (fv.get("fixture") or {}).get("name"),
                "channel_values": list(fv.get("channelValues") or []),
            }
            for fv in fixture_values
            if isinstance(fv, dict)
        ],
        "fixture_count": len(fixture_values),
    }


@tool_operation("activate look")
def activate_look(look_id: str) -> Json:
    ok = gateway.set_look_live(str(look_id))
    return {"ok": True, "success": ok, "look_id": str(look_id)}


@tool_operation("fade to black")
def fade_to_black(fade_out_time: float = 3.0) -> Json:
    seconds = _as_float(fade_out_time, "fade_out_time")
    if seconds < 0:
        raise ToolValidationError("fade_out_time must be >= 0")
    ok = gateway.fade_to_black(seconds)
    return {"ok": True, "success": ok, "fade_out_time": seconds, "message": f"Fading to black over {seconds}s"}


@tool_operation("get current active look")
def get_current_active_look() -> Json:
    look = gateway.get_current_active_look()
    if look is None:
        return {"ok": True, "active": False, "look": None, "message": "No look is currently active"}
    return {"ok": True, "active": True, "look": look}


@tool_operation("bulk delete looks")
def bulk_delete_looks(look_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "looks")
    ids = _require_ids(look_ids, "look")
    return bulk_tool_result(gateway.bulk_delete_looks(ids), ids, "looks")


# --------- Cues ---------


@tool_operation("get cue list")
def get_cue_list(cue_list_id: str) -> Json:
    cue_list = gateway.get_cue_list(str(cue_list_id))
    if cue_list is None:
        raise ToolValidationError(f"Cue list {cue_list_id} not found")
    cues = sorted(
        (c for c in (cue_list.get("cues") or []) if isinstance(c, dict)),
        key=lambda c: float(c.get("cueNumber") or 0),
    )
    return {
        "ok": True,
        "cue_list": {
            "id": cue_list.get("id"),
            "name": cue_list.get("name"),
            "description": cue_list.get("description"),
            "loop": cue_list.get("loop"),
        },
        "cues": [
            {
                "id": c.get("id"),
                "name": c.get("name"),
                "cue_number": c.get("cueNumber"),
                "look": c.get("look"),
                "fade_in_time": c.get("fadeInTime"),
                "fade_out_time": c.get("fadeOutTime"),
                "follow_time": c.get("followTime"),
                "notes": c.get("notes"),
            }
            for c in cues
        ],
        "cue_count": len(cues),
    }


_UNSET: Any = object()


@tool_operation("update cue")
def update_cue(
    cue_id: str,
    cue_name: Optional[str] = None,
    cue_number: Optional[float] = None,
    look_id: Optional[str] = None,
    fade_in_time: Optional[float] = None,
    fade_out_time: Optional[float] = None,
    follow_time: Any = _UNSET,
    notes: Optional[str] = None,
) -> Json:
    """Read the cue, merge the changes, write it back.

    The backend mutation needs the full cue input (including its cue list),
    hence the read. Not atomic: a concurrent edit between the two calls is lost.
    """
    current = gateway.get_cue(str(cue_id))
    if current is None:
        raise ToolValidationError(f"Cue {cue_id} not found")

    merged = {
        "name": cue_name if cue_name is not None else current.get("name"),
        "cueNumber": cue_number if cue_number is not None else current.get("cueNumber"),
        "cueListId": (current.get("cueList") or {}).get("id"),
        "lookId": look_id if look_id is not None else (current.get("look") or {}).get("id"),
        "fadeInTime": fade_in_time if fade_in_time is not None else current.get("fadeInTime"),
        "fadeOutTime": fade_out_time if fade_out_time is not None else current.get("fadeOutTime"),
        "followTime": current.get("followTime") if follow_time is _UNSET else follow_time,
        "notes": notes if notes is not None else current.get("notes"),
    }
    if current.get("easingType") is not None:
        merged["easingType"] = current.get("easingType")

    updated = gateway.update_cue(str(cue_id), merged)
    return {
        "ok": True,
        "success": True,
        "cue": {
            "id": updated.get("id"),
            "name": updated.get("name"),
            "cue_number": updated.get("cueNumber"),
            "look": updated.get("look"),
            "fade_in_time": updated.get("fadeInTime"),
            "fade_out_time": updated.get("fadeOutTime"),
            "follow_time": updated.get("followTime"),
            "notes": updated.get("notes"),
        },
    }


@tool_operation("bulk delete cues")
def bulk_delete_cues(cue_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "cues")
    ids = _require_ids(cue_ids, "cue")
    return bulk_tool_result(gateway.bulk_delete_cues(ids), ids, "cues")


@tool_operation("bulk delete cue lists")
def bulk_delete_cue_lists(cue_list_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "cue lists")
    ids = _require_ids(cue_list_ids, "cue list")
    return bulk_tool_result(gateway.bulk_delete_cue_lists(ids), ids, "cue lists")


# --------- Playback ---------


@tool_operation("start cue list")
def start_cue_list(cue_list_id: str, start_from_cue: Optional[int] = None, fade_in_time: Optional[float] = None) -> Json:
    ok = gateway.start_cue_list(
        str(cue_list_id),
        _as_int(start_from_cue, "start_from_cue") if start_from_cue is not None else None,
        _opt_float(fade_in_time, "fade_in_time"),
    )
    return {"ok": True, "success": ok, "cue_list_id": str(cue_list_id), "start_from_cue": start_from_cue}


@tool_operation("go to next cue")
def next_cue(cue_list_id: str, fade_in_time: Optional[float] = None) -> Json:
    ok = gateway.next_cue(str(cue_list_id), _opt_float(fade_in_time, "fade_in_time"))
    return {"ok": True, "success": ok, "cue_list_id": str(cue_list_id)}


@tool_operation("go to previous cue")
def previous_cue(cue_list_id: str, fade_in_time: Optional[float] = None) -> Json:
    ok = gateway.previous_cue(str(cue_list_id), _opt_float(fade_in_time, "fade_in_time"))
    return {"ok": True, "success": ok, "cue_list_id": str(cue_list_id)}


@tool_operation("go to cue")
def go_to_cue(cue_list_id: str, cue_index: int, fade_in_time: Optional[float] = None) -> Json:
    index = _as_int(cue_index, "cue_index")
    if index < 0:
        raise ToolValidationError("cue_index must be >= 0")
    ok = gateway.go_to_cue(str(cue_list_id), index, _opt_float(fade_in_time, "fade_in_time"))
    return {"ok": True, "success": ok, "cue_list_id": str(cue_list_id), "cue_index": index}


@tool_operation("stop cue list")
def stop_cue_list(cue_list_id: str) -> Json:
    ok = gateway.stop_cue_list(str(cue_list_id))
    return {"ok": True, "success": ok, "cue_list_id": str(cue_list_id)}


@tool_operation("get cue list status")
def get_cue_list_status(cue_list_id: str) -> Json:
    status = gateway.get_cue_list_playback_status(str(cue_list_id))
    if status is None:
        return {"ok": True, "cue_list_id": str(cue_list_id), "is_playing": False, "message": "Cue list is not active"}
    return {
        "ok": True,
        "cue_list_id": status.get("cueListId") or str(cue_list_id),
        "is_playing": bool(status.get("isPlaying")),
        "is_paused": bool(status.get("isPaused")),
        "is_fading": bool(status.get("isFading")),
        "fade_progress": status.get("fadeProgress"),
        "current_cue_index": status.get("currentCueIndex"),
        "current_cue": status.get("currentCue"),
        "next_cue": status.get("nextCue"),
        "previous_cue": status.get("previousCue"),
        "last_updated": status.get("lastUpdated"),
    }


# --------- Look boards ---------


@tool_operation("list look boards")
def list_look_boards(project_id: str) -> Json:
    boards = gateway.get_look_boards(str(project_id))
    rows = [
        {
            "id": b.get("id"),
            "name": b.get("name"),
            "description": b.get("description"),
            "default_fade_time": b.get("defaultFadeTime"),
            "button_count": len(b.get("buttons") or []),
        }
        for b in boards
        if isinstance(b, dict)
    ]
    return {"ok": True, "project_id": str(project_id), "count": len(rows), "look_boards": rows}


@tool_operation("activate look from board")
def activate_look_from_board(look_board_id: str, look_id: str, fade_time_override: Optional[float] = None) -> Json:
    ok = gateway.activate_look_from_board(
        str(look_board_id),
        str(look_id),
        _opt_float(fade_time_override, "fade_time_override"),
    )
    return {"ok": True, "success": ok, "look_board_id": str(look_board_id), "look_id": str(look_id)}


@tool_operation("bulk delete look boards")
def bulk_delete_look_boards(look_board_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "look boards")
    ids = _require_ids(look_board_ids, "look board")
    return bulk_tool_result(gateway.bulk_delete_look_boards(ids), ids, "look boards")


@tool_operation("bulk delete look board buttons")
def bulk_delete_look_board_buttons(button_ids: List[str], confirm_delete: bool = False) -> Json:
    _require_confirm(confirm_delete, "buttons")
    ids = _require_ids(button_ids, "button")
    return bulk_tool_result(gateway.bulk_delete_look_board_buttons(ids), ids, "buttons")


# --------- Settings ---------


@tool_operation("get fade update rate")
def get_fade_update_rate() -> Json:
    value = gateway.get_setting(FADE_UPDATE_RATE_KEY)
    if value is None:
        return {
            "ok": True,
            "rate_hz": DEFAULT_FADE_UPDATE_RATE_HZ,
            "is_default": True,
            "message": f"Using default fade update rate ({DEFAULT_FADE_UPDATE_RATE_HZ}Hz)",
        }
    try:
        rate = int(str(value).strip())
    except ValueError:
        raise ValueError(f"Invalid fade update rate value: {value}") from None
    return {"ok": True, "rate_hz": rate, "is_default": False, "message": f"Current fade update rate is {rate}Hz"}


@tool_operation("set fade update rate")
def set_fade_update_rate(rate_hz: int) -> Json:
    rate = _as_int(rate_hz, "rate_hz")
    if rate < 10 or rate > 120:
        raise ToolValidationError("rate_hz must be between 10 and 120")
    gateway.set_setting(FADE_UPDATE_RATE_KEY, str(rate))
    return {
        "ok": True,
        "success": True,
        "rate_hz": rate,
        "message": f"Fade update rate set to {rate}Hz",
        "hint": "Higher rates (e.g., 120Hz) give smoother fades but use more CPU. Lower rates (e.g., 30Hz) are more efficient.",
    }


@tool_operation("get build info")
def get_build_info() -> Json:
    info = gateway.get_build_info()
    version = info.get("version")
    commit = str(info.get("gitCommit") or "")
    return {
        "ok": True,
        "version": version,
        "git_commit": commit,
        "build_time": info.get("buildTime"),
        "message": f"Backend server version {version} ({commit[:7]})",
    }


# --------- Undo / redo ---------


def _history_result(result: Json, action: str, done: str) -> Json:
    if not result.get("success"):
        return {"ok": True, "success": False, "message": result.get("message") or f"Nothing to {action}"}
    return {
        "ok": True,
        "success": True,
        "message": result.get("message") or f"Operation {done} successfully",
        "operation": result.get("operation"),
        "restored_entity_id": result.get("restoredEntityId"),
    }


@tool_operation("undo operation")
def undo(project_id: str) -> Json:
    return _history_result(gateway.undo(str(project_id)), "undo", "undone")


@tool_operation("redo operation")
def redo(project_id: str) -> Json:
    return _history_result(gateway.redo(str(project_id)), "redo", "redone")


@tool_operation("get undo/redo status")
def get_undo_redo_status(project_id: str) -> Json:
    status = gateway.get_undo_redo_status(str(project_id))
    return {
        "ok": True,
        "project_id": str(project_id),
        "can_undo": bool(status.get("canUndo")),
        "can_redo": bool(status.get("canRedo")),
        "undo_description": status.get("undoDescription"),
        "redo_description": status.get("redoDescription"),
        "current_sequence": status.get("currentSequence"),
        "total_operations": status.get("totalOperations"),
    }
