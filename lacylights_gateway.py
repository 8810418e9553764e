# lacylights_gateway.py

from __future__ import annotations

import asyncio
from concurrent.futures import TimeoutError as FuturesTimeoutError
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from bulk_results import BulkResult
from device_auth import AuthSettings, DeviceCheckResult, DeviceRegistrationResult
from graphql_transport import (
    CancelToken,
    GatewaySession,
    build_request,
    classify_response,
    post_graphql,
)


log = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "http://localhost:4000/graphql"
DEFAULT_REQUEST_TIMEOUT_S = 30.0

_DEVICE_FIELDS = """
      id
      name
      fingerprint
      status
      permissions
      createdAt
      approvedAt
      lastSeenAt
"""


class AsyncLoopThread:
    """Owns exactly one asyncio event loop running forever in a daemon thread."""

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._started = False

    def start(self) -> None:
        if not self._started:
            self._thread.start()
            self._started = True

    def stop(self) -> None:
        if self._started:
            # call_soon_threadsafe is queued even if run_forever has not begun yet.
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)

    def _run(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def run(self, coro, timeout_s: float | None = None) -> Any:
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return fut.result(timeout=timeout_s)
        except FuturesTimeoutError as e:
            # concurrent.futures.TimeoutError has an empty string message by default;
            # raise something that is useful for tool callers.
            raise RuntimeError(f"Timeout waiting for async operation (timeout={timeout_s}s)") from e


@dataclass(frozen=True)
class Config:
    endpoint: str
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S
    device_fingerprint: Optional[str] = None
    device_name: Optional[str] = None
    device_auth: bool = True


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return bool(default)
    return str(raw).strip().lower() in {"1", "true", "yes", "on"}


def load_config(cfg_path: Optional[str] = None) -> Config:
    """Merge config.json (optional) with LACYLIGHTS_* environment overrides."""

    env_cfg = (os.environ.get("LACYLIGHTS_CONFIG_PATH") or "").strip()
    path = Path(cfg_path or env_cfg) if (cfg_path or env_cfg) else Path(__file__).with_name("config.json")

    data: dict[str, Any] = {}
    if path.exists():
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise RuntimeError(f"Invalid config file {str(path)!r}: not valid JSON") from e
        if not isinstance(loaded, dict):
            raise RuntimeError(f"Invalid config file {str(path)!r}: expected a JSON object")
        data = loaded

    endpoint = (
        (os.environ.get("LACYLIGHTS_GRAPHQL_ENDPOINT") or "").strip()
        or str(data.get("endpoint") or "").strip()
        or (DEFAULT_ENDPOINT if "endpoint" not in data else "")
    )
    if not endpoint:
        raise RuntimeError(
            "Missing LacyLights GraphQL endpoint. Set LACYLIGHTS_GRAPHQL_ENDPOINT or a non-empty 'endpoint' in config.json."
        )

    try:
        file_timeout = float(data.get("request_timeout_s", DEFAULT_REQUEST_TIMEOUT_S))
    except (TypeError, ValueError):
        file_timeout = DEFAULT_REQUEST_TIMEOUT_S

    fingerprint = (os.environ.get("LACYLIGHTS_DEVICE_FINGERPRINT") or "").strip() or str(
        data.get("device_fingerprint") or ""
    ).strip()
    device_name = (os.environ.get("LACYLIGHTS_DEVICE_NAME") or "").strip() or str(data.get("device_name") or "").strip()

    return Config(
        endpoint=endpoint,
        request_timeout_s=_env_float("LACYLIGHTS_REQUEST_TIMEOUT_S", file_timeout),
        device_fingerprint=fingerprint or None,
        device_name=device_name or None,
        device_auth=_env_bool("LACYLIGHTS_DEVICE_AUTH", bool(data.get("device_auth", True))),
    )


class LacyLightsGateway:
    """
    Sync facade for Flask/MCP tools.

    Internally schedules ALL GraphQL round trips on a single asyncio loop thread.

    Usage contract: the fingerprint is normally set once at startup. Swapping it
    while calls are in flight is safe (each call uses the session it captured
    when it started) but which calls see the new value is not defined.
    """

    def __init__(self, cfg_path: Optional[str] = None, config: Optional[Config] = None) -> None:
        self._cfg = config or load_config(cfg_path)

        self._loop_thread = AsyncLoopThread()
        self._loop_thread.start()

        self._session_lock = threading.Lock()
        self._session = GatewaySession(endpoint=self._cfg.endpoint)

    @property
    def config(self) -> Config:
        return self._cfg

    # ---------- session ----------

    def session(self) -> GatewaySession:
        with self._session_lock:
            return self._session

    def set_fingerprint(self, fingerprint: Optional[str]) -> None:
        with self._session_lock:
            self._session = self._session.with_fingerprint(fingerprint)

    def get_fingerprint(self) -> Optional[str]:
        return self.session().fingerprint

    def clear_fingerprint(self) -> None:
        self.set_fingerprint(None)

    def close(self) -> None:
        self._loop_thread.stop()

    # ---------- core ----------

    async def _execute_async(
        self,
        session: GatewaySession,
        operation_name: str,
        document: str,
        variables: Optional[Mapping[str, Any]],
        timeout_s: Optional[float],
        cancel: Optional[CancelToken],
    ) -> Any:
        request = build_request(operation_name, document, variables)
        envelope = await post_graphql(request, session, timeout_s=timeout_s, cancel=cancel)
        return classify_response(envelope, session)

    def execute(
        self,
        operation_name: str,
        document: str,
        variables: Optional[Mapping[str, Any]] = None,
        timeout_s: Optional[float] = None,
        cancel: Optional[CancelToken] = None,
    ) -> Any:
        """Run one GraphQL operation and return its ``data``.

        timeout_s=None uses the configured request timeout; 0 disables the deadline.
        """

        session = self.session()
        deadline = self._cfg.request_timeout_s if timeout_s is None else float(timeout_s)
        return self._loop_thread.run(self._execute_async(session, operation_name, document, variables, deadline, cancel))

    # ---------- device authorization ----------

    def check_device(self, fingerprint: str, cancel: Optional[CancelToken] = None) -> DeviceCheckResult:
        data = self.execute(
            "CheckDeviceAuthorization",
            """
            query CheckDeviceAuthorization($fingerprint: String!) {
              checkDeviceAuthorization(fingerprint: $fingerprint) {
                status
                message
                device {%s}
              }
            }
            """
            % _DEVICE_FIELDS,
            {"fingerprint": fingerprint},
            cancel=cancel,
        )
        return DeviceCheckResult.from_payload((data or {}).get("checkDeviceAuthorization"))

    def register_device(self, fingerprint: str, name: str, cancel: Optional[CancelToken] = None) -> DeviceRegistrationResult:
        data = self.execute(
            "RegisterDevice",
            """
            mutation RegisterDevice($fingerprint: String!, $name: String!) {
              registerDevice(fingerprint: $fingerprint, name: $name) {
                success
                message
                device {%s}
              }
            }
            """
            % _DEVICE_FIELDS,
            {"fingerprint": fingerprint, "name": name},
            cancel=cancel,
        )
        return DeviceRegistrationResult.from_payload((data or {}).get("registerDevice"))

    def get_auth_settings(self) -> AuthSettings:
        data = self.execute(
            "GetAuthSettings",
            """
            query GetAuthSettings {
              authSettings {
                authEnabled
                deviceAuthEnabled
              }
            }
            """,
        )
        return AuthSettings.from_payload((data or {}).get("authSettings"))

    # ---------- projects ----------

    def get_projects(self, with_counts: bool = False) -> list[dict[str, Any]]:
        counts = "fixtureCount\n            lookCount\n            cueListCount" if with_counts else ""
        data = self.execute(
            "GetProjects",
            f"""
            query GetProjects {{
              projects {{
                id
                name
                description
                createdAt
                updatedAt
                {counts}
              }}
            }}
            """,
        )
        return list((data or {}).get("projects") or [])

    def get_project(self, project_id: str) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetProject",
            """
            query GetProject($id: ID!) {
              project(id: $id) {
                id
                name
                description
                createdAt
                updatedAt
                fixtureCount
                lookCount
                cueListCount
                fixtures {
                  id
                  name
                  universe
                  startChannel
                  channelCount
                  manufacturer
                  model
                  type
                }
                looks { id name description }
                cueLists { id name }
              }
            }
            """,
            {"id": project_id},
        )
        return (data or {}).get("project")

    def create_project(self, name: str, description: Optional[str] = None) -> dict[str, Any]:
        data = self.execute(
            "CreateProject",
            """
            mutation CreateProject($input: CreateProjectInput!) {
              createProject(input: $input) {
                id
                name
                description
                createdAt
              }
            }
            """,
            {"input": {"name": name, "description": description}},
        )
        return (data or {}).get("createProject") or {}

    def delete_project(self, project_id: str) -> bool:
        data = self.execute(
            "DeleteProject",
            "mutation DeleteProject($id: ID!) { deleteProject(id: $id) }",
            {"id": project_id},
        )
        return bool((data or {}).get("deleteProject"))

    # ---------- fixtures ----------

    def get_project_fixtures(self, project_id: str) -> Optional[list[dict[str, Any]]]:
        data = self.execute(
            "GetProjectFixtures",
            """
            query GetProjectFixtures($id: ID!) {
              project(id: $id) {
                id
                fixtures {
                  id
                  name
                  description
                  universe
                  startChannel
                  channelCount
                  manufacturer
                  model
                  modeName
                  type
                  tags
                }
              }
            }
            """,
            {"id": project_id},
        )
        project = (data or {}).get("project")
        if project is None:
            return None
        return list(project.get("fixtures") or [])

    # ---------- looks ----------

    def get_project_looks(self, project_id: str) -> Optional[list[dict[str, Any]]]:
        data = self.execute(
            "GetProjectLooks",
            """
            query GetProjectLooks($id: ID!) {
              project(id: $id) {
                id
                looks {
                  id
                  name
                  description
                  updatedAt
                }
              }
            }
            """,
            {"id": project_id},
        )
        project = (data or {}).get("project")
        if project is None:
            return None
        return list(project.get("looks") or [])

    def get_look(self, look_id: str) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetLook",
            """
            query GetLook($id: ID!) {
              look(id: $id) {
                id
                name
                description
                createdAt
                updatedAt
                project { id name }
                fixtureValues {
                  fixture { id name }
                  channelValues
                }
              }
            }
            """,
            {"id": look_id},
        )
        return (data or {}).get("look")

    def set_look_live(self, look_id: str) -> bool:
        data = self.execute(
            "SetLookLive",
            "mutation SetLookLive($lookId: ID!) { setLookLive(lookId: $lookId) }",
            {"lookId": look_id},
        )
        return bool((data or {}).get("setLookLive"))

    def fade_to_black(self, fade_out_time: float) -> bool:
        data = self.execute(
            "FadeToBlack",
            "mutation FadeToBlack($fadeOutTime: Float!) { fadeToBlack(fadeOutTime: $fadeOutTime) }",
            {"fadeOutTime": float(fade_out_time)},
        )
        return bool((data or {}).get("fadeToBlack"))

    def get_current_active_look(self) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetCurrentActiveLook",
            """
            query GetCurrentActiveLook {
              currentActiveLook {
                id
                name
                description
                updatedAt
              }
            }
            """,
        )
        return (data or {}).get("currentActiveLook")

    # ---------- cues ----------

    def get_cue_list(self, cue_list_id: str) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetCueList",
            """
            query GetCueList($id: ID!) {
              cueList(id: $id) {
                id
                name
                description
                loop
                project { id }
                cues {
                  id
                  name
                  cueNumber
                  fadeInTime
                  fadeOutTime
                  followTime
                  notes
                  look { id name }
                }
              }
            }
            """,
            {"id": cue_list_id},
        )
        return (data or {}).get("cueList")

    def get_cue(self, cue_id: str) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetCue",
            """
            query GetCue($id: ID!) {
              cue(id: $id) {
                id
                name
                cueNumber
                fadeInTime
                fadeOutTime
                followTime
                easingType
                notes
                cueList { id }
                look { id name }
              }
            }
            """,
            {"id": cue_id},
        )
        return (data or {}).get("cue")

    def update_cue(self, cue_id: str, cue_input: Mapping[str, Any]) -> dict[str, Any]:
        data = self.execute(
            "UpdateCue",
            """
            mutation UpdateCue($id: ID!, $input: CreateCueInput!) {
              updateCue(id: $id, input: $input) {
                id
                name
                cueNumber
                fadeInTime
                fadeOutTime
                followTime
                easingType
                notes
                look { id name }
              }
            }
            """,
            {"id": cue_id, "input": dict(cue_input)},
        )
        return (data or {}).get("updateCue") or {}

    # ---------- playback ----------

    def start_cue_list(
        self, cue_list_id: str, start_from_cue: Optional[int] = None, fade_in_time: Optional[float] = None
    ) -> bool:
        data = self.execute(
            "StartCueList",
            """
            mutation StartCueList($cueListId: ID!, $startFromCue: Int, $fadeInTime: Float) {
              startCueList(cueListId: $cueListId, startFromCue: $startFromCue, fadeInTime: $fadeInTime)
            }
            """,
            {"cueListId": cue_list_id, "startFromCue": start_from_cue, "fadeInTime": fade_in_time},
        )
        return bool((data or {}).get("startCueList"))

    def next_cue(self, cue_list_id: str, fade_in_time: Optional[float] = None) -> bool:
        data = self.execute(
            "NextCue",
            """
            mutation NextCue($cueListId: ID!, $fadeInTime: Float) {
              nextCue(cueListId: $cueListId, fadeInTime: $fadeInTime)
            }
            """,
            {"cueListId": cue_list_id, "fadeInTime": fade_in_time},
        )
        return bool((data or {}).get("nextCue"))

    def previous_cue(self, cue_list_id: str, fade_in_time: Optional[float] = None) -> bool:
        data = self.execute(
            "PreviousCue",
            """
            mutation PreviousCue($cueListId: ID!, $fadeInTime: Float) {
              previousCue(cueListId: $cueListId, fadeInTime: $fadeInTime)
            }
            """,
            {"cueListId": cue_list_id, "fadeInTime": fade_in_time},
        )
        return bool((data or {}).get("previousCue"))

    def go_to_cue(self, cue_list_id: str, cue_index: int, fade_in_time: Optional[float] = None) -> bool:
        data = self.execute(
            "GoToCue",
            """
            mutation GoToCue($cueListId: ID!, $cueIndex: Int!, $fadeInTime: Float) {
              goToCue(cueListId: $cueListId, cueIndex: $cueIndex, fadeInTime: $fadeInTime)
            }
            """,
            {"cueListId": cue_list_id, "cueIndex": int(cue_index), "fadeInTime": fade_in_time},
        )
        return bool((data or {}).get("goToCue"))

    def stop_cue_list(self, cue_list_id: str) -> bool:
        data = self.execute(
            "StopCueList",
            "mutation StopCueList($cueListId: ID!) { stopCueList(cueListId: $cueListId) }",
            {"cueListId": cue_list_id},
        )
        return bool((data or {}).get("stopCueList"))

    def get_cue_list_playback_status(self, cue_list_id: str) -> Optional[dict[str, Any]]:
        data = self.execute(
            "GetCueListPlaybackStatus",
            """
            query GetCueListPlaybackStatus($cueListId: ID!) {
              cueListPlaybackStatus(cueListId: $cueListId) {
                cueListId
                currentCueIndex
                isPlaying
                isPaused
                isFading
                fadeProgress
                lastUpdated
                currentCue { id name cueNumber }
                nextCue { id name cueNumber }
                previousCue { id name cueNumber }
              }
            }
            """,
            {"cueListId": cue_list_id},
        )
        return (data or {}).get("cueListPlaybackStatus")

    # ---------- look boards ----------

    def get_look_boards(self, project_id: str) -> list[dict[str, Any]]:
        data = self.execute(
            "GetLookBoards",
            """
            query GetLookBoards($projectId: ID!) {
              lookBoards(projectId: $projectId) {
                id
                name
                description
                defaultFadeTime
                buttons {
                  id
                  look { id name }
                }
              }
            }
            """,
            {"projectId": project_id},
        )
        return list((data or {}).get("lookBoards") or [])

    def activate_look_from_board(
        self, look_board_id: str, look_id: str, fade_time_override: Optional[float] = None
    ) -> bool:
        data = self.execute(
            "ActivateLookFromBoard",
            """
            mutation ActivateLookFromBoard($lookBoardId: ID!, $lookId: ID!, $fadeTimeOverride: Float) {
              activateLookFromBoard(lookBoardId: $lookBoardId, lookId: $lookId, fadeTimeOverride: $fadeTimeOverride)
            }
            """,
            {"lookBoardId": look_board_id, "lookId": look_id, "fadeTimeOverride": fade_time_override},
        )
        return bool((data or {}).get("activateLookFromBoard"))

    # ---------- bulk deletes ----------

    def _bulk_delete(self, field: str, arg: str, ids: list[str]) -> BulkResult:
        op = field[0].upper() + field[1:]
        data = self.execute(
            op,
            f"""
            mutation {op}(${arg}: [ID!]!) {{
              {field}({arg}: ${arg}) {{
                successCount
                failedIds
              }}
            }}
            """,
            {arg: list(ids)},
        )
        return BulkResult.from_payload((data or {}).get(field))

    def bulk_delete_projects(self, project_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteProjects", "projectIds", project_ids)

    def bulk_delete_fixtures(self, fixture_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteFixtures", "fixtureIds", fixture_ids)

    def bulk_delete_looks(self, look_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteLooks", "lookIds", look_ids)

    def bulk_delete_cues(self, cue_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteCues", "cueIds", cue_ids)

    def bulk_delete_cue_lists(self, cue_list_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteCueLists", "cueListIds", cue_list_ids)

    def bulk_delete_look_boards(self, look_board_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteLookBoards", "lookBoardIds", look_board_ids)

    def bulk_delete_look_board_buttons(self, button_ids: list[str]) -> BulkResult:
        return self._bulk_delete("bulkDeleteLookBoardButtons", "buttonIds", button_ids)

    # ---------- settings ----------

    def get_setting(self, key: str) -> Optional[str]:
        data = self.execute(
            "GetSetting",
            """
            query GetSetting($key: String!) {
              setting(key: $key) {
                key
                value
              }
            }
            """,
            {"key": key},
        )
        setting = (data or {}).get("setting")
        return setting.get("value") if isinstance(setting, dict) else None

    def set_setting(self, key: str, value: str) -> dict[str, Any]:
        data = self.execute(
            "UpdateSetting",
            """
            mutation UpdateSetting($input: UpdateSettingInput!) {
              updateSetting(input: $input) {
                key
                value
                updatedAt
              }
            }
            """,
            {"input": {"key": key, "value": str(value)}},
        )
        return (data or {}).get("updateSetting") or {}

    def get_build_info(self) -> dict[str, Any]:
        data = self.execute(
            "GetBuildInfo",
            """
            query GetBuildInfo {
              buildInfo {
                version
                gitCommit
                buildTime
              }
            }
            """,
        )
        return (data or {}).get("buildInfo") or {}

    # ---------- undo / redo ----------

    def undo(self, project_id: str) -> dict[str, Any]:
        return self._history_step("undo", project_id)

    def redo(self, project_id: str) -> dict[str, Any]:
        return self._history_step("redo", project_id)

    def _history_step(self, field: str, project_id: str) -> dict[str, Any]:
        op = field.capitalize()
        data = self.execute(
            op,
            f"""
            mutation {op}($projectId: ID!) {{
              {field}(projectId: $projectId) {{
                success
                message
                restoredEntityId
                operation {{
                  id
                  description
                  operationType
                  entityType
                  sequence
                }}
              }}
            }}
            """,
            {"projectId": project_id},
        )
        return (data or {}).get(field) or {}

    def get_undo_redo_status(self, project_id: str) -> dict[str, Any]:
        data = self.execute(
            "GetUndoRedoStatus",
            """
            query GetUndoRedoStatus($projectId: ID!) {
              undoRedoStatus(projectId: $projectId) {
                projectId
                canUndo
                canRedo
                undoDescription
                redoDescription
                currentSequence
                totalOperations
              }
            }
            """,
            {"projectId": project_id},
        )
        return (data or {}).get("undoRedoStatus") or {}
