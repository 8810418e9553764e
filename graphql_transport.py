# graphql_transport.py
"""GraphQL request building, HTTP transport and response classification.

Every backend call goes through here:

    build_request() -> post_graphql() -> classify_response()

post_graphql() owns the network I/O (aiohttp) and the two transport-level
failure kinds; classify_response() turns an in-band ``errors`` list into an
ExecutionError or a DeviceNotApprovedError. All failures are raised as
subclasses of GraphQLClientError, each tagged with a ``kind`` string so tool
code can branch on ``err.kind`` instead of isinstance chains.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

import aiohttp


log = logging.getLogger(__name__)

Json = dict[str, Any]

CONTENT_TYPE_HEADER = "Content-Type"
FINGERPRINT_HEADER = "X-Device-Fingerprint"
DEVICE_NOT_APPROVED_CODE = "DEVICE_NOT_APPROVED"
UNKNOWN_ERROR_MESSAGE = "Unknown GraphQL error"
UNKNOWN_FINGERPRINT = "unknown"

# Transport error messages carry at most this many characters of the body.
ERROR_BODY_EXCERPT_CHARS = 500


# ---------- errors ----------


class GraphQLClientError(Exception):
    kind = "client"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Json:
        return {"kind": self.kind, "message": self.message}


class NetworkError(GraphQLClientError):
    """The connection attempt itself did not complete (DNS, refused, reset)."""

    kind = "network"


class TransportError(GraphQLClientError):
    """The server answered, but not with a usable 2xx JSON body."""

    kind = "transport"

    def __init__(self, message: str, status: int, status_text: str = "", body_excerpt: str = "") -> None:
        super().__init__(message)
        self.status = int(status)
        self.status_text = status_text
        self.body_excerpt = body_excerpt

    def to_dict(self) -> Json:
        return {**super().to_dict(), "status": self.status, "status_text": self.status_text}


class ExecutionError(GraphQLClientError):
    """In-band error reported inside a 2xx GraphQL response."""

    kind = "execution"


class DeviceNotApprovedError(ExecutionError):
    """The backend refused the call because this device is not approved."""

    kind = "device_denied"
    name = "DeviceNotApprovedError"

    def __init__(self, message: str, fingerprint: Optional[str]) -> None:
        super().__init__(message)
        self.fingerprint = fingerprint or UNKNOWN_FINGERPRINT

    def to_dict(self) -> Json:
        return {**super().to_dict(), "name": self.name, "fingerprint": self.fingerprint}


class RequestTimeoutError(GraphQLClientError):
    kind = "timeout"

    def __init__(self, message: str, deadline_s: float) -> None:
        super().__init__(message)
        self.deadline_s = float(deadline_s)

    def to_dict(self) -> Json:
        return {**super().to_dict(), "deadline_s": self.deadline_s}


class RequestCancelledError(GraphQLClientError):
    kind = "cancelled"


# ---------- request / session ----------


@dataclass(frozen=True)
class GraphQLRequest:
    operation_name: str
    document: str
    variables: Mapping[str, Any] = field(default_factory=dict)

    def payload(self) -> Json:
        return {"query": self.document, "variables": dict(self.variables)}


def build_request(operation_name: str, document: str, variables: Optional[Mapping[str, Any]] = None) -> GraphQLRequest:
    # The document is opaque here; variables must already be JSON-serializable.
    return GraphQLRequest(
        operation_name=str(operation_name),
        document=document,
        variables=MappingProxyType(dict(variables or {})),
    )


@dataclass(frozen=True)
class GatewaySession:
    """Per-call view of the client identity.

    Immutable: changing the fingerprint produces a new session, so a request
    that captured a session keeps using the same fingerprint for its header and
    for error classification even if the owner swaps sessions mid-flight.
    """

    endpoint: str
    fingerprint: Optional[str] = None

    def with_fingerprint(self, fingerprint: Optional[str]) -> "GatewaySession":
        fp = str(fingerprint).strip() if fingerprint is not None else ""
        return GatewaySession(endpoint=self.endpoint, fingerprint=fp or None)


def build_headers(session: GatewaySession) -> dict[str, str]:
    headers = {CONTENT_TYPE_HEADER: "application/json"}
    # No fingerprint means no header at all, never an empty value.
    if session.fingerprint is not None:
        headers[FINGERPRINT_HEADER] = session.fingerprint
    return headers


class CancelToken:
    """Thread-safe cancellation flag that can abort in-flight requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for cb in callbacks:
            cb()

    def add_callback(self, cb: Callable[[], None]) -> bool:
        """Register cb; returns False (without registering) if already cancelled."""
        with self._lock:
            if self._cancelled:
                return False
            self._callbacks.append(cb)
            return True

    def remove_callback(self, cb: Callable[[], None]) -> None:
        with self._lock:
            if cb in self._callbacks:
                self._callbacks.remove(cb)


# ---------- transport ----------


def _excerpt(text: str, limit: int = ERROR_BODY_EXCERPT_CHARS) -> str:
    text = text or ""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


async def _post_once(request: GraphQLRequest, session: GatewaySession) -> Json:
    headers = build_headers(session)
    # Deadlines are enforced by post_graphql(); aiohttp's own total timeout is disabled.
    timeout = aiohttp.ClientTimeout(total=None)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as s:
            async with s.post(session.endpoint, json=request.payload(), headers=headers) as r:
                text = await r.text(errors="replace")
                status = int(r.status)
                reason = str(r.reason or "")
    except aiohttp.ClientError as e:
        log.warning("GraphQL %s: network failure: %s", request.operation_name, e)
        raise NetworkError(str(e)) from e
    except OSError as e:
        log.warning("GraphQL %s: network failure: %s", request.operation_name, e)
        raise NetworkError(str(e)) from e

    if status < 200 or status >= 300:
        excerpt = _excerpt(text)
        msg = f"GraphQL request failed with status {status} {reason}".rstrip()
        if excerpt:
            msg = f"{msg}: {excerpt}"
        log.warning("GraphQL %s: HTTP %s %s", request.operation_name, status, reason)
        raise TransportError(msg, status=status, status_text=reason, body_excerpt=excerpt)

    try:
        envelope = json.loads(text)
    except ValueError as e:
        raise TransportError(
            f"GraphQL response was not valid JSON: {_excerpt(text)}",
            status=status,
            status_text=reason,
            body_excerpt=_excerpt(text),
        ) from e
    if not isinstance(envelope, dict):
        raise TransportError(
            f"GraphQL response was not valid JSON: {_excerpt(text)}",
            status=status,
            status_text=reason,
            body_excerpt=_excerpt(text),
        )
    return envelope


async def post_graphql(
    request: GraphQLRequest,
    session: GatewaySession,
    timeout_s: Optional[float] = None,
    cancel: Optional[CancelToken] = None,
) -> Json:
    """Send one request and return the decoded response envelope.

    Raises NetworkError, TransportError, RequestTimeoutError or
    RequestCancelledError. A timeout_s of None (or <= 0) means no deadline.
    """

    log.debug(
        "GraphQL %s -> %s (fingerprint header: %s)",
        request.operation_name,
        session.endpoint,
        "yes" if session.fingerprint is not None else "no",
    )

    if cancel is not None and cancel.cancelled:
        raise RequestCancelledError(f"GraphQL request {request.operation_name} was cancelled")

    deadline = float(timeout_s) if timeout_s is not None and float(timeout_s) > 0 else None
    loop = asyncio.get_running_loop()
    post_task = asyncio.ensure_future(_post_once(request, session))
    cancelled = loop.create_future()

    def _on_cancel() -> None:
        loop.call_soon_threadsafe(lambda: cancelled.done() or cancelled.set_result(None))

    if cancel is not None and not cancel.add_callback(_on_cancel):
        _on_cancel()

    try:
        done, _ = await asyncio.wait({post_task, cancelled}, timeout=deadline, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel is not None:
            cancel.remove_callback(_on_cancel)
        if not cancelled.done():
            cancelled.cancel()

    if post_task in done:
        return post_task.result()

    post_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await post_task

    if cancelled in done:
        raise RequestCancelledError(f"GraphQL request {request.operation_name} was cancelled")
    raise RequestTimeoutError(
        f"GraphQL request {request.operation_name} timed out after {deadline}s",
        deadline_s=deadline or 0.0,
    )


# ---------- classification ----------


def _error_message(entry: Any) -> str:
    if isinstance(entry, dict):
        msg = entry.get("message")
        if isinstance(msg, str) and msg:
            return msg
    return UNKNOWN_ERROR_MESSAGE


def is_device_denial(entry: Any, message: str) -> bool:
    extensions = entry.get("extensions") if isinstance(entry, dict) else None
    if isinstance(extensions, dict) and extensions.get("code") == DEVICE_NOT_APPROVED_CODE:
        return True
    return "device not approved" in message.lower()


def classify_response(envelope: Mapping[str, Any], session: GatewaySession) -> Any:
    """Return ``data`` for a successful envelope, raise otherwise.

    Only the first entry of a non-empty ``errors`` list is surfaced.
    """

    errors = envelope.get("errors")
    if errors:
        first = errors[0] if isinstance(errors, list) else errors
        message = _error_message(first)
        if is_device_denial(first, message):
            log.warning("Device not approved (fingerprint=%s)", "set" if session.fingerprint else "unset")
            raise DeviceNotApprovedError(message, session.fingerprint)
        raise ExecutionError(message)

    if "data" not in envelope:
        raise ExecutionError("Malformed GraphQL response: no data and no errors")
    return envelope["data"]
