"""End-to-end transport tests against a real aiohttp endpoint."""

import asyncio
import threading
import time

import pytest
from aiohttp import web

from graphql_transport import (
    CancelToken,
    DeviceNotApprovedError,
    ExecutionError,
    NetworkError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportError,
)
from lacylights_gateway import Config, LacyLightsGateway


@pytest.fixture
def gateway(graphql_server):
    gw = LacyLightsGateway(config=Config(endpoint=graphql_server.url, request_timeout_s=5.0))
    try:
        yield gw
    finally:
        gw.close()


def _slow(server, delay_s: float = 1.5):
    async def _h(_body):
        await asyncio.sleep(delay_s)
        return web.json_response({"data": {"late": True}})

    server.handler = _h


def test_request_body_and_headers(graphql_server, gateway):
    graphql_server.respond_json({"data": {"projects": [{"id": "p1", "name": "Show"}]}})
    gateway.set_fingerprint("fp-123")

    projects = gateway.get_projects()

    assert projects == [{"id": "p1", "name": "Show"}]
    (req,) = graphql_server.received
    assert req.content_type.startswith("application/json")
    assert req.fingerprint == "fp-123"
    assert set(req.body) == {"query", "variables"}
    assert "projects" in req.body["query"]


def test_fingerprint_header_removed_after_clear(graphql_server, gateway):
    graphql_server.respond_json({"data": {"projects": []}})
    gateway.set_fingerprint("fp-123")
    gateway.get_projects()
    gateway.clear_fingerprint()
    gateway.get_projects()

    first, second = graphql_server.received
    assert first.has_fingerprint_header is True
    assert second.has_fingerprint_header is False


def test_variables_are_sent(graphql_server, gateway):
    graphql_server.respond_json({"data": {"bulkDeleteLooks": {"successCount": 2, "failedIds": []}}})
    result = gateway.bulk_delete_looks(["l1", "l2"])
    assert result.success_count == 2
    assert graphql_server.received[0].body["variables"] == {"lookIds": ["l1", "l2"]}


def test_http_error_is_transport_error_with_excerpt(graphql_server, gateway):
    graphql_server.respond_text("upstream exploded " + "z" * 600, status=502)

    with pytest.raises(TransportError) as ei:
        gateway.get_projects()

    err = ei.value
    assert err.kind == "transport"
    assert err.status == 502
    assert err.message.startswith("GraphQL request failed with status 502 Bad Gateway: upstream exploded")
    assert err.message.endswith("...")
    assert len(err.body_excerpt) == 503


def test_non_json_success_is_transport_error(graphql_server, gateway):
    graphql_server.respond_text("<html>proxy page</html>", status=200, content_type="text/html")
    with pytest.raises(TransportError) as ei:
        gateway.get_projects()
    assert "not valid JSON" in ei.value.message


def _undecodable(server, status):
    async def _h(_body):
        return web.Response(
            body=b"<html>\xff\xfe broken gateway</html>", status=status, content_type="text/html", charset="utf-8"
        )

    server.handler = _h


def test_undecodable_error_body_is_still_transport_error(graphql_server, gateway):
    _undecodable(graphql_server, 502)
    with pytest.raises(TransportError) as ei:
        gateway.get_projects()
    err = ei.value
    assert err.kind == "transport"
    assert err.status == 502
    assert "status 502" in err.message
    assert "broken gateway" in err.body_excerpt


def test_undecodable_success_body_is_not_valid_json(graphql_server, gateway):
    _undecodable(graphql_server, 200)
    with pytest.raises(TransportError) as ei:
        gateway.get_projects()
    assert ei.value.kind == "transport"
    assert "not valid JSON" in ei.value.message


def test_in_band_error_is_execution_error(graphql_server, gateway):
    graphql_server.respond_json({"data": None, "errors": [{"message": "Project not found"}]})
    with pytest.raises(ExecutionError) as ei:
        gateway.get_project("nope")
    assert ei.value.message == "Project not found"


def test_device_denial_carries_captured_fingerprint(graphql_server, gateway):
    graphql_server.respond_json(
        {"errors": [{"message": "Forbidden", "extensions": {"code": "DEVICE_NOT_APPROVED"}}]}
    )
    gateway.set_fingerprint("fp-abc")
    with pytest.raises(DeviceNotApprovedError) as ei:
        gateway.get_projects()
    assert ei.value.fingerprint == "fp-abc"


def test_unreachable_endpoint_is_network_error():
    gw = LacyLightsGateway(config=Config(endpoint="http://127.0.0.1:1/graphql", request_timeout_s=5.0))
    try:
        with pytest.raises(NetworkError) as ei:
            gw.get_projects()
        assert ei.value.kind == "network"
    finally:
        gw.close()


def test_deadline_raises_timeout(graphql_server, gateway):
    _slow(graphql_server)
    started = time.monotonic()
    with pytest.raises(RequestTimeoutError) as ei:
        gateway.execute("Slow", "query Slow { late }", timeout_s=0.2)
    assert ei.value.kind == "timeout"
    assert ei.value.deadline_s == pytest.approx(0.2)
    assert time.monotonic() - started < 1.5


def test_zero_timeout_disables_deadline(graphql_server, gateway):
    _slow(graphql_server, delay_s=0.3)
    assert gateway.execute("Slow", "query Slow { late }", timeout_s=0) == {"late": True}


def test_cancel_aborts_in_flight_request(graphql_server, gateway):
    _slow(graphql_server)
    token = CancelToken()
    timer = threading.Timer(0.2, token.cancel)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(RequestCancelledError) as ei:
            gateway.execute("Slow", "query Slow { late }", cancel=token)
    finally:
        timer.cancel()
    assert ei.value.kind == "cancelled"
    assert time.monotonic() - started < 1.5


def test_already_cancelled_token_sends_nothing(graphql_server, gateway):
    token = CancelToken()
    token.cancel()
    with pytest.raises(RequestCancelledError):
        gateway.execute("Ping", "query Ping { __typename }", cancel=token)
    assert graphql_server.received == []


def test_session_swap_does_not_affect_captured_call(graphql_server, gateway):
    started = threading.Event()

    async def _h(_body):
        started.set()
        await asyncio.sleep(0.3)
        return web.json_response({"errors": [{"message": "device not approved"}]})

    graphql_server.handler = _h
    gateway.set_fingerprint("fp-old")
    errors = []

    def _call():
        try:
            gateway.get_projects()
        except DeviceNotApprovedError as e:
            errors.append(e)

    t = threading.Thread(target=_call)
    t.start()
    assert started.wait(5)
    gateway.set_fingerprint("fp-new")
    t.join(5)

    assert graphql_server.received[0].fingerprint == "fp-old"
    assert errors and errors[0].fingerprint == "fp-old"


def test_close_right_after_construction_stops_loop_thread():
    for _ in range(20):
        gw = LacyLightsGateway(config=Config(endpoint="http://127.0.0.1:1/graphql"))
        gw.close()
        assert not gw._loop_thread._thread.is_alive()
