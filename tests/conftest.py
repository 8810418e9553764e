"""
Shared pytest bootstrap.

- Puts the repo root on sys.path so the flat modules (graphql_transport,
  lacylights_gateway, ...) import without an editable install.
- Points the process-wide gateway at a port nothing listens on and turns the
  device handshake off, so importing app.py never reaches a real backend.
- Provides ``graphql_server``: a real aiohttp GraphQL endpoint running on its
  own loop thread, with a swappable handler and a record of what it received.
"""

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("LACYLIGHTS_CONFIG_PATH", str(PROJECT_ROOT / "tests" / "no-such-config.json"))
os.environ.setdefault("LACYLIGHTS_GRAPHQL_ENDPOINT", "http://127.0.0.1:1/graphql")
os.environ.setdefault("LACYLIGHTS_DEVICE_AUTH", "false")
os.environ.setdefault("LACYLIGHTS_DEVICE_FINGERPRINT", "test-fingerprint")

from aiohttp import web  # noqa: E402
from aiohttp.test_utils import TestServer  # noqa: E402

from graphql_transport import FINGERPRINT_HEADER  # noqa: E402
from lacylights_gateway import AsyncLoopThread  # noqa: E402

Handler = Callable[[dict], Awaitable[web.StreamResponse]]


@dataclass
class ReceivedRequest:
    body: Any
    content_type: str
    fingerprint: Optional[str]
    has_fingerprint_header: bool


@dataclass
class FakeGraphQLServer:
    url: str = ""
    received: List[ReceivedRequest] = field(default_factory=list)
    handler: Optional[Handler] = None

    def respond_json(self, payload: Any, status: int = 200) -> None:
        async def _h(_body: dict) -> web.StreamResponse:
            return web.json_response(payload, status=status)

        self.handler = _h

    def respond_text(self, text: str, status: int = 200, content_type: str = "text/plain") -> None:
        async def _h(_body: dict) -> web.StreamResponse:
            return web.Response(text=text, status=status, content_type=content_type)

        self.handler = _h


@pytest.fixture
def graphql_server():
    loop_thread = AsyncLoopThread()
    loop_thread.start()
    fake = FakeGraphQLServer()
    fake.respond_json({"data": {}})

    async def _graphql(request: web.Request) -> web.StreamResponse:
        body = await request.json()
        fake.received.append(
            ReceivedRequest(
                body=body,
                content_type=request.headers.get("Content-Type", ""),
                fingerprint=request.headers.get(FINGERPRINT_HEADER),
                has_fingerprint_header=FINGERPRINT_HEADER in request.headers,
            )
        )
        return await fake.handler(body)

    async def _start() -> TestServer:
        app = web.Application()
        app.router.add_post("/graphql", _graphql)
        server = TestServer(app, host="127.0.0.1")
        await server.start_server()
        return server

    server = loop_thread.run(_start(), timeout_s=10)
    fake.url = str(server.make_url("/graphql"))
    try:
        yield fake
    finally:
        loop_thread.run(server.close(), timeout_s=10)
        loop_thread.stop()
