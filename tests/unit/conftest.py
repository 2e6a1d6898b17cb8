"""Shared stubs for the Gradio client tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import pytest
from multidict import CIMultiDict

from luna_vits.gradio.api_info import transform_api_info
from luna_vits.gradio.client import GradioClient
from luna_vits.gradio.events import ClientOptions
from luna_vits.gradio.resolver import ResolvedEndpoint, map_names_to_ids
from luna_vits.gradio.schemas import AppConfig

ROOT = "http://app.test"


def app_config(protocol: str = "sse_v3", enable_queue: bool = True, version: str = "4.20.0") -> dict[str, Any]:
    return {
        "root": ROOT,
        "version": version,
        "protocol": protocol,
        "enable_queue": enable_queue,
        "components": [
            {"id": 1, "type": "textbox"},
            {"id": 2, "type": "textbox"},
            {"id": 3, "type": "state"},
        ],
        "dependencies": [
            {"inputs": [1], "outputs": [2], "api_name": "predict"},
            {"inputs": [1, 3], "outputs": [2, 3], "api_name": "chat"},
        ],
    }


def api_payload() -> dict[str, Any]:
    text = {"label": "Text", "parameter_name": "text", "component": "Textbox", "type": {"type": "string"}}
    out = {"label": "Out", "component": "Textbox", "type": {"type": "string"}}
    return {
        "named_endpoints": {
            "/predict": {"parameters": [text], "returns": [out]},
            "/chat": {"parameters": [text], "returns": [out]},
        },
        "unnamed_endpoints": {},
    }


class _StubResponse:
    def __init__(self, status: int = 200, body: Any = None, headers: Optional[dict[str, Any]] = None) -> None:
        self.status = status
        self._body = body
        self.headers = headers if headers is not None else CIMultiDict()

    async def json(self, content_type: Optional[str] = None) -> Any:
        if isinstance(self._body, Exception):
            raise self._body
        return self._body

    async def __aenter__(self) -> "_StubResponse":
        return self

    async def __aexit__(self, *exc: object) -> bool:
        return False


class _StubSession:
    """Answers GET/POST from a url -> response table."""

    def __init__(self, responses: dict[str, _StubResponse]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str]] = []
        self.closed = False

    def get(self, url: str, **kwargs: Any) -> _StubResponse:
        self.calls.append(("GET", url))
        return self.responses[url]

    def post(self, url: str, **kwargs: Any) -> _StubResponse:
        self.calls.append(("POST", url))
        return self.responses[url]


class _StubWebSocket:
    """Replays queued server frames and records what the client sends."""

    def __init__(self, frames: list[dict[str, Any]], hold_open: bool = False) -> None:
        self.frames = [json.dumps(f) for f in frames]
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._hold_open = hold_open
        self._closed_event = asyncio.Event()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._closed_event.set()

    def __aiter__(self):
        return self._iter()

    async def _iter(self):
        for frame in self.frames:
            yield frame
        if self._hold_open:
            await self._closed_event.wait()

    async def __aenter__(self) -> "_StubWebSocket":
        return self

    async def __aexit__(self, *exc: object) -> bool:
        return False


@pytest.fixture
def stub_session():
    return _StubSession


@pytest.fixture
def stub_response():
    return _StubResponse


@pytest.fixture
def stub_websocket():
    return _StubWebSocket


@pytest.fixture
def make_client():
    """Build a GradioClient that skips network setup."""

    def _make(
        protocol: str = "sse_v3",
        enable_queue: bool = True,
        version: str = "4.20.0",
        options: Optional[ClientOptions] = None,
    ) -> GradioClient:
        client = GradioClient(ROOT, options or ClientOptions())
        client.resolved = ResolvedEndpoint(host="app.test", ws_protocol="ws", http_protocol="http")
        client.config = AppConfig.model_validate(app_config(protocol, enable_queue, version))
        client.api_map = map_names_to_ids(client.config.dependencies)
        client.api_info = transform_api_info(api_payload(), client.config, client.api_map)
        return client

    return _make


@pytest.fixture
def config():
    return AppConfig.model_validate(app_config())


@pytest.fixture
def raw_api():
    return api_payload()
