"""Shared fixtures: fake websocket, fake image generator, configs."""

from __future__ import annotations

import json
from typing import Any
from uuid import UUID

import aiohttp
import pytest
from aiohttp import WSMsgType

from config.settings import ModelConfig, ServerConfig
from worker.errors import BackendError

TASK_ID = UUID("550e8400-e29b-41d4-a716-446655440000")


def text_frame(obj: Any) -> aiohttp.WSMessage:
    data = obj if isinstance(obj, str) else json.dumps(obj)
    return aiohttp.WSMessage(WSMsgType.TEXT, data, None)


def task_payload(**overrides: Any) -> dict[str, Any]:
    data = {
        "uuid": str(TASK_ID),
        "type": "TTI",
        "prompt": "a cat",
        "model": 1,
        "metadata": {},
        "created_at": "2024-02-14T12:00:00Z",
        "status": "PENDING",
    }
    data.update(overrides)
    return data


AUTH_OK = text_frame({"type": "auth_success", "payload": {"token": "tok-123"}})


class FakeWebSocket:
    """Stands in for aiohttp.ClientWebSocketResponse.

    Replays `incoming` frames, then reports an abnormal close.
    """

    def __init__(self, incoming: list[aiohttp.WSMessage] | None = None) -> None:
        self.incoming = list(incoming or [])
        self.sent: list[tuple[str, Any]] = []
        self.pings = 0
        self.close_calls = 0
        self.close_code: int | None = None
        self.fail_sends = False
        self.fail_pings_after: int | None = None

    async def send_str(self, data: str) -> None:
        if self.fail_sends:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(("text", data))

    async def send_bytes(self, data: bytes) -> None:
        if self.fail_sends:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(("bytes", data))

    async def ping(self, message: bytes = b"") -> None:
        if self.fail_pings_after is not None and self.pings >= self.fail_pings_after:
            raise ConnectionResetError("Cannot write to closing transport")
        self.pings += 1

    async def receive(self) -> aiohttp.WSMessage:
        if self.incoming:
            return self.incoming.pop(0)
        self.close_code = 1006
        return aiohttp.WSMessage(WSMsgType.CLOSED, None, None)

    def exception(self) -> BaseException | None:
        return None

    async def close(self) -> bool:
        self.close_calls += 1
        return True

    # helpers for assertions

    def control_messages(self) -> list[dict[str, Any]]:
        return [json.loads(data) for kind, data in self.sent if kind == "text"]

    def frame_kinds(self) -> list[str]:
        """Short description of every outbound frame, in order."""
        kinds = []
        for kind, data in self.sent:
            if kind == "bytes":
                kinds.append("result")
                continue
            msg = json.loads(data)
            if msg["type"] == "task_update":
                kinds.append(f"task_update:{msg['payload']['status']}")
            else:
                kinds.append(msg["type"])
        return kinds


class FakeGenerator:
    def __init__(self, image: bytes = b"\x89PN", error: Exception | None = None) -> None:
        self.image = image
        self.error = error
        self.calls: list[tuple[str, int]] = []

    async def generate_image(self, prompt: str, model_selector: int) -> bytes:
        self.calls.append((prompt, model_selector))
        if self.error is not None:
            raise self.error
        return self.image


@pytest.fixture
def server_config() -> ServerConfig:
    return ServerConfig(host="localhost", port=8443, passcode="secret", ping_interval=3600)


@pytest.fixture
def models() -> list[ModelConfig]:
    return [ModelConfig(name="demo", string="demo_model", width=512, height=512, steps=20, cfgscale=7.0)]


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def failing_generator() -> FakeGenerator:
    return FakeGenerator(error=BackendError("failed to generate image: boom"))
