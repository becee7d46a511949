"""HTTP API tests through FastAPI's TestClient, plus the SSE stream generator."""

import json
from contextlib import asynccontextmanager
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from mcp.shared.memory import create_connected_server_and_client_session

import wind_tavern.mcp_server as mcp_server
from wind_tavern.app import create_app
from wind_tavern.errors import LLMError
from wind_tavern.events import ChatEventBus
from wind_tavern.llm import CompletionResponse, LLMMessage
from wind_tavern.models import Chat, MCPServer, Message
from wind_tavern.routes.chats import format_sse, stream_chat_events
from wind_tavern.storage import Storage


class StubLLM:
    def __init__(self, *replies) -> None:
        self.replies = list(replies)

    async def complete(self, request):
        item = self.replies.pop(0)
        if isinstance(item, Exception):
            raise item
        return CompletionResponse(message=LLMMessage(role="assistant", content=item))


@asynccontextmanager
async def lore_connector(server: MCPServer):
    async with create_connected_server_and_client_session(mcp_server.mcp) as session:
        yield session


@pytest.fixture
def llm() -> StubLLM:
    return StubLLM("Welcome, traveller.")


@pytest.fixture
def client(monkeypatch, data_dir: Path, storage: Storage, llm: StubLLM):
    monkeypatch.setenv("WIND_TAVERN_TOKENIZER", "approx")
    mcp_server.set_storage(storage)
    app = create_app(data_dir, llm=llm, connector=lore_connector)
    with TestClient(app) as c:
        yield c


# ── Turns, runs, messages ────────────────────────────────────


def test_submit_turn(client: TestClient, chat: Chat):
    resp = client.post(f"/api/chats/{chat.id}/turns", json={"content": "Hello"})
    assert resp.status_code == 201
    body = resp.json()
    assert body["role"] == "assistant"
    assert body["content"] == "Welcome, traveller."

    runs = client.get(f"/api/chats/{chat.id}/runs").json()
    assert len(runs) == 1
    assert runs[0]["status"] == "completed"
    assert runs[0]["assistant_message_id"] == body["id"]

    messages = client.get(f"/api/chats/{chat.id}/messages").json()
    assert [m["role"] for m in messages] == ["user", "assistant"]


def test_submit_turn_unknown_chat(client: TestClient):
    resp = client.post("/api/chats/missing/turns", json={"content": "Hello"})
    assert resp.status_code == 404
    assert resp.json() == {"code": "CHAT_NOT_FOUND", "message": "Chat not found"}


def test_submit_turn_empty_content(client: TestClient, chat: Chat):
    resp = client.post(f"/api/chats/{chat.id}/turns", json={"content": ""})
    assert resp.status_code == 422


@pytest.mark.parametrize("llm", [StubLLM(LLMError("LLM backend returned HTTP 500"))])
def test_llm_failure_status(client: TestClient, chat: Chat):
    resp = client.post(f"/api/chats/{chat.id}/turns", json={"content": "Hello"})
    assert resp.status_code == 502
    assert resp.json()["code"] == "EXTERNAL_LLM_ERROR"
    runs = client.get(f"/api/chats/{chat.id}/runs").json()
    assert runs[0]["status"] == "failed"


def test_runs_and_messages_unknown_chat(client: TestClient):
    assert client.get("/api/chats/missing/runs").status_code == 404
    assert client.get("/api/chats/missing/messages").status_code == 404
    assert client.get("/api/chats/missing/events").status_code == 404


# ── Prompt stack ─────────────────────────────────────────────


def test_prompt_stack_lifecycle(client: TestClient, chat: Chat):
    base = f"/api/characters/{chat.character_id}/prompt-stack"

    stack = client.get(base).json()
    assert len(stack) == 1
    history_id = stack[0]["id"]

    resp = client.post(base, json={"kind": "mcp_tools", "position": 0})
    assert resp.status_code == 201
    tools_id = resp.json()["id"]
    assert [e["id"] for e in client.get(base).json()] == [tools_id, history_id]

    resp = client.put(f"{base}/order", json={"ids": [history_id, tools_id]})
    assert resp.status_code == 200
    assert [e["sort_order"] for e in resp.json()] == [0, 1]

    resp = client.patch(f"/api/prompt-stack/{tools_id}", json={"is_enabled": False})
    assert resp.json()["is_enabled"] is False

    resp = client.delete(f"/api/prompt-stack/{history_id}")
    assert resp.status_code == 400
    assert resp.json()["code"] == "CANNOT_DELETE_HISTORY_PROMPT"

    assert client.delete(f"/api/prompt-stack/{tools_id}").status_code == 204
    assert [e["id"] for e in client.get(base).json()] == [history_id]


def test_prompt_stack_reorder_mismatch(client: TestClient, chat: Chat):
    base = f"/api/characters/{chat.character_id}/prompt-stack"
    client.get(base)
    resp = client.put(f"{base}/order", json={"ids": ["someone-else"]})
    assert resp.status_code == 400
    body = resp.json()
    assert body["code"] == "PROMPT_PRESET_CHARACTER_MISMATCH"
    assert body["details"] == {"ids": ["someone-else"]}


def test_prompt_stack_unknown_character(client: TestClient):
    resp = client.get("/api/characters/missing/prompt-stack")
    assert resp.status_code == 404
    assert resp.json()["code"] == "CHARACTER_NOT_FOUND"


# ── Tool servers ─────────────────────────────────────────────


def test_probe_and_reset(client: TestClient, storage: Storage):
    server = storage.save_mcp_server(MCPServer(name="lore", command="unused"))

    resp = client.post(f"/api/mcp-servers/{server.id}/probe")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["tool_count"] >= 2

    assert client.post(f"/api/mcp-servers/{server.id}/reset").status_code == 204
    assert client.post(f"/api/mcp-servers/{server.id}/probe?reset=true").json()["status"] == "ok"


def test_probe_unknown_server(client: TestClient):
    resp = client.post("/api/mcp-servers/missing/probe")
    assert resp.status_code == 404
    assert resp.json()["code"] == "MCP_SERVER_NOT_FOUND"
    assert client.post("/api/mcp-servers/missing/reset").status_code == 404


# ── Server-sent events ───────────────────────────────────────


def test_format_sse():
    bus = ChatEventBus()
    seen = []
    bus.subscribe("c1", seen.append)
    bus.publish_message("c1", Message(chat_id="c1", role="user", content="hi"))

    frame = format_sse(seen[0])
    assert frame.startswith("event: message\ndata: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame.split("data: ", 1)[1])
    assert payload["message"]["content"] == "hi"


async def test_stream_chat_events():
    bus = ChatEventBus()
    stream = stream_chat_events(bus, "c1", ping_interval=0.05)

    assert (await stream.__anext__()) == ": connected to chat c1\n\n"
    assert bus.subscriber_count("c1") == 1

    bus.publish_message("c1", Message(chat_id="c1", role="user", content="hi"))
    assert (await stream.__anext__()).startswith("event: message\n")

    assert (await stream.__anext__()).startswith(": ping ")

    await stream.aclose()
    assert bus.subscriber_count("c1") == 0
