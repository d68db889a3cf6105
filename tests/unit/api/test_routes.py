"""Unit tests — HTTP API routes via FastAPI's TestClient."""

from __future__ import annotations

from typing import Any, Callable, Iterator

import pytest
from fastapi.testclient import TestClient

from sheetgate import __version__
from sheetgate.api.server import create_app
from sheetgate.config import Settings

WRITE_B2 = ("write_cell", {"cell": "B2", "value": 42})


@pytest.fixture
def make_client(test_settings: Settings, scripted_model) -> Iterator[Callable[..., TestClient]]:
    """Start the app around a scripted model; the client is closed on teardown."""
    clients: list[TestClient] = []

    def _make(rounds: list[list[Any]], **server: Any) -> TestClient:
        for key, value in server.items():
            setattr(test_settings.server, key, value)
        client = TestClient(create_app(test_settings, model=scripted_model(rounds)))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.mark.unit
class TestHealth:
    def test_health(self, make_client) -> None:
        client = make_client([])
        resp = client.get("/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["version"] == __version__
        assert body["gate_state"] == "none"
        assert body["model"] == "null:gpt-4o-mini"
        assert body["workbook"].endswith("book.xlsx")
        assert "X-Request-ID" in resp.headers

    def test_request_id_echoed(self, make_client) -> None:
        resp = make_client([]).get("/health", headers={"X-Request-ID": "req-1"})
        assert resp.headers["X-Request-ID"] == "req-1"


@pytest.mark.unit
class TestChatAndApproval:
    def test_text_turn(self, make_client) -> None:
        client = make_client([["Hello ", "there."]])

        resp = client.post("/chat/messages", json={"message": "hi"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["text"] == "Hello there."
        assert body["pending"] == []
        history = client.get("/chat/history").json()
        assert [m["role"] for m in history] == ["user", "assistant"]

    def test_empty_message_rejected(self, make_client) -> None:
        assert make_client([]).post("/chat/messages", json={"message": ""}).status_code == 422

    def test_suspend_confirm_undo(self, make_client) -> None:
        client = make_client([[WRITE_B2], ["B2 is 42."]])

        turn = client.post("/chat/messages", json={"message": "set B2"}).json()
        assert turn["status"] == "suspended"
        assert turn["pending"][0]["tool_name"] == "write_cell"
        assert turn["pending"][0]["payload"]["op"] == "write-cell"

        pending = client.get("/pending").json()
        assert pending["pending"] is True
        assert pending["state"] == "pending"
        assert pending["conversation_id"] == turn["conversation_id"]

        busy = client.post("/chat/messages", json={"message": "more"})
        assert busy.status_code == 409
        assert busy.json()["code"] == "already_pending"

        confirmed = client.post("/pending/confirm").json()
        assert confirmed == {"text": "Applied 1 action(s).\n\nB2 is 42.", "error": False}
        assert client.get("/pending").json()["pending"] is False

        conversation_id = turn["conversation_id"]
        assert client.get(f"/conversations/{conversation_id}/undo").json() == {"pending": True}
        assert client.post(f"/conversations/{conversation_id}/undo").json() == {"restored": 1}

        again = client.post(f"/conversations/{conversation_id}/undo")
        assert again.status_code == 409
        assert again.json()["code"] == "nothing_to_undo"

    def test_reject(self, make_client) -> None:
        client = make_client([[WRITE_B2]])
        client.post("/chat/messages", json={"message": "set B2"})

        assert client.post("/pending/reject").json() == {"discarded": 1}

        again = client.post("/pending/reject")
        assert again.status_code == 409
        assert again.json()["code"] == "invalid_transition"

    def test_cancel_while_pending(self, make_client) -> None:
        client = make_client([[WRITE_B2], ["ok"]])
        client.post("/chat/messages", json={"message": "set B2"})

        assert client.post("/chat/cancel").status_code == 202

        assert client.get("/pending").json()["pending"] is False
        assert client.post("/pending/confirm").json()["error"] is True
        assert client.post("/chat/messages", json={"message": "next"}).status_code == 200

    def test_confirm_without_pending(self, make_client) -> None:
        body = make_client([]).post("/pending/confirm").json()
        assert body["error"] is True
        assert body["text"].startswith("Error: ")

    def test_approve_keeps_changes(self, make_client) -> None:
        client = make_client([[WRITE_B2], ["ok"]])
        conversation_id = client.post("/chat/messages", json={"message": "set B2"}).json()["conversation_id"]
        client.post("/pending/confirm")

        assert client.post(f"/conversations/{conversation_id}/approve").json() == {"approved": 1}
        assert client.get(f"/conversations/{conversation_id}/undo").json() == {"pending": False}

    def test_undo_batch_bracket(self, make_client) -> None:
        client = make_client([])
        opened = client.post("/undo/batches")
        assert opened.status_code == 201
        batch_id = opened.json()["batch_id"]

        assert client.delete("/undo/batches/current").json() == {"batch_id": batch_id}
        assert client.delete("/undo/batches/current").json() == {"batch_id": None}

    def test_context_and_cancel(self, make_client) -> None:
        client = make_client([])
        client.post("/chat/messages", json={"message": "hi"})

        resp = client.post("/chat/context", json={"sheets": []})
        assert resp.json() == {"summary": "Context loaded: Sheet1 (0 rows)"}

        cancel = client.post("/chat/cancel")
        assert cancel.status_code == 202
        assert cancel.json() == {"cancelled": True}


@pytest.mark.unit
class TestConversationsAndCheckpoints:
    def test_list_load_delete(self, make_client) -> None:
        client = make_client([["a1"], ["a2"]])
        first = client.post("/chat/messages", json={"message": "first"}).json()["conversation_id"]
        second = client.post("/conversations").json()["conversation_id"]
        client.post("/chat/messages", json={"message": "second"})

        listing = client.get("/conversations").json()
        assert listing["total"] == 2
        assert {c["id"] for c in listing["conversations"]} == {first, second}

        loaded = client.get(f"/conversations/{first}").json()
        assert loaded["title"] == "first"
        assert [m["content"] for m in loaded["messages"]] == ["first", "a1"]

        assert client.delete(f"/conversations/{first}").status_code == 204
        missing = client.get(f"/conversations/{first}")
        assert missing.status_code == 404
        assert missing.json()["code"] == "not_found"
        assert client.delete(f"/conversations/{first}").status_code == 404

    def test_checkpoints(self, make_client) -> None:
        client = make_client([["a1"], ["a2"]])
        conversation_id = client.post("/chat/messages", json={"message": "q1"}).json()["conversation_id"]
        created = client.post("/checkpoints", json={"name": "before q2"})
        assert created.status_code == 201
        checkpoint_id = created.json()["checkpoint_id"]
        client.post("/chat/messages", json={"message": "q2"})

        listed = client.get(f"/conversations/{conversation_id}/checkpoints").json()
        assert [(c["name"], c["messages"]) for c in listed] == [("before q2", 2)]

        restored = client.post(f"/checkpoints/{checkpoint_id}/restore")
        assert restored.json() == {"conversation_id": conversation_id}
        assert [m["content"] for m in client.get("/chat/history").json()] == ["q1", "a1"]

        assert client.delete(f"/checkpoints/{checkpoint_id}").status_code == 204
        assert client.post(f"/checkpoints/{checkpoint_id}/restore").status_code == 404


@pytest.mark.unit
class TestAuth:
    def test_token_required_when_configured(self, make_client) -> None:
        client = make_client([], api_token="secret")

        assert client.post("/chat/cancel").status_code == 401
        ok = client.post("/chat/cancel", headers={"X-Sheetgate-Token": "secret"})
        assert ok.status_code == 202
        assert client.get("/health").status_code == 200


@pytest.mark.unit
class TestLifecycle:
    def test_restart_restores_pending(self, test_settings: Settings, scripted_model) -> None:
        with TestClient(create_app(test_settings, model=scripted_model([[WRITE_B2]]))) as client:
            client.post("/chat/messages", json={"message": "set B2"})

        with TestClient(create_app(test_settings, model=scripted_model([]))) as client:
            pending = client.get("/pending").json()
            assert pending["pending"] is True
            assert len(pending["actions"]) == 1
