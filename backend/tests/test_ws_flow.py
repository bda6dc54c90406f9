"""
WebSocket integration tests for full game flows over the /ws endpoint.
Tests: lobby, a complete two-player game, disconnect/reconnect, eviction,
tampering, rate limiting, malformed input and origin checks.
Uses FastAPI TestClient so every connection shares the app's event loop.
"""
import sys
import os
import base64
import io
import random
import time

import pytest
from PIL import Image

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect
from main import create_app
import config


@pytest.fixture
def app():
    app = create_app(rng=random.Random(0))
    app.state.game_server.allowed_origins = []  # disable origin check for tests
    return app


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def recv_until(ws, msg_type, limit=30):
    """Read messages until one of the given type arrives."""
    seen = []
    for _ in range(limit):
        msg = ws.receive_json()
        if msg["type"] == msg_type:
            return msg
        seen.append(msg["type"])
    raise AssertionError(f"never received {msg_type}, got {seen}")


def join(ws, identifier, room_code="FLOW", key=None, name=None):
    ws.send_json({
        "type": "joinRoom",
        "id": identifier,
        "key": key or f"key-{identifier}",
        "name": name or identifier.title(),
        "roomCode": room_code,
    })
    return recv_until(ws, "joined")


def send(ws, msg_type, identifier, **fields):
    ws.send_json({"type": msg_type, "key": f"key-{identifier}", **fields})


def settings(**overrides):
    values = {
        "firstPage": "Write",
        "pageCount": "2",
        "pageOrder": "Normal",
        "palette": "No palette",
        "timeWrite": "0",
        "timeDraw": "0",
    }
    values.update(overrides)
    return values


def drawing():
    buf = io.BytesIO()
    Image.new("RGB", (config.IMAGE_WIDTH, config.IMAGE_HEIGHT), "white").save(buf, format="PNG")
    return config.IMAGE_DATA_PREFIX + base64.b64encode(buf.getvalue()).decode()


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

class TestHttp:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Drawry API is running"}

    def test_health_counts_rooms(self, client):
        assert client.get("/health").json()["rooms"] == 0
        with client.websocket_connect("/ws") as ws:
            join(ws, "alice")
            health = client.get("/health").json()
            assert health["status"] == "healthy"
            assert health["rooms"] == 1
            assert health["connections"] == 1


# ---------------------------------------------------------------------------
# Lobby
# ---------------------------------------------------------------------------

class TestLobby:
    def test_join_and_settings_sync(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            joined = join(alice, "alice")
            assert joined["host"] == "alice"

            joined = join(bob, "bob")
            assert joined["users"] == [{"id": "alice", "name": "Alice"}]
            assert recv_until(alice, "userJoin")["id"] == "bob"

            send(alice, "settings", "alice", settings={"pageCount": "12", "timeDraw": 3})
            update = recv_until(bob, "settings")
            assert update["settings"]["pageCount"] == "12"
            assert update["settings"]["timeDraw"] == "3"

    def test_host_leaves_lobby(self, client, app):
        with client.websocket_connect("/ws") as bob:
            with client.websocket_connect("/ws") as alice:
                join(alice, "alice")
                join(bob, "bob")

            # Host disconnects, wait for server to process
            time.sleep(0.3)

            room = app.state.game_server.rooms.get("FLOW")
            assert list(room.members) == ["bob"]
            assert room.host == "bob"

    def test_impersonation_kicked(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as mallory:
            join(alice, "alice", key="real")
            mallory.send_json({"type": "joinRoom", "id": "alice", "key": "fake",
                               "name": "Alice", "roomCode": "FLOW"})
            assert mallory.receive_json() == {"type": "kick", "reason": "id taken"}
            with pytest.raises(WebSocketDisconnect):
                mallory.receive_json()


# ---------------------------------------------------------------------------
# Full game
# ---------------------------------------------------------------------------

class TestFullGame:
    def test_two_player_game(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            join(alice, "alice")
            join(bob, "bob")

            send(alice, "startGame", "alice", settings=settings())
            start = recv_until(bob, "startGame")
            assert start["start"] == "Write"
            assert start["books"] == {"alice": ["alice", "bob"], "bob": ["bob", "alice"]}
            recv_until(alice, "startGame")

            send(alice, "updateTitle", "alice", title="Moon Trip")
            assert recv_until(bob, "title") == {"type": "title", "id": "alice", "title": "Moon Trip"}

            send(alice, "submitPage", "alice", mode="Write", value="A cat goes to the moon")
            send(bob, "submitPage", "bob", mode="Write", value="A dog learns to fly")
            forward = recv_until(alice, "pageForward")
            assert forward == {"type": "pageForward", "page": 1, "mode": "Draw"}
            recv_until(bob, "pageForward")

            send(alice, "submitPage", "alice", mode="Draw", value=drawing())
            send(bob, "submitPage", "bob", mode="Draw", value=drawing())
            recv_until(alice, "startPresenting")
            recv_until(bob, "startPresenting")

            send(alice, "presentBook", "alice", book="bob")
            assert recv_until(bob, "presentBook") == {"type": "presentBook", "book": "bob", "presenter": "bob"}
            recv_until(alice, "presentBook")

            send(bob, "presentForward", "bob")
            assert recv_until(alice, "presentForward") == {"type": "presentForward", "page": 0}
            send(bob, "presentFinish", "bob")
            done = recv_until(alice, "presentFinish")
            assert done == {"type": "presentFinish", "book": "bob", "allPresented": False}

            send(alice, "finish", "alice")
            assert recv_until(bob, "finish") == {"type": "finish"}

        time.sleep(0.3)
        assert client.get("/health").json()["rooms"] == 0

    def test_room_can_replay(self, client, app):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            join(alice, "alice")
            join(bob, "bob")
            send(alice, "startGame", "alice", settings=settings())
            for mode, value, event in (("Write", "words", "pageForward"),
                                       ("Draw", drawing(), "startPresenting")):
                send(alice, "submitPage", "alice", mode=mode, value=value)
                send(bob, "submitPage", "bob", mode=mode, value=value)
                recv_until(alice, event)
            send(alice, "finish", "alice")
            recv_until(alice, "finish")
            recv_until(bob, "finish")

            send(alice, "startGame", "alice", settings=settings(firstPage="Draw"))
            assert recv_until(bob, "startGame")["start"] == "Draw"
            room = app.state.game_server.rooms.get("FLOW")
            assert room.page_index == 0


# ---------------------------------------------------------------------------
# Disconnect / reconnect
# ---------------------------------------------------------------------------

class TestReconnect:
    def test_reconnect_mid_game(self, client, app):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as carol:
            join(alice, "alice")
            with client.websocket_connect("/ws") as bob:
                join(bob, "bob")
                join(carol, "carol")
                send(alice, "startGame", "alice", settings=settings(pageCount="3"))
                recv_until(bob, "startGame")
                send(bob, "submitPage", "bob", mode="Write", value="before the drop")
                recv_until(alice, "page")

            # Player disconnects, wait for server to process
            time.sleep(0.3)
            room = app.state.game_server.rooms.get("FLOW")
            assert room.members["bob"].connected is False

            with client.websocket_connect("/ws") as bob:
                joined = join(bob, "bob")
                assert joined["state"] == "PLAYING"
                game = joined["game"]
                assert game["page"] == 0
                assert game["submitted"] is True
                assert game["books"]["carol"]["pages"][0] is None
                assert recv_until(alice, "userReconnect")["id"] == "bob"

                send(alice, "submitPage", "alice", mode="Write", value="a")
                send(carol, "submitPage", "carol", mode="Write", value="c")
                assert recv_until(bob, "pageForward")["page"] == 1

    def test_second_connection_evicts_first(self, client):
        with client.websocket_connect("/ws") as alice:
            join(alice, "alice")
            with client.websocket_connect("/ws") as first:
                join(first, "bob")
                recv_until(alice, "userJoin")
                with client.websocket_connect("/ws") as second:
                    join(second, "bob")
                    assert recv_until(first, "kick")["reason"] == "joined from another connection"
                    with pytest.raises(WebSocketDisconnect):
                        first.receive_json()
                    assert recv_until(alice, "userReconnect")["id"] == "bob"


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

class TestGuards:
    def test_non_host_start_closes_connection(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            join(alice, "alice")
            join(bob, "bob")
            send(bob, "startGame", "bob", settings=settings())
            with pytest.raises(WebSocketDisconnect) as exc:
                bob.receive_json()
            assert exc.value.code == config.WS_POLICY_VIOLATION
            assert recv_until(alice, "userLeave")["id"] == "bob"

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("{not json")
            assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}

    def test_unknown_message_type(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "selfDestruct"})
            assert ws.receive_json() == {"type": "error", "message": "Invalid message"}

    def test_rate_limit(self, client):
        with client.websocket_connect("/ws") as ws:
            for _ in range(config.WS_RATE_LIMIT_PER_SEC + 5):
                ws.send_text("{not json")
            errors = [ws.receive_json()["message"] for _ in range(config.WS_RATE_LIMIT_PER_SEC + 5)]
            assert "Too many messages" in errors

    def test_unauthorized_origin_rejected(self, client, app):
        app.state.game_server.allowed_origins = ["http://drawry.example"]
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws", headers={"origin": "http://evil.example"}) as ws:
                ws.receive_json()
