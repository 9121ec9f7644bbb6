from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from starlette.websockets import WebSocketDisconnect

from quizroom import runtime
from quizroom.config import settings
from quizroom.db import init_db, reset_database_engine
from quizroom.main import app


QUIZ = {
    "title": "Geography",
    "questions": [
        {"text": "Largest ocean?", "options": ["Atlantic", "Indian", "Pacific", "Arctic"], "correct": 2},
    ],
}


@pytest.fixture(autouse=True)
def isolated_db(tmp_path: Path):
    original_db_url = settings.database_url
    original_auto_advance = settings.enable_auto_advance
    test_url = f"sqlite:///{tmp_path / 'quizroom-api-test.db'}"

    object.__setattr__(settings, "database_url", test_url)
    object.__setattr__(settings, "enable_auto_advance", False)
    reset_database_engine(test_url)
    init_db()
    runtime.game_limiter.clear_all()
    runtime.http_rate_limiter.clear()

    try:
        yield
    finally:
        object.__setattr__(settings, "database_url", original_db_url)
        object.__setattr__(settings, "enable_auto_advance", original_auto_advance)
        reset_database_engine(original_db_url)


def _guest(client: TestClient, nickname: str, host_key=None) -> dict:
    body = {"nickname": nickname}
    if host_key is not None:
        body["host_key"] = host_key
    resp = client.post("/api/auth/guest", json=body)
    assert resp.status_code == 200
    data = resp.json()
    data["headers"] = {"Authorization": f"Bearer {data['access_token']}"}
    return data


def _host(client: TestClient) -> dict:
    return _guest(client, "admin", host_key=settings.host_access_key)


def _create_session(client: TestClient, host: dict, **extra) -> str:
    resp = client.post("/api/sessions", json={"quiz": QUIZ, **extra}, headers=host["headers"])
    assert resp.status_code == 200
    return resp.json()["pin"]


def test_root_and_health():
    with TestClient(app) as client:
        assert client.get("/api/").json() == {"message": "QuizRoom API"}
        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "ok"


def test_guest_identity_is_admin_only_with_host_key():
    with TestClient(app) as client:
        assert _host(client)["is_admin"] is True
        assert _guest(client, "admin")["is_admin"] is False
        assert _guest(client, "admin", host_key="wrong")["is_admin"] is False
        assert _guest(client, "alice", host_key=settings.host_access_key)["is_admin"] is False


def test_creating_sessions_requires_host_privileges():
    with TestClient(app) as client:
        player = _guest(client, "alice")

        assert client.post("/api/sessions", json={"quiz": QUIZ}).status_code == 401

        forbidden = client.post("/api/sessions", json={"quiz": QUIZ}, headers=player["headers"])
        assert forbidden.status_code == 403
        assert forbidden.json()["detail"] == "Host privileges required"

        invalid = client.post(
            "/api/sessions",
            json={"quiz": {"title": "x", "questions": [{"text": "?", "options": ["a"], "correct": 0}]}},
            headers=_host(client)["headers"],
        )
        assert invalid.status_code == 422


def test_join_and_play_one_question_over_http():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")
        pin = _create_session(client, host)

        joined = client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])
        assert joined.status_code == 200
        assert joined.json()["should_wait"] is True

        not_host = client.post(f"/api/sessions/{pin}/start", headers=player["headers"])
        assert not_host.status_code == 403
        assert not_host.json()["detail"] == "Only the host can do this"

        assert client.post(f"/api/sessions/{pin}/start", headers=host["headers"]).json()["success"] is True
        opened = client.post(f"/api/sessions/{pin}/question", headers=host["headers"]).json()
        assert opened["started"] is True

        player_view = client.get(f"/api/sessions/{pin}", headers=player["headers"]).json()["session"]
        assert player_view["status"] == "question"
        assert "correct" not in player_view["quiz"]["questions"][0]

        answer = client.post(f"/api/sessions/{pin}/answer", json={"answer_index": 2}, headers=player["headers"])
        assert answer.status_code == 200
        assert answer.json()["correct"] is True
        assert answer.json()["points"] == 100

        again = client.post(f"/api/sessions/{pin}/answer", json={"answer_index": 2}, headers=player["headers"])
        assert again.status_code in {409, 429}
        assert again.json()["success"] is False

        assert client.post(f"/api/sessions/{pin}/results", headers=host["headers"]).json()["changed"] is True
        final = client.post(f"/api/sessions/{pin}/next", headers=host["headers"]).json()
        assert final["is_final"] is True

        host_view = client.get(f"/api/sessions/{pin}", headers=host["headers"]).json()["session"]
        assert host_view["leaderboard"] == [{"rank": 1, "uid": player["user_id"], "name": "Alice", "score": 100}]

        ended = client.post(f"/api/sessions/{pin}/end", headers=host["headers"])
        assert ended.json() == {"success": True, "merged": False}
        assert client.get(f"/api/sessions/{pin}").status_code == 404


def test_join_errors_map_to_status_codes():
    with TestClient(app) as client:
        host = _host(client)
        alice = _guest(client, "alice")
        impostor = _guest(client, "bob")
        pin = _create_session(client, host)

        missing = client.post("/api/sessions/9999/join", json={"name": "Alice"}, headers=alice["headers"])
        if pin != "9999":
            assert missing.status_code == 404
            assert missing.json() == {"success": False, "error": "PIN not found!"}

        assert client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=alice["headers"]).status_code == 200
        taken = client.post(f"/api/sessions/{pin}/join", json={"name": "alice"}, headers=impostor["headers"])
        assert taken.status_code == 409


def test_kicked_player_is_banned_and_told_over_websocket():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")
        pin = _create_session(client, host)
        client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])

        with client.websocket_connect(f"/ws/sessions/{pin}?token={player['access_token']}") as ws:
            first = ws.receive_json()
            assert first["type"] == "session"
            assert first["data"]["players"] == {player["user_id"]: "Alice"}
            assert runtime.ws_manager.room_connection_count(pin) == 1

            kicked = client.post(
                f"/api/sessions/{pin}/kick", json={"user_id": player["user_id"]}, headers=host["headers"]
            )
            assert kicked.status_code == 200

            assert ws.receive_json() == {"type": "kicked"}
            with pytest.raises(WebSocketDisconnect) as closed:
                ws.receive_json()
            assert closed.value.code == 4403

        assert runtime.ws_manager.room_connection_count(pin) == 0
        rejoin = client.post(f"/api/sessions/{pin}/join", json={"name": "Other"}, headers=player["headers"])
        assert rejoin.status_code == 403


def test_websocket_pushes_changes_and_answers_pings():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")
        pin = _create_session(client, host)

        with client.websocket_connect(f"/ws/sessions/{pin}?token={host['access_token']}") as ws:
            initial = ws.receive_json()
            assert initial["data"]["status"] == "lobby"
            assert initial["server_time"] > 0
            assert initial["data"]["quiz"]["questions"][0]["correct"] == 2

            client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])
            pushed = ws.receive_json()
            assert pushed["type"] == "session"
            assert list(pushed["data"]["players"].values()) == ["Alice"]

            ws.send_json({"type": "ping"})
            pong = ws.receive_json()
            assert pong["type"] == "pong"
            assert pong["server_time"] > 0

            ws.send_json({"type": "shout"})
            assert ws.receive_json() == {"type": "error", "detail": "Unsupported message type"}


def test_websocket_reports_end_of_session():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")
        pin = _create_session(client, host)
        client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])

        with client.websocket_connect(f"/ws/sessions/{pin}?token={player['access_token']}") as ws:
            assert ws.receive_json()["type"] == "session"

            for step in ("start", "question", "results", "next", "end"):
                assert client.post(f"/api/sessions/{pin}/{step}", headers=host["headers"]).status_code == 200

            statuses = []
            message = ws.receive_json()
            while message["type"] == "session":
                statuses.append(message["data"]["status"])
                message = ws.receive_json()

            assert statuses == ["countdown", "question", "results", "final"]
            assert message == {"type": "error", "detail": "Session not found"}


def test_websocket_rejects_bad_token_and_unknown_pin():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as rejected:
            with client.websocket_connect("/ws/sessions/1234?token=not-a-token") as ws:
                ws.receive_json()
        assert rejected.value.code == 4401

        player = _guest(client, "alice")
        with client.websocket_connect(f"/ws/sessions/0000?token={player['access_token']}") as ws:
            assert ws.receive_json() == {"type": "error", "detail": "Session not found"}


def test_reactions_over_http():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")
        pin = _create_session(client, host)
        client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])

        sent = client.post(f"/api/sessions/{pin}/reactions", json={"emoji": "🎉"}, headers=player["headers"])
        assert sent.status_code == 200
        assert sent.json()["reaction"]["player_name"] == "Alice"

        unsupported = client.post(f"/api/sessions/{pin}/reactions", json={"emoji": "🍕"}, headers=player["headers"])
        assert unsupported.status_code == 400


def test_leaderboard_routes():
    with TestClient(app) as client:
        host = _host(client)
        player = _guest(client, "alice")

        assert client.post("/api/leaderboards", json={"name": "Class"}, headers=player["headers"]).status_code == 403

        created = client.post("/api/leaderboards", json={"name": "Class", "year": 2026}, headers=host["headers"])
        leaderboard_id = created.json()["leaderboard_id"]

        pin = _create_session(client, host, leaderboard_id=leaderboard_id)
        client.post(f"/api/sessions/{pin}/join", json={"name": "Alice"}, headers=player["headers"])
        client.post(f"/api/sessions/{pin}/start", headers=host["headers"])
        client.post(f"/api/sessions/{pin}/question", headers=host["headers"])
        client.post(f"/api/sessions/{pin}/answer", json={"answer_index": 2}, headers=player["headers"])
        client.post(f"/api/sessions/{pin}/results", headers=host["headers"])
        client.post(f"/api/sessions/{pin}/next", headers=host["headers"])
        assert client.post(f"/api/sessions/{pin}/end", headers=host["headers"]).json()["merged"] is True

        board = client.get(f"/api/leaderboards/{leaderboard_id}").json()["leaderboard"]
        assert board["players"][0]["display_name"] == "Alice"
        assert board["players"][0]["total_score"] == 100

        listed = client.get("/api/leaderboards").json()["leaderboards"]
        assert [item["id"] for item in listed] == [leaderboard_id]

        renamed = client.patch(f"/api/leaderboards/{leaderboard_id}", json={"name": "Renamed"}, headers=host["headers"])
        assert renamed.status_code == 200
        assert client.post(f"/api/leaderboards/{leaderboard_id}/flush", headers=host["headers"]).status_code == 200
        assert client.delete(f"/api/leaderboards/{leaderboard_id}", headers=host["headers"]).status_code == 200
        assert client.get(f"/api/leaderboards/{leaderboard_id}").status_code == 404
