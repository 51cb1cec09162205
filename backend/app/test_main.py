from __future__ import annotations

from unittest import IsolatedAsyncioTestCase, TestCase, mock

from fastapi.testclient import TestClient

from .db import InMemoryTree, settings
from .main import _close_on_disconnect, app

ROOM = "r1"
ADMIN = {"x-admin-key": settings.ADMIN_KEY}

QUESTIONS = {
    "quiz_title": "Office Party",
    "questions": [
        {"id": "q1", "text": "Capital of France?", "options": ["Rome", "Paris", "Oslo", "Bern"], "correctIndex": 1},
        {"id": "q2", "text": "2 + 2?", "options": ["3", "5", "4", "22"], "correctIndex": 2},
    ],
}


class ApiTestCase(TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

    def admin(self, action: str, json=None):
        response = self.client.post(f"/api/rooms/{ROOM}/admin/{action}", json=json, headers=ADMIN)
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()

    def join(self, name: str, player_id: str | None = None) -> str:
        response = self.client.post(f"/api/rooms/{ROOM}/join", json={"name": name, "player_id": player_id})
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["player_id"]


class AuthTests(ApiTestCase):
    def test_verify_requires_key(self):
        self.assertEqual(self.client.get("/api/admin/verify").status_code, 401)
        self.assertEqual(self.client.get("/api/admin/verify", headers={"x-admin-key": "nope"}).status_code, 401)
        self.assertEqual(self.client.get("/api/admin/verify", headers=ADMIN).json(), {"ok": True})

    def test_admin_actions_require_key(self):
        response = self.client.post(f"/api/rooms/{ROOM}/admin/start")
        self.assertEqual(response.status_code, 401)


class PlayerApiTests(ApiTestCase):
    def test_join_twice_is_one_player(self):
        first = self.join("Alice")
        second = self.join("Alice")

        players = self.client.get(f"/api/tree/rooms/{ROOM}/players").json()["value"]
        self.assertEqual(first, second)
        self.assertEqual(list(players), [first])

    def test_join_with_blank_name(self):
        response = self.client.post(f"/api/rooms/{ROOM}/join", json={"name": "  "})
        self.assertEqual(response.status_code, 400)

    def test_answer_rejected_before_timer(self):
        pid = self.join("Alice")
        self.admin("questions", QUESTIONS)
        self.admin("start")

        response = self.client.post(f"/api/rooms/{ROOM}/answer", json={"player_id": pid, "option_index": 1})

        self.assertEqual(response.json(), {"accepted": False})

    def test_leave(self):
        pid = self.join("Alice")
        self.client.post(f"/api/rooms/{ROOM}/leave", json={"player_id": pid})
        entry = self.client.get(f"/api/tree/rooms/{ROOM}/players/{pid}").json()["value"]
        self.assertFalse(entry["isOnline"])


class GameApiTests(ApiTestCase):
    def test_round_trip(self):
        alice = self.join("Alice")
        bob = self.join("Bob")

        loaded = self.admin("questions", QUESTIONS)
        self.assertTrue(loaded["ok"])
        self.assertEqual(loaded["state"]["gameState"], "LOBBY")
        self.assertEqual(loaded["state"]["quizTitle"], "Office Party")

        self.admin("start")
        timer = self.admin("timer")
        self.assertTrue(timer["state"]["isTimerRunning"])

        accepted = self.client.post(f"/api/rooms/{ROOM}/answer", json={"player_id": alice, "option_index": 1})
        self.client.post(f"/api/rooms/{ROOM}/answer", json={"player_id": bob, "option_index": 3})
        self.assertEqual(accepted.json(), {"accepted": True})

        board = self.client.get(f"/api/rooms/{ROOM}/leaderboard").json()
        self.assertFalse(board["isFinalQuestion"])
        self.assertFalse(board["timeUp"])
        self.assertEqual(board["answers"], {"answered": 2, "total": 2, "percent": 100})

        revealed = self.admin("reveal")
        self.assertEqual(revealed["state"]["gameState"], "PLAYING_RESULT")
        scores = {p["id"]: p["score"] for p in revealed["state"]["players"]}
        self.assertEqual(scores, {alice: 10, bob: 0})

        again = self.admin("reveal")
        self.assertFalse(again["ok"])

        self.admin("next")
        self.admin("finish")
        for _ in range(3):
            self.admin("ranking/advance")
        shown = self.admin("ranking/visible", {"visible": True})
        self.assertEqual(shown["state"]["rankingRevealStage"], 3)
        self.assertTrue(shown["state"]["isRankingResultVisible"])

        board = self.client.get(f"/api/rooms/{ROOM}/leaderboard", params={"player_id": alice}).json()
        self.assertEqual(board["gameState"], "FINAL_RESULT")
        self.assertTrue(board["resultVisible"])
        self.assertEqual(board["winnerId"], alice)
        self.assertEqual([row["id"] for row in board["leaderboard"]], [alice, bob])

        reset = self.admin("reset")
        self.assertEqual(reset["state"]["gameState"], "SETUP")

    def test_illegal_action_reports_no_change(self):
        result = self.admin("timer")
        self.assertFalse(result["ok"])
        self.assertEqual(result["state"]["gameState"], "SETUP")

    def test_empty_question_list(self):
        response = self.client.post(f"/api/rooms/{ROOM}/admin/questions", json={"questions": []}, headers=ADMIN)
        self.assertEqual(response.status_code, 400)

    def test_settings(self):
        result = self.admin("settings", {"time_limit": 45, "hide_below_top3": True})
        self.assertEqual(result["state"]["timeLimit"], 45)
        self.assertTrue(result["state"]["hideBelowTop3"])

        response = self.client.post(f"/api/rooms/{ROOM}/admin/settings", json={"time_limit": 0}, headers=ADMIN)
        self.assertEqual(response.status_code, 422)

    def test_organizer_toggle_and_kick(self):
        pid = self.join("Alice")

        self.client.post(f"/api/rooms/{ROOM}/admin/players/{pid}/organizer", json={}, headers=ADMIN)
        entry = self.client.get(f"/api/tree/rooms/{ROOM}/players/{pid}").json()["value"]
        self.assertTrue(entry["isOrganizer"])

        missing = self.client.post(f"/api/rooms/{ROOM}/admin/players/nobody/organizer", json={}, headers=ADMIN)
        self.assertEqual(missing.status_code, 404)

        self.client.delete(f"/api/rooms/{ROOM}/admin/players/{pid}", headers=ADMIN)
        self.assertIsNone(self.client.get(f"/api/tree/rooms/{ROOM}/players").json()["value"])

    def test_winner_hidden_until_result_shown(self):
        alice = self.join("Alice")
        self.admin("questions", QUESTIONS)
        self.admin("start")
        self.admin("finish")
        for _ in range(3):
            self.admin("ranking/advance")

        board = self.client.get(f"/api/rooms/{ROOM}/leaderboard", params={"player_id": alice}).json()
        self.assertIsNone(board["winnerId"])
        self.assertFalse(board["resultVisible"])

        self.admin("ranking/visible", {"visible": True})

        board = self.client.get(f"/api/rooms/{ROOM}/leaderboard", params={"player_id": alice}).json()
        self.assertEqual(board["winnerId"], alice)
        self.assertTrue(board["resultVisible"])

    def test_answers_need_a_roster_entry(self):
        alice = self.join("Alice")
        bob = self.join("Bob")
        self.admin("questions", QUESTIONS)
        self.admin("start")
        self.admin("timer")
        self.client.delete(f"/api/rooms/{ROOM}/admin/players/{bob}", headers=ADMIN)

        kicked = self.client.post(f"/api/rooms/{ROOM}/answer", json={"player_id": bob, "option_index": 0})
        ghost = self.client.post(f"/api/rooms/{ROOM}/answer", json={"player_id": "ghost", "option_index": 0})

        self.assertEqual(kicked.json(), {"accepted": False})
        self.assertEqual(ghost.json(), {"accepted": False})
        players = self.client.get(f"/api/tree/rooms/{ROOM}/players").json()["value"]
        self.assertEqual(list(players), [alice])

    def test_reset_all_players(self):
        self.join("Alice")
        self.join("Bob")
        self.assertTrue(self.admin("players/reset")["ok"])
        self.assertIsNone(self.client.get(f"/api/tree/rooms/{ROOM}/players").json()["value"])


class TreeApiTests(ApiTestCase):
    def test_players_may_write_roster_entries(self):
        response = self.client.put(f"/api/tree/rooms/{ROOM}/players/p-1", json={"id": "p-1", "name": "Zoe"})
        self.assertEqual(response.status_code, 200)
        snapshot = self.client.get(f"/api/tree/rooms/{ROOM}/players/p-1").json()
        self.assertEqual(snapshot["value"]["name"], "Zoe")
        self.assertEqual(snapshot["seq"], response.json()["seq"])

    def test_state_writes_need_key(self):
        url = f"/api/tree/rooms/{ROOM}/state/gameState"
        self.assertEqual(self.client.put(url, json="LOBBY").status_code, 401)
        self.assertEqual(self.client.put(url, json="LOBBY", headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.get(f"/api/rooms/{ROOM}/state").json()["gameState"], "LOBBY")

    def test_patch_and_delete(self):
        patch = {"updates": {f"rooms/{ROOM}/players/a/id": "a", f"rooms/{ROOM}/players/a/score": 5}}
        self.assertEqual(self.client.patch("/api/tree", json=patch).status_code, 200)
        denied = {"updates": {f"rooms/{ROOM}/state/revision": 9}}
        self.assertEqual(self.client.patch("/api/tree", json=denied).status_code, 401)

        self.assertEqual(self.client.delete(f"/api/tree/rooms/{ROOM}/players/a").status_code, 401)
        self.assertEqual(self.client.delete(f"/api/tree/rooms/{ROOM}/players/a", headers=ADMIN).status_code, 200)
        self.assertIsNone(self.client.get(f"/api/tree/rooms/{ROOM}/players/a").json()["value"])

    def test_changes_feed(self):
        start = self.client.get("/api/changes").json()["latest_seq"]
        self.client.put(f"/api/tree/rooms/{ROOM}/players/p-1", json={"id": "p-1"})

        feed = self.client.get("/api/changes", params={"after": start or 0}).json()

        self.assertEqual(feed["changes"][-1]["paths"], [f"rooms/{ROOM}/players/p-1"])
        self.assertGreater(feed["latest_seq"], start or 0)

        state_feed = self.client.get("/api/changes", params={"after": start or 0, "prefix": f"rooms/{ROOM}/state"}).json()
        self.assertFalse(state_feed["touched"])

    def test_websocket_streams_snapshots(self):
        with self.client.websocket_connect(f"/ws/tree/rooms/{ROOM}/players") as ws:
            first = ws.receive_json()
            self.client.put(f"/api/tree/rooms/{ROOM}/players/p-1", json={"id": "p-1", "name": "Zoe"})
            second = ws.receive_json()

        self.assertEqual(first["path"], f"rooms/{ROOM}/players")
        self.assertIsNone(first["value"])
        self.assertEqual(second["value"]["p-1"]["name"], "Zoe")
        self.assertGreater(second["seq"], first["seq"])

    def test_websocket_releases_subscription_on_close(self):
        store = self.client.app.state.store
        before = store.subscriber_count

        with self.client.websocket_connect(f"/ws/tree/rooms/{ROOM}/state") as ws:
            ws.receive_json()
            self.assertEqual(store.subscriber_count, before + 1)

        self.assertEqual(store.subscriber_count, before)


class DisconnectTests(IsolatedAsyncioTestCase):
    async def test_disconnect_closes_idle_subscription(self):
        store = InMemoryTree()
        subscription = store.subscribe(f"rooms/{ROOM}/players")
        await subscription.next()
        websocket = mock.AsyncMock()
        websocket.receive.side_effect = [
            {"type": "websocket.receive", "text": "ping"},
            {"type": "websocket.disconnect", "code": 1001},
        ]

        await _close_on_disconnect(websocket, subscription)

        self.assertTrue(subscription.closed)
        self.assertEqual(store.subscriber_count, 0)
        self.assertEqual([s async for s in subscription], [])
