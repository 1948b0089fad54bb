"""End-to-end API tests against the in-memory backend."""

import pytest
from conftest import CHANNEL, make_clips
from fastapi import FastAPI
from fastapi.testclient import TestClient

from clipvote.config import Settings, settings
from clipvote.main import app, wire_services
from clipvote.services.cache_service import CacheService
from clipvote.services.identity import sign_voter
from clipvote.stores.memory import MemoryVoteStore

ADMIN = {"X-Admin-Key": "test-admin-key"}


def voter_headers(voter: str) -> dict[str, str]:
    return {"X-Voter": voter, "X-Voter-Token": sign_voter("test-identity-secret", voter)}


def vote(client: TestClient, voter: str, clip, kind: str = "like"):
    return client.post(
        "/api/votes",
        json={"channel": CHANNEL, "clip": clip, "vote": kind},
        headers=voter_headers(voter),
    )


@pytest.fixture
def client():
    with TestClient(app) as c:
        for clip in make_clips():
            c.app.state.store.add_clip(clip)
        yield c


# ---------- wiring ----------


class TestWiring:
    def test_new_account_threshold_read_from_env(self, monkeypatch):
        monkeypatch.setenv("FLAG_MIN_VOTES", "25")
        monkeypatch.setenv("FLAG_NEW_ACCOUNT_MIN_VOTES", "4")
        configured = Settings()
        assert configured.flag_min_votes == 25
        assert configured.flag_new_account_min_votes == 4

    def test_new_account_threshold_has_its_own_setting(self, monkeypatch):
        monkeypatch.setattr(settings, "flag_min_votes", 25)
        monkeypatch.setattr(settings, "flag_new_account_min_votes", 4)
        target = FastAPI()

        wire_services(target, MemoryVoteStore(), CacheService(None))

        thresholds = target.state.coordinator._heuristics.thresholds
        assert thresholds.min_votes == 25
        assert thresholds.new_account_min_votes == 4


# ---------- health and metrics ----------


class TestHealth:
    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "ok"}

    def test_ready(self, client):
        resp = client.get("/health/ready")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"]["status"] == "up"
        assert body["checks"]["redis"]["status"] == "disabled"

    def test_metrics(self, client):
        vote(client, "alice", 1)
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "clipvote_votes_total" in resp.text


# ---------- POST /api/votes ----------


class TestSubmitVote:
    def test_web_vote(self, client):
        resp = vote(client, "alice", 1)
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "action": "recorded",
            "likes": 1,
            "dislikes": 0,
            "user_vote": "like",
        }
        assert resp.headers["X-RateLimit-Limit"] == "30"
        assert resp.headers["X-RateLimit-Remaining"] == "29"

    def test_flip_and_clear(self, client):
        vote(client, "alice", 1)
        resp = vote(client, "alice", "#1", "dislike")
        assert resp.json()["action"] == "changed"
        assert (resp.json()["likes"], resp.json()["dislikes"]) == (0, 1)

        resp = vote(client, "alice", "Clip1Slug", "clear")
        assert resp.json()["action"] == "cleared"
        assert resp.json()["user_vote"] is None

    def test_bot_vote(self, client):
        resp = client.post(
            "/api/votes",
            json={"channel": CHANNEL, "clip": "2", "vote": "dislike", "voter": "ChatUser"},
            headers={"X-Bot-Key": "test-bot-key"},
        )
        assert resp.status_code == 200
        assert resp.json()["dislikes"] == 1

    def test_bot_key_wrong(self, client):
        resp = client.post(
            "/api/votes",
            json={"channel": CHANNEL, "clip": 2, "vote": "like", "voter": "chatuser"},
            headers={"X-Bot-Key": "nope"},
        )
        assert resp.status_code == 401

    def test_unauthenticated(self, client):
        resp = client.post("/api/votes", json={"channel": CHANNEL, "clip": 1, "vote": "like"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "UNAUTHORIZED"

    def test_forged_token(self, client):
        headers = {"X-Voter": "alice", "X-Voter-Token": sign_voter("guess", "alice")}
        resp = client.post(
            "/api/votes", json={"channel": CHANNEL, "clip": 1, "vote": "like"}, headers=headers
        )
        assert resp.status_code == 401

    def test_invalid_body(self, client):
        resp = client.post("/api/votes", content=b"not json", headers=voter_headers("alice"))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_BODY"

    def test_invalid_vote_type(self, client):
        resp = vote(client, "alice", 1, "superlike")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_VOTE"

    @pytest.mark.parametrize("clip", ["#" + "9" * 5000, "99999999999"])
    def test_oversized_clip_number(self, client, clip):
        resp = vote(client, "alice", clip)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_FIELD"

    def test_invalid_channel(self, client):
        resp = client.post(
            "/api/votes",
            json={"channel": "bad channel!", "clip": 1, "vote": "like"},
            headers=voter_headers("alice"),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "INVALID_FIELD"

    def test_unknown_clip(self, client):
        resp = vote(client, "alice", 999)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_rate_limited(self, client):
        for _ in range(30):
            assert vote(client, "alice", 1).status_code == 200

        resp = vote(client, "alice", 1)
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "RATE_LIMITED"
        assert resp.json()["error"]["retryAfter"] > 0
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_suspended(self, client):
        for seq in range(1, 11):
            assert vote(client, "grumpy", seq, "dislike").status_code == 200

        resp = vote(client, "grumpy", 11, "dislike")
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "VOTING_SUSPENDED"


# ---------- GET /api/votes ----------


class TestQueryVotes:
    def test_counts_with_own_vote(self, client):
        vote(client, "alice", 1)
        vote(client, "bob", 1, "dislike")

        resp = client.get(
            "/api/votes",
            params={"channel": CHANNEL, "clips": "1,2"},
            headers=voter_headers("alice"),
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["logged_in"] is True
        assert body["username"] == "alice"
        assert body["votes"]["1"] == {"likes": 1, "dislikes": 1, "user_vote": "like"}
        assert body["votes"]["2"] == {"likes": 0, "dislikes": 0, "user_vote": None}

    def test_anonymous(self, client):
        resp = client.get("/api/votes", params={"channel": CHANNEL, "clips": "3"})
        assert resp.json()["logged_in"] is False
        assert resp.json()["username"] is None

    def test_missing_clips(self, client):
        resp = client.get("/api/votes", params={"channel": CHANNEL})
        assert resp.status_code == 400


# ---------- GET /api/votes/export ----------


class TestExportVotes:
    def test_export(self, client):
        vote(client, "alice", 5)
        vote(client, "bob", 5, "dislike")
        vote(client, "carol", 5)
        vote(client, "alice", 2, "dislike")

        resp = client.get("/api/votes/export", params={"channel": CHANNEL})
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        body = resp.json()
        assert body["channel"] == CHANNEL
        assert body["total_clips_voted"] == 2
        assert [v["seq"] for v in body["votes"]] == [2, 5]
        assert body["votes"][1]["clip_id"] == "Clip5Slug"
        assert body["votes"][1]["net_score"] == 1
        assert body["votes"][0]["net_score"] == -1

    def test_empty_channel(self, client):
        resp = client.get("/api/votes/export", params={"channel": "quietchannel"})
        assert resp.status_code == 200
        assert resp.json()["votes"] == []
        assert resp.json()["total_clips_voted"] == 0

    def test_invalid_channel(self, client):
        resp = client.get("/api/votes/export", params={"channel": "Bad Channel!"})
        assert resp.status_code == 400


# ---------- admin ----------


class TestAdmin:
    def test_requires_key(self, client):
        assert client.get("/api/admin/stats").status_code == 401
        resp = client.get("/api/admin/stats", headers={"X-Admin-Key": "guess"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "FORBIDDEN"

    def test_flagged_undo_and_stats(self, client):
        for seq in range(1, 11):
            vote(client, "grumpy", seq, "dislike")
        vote(client, "alice", 1)

        flagged = client.get("/api/admin/voters/flagged", headers=ADMIN).json()["voters"]
        assert [v["username"] for v in flagged] == ["grumpy"]
        assert flagged[0]["flag_reason"].startswith("High downvote ratio: 100%")

        stats = client.get("/api/admin/stats", headers=ADMIN).json()["stats"]
        assert stats == {"flagged_count": 1, "total_tracked": 2, "total_voters": 2, "votes_24h": 11}

        resp = client.post("/api/admin/voters/grumpy/undo", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json() == {
            "success": True,
            "message": "Removed 10 votes from grumpy",
            "votes_removed": 10,
        }

        counts = client.get("/api/votes", params={"channel": CHANNEL, "clips": "1,5"}).json()
        assert counts["votes"]["1"] == {"likes": 1, "dislikes": 0, "user_vote": None}
        assert counts["votes"]["5"]["dislikes"] == 0

        assert vote(client, "grumpy", 12).status_code == 200

    def test_list_all(self, client):
        vote(client, "alice", 1)
        vote(client, "bob", 2)
        resp = client.get("/api/admin/voters", params={"limit": 1}, headers=ADMIN)
        assert len(resp.json()["voters"]) == 1

    def test_clear_flag(self, client):
        for seq in range(1, 11):
            vote(client, "grumpy", seq, "dislike")

        resp = client.post("/api/admin/voters/grumpy/clear-flag", headers=ADMIN)
        assert resp.status_code == 200
        assert vote(client, "grumpy", 11, "dislike").status_code == 200

    def test_clear_flag_unknown(self, client):
        resp = client.post("/api/admin/voters/nobody/clear-flag", headers=ADMIN)
        assert resp.status_code == 404

    def test_reset_clip(self, client):
        vote(client, "alice", 3)
        vote(client, "bob", 3)

        resp = client.post(
            "/api/admin/clips/reset", json={"channel": CHANNEL, "clip": 3}, headers=ADMIN
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "clip_id": "Clip3Slug", "votes_removed": 2}

        resp = client.post(
            "/api/admin/clips/reset", json={"channel": CHANNEL, "clip": 404}, headers=ADMIN
        )
        assert resp.status_code == 404

    def test_voting_switch(self, client):
        resp = client.put(
            f"/api/admin/channels/{CHANNEL}/voting", json={"enabled": False}, headers=ADMIN
        )
        assert resp.status_code == 200
        assert resp.json()["voting_enabled"] is False

        resp = vote(client, "alice", 1)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "VOTING_DISABLED"

        client.put(f"/api/admin/channels/{CHANNEL}/voting", json={"enabled": True}, headers=ADMIN)
        assert vote(client, "alice", 1).status_code == 200
