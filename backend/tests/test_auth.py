"""Tests for the session provider and profile lookup."""
from roomcast.auth.service import SessionService

from conftest import FakeClock


class TestProfileService:
    def test_upsert_refreshes_username(self, profiles):
        profiles.upsert_profile("alice", "Alice Renamed", avatar_url="https://img/a.png")

        profile = profiles.get_profile("alice")
        assert profile.username == "Alice Renamed"
        assert profile.avatar_url == "https://img/a.png"

    def test_batch_lookup_skips_unknown(self, profiles):
        found = profiles.get_profiles(["alice", "ghost", "bob"])

        assert set(found) == {"alice", "bob"}
        assert profiles.existing_ids(["ghost"]) == set()

    def test_unknown_profile(self, profiles):
        assert profiles.get_profile("ghost") is None


class TestSessionService:
    def test_token_resolves_to_profile(self, db, profiles):
        sessions = SessionService(db)
        token = sessions.create_session("bob")

        assert sessions.resolve(token).id == "bob"
        assert sessions.resolve("not-a-token") is None
        assert sessions.resolve(None) is None

    def test_expired_token_is_rejected(self, db, profiles):
        clock = FakeClock()
        sessions = SessionService(db, ttl_hours=1, clock=clock)
        token = sessions.create_session("bob")

        clock.advance(3600)

        assert sessions.resolve(token) is None

    def test_revoked_token_is_rejected(self, db, profiles):
        sessions = SessionService(db)
        token = sessions.create_session("bob")

        sessions.revoke(token)

        assert sessions.resolve(token) is None


class TestAuthDependencies:
    def test_cookie_session_is_accepted(self, api_client, tokens, app_config):
        api_client.cookies.set(app_config.auth.cookie_name, tokens["bob"])

        response = api_client.get("/auth/me")

        assert response.status_code == 200
        assert response.json()["id"] == "bob"

    def test_missing_session_is_401(self, api_client):
        response = api_client.get("/auth/me")

        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_unknown_bearer_is_401(self, api_client):
        response = api_client.get("/auth/me", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
