import unittest
from unittest.mock import AsyncMock, MagicMock, patch

try:
    import jwt
    from fastapi.testclient import TestClient
except Exception:
    raise unittest.SkipTest("fastapi test client not available")

import main
from api import auth
from api.auth import StaffUser, require_staff
from errors import BatchTooSmallError, RateLimitedError

SECRET = "test-session-secret-0123456789abcdef"


def _token(**claims) -> str:
    payload = {"discord_id": "500", "username": "staffer"}
    payload.update(claims)
    return jwt.encode(payload, SECRET, algorithm="HS256")


class AuthTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(main.app)
        self._patches = [
            patch.object(auth, "SESSION_SECRET", SECRET),
            patch.object(auth, "DISCORD_STAFF_ROLE_ID", "staff-role"),
        ]
        for p in self._patches:
            p.start()

    def tearDown(self) -> None:
        for p in reversed(self._patches):
            p.stop()

    def _guild_client(self, roles):
        client = MagicMock()
        client.get_member = AsyncMock(return_value={"user": {"id": "500"}, "roles": roles})
        return client

    def test_missing_cookie_is_401(self) -> None:
        response = self.client.get("/api/promotion-queue")
        self.assertEqual(401, response.status_code)
        self.assertEqual("UNAUTHORIZED", response.json()["code"])

    def test_bad_signature_is_401(self) -> None:
        bad = jwt.encode(
            {"discord_id": "500"},
            "another-session-secret-0123456789abcdef",
            algorithm="HS256",
        )
        self.client.cookies.set("session", bad)
        response = self.client.get("/api/promotion-queue")
        self.assertEqual(401, response.status_code)

    def test_non_staff_is_403(self) -> None:
        self.client.cookies.set("session", _token())
        with patch(
            "api.auth.get_api_client", new=AsyncMock(return_value=self._guild_client(["other"]))
        ):
            response = self.client.get("/api/promotion-queue")
        self.assertEqual(403, response.status_code)

    def test_staff_reaches_route(self) -> None:
        self.client.cookies.set("session", _token())
        with patch(
            "api.auth.get_api_client",
            new=AsyncMock(return_value=self._guild_client(["staff-role"])),
        ), patch(
            "promotion_queue.list_queue",
            new=AsyncMock(return_value={"items": [], "counts": {}}),
        ):
            response = self.client.get("/api/promotion-queue")
        self.assertEqual(200, response.status_code)
        self.assertEqual({"items": [], "counts": {}}, response.json())

    def test_decode_session_requires_discord_id(self) -> None:
        self.assertIsNone(auth.decode_session(_token(discord_id=None), SECRET))
        self.assertEqual("500", auth.decode_session(_token(), SECRET)["discord_id"])


class RouteTests(unittest.TestCase):
    def setUp(self) -> None:
        main.app.dependency_overrides[require_staff] = lambda: StaffUser("500", "staffer")
        self.client = TestClient(main.app)

    def tearDown(self) -> None:
        main.app.dependency_overrides.clear()

    def test_confirm_small_batch_maps_to_400(self) -> None:
        with patch(
            "promotion_queue.confirm_queue",
            new=AsyncMock(side_effect=BatchTooSmallError("too few", remaining=3)),
        ):
            response = self.client.post("/api/promotion-queue/confirm")
        self.assertEqual(400, response.status_code)
        body = response.json()
        self.assertEqual("BATCH_TOO_SMALL", body["code"])
        self.assertEqual(3, body["remaining"])

    def test_malformed_requests_map_to_400(self) -> None:
        review = AsyncMock()
        create = AsyncMock()
        with patch("applications.review", new=review), patch(
            "roster.create_member", new=create
        ):
            missing_action = self.client.post("/api/applications/1/review", json={})
            bad_json = self.client.post(
                "/api/clan-list/members",
                content=b"not json",
                headers={"Content-Type": "application/json"},
            )
            bad_id = self.client.get("/api/applications/abc")
        for response in (missing_action, bad_json, bad_id):
            self.assertEqual(400, response.status_code)
            self.assertEqual("VALIDATION_ERROR", response.json()["code"])
        review.assert_not_awaited()
        create.assert_not_awaited()

    def test_import_rate_limit_sets_retry_after(self) -> None:
        with patch(
            "clan_import.import_rows",
            new=AsyncMock(side_effect=RateLimitedError("wait", retry_after=12)),
        ):
            response = self.client.post("/api/clan-list/import", json={"rows": [{"uid": "1"}]})
        self.assertEqual(429, response.status_code)
        self.assertEqual("12", response.headers["Retry-After"])

    def test_process_passes_actor(self) -> None:
        process = AsyncMock(
            return_value={
                "processed_count": 4,
                "failed_count": 1,
                "announcement_posted": True,
                "failures": [],
            }
        )
        with patch("promotion_queue.process_queue", new=process):
            response = self.client.post("/api/promotion-queue/process")
        self.assertEqual(200, response.status_code)
        self.assertEqual(4, response.json()["processed_count"])
        self.assertEqual("500", process.await_args.kwargs["actor_id"])

    def test_clear_forwards_confirm_flag(self) -> None:
        clear = AsyncMock(return_value={"removed_count": 2})
        with patch("promotion_queue.clear_queue", new=clear):
            response = self.client.post("/api/promotion-queue/clear", json={"confirm": True})
        self.assertEqual(200, response.status_code)
        self.assertTrue(clear.await_args.kwargs["confirm"])

    def test_review_dispatch(self) -> None:
        review = AsyncMock(return_value={"ok": True, "status": "rejected"})
        with patch("applications.review", new=review):
            response = self.client.post(
                "/api/applications/7/review",
                json={"action": "reject", "deny_reason": "no"},
            )
        self.assertEqual(200, response.status_code)
        self.assertEqual((7, "reject"), review.await_args.args)
        self.assertEqual("no", review.await_args.kwargs["deny_reason"])

    def test_member_list_query_params(self) -> None:
        list_members = AsyncMock(return_value={"members": [], "total": 0})
        with patch("roster.list_members", new=list_members):
            response = self.client.get(
                "/api/clan-list/members?page=2&search=jay&has_tag=true"
            )
        self.assertEqual(200, response.status_code)
        kwargs = list_members.await_args.kwargs
        self.assertEqual(2, kwargs["page"])
        self.assertEqual("jay", kwargs["search"])
        self.assertTrue(kwargs["has_tag"])
        self.assertIsNone(kwargs["promotion_due"])
