"""End-to-end tests for the HTTP API."""

from __future__ import annotations

import tempfile
import unittest
from pathlib import Path
from unittest import mock

from fastapi.testclient import TestClient

from kartapi.api import create_app
from kartapi.config import Settings
from kartapi.database import Database
from kartapi.models import Category, Group, Role
from kartapi.operating_hours import OperatingHoursRegistry

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "admin-secret"
PREFIX = "/api/v1"


class KartApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "kart.sqlite3"
        self.database = Database(db_path)
        self.database.initialize()
        self.settings = Settings(
            database_path=db_path,
            jwt_secret="test-secret",
            bcrypt_rounds=4,
            admin_name="Admin",
            admin_email=ADMIN_EMAIL,
            admin_password=ADMIN_PASSWORD,
            cors_origins=(),
        )
        self.app = create_app(settings=self.settings, database=self.database)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.client.close()
        self._tempdir.cleanup()

    def _login(self, email: str, password: str) -> dict[str, str]:
        response = self.client.post(f"{PREFIX}/users/login", json={"email": email, "password": password})
        self.assertEqual(response.status_code, 200, response.text)
        return {"Authorization": f"Bearer {response.json()['data']['token']}"}

    def _admin(self) -> dict[str, str]:
        return self._login(ADMIN_EMAIL, ADMIN_PASSWORD)

    def _create_user(self, name: str, email: str, password: str = "secret123") -> dict:
        response = self.client.post(
            f"{PREFIX}/users",
            json={"name": name, "email": email, "password": password},
            headers=self._admin(),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    def _create_classification(self, category: str, driver_name: str, points: float) -> dict:
        response = self.client.post(
            f"{PREFIX}/classifications",
            json={"category": category, "driverName": driver_name, "points": points},
            headers=self._admin(),
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    # ------------------------------------------------------------------
    # Service endpoints
    # ------------------------------------------------------------------
    def test_root_and_health(self) -> None:
        root = self.client.get("/")
        self.assertEqual(root.status_code, 200)
        self.assertTrue(root.json()["success"])

        health = self.client.get(f"{PREFIX}/health")
        self.assertEqual(health.status_code, 200)
        payload = health.json()
        self.assertEqual(payload["database"]["status"], "Connected")
        self.assertEqual(payload["api"]["status"], "Running")

    def test_unreachable_database_is_reported(self) -> None:
        with mock.patch.object(self.database, "ping", return_value=False):
            health = self.client.get(f"{PREFIX}/health")
            self.assertEqual(health.status_code, 503)
            self.assertEqual(health.json()["database"]["status"], "Disconnected")

            listing = self.client.get(f"{PREFIX}/classifications")
            self.assertEqual(listing.status_code, 500)
            self.assertFalse(listing.json()["success"])

    def test_large_responses_are_gzip_compressed(self) -> None:
        OperatingHoursRegistry(self.database).seed()

        response = self.client.get(f"{PREFIX}/operating-hours", headers={"Accept-Encoding": "gzip"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers.get("content-encoding"), "gzip")
        self.assertEqual(len(response.json()["data"]["footer"]), 7)

        small = self.client.get("/", headers={"Accept-Encoding": "gzip"})
        self.assertNotIn("content-encoding", small.headers)

    def test_unknown_route_uses_envelope(self) -> None:
        response = self.client.get(f"{PREFIX}/nowhere")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json(), {"success": False, "message": f"Route not found - {PREFIX}/nowhere"})

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    def test_admin_is_bootstrapped_once(self) -> None:
        create_app(settings=self.settings, database=self.database)
        admins = [user for user in self.database.list_users(limit=100) if user.role is Role.ADMIN]
        self.assertEqual(len(admins), 1)

    def test_login_returns_camel_case_user_without_hash(self) -> None:
        response = self.client.post(
            f"{PREFIX}/users/login",
            json={"email": ADMIN_EMAIL.upper(), "password": ADMIN_PASSWORD},
        )
        self.assertEqual(response.status_code, 200, response.text)
        user = response.json()["data"]["user"]
        self.assertEqual(user["role"], "ADMIN")
        self.assertTrue(user["isActive"])
        self.assertIn("createdAt", user)
        self.assertNotIn("passwordHash", user)
        self.assertNotIn("password_hash", user)

    def test_login_failures_are_indistinguishable(self) -> None:
        unknown = self.client.post(
            f"{PREFIX}/users/login",
            json={"email": "nobody@example.com", "password": ADMIN_PASSWORD},
        )
        wrong = self.client.post(
            f"{PREFIX}/users/login",
            json={"email": ADMIN_EMAIL, "password": "not-the-password"},
        )
        self.assertEqual(unknown.status_code, 401)
        self.assertEqual(wrong.status_code, 401)
        self.assertEqual(unknown.json(), wrong.json())

    def test_profile_requires_valid_token(self) -> None:
        missing = self.client.get(f"{PREFIX}/users/profile")
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(missing.json()["message"], "Access token not provided")

        invalid = self.client.get(f"{PREFIX}/users/profile", headers={"Authorization": "Bearer nope"})
        self.assertEqual(invalid.status_code, 401)

        profile = self.client.get(f"{PREFIX}/users/profile", headers=self._admin())
        self.assertEqual(profile.status_code, 200)
        self.assertEqual(profile.json()["data"]["email"], ADMIN_EMAIL)

    def test_profile_update_cannot_escalate_role(self) -> None:
        self._create_user("Alice", "alice@example.com")
        headers = self._login("alice@example.com", "secret123")

        response = self.client.put(
            f"{PREFIX}/users/profile",
            json={"name": "Alicia", "role": "ADMIN", "isActive": False},
            headers=headers,
        )
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["name"], "Alicia")
        self.assertEqual(data["role"], "USER")
        self.assertTrue(data["isActive"])

    def test_regular_user_is_forbidden_from_admin_routes(self) -> None:
        self._create_user("Alice", "alice@example.com")
        headers = self._login("alice@example.com", "secret123")

        response = self.client.get(f"{PREFIX}/users", headers=headers)
        self.assertEqual(response.status_code, 403)
        self.assertFalse(response.json()["success"])

        response = self.client.post(
            f"{PREFIX}/classifications",
            json={"category": "A", "driverName": "Alice", "points": 10},
            headers=headers,
        )
        self.assertEqual(response.status_code, 403)

    def test_create_user_validation_and_duplicates(self) -> None:
        self._create_user("Alice", "alice@example.com")
        admin = self._admin()

        duplicate = self.client.post(
            f"{PREFIX}/users",
            json={"name": "Other", "email": "ALICE@example.com", "password": "secret123"},
            headers=admin,
        )
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["message"], "Email is already in use")

        invalid = self.client.post(
            f"{PREFIX}/users",
            json={"name": "B", "email": "not-an-email", "password": "123"},
            headers=admin,
        )
        self.assertEqual(invalid.status_code, 400)
        self.assertFalse(invalid.json()["success"])

    def test_user_listing_and_soft_delete(self) -> None:
        alice = self._create_user("Alice", "alice@example.com")
        self._create_user("Bob", "bob@example.com")
        admin = self._admin()

        listing = self.client.get(f"{PREFIX}/users", params={"page": 1, "limit": 2}, headers=admin)
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["pagination"], {"page": 1, "limit": 2, "total": 3, "pages": 2})
        self.assertEqual(listing.json()["data"][0]["name"], "Bob")

        deleted = self.client.delete(f"{PREFIX}/users/{alice['id']}", headers=admin)
        self.assertEqual(deleted.status_code, 200)

        login = self.client.post(
            f"{PREFIX}/users/login",
            json={"email": "alice@example.com", "password": "secret123"},
        )
        self.assertEqual(login.status_code, 401)

        fetched = self.client.get(f"{PREFIX}/users/{alice['id']}", headers=admin)
        self.assertEqual(fetched.status_code, 200)
        self.assertFalse(fetched.json()["data"]["isActive"])

        self.assertEqual(self.client.get(f"{PREFIX}/users/9999", headers=admin).status_code, 404)
        self.assertEqual(self.client.get(f"{PREFIX}/users/abc", headers=admin).status_code, 400)

    def test_admin_updates_user_with_snake_or_camel_case(self) -> None:
        alice = self._create_user("Alice", "alice@example.com")
        admin = self._admin()

        response = self.client.put(
            f"{PREFIX}/users/{alice['id']}",
            json={"role": "ADMIN", "is_active": True, "email": "alicia@example.com"},
            headers=admin,
        )
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["role"], "ADMIN")
        self.assertEqual(data["email"], "alicia@example.com")

    # ------------------------------------------------------------------
    # Classifications
    # ------------------------------------------------------------------
    def test_classification_lifecycle_keeps_positions_dense(self) -> None:
        alice = self._create_classification("A", "Alice", 50)
        self.assertEqual(alice["position"], 1)
        bob = self._create_classification("A", "Bob", 80)
        self.assertEqual(bob["position"], 1)

        fetched = self.client.get(f"{PREFIX}/classifications/{alice['id']}")
        self.assertEqual(fetched.json()["data"]["position"], 2)

        admin = self._admin()
        updated = self.client.put(
            f"{PREFIX}/classifications/{alice['id']}",
            json={"points": 100},
            headers=admin,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["data"]["position"], 1)

        deleted = self.client.delete(f"{PREFIX}/classifications/{alice['id']}", headers=admin)
        self.assertEqual(deleted.status_code, 200)

        category = self.client.get(f"{PREFIX}/classifications/category/A")
        self.assertEqual(
            [(item["driverName"], item["position"]) for item in category.json()["data"]],
            [("Bob", 1)],
        )
        self.assertEqual(self.client.get(f"{PREFIX}/classifications/{alice['id']}").status_code, 404)

    def test_duplicate_driver_and_invalid_payloads(self) -> None:
        self._create_classification("A", "Alice", 50)
        admin = self._admin()

        duplicate = self.client.post(
            f"{PREFIX}/classifications",
            json={"category": "A", "driverName": "Alice", "points": 1},
            headers=admin,
        )
        self.assertEqual(duplicate.status_code, 400)

        negative = self.client.post(
            f"{PREFIX}/classifications",
            json={"category": "A", "driverName": "Carla", "points": -1},
            headers=admin,
        )
        self.assertEqual(negative.status_code, 400)

        self.assertEqual(self.client.get(f"{PREFIX}/classifications/category/Z").status_code, 400)

    def test_listing_filters_and_leaderboard(self) -> None:
        self._create_classification("A", "Ana Souza", 30)
        self._create_classification("A", "Bruno", 20)
        self._create_classification("OURO", "Ana Lima", 10)

        listing = self.client.get(
            f"{PREFIX}/classifications",
            params={"driverName": "ana", "minPoints": 5, "limit": 1},
        )
        self.assertEqual(listing.status_code, 200)
        self.assertEqual(listing.json()["pagination"]["total"], 2)
        self.assertEqual(listing.json()["pagination"]["pages"], 2)

        self.assertEqual(
            self.client.get(f"{PREFIX}/classifications", params={"limit": 101}).status_code,
            400,
        )

        board = self.client.get(f"{PREFIX}/classifications/leaderboard").json()["data"]
        self.assertEqual(list(board), [category.value for category in Category])
        self.assertEqual([item["driverName"] for item in board["A"]], ["Ana Souza", "Bruno"])
        self.assertEqual(board["F"], [])

    def test_bulk_classifications_reconcile_and_report(self) -> None:
        alice = self._create_classification("A", "Alice", 50)
        bob = self._create_classification("A", "Bob", 80)

        response = self.client.put(
            f"{PREFIX}/classifications/bulk",
            json={
                "classifications": [
                    {"_id": alice["id"], "category": "A", "driverName": "Alice", "points": 90},
                    {"category": "B", "driverName": "Carla", "points": 10},
                    {"id": 999, "category": "B", "driverName": "Ghost", "points": 1},
                ]
            },
            headers=self._admin(),
        )
        self.assertEqual(response.status_code, 200, response.text)
        data = response.json()["data"]
        self.assertEqual(data["total"], {"created": 1, "updated": 1, "unchanged": 0, "deleted": 1, "errors": 1})
        self.assertEqual(data["deleted"], [bob["id"]])
        self.assertEqual(data["errors"][0]["id"], 999)

    def test_bulk_classifications_requires_items(self) -> None:
        response = self.client.put(
            f"{PREFIX}/classifications/bulk",
            json={"classifications": []},
            headers=self._admin(),
        )
        self.assertEqual(response.status_code, 400)

    # ------------------------------------------------------------------
    # Operating hours
    # ------------------------------------------------------------------
    def test_operating_hours_reads_and_updates(self) -> None:
        OperatingHoursRegistry(self.database).seed()
        admin = self._admin()

        grouped = self.client.get(f"{PREFIX}/operating-hours").json()["data"]
        self.assertEqual(len(grouped["header"]), 2)
        self.assertEqual(len(grouped["footer"]), 7)

        header = grouped["header"][0]
        updated = self.client.put(
            f"{PREFIX}/operating-hours/{header['id']}",
            json={"label": "Tuesday to Friday"},
            headers=admin,
        )
        self.assertEqual(updated.status_code, 200, updated.text)
        self.assertEqual(updated.json()["data"]["label"], "Tuesday to Friday")

        toggled = self.client.patch(f"{PREFIX}/operating-hours/{header['id']}/visibility", headers=admin)
        self.assertFalse(toggled.json()["data"]["visible"])

        visible = self.client.get(f"{PREFIX}/operating-hours/visible").json()["data"]
        self.assertEqual(len(visible["header"]), 1)

        footer = self.client.get(f"{PREFIX}/operating-hours/group/FOOTER")
        self.assertEqual(footer.status_code, 200)
        self.assertTrue(all(item["group"] == Group.FOOTER.value for item in footer.json()["data"]))

        self.assertEqual(self.client.get(f"{PREFIX}/operating-hours/group/sidebar").status_code, 400)
        self.assertEqual(self.client.get(f"{PREFIX}/operating-hours/999").status_code, 404)

    def test_operating_hours_bulk_update(self) -> None:
        OperatingHoursRegistry(self.database).seed()
        admin = self._admin()
        footer = self.client.get(f"{PREFIX}/operating-hours/group/footer").json()["data"]

        response = self.client.put(
            f"{PREFIX}/operating-hours/bulk-update",
            json=[
                {"id": footer[0]["id"], "visible": False},
                {"_id": footer[1]["id"], "label": footer[1]["label"]},
                {"id": 999, "label": "Missing"},
            ],
            headers=admin,
        )
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(response.json()["data"]["total"], {"updated": 1, "unchanged": 1, "errors": 1})

        empty = self.client.put(f"{PREFIX}/operating-hours/bulk-update", json=[], headers=admin)
        self.assertEqual(empty.status_code, 400)

        anonymous = self.client.put(f"{PREFIX}/operating-hours/bulk-update", json=[])
        self.assertEqual(anonymous.status_code, 401)



class RateLimitTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tempdir = tempfile.TemporaryDirectory()
        db_path = Path(self._tempdir.name) / "kart.sqlite3"
        self.settings = Settings(
            database_path=db_path,
            jwt_secret="test-secret",
            bcrypt_rounds=4,
            cors_origins=(),
            rate_limit_max=2,
        )

    def tearDown(self) -> None:
        self._tempdir.cleanup()

    def test_requests_over_the_limit_get_429_envelope(self) -> None:
        app = create_app(settings=self.settings, bootstrap_admin=False)

        with TestClient(app) as client:
            first = client.get(f"{PREFIX}/classifications")
            self.assertEqual(first.status_code, 200)
            self.assertEqual(first.headers["X-RateLimit-Limit"], "2")
            self.assertEqual(first.headers["X-RateLimit-Remaining"], "1")

            self.assertEqual(client.get(f"{PREFIX}/classifications").status_code, 200)

            limited = client.get(f"{PREFIX}/classifications")
            self.assertEqual(limited.status_code, 429)
            self.assertEqual(
                limited.json(),
                {"success": False, "message": "Too many requests, please try again later"},
            )
            self.assertGreaterEqual(int(limited.headers["Retry-After"]), 1)
            self.assertEqual(limited.headers["X-RateLimit-Remaining"], "0")

    def test_zero_disables_the_limit(self) -> None:
        settings = Settings.from_dict({"rate_limit_max": 0}, self.settings)
        app = create_app(settings=settings, bootstrap_admin=False)

        with TestClient(app) as client:
            for _ in range(5):
                response = client.get("/")
                self.assertEqual(response.status_code, 200)
                self.assertNotIn("X-RateLimit-Limit", response.headers)

if __name__ == "__main__":  # pragma: no cover
    unittest.main()
