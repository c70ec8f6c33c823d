import os
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from decimal import Decimal
from unittest import mock

from fastapi.testclient import TestClient

from backend.errors import ConflictError
from backend.insights_engine import parse_report
from backend.main import RegisterPayload, create_app, register_user
from backend.salary_reminder import ReminderCalculationError
from backend.settings import ConfigurationError, Settings

JWT_SECRET = "api-test-secret-value-that-is-long-enough"
PASSWORD = "Secret123"


class StaticInsightsProvider:
    def __init__(self, report) -> None:
        self.report = report

    def generate(self, expenses):
        return self.report


def make_settings(database_url: str, **overrides) -> Settings:
    values = {
        "app_env": "test",
        "database_url": database_url,
        "jwt_secret": JWT_SECRET,
        "rate_limit_enabled": False,
        "log_format": "text",
        "log_level": "WARNING",
        "openai_api_key": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class ApiTestCase(unittest.TestCase):
    settings_overrides: dict = {}

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.database_url = f"sqlite:///{os.path.join(self.tmpdir.name, 'test.db')}"
        self.app = create_app(
            make_settings(self.database_url, **self.settings_overrides),
            today=lambda: date(2025, 1, 10),
        )
        self.client = TestClient(self.app, raise_server_exceptions=False)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        self.app.state.engine.dispose()
        self.tmpdir.cleanup()

    def register(self, email: str = "ada@example.com", name: str = "Ada") -> dict:
        response = self.client.post(
            "/auth/register", json={"name": name, "email": email, "password": PASSWORD}
        )
        self.assertEqual(response.status_code, 201, response.text)
        self.client.cookies.clear()
        return response.json()["data"]

    def auth(self, token: str) -> dict:
        return {"Authorization": f"Bearer {token}"}


class AuthApiTests(ApiTestCase):
    def test_register_returns_token_user_and_cookie(self) -> None:
        response = self.client.post(
            "/auth/register",
            json={"name": "Ada", "email": "Ada@Example.com", "password": PASSWORD},
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["data"]["user"]["email"], "ada@example.com")
        self.assertTrue(body["data"]["token"])
        cookie = response.headers["set-cookie"]
        self.assertIn("authToken=", cookie)
        self.assertIn("HttpOnly", cookie)
        self.assertIn("SameSite=strict", cookie)

    def test_duplicate_email_conflicts_case_insensitively(self) -> None:
        self.register(email="ada@example.com")

        response = self.client.post(
            "/auth/register",
            json={"name": "Other", "email": "ADA@example.com", "password": PASSWORD},
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["error"], "User with this email already exists")

    def test_register_validation(self) -> None:
        weak = self.client.post(
            "/auth/register", json={"name": "Ada", "email": "ada@example.com", "password": "secret"}
        )
        bad_email = self.client.post(
            "/auth/register", json={"name": "Ada", "email": "not-an-email", "password": PASSWORD}
        )
        missing = self.client.post("/auth/register", json={"email": "ada@example.com"})

        for response in (weak, bad_email, missing):
            self.assertEqual(response.status_code, 400)
            self.assertFalse(response.json()["success"])

    def test_login_success_and_failures(self) -> None:
        self.register()

        ok = self.client.post("/auth/login", json={"email": "ada@example.com", "password": PASSWORD})
        wrong = self.client.post("/auth/login", json={"email": "ada@example.com", "password": "Wrong123"})
        unknown = self.client.post("/auth/login", json={"email": "bob@example.com", "password": PASSWORD})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["data"]["user"]["name"], "Ada")
        for response in (wrong, unknown):
            self.assertEqual(response.status_code, 401)
            self.assertEqual(response.json()["error"], "Invalid email or password")

    def test_me_requires_valid_identity(self) -> None:
        data = self.register()

        ok = self.client.get("/auth/me", headers=self.auth(data["token"]))
        missing = self.client.get("/auth/me")
        garbage = self.client.get("/auth/me", headers=self.auth("garbage"))

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["data"]["id"], data["user"]["id"])
        self.assertEqual(missing.status_code, 401)
        self.assertEqual(garbage.status_code, 401)
        self.assertEqual(missing.json()["error"], garbage.json()["error"])

    def test_cookie_authenticates_and_header_takes_precedence(self) -> None:
        ada = self.register(email="ada@example.com", name="Ada")
        bob = self.register(email="bob@example.com", name="Bob")

        cookie = {"Cookie": f"authToken={bob['token']}"}
        cookie_only = self.client.get("/auth/me", headers=cookie)
        both = self.client.get("/auth/me", headers={**cookie, **self.auth(ada["token"])})
        bad_header = self.client.get("/auth/me", headers={**cookie, **self.auth("garbage")})

        self.assertEqual(cookie_only.json()["data"]["name"], "Bob")
        self.assertEqual(both.json()["data"]["name"], "Ada")
        self.assertEqual(bad_header.status_code, 401)

    def test_logout_clears_cookie(self) -> None:
        response = self.client.post("/auth/logout")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["message"], "Logout successful")
        self.assertIn("Max-Age=0", response.headers["set-cookie"])

    def test_concurrent_registration_with_same_email_yields_one_user(self) -> None:
        engine = self.app.state.engine

        def attempt(index: int) -> str:
            payload = RegisterPayload(name=f"User {index}", email="race@example.com", password=PASSWORD)
            try:
                register_user(engine, payload)
            except ConflictError:
                return "conflict"
            return "created"

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(attempt, range(4)))

        self.assertEqual(outcomes.count("created"), 1)
        self.assertEqual(outcomes.count("conflict"), 3)


class SalaryApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.auth(self.register()["token"])

    def test_get_without_reminder(self) -> None:
        response = self.client.get("/salary", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["data"])
        self.assertEqual(response.json()["message"], "No salary reminder set")

    def test_create_then_update_reminder(self) -> None:
        created = self.client.post("/salary", json={"salaryDate": 15}, headers=self.headers)
        updated = self.client.post("/salary", json={"salaryDate": 31}, headers=self.headers)
        fetched = self.client.get("/salary", headers=self.headers)

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["data"]["nextSalaryDate"], "2025-01-15")
        self.assertEqual(created.json()["data"]["daysRemaining"], 5)
        self.assertEqual(created.json()["data"]["label"], "5 days until salary")
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["message"], "Salary reminder updated successfully")
        data = fetched.json()["data"]
        self.assertEqual(data["salaryDate"], 31)
        self.assertEqual(data["nextSalaryDate"], "2025-01-31")
        self.assertEqual(data["daysRemaining"], 21)
        self.assertEqual(data["status"], "upcoming")

    def test_invalid_salary_day_is_rejected(self) -> None:
        for body in ({"salaryDate": 0}, {"salaryDate": 32}, {"salaryDate": "15"}, {}):
            response = self.client.post("/salary", json=body, headers=self.headers)
            self.assertEqual(response.status_code, 400, body)
            self.assertFalse(response.json()["success"])

    def test_delete_is_idempotent(self) -> None:
        self.client.post("/salary", json={"salaryDate": 1}, headers=self.headers)

        first = self.client.delete("/salary", headers=self.headers)
        second = self.client.delete("/salary", headers=self.headers)

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["message"], "Salary reminder deleted successfully")
        self.assertEqual(second.status_code, 200)
        self.assertEqual(
            second.json()["message"],
            "Salary reminder not found (already deleted or never existed)",
        )

    def test_reminders_are_per_user(self) -> None:
        other = self.auth(self.register(email="bob@example.com")["token"])
        self.client.post("/salary", json={"salaryDate": 20}, headers=self.headers)

        response = self.client.get("/salary", headers=other)

        self.assertIsNone(response.json()["data"])

    def test_requires_identity(self) -> None:
        self.assertEqual(self.client.get("/salary").status_code, 401)
        self.assertEqual(self.client.post("/salary", json={"salaryDate": 5}).status_code, 401)

    def test_calculation_fault_is_internal_error(self) -> None:
        self.client.post("/salary", json={"salaryDate": 15}, headers=self.headers)

        with mock.patch(
            "backend.main.next_salary_date", side_effect=ReminderCalculationError("bad date")
        ):
            response = self.client.get("/salary", headers=self.headers)

        self.assertEqual(response.status_code, 500)
        self.assertFalse(response.json()["success"])


class ExpenseApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.auth(self.register()["token"])

    def add_expense(self, amount, category, on, note="note", headers=None) -> dict:
        response = self.client.post(
            "/expenses",
            json={"amount": amount, "category": category, "note": note, "date": on},
            headers=headers or self.headers,
        )
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["data"]

    def test_create_and_list_with_pagination(self) -> None:
        self.add_expense(10, "Food", "2025-01-01")
        self.add_expense(20, "Food", "2025-01-02")
        self.add_expense(30, "Rent", "2025-01-03")

        response = self.client.get("/expenses?page=1&limit=2", headers=self.headers)

        data = response.json()["data"]
        self.assertEqual(len(data["expenses"]), 2)
        self.assertEqual(data["expenses"][0]["date"], "2025-01-03")
        self.assertEqual(
            data["pagination"], {"page": 1, "limit": 2, "total": 3, "totalPages": 2}
        )

    def test_invalid_expense_is_rejected(self) -> None:
        response = self.client.post(
            "/expenses",
            json={"amount": -5, "category": "Food", "note": "x", "date": "2025-01-01"},
            headers=self.headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_amount_must_fit_two_decimal_column(self) -> None:
        for amount in (100000000, 12.345):
            response = self.client.post(
                "/expenses",
                json={"amount": amount, "category": "Food", "note": "x", "date": "2025-01-01"},
                headers=self.headers,
            )
            self.assertEqual(response.status_code, 400, amount)

        largest = self.add_expense("99999999.99", "Food", "2025-01-01")
        self.assertEqual(Decimal(largest["amount"]), Decimal("99999999.99"))

    def test_monthly_and_yearly_summary(self) -> None:
        self.add_expense(12.5, "Food", "2025-01-05")
        self.add_expense(40, "Rent", "2025-01-06")
        self.add_expense(7.5, "Food", "2025-02-01")
        self.add_expense(99, "Food", "2024-01-05")

        monthly = self.client.get("/expenses/summary?year=2025&month=1", headers=self.headers)
        yearly = self.client.get("/expenses/summary/yearly?year=2025", headers=self.headers)
        no_year = self.client.get("/expenses/summary?month=1", headers=self.headers)

        summary = monthly.json()["data"]
        self.assertEqual(Decimal(summary["total"]), Decimal("52.5"))
        self.assertEqual(summary["count"], 2)
        self.assertEqual(list(summary["categoryTotals"]), ["Rent", "Food"])
        year = yearly.json()["data"]
        self.assertEqual(year["year"], 2025)
        self.assertEqual(Decimal(year["total"]), Decimal("60"))
        self.assertEqual(len(year["months"]), 12)
        self.assertEqual(year["months"][1]["count"], 1)
        self.assertEqual(no_year.status_code, 400)

    def test_update_and_delete_are_scoped_to_owner(self) -> None:
        expense = self.add_expense(10, "Food", "2025-01-01")
        other = self.auth(self.register(email="bob@example.com")["token"])
        body = {"amount": 15, "category": "Food", "note": "dinner", "date": "2025-01-01"}

        foreign_update = self.client.put(f"/expenses/{expense['id']}", json=body, headers=other)
        foreign_delete = self.client.delete(f"/expenses/{expense['id']}", headers=other)
        updated = self.client.put(f"/expenses/{expense['id']}", json=body, headers=self.headers)
        deleted = self.client.delete(f"/expenses/{expense['id']}", headers=self.headers)

        self.assertEqual(foreign_update.status_code, 404)
        self.assertEqual(foreign_delete.status_code, 404)
        self.assertEqual(updated.json()["data"]["note"], "dinner")
        self.assertEqual(Decimal(updated.json()["data"]["amount"]), Decimal("15"))
        self.assertEqual(deleted.status_code, 200)


class CategoryApiTests(ApiTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.headers = self.auth(self.register()["token"])

    def test_create_list_and_delete(self) -> None:
        created = self.client.post("/categories", json={"categoryName": "Pets"}, headers=self.headers)
        duplicate = self.client.post("/categories", json={"categoryName": "Pets"}, headers=self.headers)
        listed = self.client.get("/categories", headers=self.headers)
        deleted = self.client.delete("/categories/Pets", headers=self.headers)
        missing = self.client.delete("/categories/Pets", headers=self.headers)

        self.assertEqual(created.status_code, 201)
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(listed.json()["data"], ["Pets"])
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(missing.status_code, 404)

    def test_delete_trims_category_name_like_create(self) -> None:
        self.client.post("/categories", json={"categoryName": "Pets"}, headers=self.headers)

        response = self.client.delete("/categories/Pets%20", headers=self.headers)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.client.get("/categories", headers=self.headers).json()["data"], [])


class InsightsApiTests(ApiTestCase):
    def test_requires_identity_and_expenses(self) -> None:
        headers = self.auth(self.register()["token"])

        anonymous = self.client.post("/ai/insights", json={"expenses": []})
        empty = self.client.post("/ai/insights", json={"expenses": []}, headers=headers)

        self.assertEqual(anonymous.status_code, 401)
        self.assertEqual(empty.status_code, 400)

    def test_mock_insights_without_api_key(self) -> None:
        headers = self.auth(self.register()["token"])
        expenses = [
            {"amount": 600, "category": "Food", "note": "groceries", "date": "2025-01-02"},
            {"amount": 400, "category": "Rent", "note": "rent", "date": "2025-01-01"},
        ]

        response = self.client.post("/ai/insights", json={"expenses": expenses}, headers=headers)

        self.assertEqual(response.status_code, 200)
        data = response.json()["data"]
        self.assertEqual(data["source"], "mock")
        self.assertEqual(data["insights"][0]["type"], "overspending")
        self.assertIn("generatedAt", data)
        self.assertIn("OpenAI API key not configured", response.json()["message"])

    def test_model_output_with_non_string_fields_still_renders(self) -> None:
        headers = self.auth(self.register()["token"])
        content = (
            '{"insights": [{"type": "trend", "title": "t", "description": "d", '
            '"category": 5, "severity": 3}], "summary": "s"}'
        )
        self.app.state.insights = StaticInsightsProvider(parse_report(content, source="openai"))
        expenses = [{"amount": 10, "category": "Food", "note": "lunch", "date": "2025-01-02"}]

        response = self.client.post("/ai/insights", json={"expenses": expenses}, headers=headers)

        self.assertEqual(response.status_code, 200)
        insight = response.json()["data"]["insights"][0]
        self.assertIsNone(insight["category"])
        self.assertIsNone(insight["severity"])


class HealthAndConfigTests(ApiTestCase):
    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["data"]["database"], "connected")

    def test_production_without_secret_fails_at_startup(self) -> None:
        settings = make_settings(self.database_url, app_env="production", jwt_secret=None)

        with self.assertRaises(ConfigurationError):
            create_app(settings)


class RateLimitApiTests(ApiTestCase):
    settings_overrides = {"rate_limit_enabled": True, "auth_rate_limit": 2, "api_rate_limit": 100}

    def test_login_attempts_over_limit_are_rejected(self) -> None:
        body = {"email": "nobody@example.com", "password": PASSWORD}

        statuses = [self.client.post("/auth/login", json=body).status_code for _ in range(3)]

        self.assertEqual(statuses, [401, 401, 429])


if __name__ == "__main__":
    unittest.main()
