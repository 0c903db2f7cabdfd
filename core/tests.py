import json
import logging
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from common.logging import JsonFormatter, RequestContextFilter
from core.models import AppSettings


class UserRoleTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()

    def test_pos_operator_alias_is_stored_as_order_operator(self):
        user = self.user_model.objects.create_user(username="pos", password="pass1234", role="POS_OPERATOR")

        user.refresh_from_db()
        self.assertEqual(user.role, self.user_model.Role.ORDER_OPERATOR)

    def test_email_is_normalized_on_save(self):
        user = self.user_model.objects.create_user(username="mail", email="  Mixed@Example.COM ", password="pass1234")

        user.refresh_from_db()
        self.assertEqual(user.email, "mixed@example.com")


class TokenLoginTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="login-user",
            email="login@example.com",
            password="pass1234",
            full_name="Login User",
            role="ADMIN",
        )

    def test_login_by_username_returns_tokens_and_user(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "login-user", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertIn("access", payload)
        self.assertIn("refresh", payload)
        self.assertEqual(payload["user"]["role"], "ADMIN")
        self.assertNotIn("password", payload["user"])

    def test_login_by_email_is_case_insensitive(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "LOGIN@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["username"], "login-user")

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "login-user", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["status"], 401)


class UserManagementTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.super_admin = self.user_model.objects.create_user(username="root", password="pass1234", role="SUPER_ADMIN")
        self.admin = self.user_model.objects.create_user(username="boss", password="pass1234", role="ADMIN")
        self.operator = self.user_model.objects.create_user(username="till", password="pass1234", role="ORDER_OPERATOR")

    def test_missing_user_uses_not_found_envelope(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/users/00000000-0000-0000-0000-000000000000/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")
        self.assertIsNone(response.json()["errors"])

    def test_operator_cannot_list_users_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.operator)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_creates_user_with_temporary_password(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/users/",
            {"username": "new-op", "full_name": "New Operator", "role": "POS_OPERATOR"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["role"], "ORDER_OPERATOR")
        self.assertTrue(payload["requires_password_reset"])
        created = self.user_model.objects.get(username="new-op")
        self.assertTrue(created.check_password(payload["temporary_password"]))

    def test_unknown_role_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/users/",
            {"username": "weird", "role": "JANITOR", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("role", response.json()["errors"])

    def test_admin_cannot_grant_super_admin(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/users/",
            {"username": "escalate", "role": "SUPER_ADMIN", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(self.user_model.objects.filter(username="escalate").exists())

    def test_super_admin_can_delete_user(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.delete(f"/api/v1/users/{self.operator.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(self.user_model.objects.filter(pk=self.operator.pk).exists())

    def test_user_cannot_delete_self(self):
        self.client.force_authenticate(user=self.super_admin)

        response = self.client.delete(f"/api/v1/users/{self.super_admin.id}/")

        self.assertEqual(response.status_code, 400)


class UserSettingsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="self", password="old-pass-123", full_name="Self")
        self.client.force_authenticate(user=self.user)

    def test_update_requires_current_password(self):
        response = self.client.patch("/api/v1/users/me/settings/", {"full_name": "Changed"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("current_password", response.json()["errors"])

    def test_wrong_current_password_is_rejected(self):
        response = self.client.patch(
            "/api/v1/users/me/settings/",
            {"full_name": "Changed", "current_password": "nope"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.user.refresh_from_db()
        self.assertEqual(self.user.full_name, "Self")

    def test_changes_name_and_password(self):
        response = self.client.patch(
            "/api/v1/users/me/settings/",
            {
                "full_name": "Changed",
                "new_password": "new-pass-456",
                "confirm_password": "new-pass-456",
                "current_password": "old-pass-123",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertEqual(self.user.full_name, "Changed")
        self.assertTrue(self.user.check_password("new-pass-456"))


class ForcedPasswordResetTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="first-login",
            password="temp-pass",
            requires_password_reset=True,
        )
        self.client.force_authenticate(user=self.user)

    def test_reset_clears_flag(self):
        response = self.client.post(
            "/api/v1/password-reset/",
            {"new_password": "brand-new-pass", "confirm_password": "brand-new-pass"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.user.refresh_from_db()
        self.assertFalse(self.user.requires_password_reset)
        self.assertTrue(self.user.check_password("brand-new-pass"))

    def test_mismatched_confirmation_is_rejected(self):
        response = self.client.post(
            "/api/v1/password-reset/",
            {"new_password": "brand-new-pass", "confirm_password": "other-pass-000"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.user.refresh_from_db()
        self.assertTrue(self.user.requires_password_reset)


class AppSettingsTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="cfg-admin", password="pass1234", role="ADMIN")
        self.operator = self.user_model.objects.create_user(username="cfg-op", password="pass1234", role="ORDER_OPERATOR")

    def test_load_creates_singleton_with_default_vat(self):
        settings_row = AppSettings.load()

        self.assertEqual(settings_row.vat_rate, Decimal("0.20"))
        self.assertEqual(AppSettings.load().pk, settings_row.pk)
        self.assertEqual(AppSettings.objects.count(), 1)

    def test_operator_reads_but_cannot_change_settings(self):
        self.client.force_authenticate(user=self.operator)

        read = self.client.get("/api/v1/settings/")
        write = self.client.patch("/api/v1/settings/", {"vat_rate": "0.15"}, format="json")

        self.assertEqual(read.status_code, 200)
        self.assertEqual(write.status_code, 403)

    def test_admin_updates_vat_rate(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(
            "/api/v1/settings/",
            {"vat_rate": "0.15", "business_name": "Crown Hair"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(AppSettings.load().vat_rate, Decimal("0.15"))

    def test_vat_rate_above_one_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch("/api/v1/settings/", {"vat_rate": "20"}, format="json")

        self.assertEqual(response.status_code, 400)


class RequestLoggingTests(TestCase):
    def test_incoming_request_id_is_echoed(self):
        response = self.client.get("/healthz/", HTTP_X_REQUEST_ID="till-42")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["X-Request-ID"], "till-42")
        self.assertEqual(response.json()["request_id"], "till-42")

    def test_request_id_is_generated_and_completion_logged(self):
        with self.assertLogs("api.request", level="INFO") as cm:
            response = self.client.get("/healthz/")

        self.assertTrue(response["X-Request-ID"])
        record = cm.records[-1]
        self.assertEqual(record.getMessage(), "request_completed")
        self.assertEqual(record.request_id, response["X-Request-ID"])
        self.assertEqual(record.status_code, 200)


class JsonFormatterTests(SimpleTestCase):
    def test_context_fields_become_top_level_keys(self):
        record = logging.LogRecord("sales.services", logging.INFO, __file__, 1, "order_created", None, None)
        record.order_number = "ORD-1"
        RequestContextFilter().filter(record)

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "order_created")
        self.assertEqual(payload["order_number"], "ORD-1")
        self.assertNotIn("request_id", payload)
