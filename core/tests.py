from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import InactiveEntityError, NotFoundError, ValidationFailedError
from core.models import AuditLog
from core.services import resolve_driver, resolve_user


class UserModelTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()

    def test_email_is_normalized_to_lowercase(self):
        user = self.user_model.objects.create_user(username="mixed", email="Mixed.Case@Example.COM", password="pass1234")

        user.refresh_from_db()
        self.assertEqual(user.email, "mixed.case@example.com")

    def test_new_users_default_to_operator_role(self):
        user = self.user_model.objects.create_user(username="plain", password="pass1234")

        self.assertEqual(user.role, self.user_model.Role.OPERADOR)
        self.assertFalse(user.is_driver)


class ResolveUserTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.driver = self.user_model.objects.create_user(
            username="driver-resolve",
            password="pass1234",
            role=self.user_model.Role.CONDUCTOR,
        )
        self.operator = self.user_model.objects.create_user(username="operator-resolve", password="pass1234")

    def test_missing_id_is_a_validation_error(self):
        with self.assertRaises(ValidationFailedError):
            resolve_user(None)

    def test_unknown_and_malformed_ids_are_not_found(self):
        with self.assertRaises(NotFoundError):
            resolve_user("00000000-0000-0000-0000-000000000000")
        with self.assertRaises(NotFoundError):
            resolve_user("not-a-uuid")

    def test_inactive_user_is_rejected(self):
        self.operator.is_active = False
        self.operator.save(update_fields=["is_active"])

        with self.assertRaises(InactiveEntityError):
            resolve_user(self.operator.pk)

    def test_resolve_driver_requires_conductor_role(self):
        self.assertEqual(resolve_driver(self.driver.pk), self.driver)
        with self.assertRaises(ValidationFailedError):
            resolve_driver(self.operator.pk)


class UserManagementTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(
            username="admin-users",
            password="pass1234",
            role=self.user_model.Role.ADMIN,
        )
        self.coordinator = self.user_model.objects.create_user(
            username="coordinator-users",
            password="pass1234",
            role=self.user_model.Role.COORDINADOR,
        )
        self.driver = self.user_model.objects.create_user(
            username="driver-users",
            password="pass1234",
            role=self.user_model.Role.CONDUCTOR,
        )

    def test_admin_creates_user_and_audit_log_is_written(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/users/",
            {
                "username": "new-driver",
                "email": "new.driver@example.com",
                "password": "a-long-safe-pass-123",
                "role": "conductor",
            },
            format="json",
            HTTP_X_REQUEST_ID="req-user-1",
        )

        self.assertEqual(response.status_code, 201)
        self.assertNotIn("password", response.json())
        created = self.user_model.objects.get(username="new-driver")
        self.assertTrue(created.check_password("a-long-safe-pass-123"))
        self.assertTrue(AuditLog.objects.filter(action="user.create", entity="user", request_id="req-user-1").exists())

    def test_duplicate_email_is_rejected_case_insensitively(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/users/",
            {
                "username": "copycat",
                "email": "ADMIN-USERS@example.com",
                "password": "a-long-safe-pass-123",
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201)

        duplicate = self.client.post(
            "/api/v1/users/",
            {
                "username": "copycat-2",
                "email": "Admin-Users@Example.com",
                "password": "a-long-safe-pass-123",
            },
            format="json",
        )

        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(duplicate.json()["code"], "validation_error")
        self.assertIn("email", duplicate.json()["errors"])

    def test_coordinator_cannot_manage_users_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.coordinator)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/users/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_coordinator_can_list_active_drivers(self):
        self.client.force_authenticate(user=self.coordinator)

        response = self.client.get("/api/v1/users/drivers/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["username"] for item in response.json()], ["driver-users"])

    def test_delete_deactivates_instead_of_removing(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/users/{self.driver.id}/")

        self.assertEqual(response.status_code, 204)
        self.driver.refresh_from_db()
        self.assertFalse(self.driver.is_active)
        self.assertTrue(AuditLog.objects.filter(action="user.deactivate", entity_id=self.driver.id).exists())

    def test_admin_cannot_deactivate_themselves(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/users/{self.admin.id}/")

        self.assertEqual(response.status_code, 400)
        self.admin.refresh_from_db()
        self.assertTrue(self.admin.is_active)


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="token@example.com",
            password="pass1234",
            role="coordinador",
        )

    def test_token_can_be_obtained_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_wrong_password_uses_error_envelope(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-user", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["status"], 401)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(
            username="audit-admin",
            password="pass1234",
            role="admin",
        )
        self.operator = self.user_model.objects.create_user(username="audit-operator", password="pass1234")

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_and_export(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="route.create", entity="route", actor=self.admin)
        AuditLog.objects.create(action="vehicle.update", entity="vehicle", actor=self.admin)

        filtered = self.client.get("/api/v1/admin/audit-logs/", {"entity": "route"})
        export = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(filtered.status_code, 200)
        self.assertEqual([item["action"] for item in filtered.json()["results"]], ["route.create"])
        self.assertEqual(export.status_code, 200)
        self.assertEqual(export["Content-Type"], "text/csv")
        self.assertIn("vehicle.update", export.content.decode())

    def test_operator_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.operator)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)


class HealthTests(TestCase):
    def test_health_endpoints_echo_request_id(self):
        client = APIClient()

        health = client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")
        ready = client.get("/api/v1/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["request_id"], "req-health")
        self.assertEqual(health["X-Request-ID"], "req-health")
        self.assertEqual(ready.json()["status"], "ready")
