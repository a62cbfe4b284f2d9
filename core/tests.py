import uuid

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient
from rest_framework_simplejwt.tokens import AccessToken

from common.audit import create_audit_log
from common.permissions import get_user_role, user_has_capability
from common.utils import emit_outbox
from core.models import Branch


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="log-user",
            email="Logistics@Example.com",
            password="pass1234",
            first_name="Min",
            last_name="Park",
            role="logistics",
        )

    def test_email_is_normalized_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "logistics@example.com")

    def test_token_accepts_email_and_carries_role(self):
        response = self.client.post(
            "/api/v1/token/", {"username": "LOGISTICS@example.com", "password": "pass1234"}, format="json"
        )

        self.assertEqual(response.status_code, 200)
        token = AccessToken(response.json()["access"])
        self.assertEqual(token["role"], "logistics")
        self.assertEqual(token["display_name"], "Min Park")

    def test_bad_credentials_use_error_envelope(self):
        response = self.client.post("/api/v1/token/", {"username": "log-user", "password": "wrong"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class RoleCapabilityTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()

    def test_matrix_follows_team_boundaries(self):
        operator = self.user_model.objects.create_user(username="ops", password="pass1234", role="operations")
        logistics = self.user_model.objects.create_user(username="log", password="pass1234", role="logistics")

        self.assertTrue(user_has_capability(operator, "branch.confirm"))
        self.assertFalse(user_has_capability(operator, "procurement.process"))
        self.assertTrue(user_has_capability(logistics, "procurement.process"))
        self.assertFalse(user_has_capability(logistics, "request.create"))
        self.assertFalse(user_has_capability(logistics, "unknown.capability"))

    def test_superuser_is_treated_as_admin(self):
        admin = self.user_model.objects.create_superuser(username="root", password="pass1234", email="root@example.com")

        self.assertEqual(get_user_role(admin), "admin")
        self.assertTrue(user_has_capability(admin, "process.terminate"))


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.branch = Branch.objects.create(code="GN", name="Gangnam")
        self.admin = get_user_model().objects.create_user(
            username="admin", password="pass1234", role="admin", branch=self.branch
        )
        self.operator = get_user_model().objects.create_user(username="ops", password="pass1234", role="operations")

    def test_admin_can_filter_audit_logs(self):
        entity_id = uuid.uuid4()
        log = create_audit_log(actor=self.admin, action="purchase_request.create", entity="purchase_request", entity_id=entity_id)
        create_audit_log(actor=self.admin, action="multi_part_request.create", entity="multi_part_request")
        self.assertEqual(log.branch, self.branch)

        self.client.force_authenticate(user=self.admin)
        response = self.client.get("/api/v1/admin/audit-logs/?entity=purchase_request")

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([item["entity_id"] for item in results], [str(entity_id)])
        self.assertEqual(results[0]["actor_username"], "admin")

    def test_operations_cannot_read_audit_logs(self):
        self.client.force_authenticate(user=self.operator)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("capability=audit.view" in message for message in cm.output))

    def test_branches_are_listed_for_request_forms(self):
        Branch.objects.create(code="OLD", name="Closed branch", is_active=False)
        self.client.force_authenticate(user=self.operator)

        response = self.client.get("/api/v1/branches/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["code"] for item in response.json()["results"]], ["GN"])


class OutboxPullTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="ops", password="pass1234", role="operations")
        self.events = [
            emit_outbox("logistics", "purchase_request", uuid.uuid4(), "create", {"request_id": "REQ-1"}),
            emit_outbox("operations", "purchase_request", uuid.uuid4(), "transition", {"request_id": "REQ-2"}),
            emit_outbox("logistics", "purchase_request", uuid.uuid4(), "transition", {"request_id": "REQ-3"}),
        ]

    def test_pull_pages_by_cursor(self):
        self.client.force_authenticate(user=self.user)

        first = self.client.post("/api/v1/outbox/pull/", {"cursor": 0, "limit": 2}, format="json")

        self.assertEqual(first.status_code, 200)
        body = first.json()
        self.assertTrue(body["has_more"])
        self.assertEqual(body["server_cursor"], self.events[1].id)
        self.assertEqual([update["payload"]["payload"]["request_id"] for update in body["updates"]], ["REQ-1", "REQ-2"])

        second = self.client.post("/api/v1/outbox/pull/", {"cursor": body["server_cursor"], "limit": 2}, format="json")
        self.assertFalse(second.json()["has_more"])
        self.assertEqual(len(second.json()["updates"]), 1)

    def test_pull_filters_by_topic(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.post("/api/v1/outbox/pull/", {"topic": "logistics"}, format="json")

        self.assertEqual([update["cursor"] for update in response.json()["updates"]], [self.events[0].id, self.events[2].id])
        self.assertEqual(response.json()["server_cursor"], self.events[2].id)

    def test_pull_requires_authentication(self):
        response = self.client.post("/api/v1/outbox/pull/", {"cursor": 0}, format="json")

        self.assertEqual(response.status_code, 401)

    def test_pull_validates_cursor(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.post("/api/v1/outbox/pull/", {"cursor": -1}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
