from django.test import TestCase
from rest_framework.test import APIClient

from exams.models import Attempt, Exam

from .models import User


class AuthApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = User.objects.create_user(
            username="mquispe",
            password="pass12345",
            first_name="Maria",
            last_name="Quispe",
            document_number="45879621",
        )

    def test_full_name_is_composed_on_save(self):
        self.assertEqual(self.user.full_name, "Maria Quispe")
        self.assertEqual(self.user.display_name, "Maria Quispe")

    def test_login_with_document_number(self):
        response = self.client.post(
            "/api/accounts/auth/login/",
            {"identifier": "45879621", "password": "pass12345"},
            format="json",
        )
        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.data["tokens"])
        self.assertEqual(response.data["user"]["username"], "mquispe")

    def test_login_rejects_wrong_password(self):
        response = self.client.post(
            "/api/accounts/auth/login/",
            {"identifier": "mquispe", "password": "wrong"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_login_reports_disabled_account(self):
        self.user.is_active = False
        self.user.save(update_fields=["is_active"])

        response = self.client.post(
            "/api/accounts/auth/login/",
            {"identifier": "mquispe", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("This account is disabled.", str(response.data))

    def test_profile_counts_attempts(self):
        exam = Exam.objects.create(code="ADM-2026", state=Exam.State.PUBLISHED)
        Attempt.objects.create(exam=exam, examinee=self.user, started_at="2026-03-10 10:00:00")
        Attempt.objects.create(
            exam=exam,
            examinee=self.user,
            started_at="2026-03-09 10:00:00",
            state=Attempt.State.SUBMITTED,
            ended_at="2026-03-09 11:00:00",
        )

        self.client.force_authenticate(user=self.user)
        response = self.client.get("/api/accounts/auth/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["total_attempts"], 2)
        self.assertEqual(response.data["in_progress_attempts"], 1)

    def test_profile_update_normalizes_email(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.patch("/api/accounts/auth/me/", {"email": " Maria@Example.COM "}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["email"], "maria@example.com")
