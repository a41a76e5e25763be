from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Exam",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code", models.CharField(blank=True, db_index=True, default="", max_length=50)),
                ("title", models.CharField(blank=True, default="", max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("time_limit_minutes", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "access_mode",
                    models.CharField(
                        blank=True,
                        choices=[("public", "Public"), ("private", "Private")],
                        default="",
                        max_length=10,
                    ),
                ),
                (
                    "state",
                    models.CharField(
                        choices=[("draft", "Draft"), ("published", "Published"), ("finalized", "Finalized")],
                        db_index=True,
                        default="draft",
                        max_length=12,
                    ),
                ),
                ("wizard_step", models.PositiveSmallIntegerField(default=0)),
                ("valid_from", models.CharField(blank=True, max_length=19, null=True)),
                ("valid_until", models.CharField(blank=True, max_length=19, null=True)),
                ("published_at", models.CharField(blank=True, max_length=19, null=True)),
                ("finalized_at", models.CharField(blank=True, max_length=19, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["state", "valid_from"], name="exams_exam_state_vfrom_idx"),
                    models.Index(fields=["state", "valid_until"], name="exams_exam_state_vuntil_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Question",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("text", models.TextField()),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
        ),
        migrations.CreateModel(
            name="SubTest",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("time_limit_minutes", models.PositiveIntegerField(blank=True, null=True)),
                ("order", models.PositiveIntegerField(default=1)),
                (
                    "exam",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subtests",
                        to="exams.exam",
                    ),
                ),
            ],
            options={
                "ordering": ["order", "id"],
            },
        ),
        migrations.CreateModel(
            name="Track",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "approval_mode",
                    models.CharField(
                        choices=[("joint", "Joint"), ("independent", "Independent")],
                        default="joint",
                        max_length=12,
                    ),
                ),
                (
                    "exam",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="tracks",
                        to="exams.exam",
                    ),
                ),
            ],
            options={
                "ordering": ["id"],
            },
        ),
        migrations.CreateModel(
            name="ScoringRule",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("correct_points", models.DecimalField(decimal_places=2, default=1, max_digits=8)),
                ("incorrect_points", models.DecimalField(decimal_places=2, default=0, max_digits=8)),
                ("blank_points", models.DecimalField(decimal_places=2, default=0, max_digits=8)),
                ("minimum_score", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                (
                    "subtest",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="scoring_rules",
                        to="exams.subtest",
                    ),
                ),
                (
                    "track",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="scoring_rules",
                        to="exams.track",
                    ),
                ),
            ],
        ),
        migrations.CreateModel(
            name="ExamQuestion",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("subtest_id", models.PositiveIntegerField(blank=True, db_index=True, null=True)),
                ("order", models.PositiveIntegerField(default=1)),
                (
                    "exam",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="exam_questions",
                        to="exams.exam",
                    ),
                ),
                (
                    "question",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="exam_links",
                        to="exams.question",
                    ),
                ),
            ],
            options={
                "ordering": ["order", "id"],
                "unique_together": {("exam", "question")},
            },
        ),
        migrations.CreateModel(
            name="Attempt",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "state",
                    models.CharField(
                        choices=[("in_progress", "In progress"), ("submitted", "Submitted")],
                        default="in_progress",
                        max_length=12,
                    ),
                ),
                ("started_at", models.CharField(max_length=19)),
                ("ended_at", models.CharField(blank=True, max_length=19, null=True)),
                (
                    "closed_by",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("examinee", "Examinee"),
                            ("finalization", "Exam finalization"),
                            ("orphan_cleanup", "Orphan cleanup"),
                        ],
                        default="",
                        max_length=20,
                    ),
                ),
                ("score", models.DecimalField(blank=True, decimal_places=2, max_digits=8, null=True)),
                ("is_passed", models.BooleanField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "exam",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="attempts",
                        to="exams.exam",
                    ),
                ),
                (
                    "examinee",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="exam_attempts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "track",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="attempts",
                        to="exams.track",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [models.Index(fields=["exam", "state"], name="exams_attempt_exam_state_idx")],
            },
        ),
    ]
