from django.db import models
from django.conf import settings

# Vigency, publication and attempt timestamps are civil-time strings
# ("YYYY-MM-DD HH:MM:SS" in EXAM_CIVIL_TIME_ZONE), compared lexicographically.
CIVIL_TIME_LENGTH = 19


def _civil_time_field():
    return models.CharField(max_length=CIVIL_TIME_LENGTH, null=True, blank=True)


class Exam(models.Model):
    class State(models.TextChoices):
        DRAFT = "draft", "Draft"
        PUBLISHED = "published", "Published"
        FINALIZED = "finalized", "Finalized"

    class AccessMode(models.TextChoices):
        PUBLIC = "public", "Public"
        PRIVATE = "private", "Private"

    code = models.CharField(max_length=50, blank=True, default="", db_index=True)
    title = models.CharField(max_length=255, blank=True, default="")
    description = models.TextField(blank=True, default="")
    time_limit_minutes = models.PositiveIntegerField(null=True, blank=True)
    access_mode = models.CharField(max_length=10, choices=AccessMode.choices, blank=True, default="")
    state = models.CharField(max_length=12, choices=State.choices, default=State.DRAFT, db_index=True)
    wizard_step = models.PositiveSmallIntegerField(default=0)
    valid_from = _civil_time_field()
    valid_until = _civil_time_field()
    published_at = _civil_time_field()
    finalized_at = _civil_time_field()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=["state", "valid_from"], name="exams_exam_state_vfrom_idx"),
            models.Index(fields=["state", "valid_until"], name="exams_exam_state_vuntil_idx"),
        ]

    def __str__(self):
        return f"{self.code or 'EXAM'} | {self.title or 'Untitled'} ({self.get_state_display()})"

    @property
    def is_finalized(self):
        return self.state == self.State.FINALIZED

    @property
    def has_vigency_dates(self):
        return bool(self.valid_from or self.valid_until)


class SubTest(models.Model):
    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='subtests')
    name = models.CharField(max_length=255)
    time_limit_minutes = models.PositiveIntegerField(null=True, blank=True)
    order = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ['order', 'id']

    def __str__(self):
        return f"{self.exam.code} - {self.name}"


class Track(models.Model):
    class ApprovalMode(models.TextChoices):
        JOINT = "joint", "Joint"
        INDEPENDENT = "independent", "Independent"

    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='tracks')
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    approval_mode = models.CharField(max_length=12, choices=ApprovalMode.choices, default=ApprovalMode.JOINT)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.exam.code} - {self.name}"


class ScoringRule(models.Model):
    track = models.ForeignKey(Track, on_delete=models.CASCADE, related_name='scoring_rules')
    # A deleted sub-test leaves the rule behind with a NULL reference.
    subtest = models.ForeignKey(
        SubTest,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='scoring_rules',
    )
    correct_points = models.DecimalField(max_digits=8, decimal_places=2, default=1)
    incorrect_points = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    blank_points = models.DecimalField(max_digits=8, decimal_places=2, default=0)
    minimum_score = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)

    def __str__(self):
        return f"{self.track} | subtest={self.subtest_id}"


class Question(models.Model):
    text = models.TextField()
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.text[:50]


class ExamQuestion(models.Model):
    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='exam_questions')
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name='exam_links')
    subtest_id = models.PositiveIntegerField(null=True, blank=True, db_index=True)
    order = models.PositiveIntegerField(default=1)

    class Meta:
        ordering = ['order', 'id']
        unique_together = ('exam', 'question')

    def __str__(self):
        return f"{self.exam.code} Q{self.order}"


class Attempt(models.Model):
    class State(models.TextChoices):
        IN_PROGRESS = "in_progress", "In progress"
        SUBMITTED = "submitted", "Submitted"

    class ClosedBy(models.TextChoices):
        EXAMINEE = "examinee", "Examinee"
        FINALIZATION = "finalization", "Exam finalization"
        ORPHAN_CLEANUP = "orphan_cleanup", "Orphan cleanup"

    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='attempts')
    examinee = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='exam_attempts')
    track = models.ForeignKey(Track, on_delete=models.SET_NULL, null=True, blank=True, related_name='attempts')
    state = models.CharField(max_length=12, choices=State.choices, default=State.IN_PROGRESS)
    started_at = models.CharField(max_length=CIVIL_TIME_LENGTH)
    ended_at = _civil_time_field()
    closed_by = models.CharField(max_length=20, choices=ClosedBy.choices, blank=True, default="")
    score = models.DecimalField(max_digits=8, decimal_places=2, null=True, blank=True)
    is_passed = models.BooleanField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']
        indexes = [models.Index(fields=["exam", "state"], name="exams_attempt_exam_state_idx")]

    def __str__(self):
        return f"{self.examinee} | {self.exam.code} | {self.get_state_display()}"

    @property
    def is_in_progress(self):
        return self.state == self.State.IN_PROGRESS
