from django.contrib import admin, messages

from .exceptions import LifecycleError
from .models import Attempt, Exam, ExamQuestion, Question, ScoringRule, SubTest, Track
from .services.lifecycle import REASON_MANUAL, ExamLifecycle


class SubTestInline(admin.TabularInline):
    model = SubTest
    extra = 0


class TrackInline(admin.TabularInline):
    model = Track
    extra = 0


class ExamQuestionInline(admin.TabularInline):
    model = ExamQuestion
    extra = 0
    raw_id_fields = ("question",)


@admin.register(Exam)
class ExamAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "code",
        "title",
        "state",
        "wizard_step",
        "valid_from",
        "valid_until",
        "published_at",
        "finalized_at",
    )
    list_filter = ("state", "access_mode")
    search_fields = ("code", "title")
    # State only moves through the lifecycle actions below.
    readonly_fields = ("state", "published_at", "finalized_at", "created_at", "updated_at")
    inlines = [SubTestInline, TrackInline, ExamQuestionInline]
    actions = ("publish_exams", "finalize_exams", "reconcile_exams")

    def _change_state(self, request, queryset, new_state):
        lifecycle = ExamLifecycle()
        changed = 0
        for exam in queryset:
            try:
                lifecycle.change_state(exam, new_state, actor=request.user)
            except LifecycleError as exc:
                missing = getattr(exc, "missing", [])
                detail = f" ({'; '.join(missing)})" if missing else ""
                self.message_user(request, f"{exam.code or exam.pk}: {exc}{detail}", level=messages.WARNING)
                continue
            changed += 1
        if changed:
            self.message_user(request, f"{changed} exam(s) moved to {new_state}.", level=messages.SUCCESS)

    @admin.action(description="Publish selected exams")
    def publish_exams(self, request, queryset):
        self._change_state(request, queryset, Exam.State.PUBLISHED)

    @admin.action(description="Finalize selected exams")
    def finalize_exams(self, request, queryset):
        self._change_state(request, queryset, Exam.State.FINALIZED)

    @admin.action(description="Apply due transitions to selected exams")
    def reconcile_exams(self, request, queryset):
        lifecycle = ExamLifecycle()
        changed = sum(int(lifecycle.reconcile(exam, reason=REASON_MANUAL).changed) for exam in queryset)
        self.message_user(request, f"{changed} exam(s) changed state.", level=messages.SUCCESS)


@admin.register(Track)
class TrackAdmin(admin.ModelAdmin):
    list_display = ("id", "exam", "name", "approval_mode")
    list_filter = ("approval_mode",)
    search_fields = ("name", "exam__code")


@admin.register(ScoringRule)
class ScoringRuleAdmin(admin.ModelAdmin):
    list_display = ("id", "track", "subtest", "correct_points", "incorrect_points", "blank_points", "minimum_score")
    search_fields = ("track__name", "track__exam__code")


@admin.register(Question)
class QuestionAdmin(admin.ModelAdmin):
    list_display = ("id", "short_text", "created_at")
    search_fields = ("text",)

    @admin.display(description="Question")
    def short_text(self, obj):
        return str(obj)


@admin.register(Attempt)
class AttemptAdmin(admin.ModelAdmin):
    list_display = ("id", "examinee", "exam", "state", "started_at", "ended_at", "closed_by")
    list_filter = ("state", "closed_by")
    search_fields = ("examinee__username", "examinee__document_number", "exam__code")
    readonly_fields = ("state", "started_at", "ended_at", "closed_by", "created_at", "updated_at")
