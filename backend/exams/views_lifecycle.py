from __future__ import annotations

from django.db.models import Count
from rest_framework import status
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import ExamNotAvailable, ExamNotPublishable, InvalidTransition, LifecycleError, StepIncomplete
from .models import Attempt, Exam
from .serializers import ExamSerializer, StateChangeSerializer, WizardStepSerializer
from .services.attempts import AttemptCloser
from .services.clock import CivilClock
from .services.completeness import CompletenessEvaluator
from .services.lifecycle import REASON_BATCH, ExamLifecycle
from .services.reconciliation import ThrottledSweep, load_exam


def lifecycle_error_response(exc: LifecycleError):
    if isinstance(exc, (ExamNotPublishable, StepIncomplete)):
        return Response(
            {"error": str(exc), "missing": exc.missing},
            status=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    if isinstance(exc, (InvalidTransition, ExamNotAvailable)):
        return Response({"error": str(exc)}, status=status.HTTP_409_CONFLICT)
    return Response({"error": str(exc)}, status=status.HTTP_400_BAD_REQUEST)


def _admin_exam_queryset():
    return Exam.objects.prefetch_related("subtests", "tracks")


class LifecycleStatusView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def get(self, request):
        counts = {state: 0 for state in Exam.State.values}
        for row in Exam.objects.values("state").annotate(total=Count("id")):
            counts[row["state"]] = row["total"]

        orphaned = Attempt.objects.filter(
            exam__state=Exam.State.FINALIZED,
            state=Attempt.State.IN_PROGRESS,
        ).count()

        return Response(
            {
                "exams": counts,
                "orphaned_attempts": orphaned,
                "last_sweep_at": ThrottledSweep().last_run(),
                "clock": CivilClock().timezone_info(),
            }
        )


class ReconcileExamsView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def post(self, request):
        report = ExamLifecycle().sweep(reason=REASON_BATCH)
        return Response(report.to_dict())


class CloseOrphanedAttemptsView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def post(self, request):
        report = AttemptCloser().close_orphaned_attempts(reason=REASON_BATCH)
        return Response(report.to_dict())


class ExamDetailAdminView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def get(self, request, exam_id):
        try:
            exam = load_exam(exam_id, queryset=_admin_exam_queryset())
        except Exam.DoesNotExist:
            return Response({"error": "Exam not found"}, status=status.HTTP_404_NOT_FOUND)
        return Response(ExamSerializer(exam).data)


class ExamStateView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def patch(self, request, exam_id):
        payload = StateChangeSerializer(data=request.data)
        if not payload.is_valid():
            return Response({"error": payload.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            exam = load_exam(exam_id, queryset=_admin_exam_queryset())
        except Exam.DoesNotExist:
            return Response({"error": "Exam not found"}, status=status.HTTP_404_NOT_FOUND)

        data = payload.validated_data
        try:
            exam = ExamLifecycle().change_state(
                exam,
                data["state"],
                valid_from=data.get("valid_from") or None,
                valid_until=data.get("valid_until") or None,
                actor=request.user,
            )
        except LifecycleError as exc:
            return lifecycle_error_response(exc)
        return Response(ExamSerializer(exam).data)


class ExamWizardView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def get(self, request, exam_id):
        try:
            exam = load_exam(exam_id)
        except Exam.DoesNotExist:
            return Response({"error": "Exam not found"}, status=status.HTTP_404_NOT_FOUND)

        evaluator = CompletenessEvaluator()
        return Response(
            {
                "exam_id": exam.id,
                "state": exam.state,
                "wizard_step": exam.wizard_step,
                "completion_percent": evaluator.completion_percent(exam),
                "steps": evaluator.evaluate(exam),
                "next_step": evaluator.next_step(exam),
                "can_publish": evaluator.is_publishable(exam),
                "missing": evaluator.missing_requirements(exam),
            }
        )


class ExamWizardStepView(APIView):
    permission_classes = [IsAuthenticated, IsAdminUser]

    def post(self, request, exam_id):
        payload = WizardStepSerializer(data=request.data)
        if not payload.is_valid():
            return Response({"error": payload.errors}, status=status.HTTP_400_BAD_REQUEST)

        try:
            exam = load_exam(exam_id)
        except Exam.DoesNotExist:
            return Response({"error": "Exam not found"}, status=status.HTTP_404_NOT_FOUND)

        try:
            wizard_step = ExamLifecycle().advance_wizard_step(exam, payload.validated_data["step"])
        except LifecycleError as exc:
            return lifecycle_error_response(exc)
        return Response({"exam_id": exam.id, "wizard_step": wizard_step})
