from __future__ import annotations

from django.db.models import Q
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from .exceptions import LifecycleError
from .models import Attempt, Exam
from .serializers import AttemptSerializer, AvailableExamSerializer, StartAttemptSerializer
from .services.attempts import AttemptCloser
from .services.clock import CivilClock
from .services.reconciliation import load_exam, reconcile_on_access
from .views_lifecycle import lifecycle_error_response


class AvailableExamListView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request):
        clock = CivilClock()
        now = clock.now_string()
        candidates = Exam.objects.filter(access_mode=Exam.AccessMode.PUBLIC).filter(
            Q(state=Exam.State.PUBLISHED) | Q(state=Exam.State.DRAFT, valid_from__lte=now)
        )

        available = []
        for exam in candidates.order_by("valid_from", "id"):
            exam = reconcile_on_access(exam)
            if exam.state == Exam.State.PUBLISHED and clock.is_between(exam.valid_from, exam.valid_until):
                available.append(exam)
        return Response(AvailableExamSerializer(available, many=True).data)


class StartAttemptView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, exam_id):
        try:
            exam = load_exam(exam_id)
        except Exam.DoesNotExist:
            return Response({"error": "Exam not found"}, status=status.HTTP_404_NOT_FOUND)

        payload = StartAttemptSerializer(data=request.data)
        if not payload.is_valid():
            return Response({"error": payload.errors}, status=status.HTTP_400_BAD_REQUEST)

        track = None
        track_id = payload.validated_data.get("track_id")
        if track_id is not None:
            track = exam.tracks.filter(id=track_id).first()
            if track is None:
                return Response({"error": "Track not found for this exam"}, status=status.HTTP_400_BAD_REQUEST)

        try:
            attempt, created = AttemptCloser().start_attempt(exam, request.user, track=track)
        except LifecycleError as exc:
            return lifecycle_error_response(exc)

        return Response(
            AttemptSerializer(attempt).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )


class SubmitAttemptView(APIView):
    permission_classes = [IsAuthenticated]

    def post(self, request, attempt_id):
        try:
            attempt = Attempt.objects.select_related("exam").get(id=attempt_id, examinee=request.user)
        except Attempt.DoesNotExist:
            return Response({"error": "Attempt not found"}, status=status.HTTP_404_NOT_FOUND)

        # An expired exam closes the attempt through finalization first.
        reconcile_on_access(attempt.exam)
        attempt = AttemptCloser().submit_attempt(attempt)
        return Response(AttemptSerializer(attempt).data)
