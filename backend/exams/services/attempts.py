from __future__ import annotations

from dataclasses import asdict, dataclass, field
import logging

from django.db import transaction

from ..exceptions import ExamNotAvailable, LifecycleError
from ..models import Attempt, Exam
from .clock import CivilClock

logger = logging.getLogger(__name__)


@dataclass
class OrphanReport:
    exams_checked: int = 0
    exams_affected: int = 0
    attempts_closed: int = 0
    failed: int = 0
    exams: list = field(default_factory=list)

    def to_dict(self):
        return asdict(self)


class AttemptCloser:
    """Every transition of an attempt out of in_progress goes through this class."""

    def __init__(self, clock: CivilClock | None = None):
        self.clock = clock or CivilClock()

    def close_in_progress_attempts(self, exam, reason: str, closed_by=Attempt.ClosedBy.FINALIZATION) -> int:
        if exam is None:
            raise ValueError("exam is required")

        ended_at = self.clock.now_string()
        closed = 0
        with transaction.atomic():
            attempts = Attempt.objects.select_for_update().filter(
                exam_id=exam.pk,
                state=Attempt.State.IN_PROGRESS,
            )
            for attempt in attempts:
                attempt.state = Attempt.State.SUBMITTED
                attempt.ended_at = ended_at
                attempt.closed_by = closed_by
                attempt.save(update_fields=["state", "ended_at", "closed_by", "updated_at"])
                closed += 1

        if closed:
            logger.info(
                "Closed %s in-progress attempt(s) exam_id=%s reason=%s closed_by=%s",
                closed,
                exam.pk,
                reason,
                closed_by,
                extra={"exam_id": exam.pk, "reason": reason, "attempts_closed": closed},
            )
        return closed

    def close_orphaned_attempts(self, reason: str = "batch") -> OrphanReport:
        report = OrphanReport()
        report.exams_checked = Exam.objects.filter(state=Exam.State.FINALIZED).count()

        orphaned = (
            Exam.objects.filter(state=Exam.State.FINALIZED, attempts__state=Attempt.State.IN_PROGRESS)
            .distinct()
            .order_by("pk")
        )
        for exam in orphaned:
            try:
                with transaction.atomic():
                    closed = self.close_in_progress_attempts(
                        exam,
                        reason=reason,
                        closed_by=Attempt.ClosedBy.ORPHAN_CLEANUP,
                    )
            except Exception:
                report.failed += 1
                logger.exception(
                    "Orphan cleanup failed exam_id=%s reason=%s",
                    exam.pk,
                    reason,
                    extra={"exam_id": exam.pk, "reason": reason},
                )
                continue

            if closed:
                report.exams_affected += 1
                report.attempts_closed += closed
                report.exams.append({"exam_id": exam.pk, "code": exam.code, "attempts_closed": closed})

        logger.info(
            "Orphan cleanup done checked=%s affected=%s closed=%s failed=%s reason=%s",
            report.exams_checked,
            report.exams_affected,
            report.attempts_closed,
            report.failed,
            reason,
        )
        return report

    def start_attempt(self, exam, examinee, track=None) -> tuple[Attempt, bool]:
        """
        Open an attempt for examinee, or hand back the one already in progress.

        The exam row is locked so a concurrent finalization either happens
        before (and the start is refused) or after (and closes this attempt).
        """
        if exam is None:
            raise ValueError("exam is required")

        with transaction.atomic():
            locked = Exam.objects.select_for_update().get(pk=exam.pk)
            if locked.state != Exam.State.PUBLISHED:
                raise ExamNotAvailable("Exam is not open for attempts.")
            if locked.access_mode != Exam.AccessMode.PUBLIC:
                raise ExamNotAvailable("Exam is restricted to assigned examinees.")
            if not self.clock.is_between(locked.valid_from, locked.valid_until):
                raise ExamNotAvailable("Exam is outside its vigency window.")
            if track is not None and track.exam_id != locked.pk:
                raise LifecycleError("Track does not belong to this exam.")

            existing = (
                Attempt.objects.filter(exam=locked, examinee=examinee, state=Attempt.State.IN_PROGRESS)
                .order_by("created_at")
                .first()
            )
            if existing is not None:
                return existing, False

            attempt = Attempt.objects.create(
                exam=locked,
                examinee=examinee,
                track=track,
                started_at=self.clock.now_string(),
            )

        logger.info("Attempt started attempt_id=%s exam_id=%s", attempt.pk, locked.pk)
        return attempt, True

    def submit_attempt(self, attempt) -> Attempt:
        if attempt is None:
            raise ValueError("attempt is required")

        with transaction.atomic():
            locked = Attempt.objects.select_for_update().select_related("exam").get(pk=attempt.pk)
            if locked.state != Attempt.State.IN_PROGRESS:
                return locked

            ended_at = self.clock.now_string()
            started_at = self.clock.normalize(locked.started_at, field="started_at", exam_id=locked.exam_id)
            if started_at and locked.exam.time_limit_minutes:
                deadline = self.clock.add_minutes(started_at, locked.exam.time_limit_minutes)
                ended_at = min(ended_at, deadline)

            locked.state = Attempt.State.SUBMITTED
            locked.ended_at = ended_at
            locked.closed_by = Attempt.ClosedBy.EXAMINEE
            locked.save(update_fields=["state", "ended_at", "closed_by", "updated_at"])

        logger.info("Attempt submitted attempt_id=%s exam_id=%s ended_at=%s", locked.pk, locked.exam_id, ended_at)
        return locked
