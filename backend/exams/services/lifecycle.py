from __future__ import annotations

from dataclasses import asdict, dataclass
import logging

from django.db import transaction
from django.utils import timezone

from ..exceptions import ExamNotPublishable, InvalidTransition, LifecycleError, StepIncomplete
from ..models import Exam
from .attempts import AttemptCloser
from .clock import CivilClock
from .completeness import WIZARD_STEPS, CompletenessEvaluator

logger = logging.getLogger(__name__)

REASON_LAZY = "lazy"
REASON_SWEEP = "sweep"
REASON_BATCH = "batch"
REASON_MANUAL = "manual"

# Manual changes may only take one step forward.
MANUAL_TRANSITIONS = {
    (Exam.State.DRAFT.value, Exam.State.PUBLISHED.value),
    (Exam.State.PUBLISHED.value, Exam.State.FINALIZED.value),
}


@dataclass
class TransitionOutcome:
    exam_id: int
    published: bool = False
    finalized: bool = False
    incomplete: bool = False
    attempts_closed: int = 0

    @property
    def changed(self):
        return self.published or self.finalized

    def merge(self, other: "TransitionOutcome") -> "TransitionOutcome":
        return TransitionOutcome(
            exam_id=self.exam_id,
            published=self.published or other.published,
            finalized=self.finalized or other.finalized,
            incomplete=self.incomplete or other.incomplete,
            attempts_closed=self.attempts_closed + other.attempts_closed,
        )


@dataclass
class SweepReport:
    published: int = 0
    finalized: int = 0
    attempts_closed: int = 0
    incomplete: int = 0
    failed: int = 0

    @property
    def changed(self):
        return bool(self.published or self.finalized or self.attempts_closed)

    def to_dict(self):
        return asdict(self)


class ExamLifecycle:
    """
    Draft -> Published -> Finalized state machine.

    Every transition re-reads the exam under a row lock and writes with a
    conditional update on the previous state, so of two racing triggers only
    one commits a change and the other sees its precondition fail.
    """

    def __init__(
        self,
        clock: CivilClock | None = None,
        evaluator: CompletenessEvaluator | None = None,
        closer: AttemptCloser | None = None,
    ):
        self.clock = clock or CivilClock()
        self.evaluator = evaluator or CompletenessEvaluator(clock=self.clock)
        self.closer = closer or AttemptCloser(clock=self.clock)

    def publish_if_due(self, exam, reason: str) -> TransitionOutcome:
        if exam is None:
            raise ValueError("exam is required")
        outcome = TransitionOutcome(exam_id=exam.pk)

        with transaction.atomic():
            locked = Exam.objects.select_for_update().get(pk=exam.pk)
            if locked.state != Exam.State.DRAFT:
                logger.debug("Publish skipped exam_id=%s state=%s reason=%s", locked.pk, locked.state, reason)
                return outcome

            valid_from = self.clock.normalize(locked.valid_from, field="valid_from", exam_id=locked.pk)
            if valid_from is None or not self.clock.has_passed(valid_from):
                return outcome

            if not self.evaluator.is_publishable(locked):
                outcome.incomplete = True
                logger.warning(
                    "Exam due for publication is incomplete exam_id=%s old_state=%s new_state=%s reason=%s missing=%s",
                    locked.pk,
                    Exam.State.DRAFT,
                    Exam.State.DRAFT,
                    reason,
                    self.evaluator.missing_requirements(locked),
                    extra=self._log_context(locked.pk, Exam.State.DRAFT, Exam.State.DRAFT, reason),
                )
                return outcome

            updated = Exam.objects.filter(pk=locked.pk, state=Exam.State.DRAFT).update(
                state=Exam.State.PUBLISHED,
                published_at=self.clock.now_string(),
                updated_at=timezone.now(),
            )
            if not updated:
                return outcome

        outcome.published = True
        self._log_transition(locked.pk, Exam.State.DRAFT, Exam.State.PUBLISHED, reason)
        return outcome

    def finalize_if_due(self, exam, reason: str) -> TransitionOutcome:
        if exam is None:
            raise ValueError("exam is required")
        outcome = TransitionOutcome(exam_id=exam.pk)

        with transaction.atomic():
            locked = Exam.objects.select_for_update().get(pk=exam.pk)
            if locked.state != Exam.State.PUBLISHED:
                logger.debug("Finalize skipped exam_id=%s state=%s reason=%s", locked.pk, locked.state, reason)
                return outcome

            valid_until = self.clock.normalize(locked.valid_until, field="valid_until", exam_id=locked.pk)
            if valid_until is None or not self.clock.has_passed(valid_until):
                return outcome

            closed = self.closer.close_in_progress_attempts(locked, reason=reason)
            updated = Exam.objects.filter(pk=locked.pk, state=Exam.State.PUBLISHED).update(
                state=Exam.State.FINALIZED,
                finalized_at=self.clock.now_string(),
                updated_at=timezone.now(),
            )
            if not updated:
                transaction.set_rollback(True)
                return outcome

        outcome.finalized = True
        outcome.attempts_closed = closed
        self._log_transition(
            locked.pk,
            Exam.State.PUBLISHED,
            Exam.State.FINALIZED,
            reason,
            attempts_closed=closed,
        )
        return outcome

    def reconcile(self, exam, reason: str) -> TransitionOutcome:
        published = self.publish_if_due(exam, reason)
        finalized = self.finalize_if_due(exam, reason)
        return published.merge(finalized)

    def sweep(self, reason: str = REASON_SWEEP) -> SweepReport:
        report = SweepReport()
        now = self.clock.now_string()

        # Civil strings sort chronologically, so the date filter narrows candidates in SQL.
        publish_candidates = Exam.objects.filter(
            state=Exam.State.DRAFT,
            valid_from__isnull=False,
            valid_from__lte=now,
        ).order_by("pk")
        for exam in publish_candidates:
            try:
                outcome = self.publish_if_due(exam, reason)
            except Exception:
                report.failed += 1
                logger.exception(
                    "Publish failed exam_id=%s reason=%s",
                    exam.pk,
                    reason,
                    extra=self._log_context(exam.pk, Exam.State.DRAFT, Exam.State.PUBLISHED, reason),
                )
                continue
            report.published += int(outcome.published)
            report.incomplete += int(outcome.incomplete)

        finalize_candidates = Exam.objects.filter(
            state=Exam.State.PUBLISHED,
            valid_until__isnull=False,
            valid_until__lte=now,
        ).order_by("pk")
        for exam in finalize_candidates:
            try:
                outcome = self.finalize_if_due(exam, reason)
            except Exception:
                report.failed += 1
                logger.exception(
                    "Finalize failed exam_id=%s reason=%s",
                    exam.pk,
                    reason,
                    extra=self._log_context(exam.pk, Exam.State.PUBLISHED, Exam.State.FINALIZED, reason),
                )
                continue
            report.finalized += int(outcome.finalized)
            report.attempts_closed += outcome.attempts_closed

        level = logging.INFO if report.changed or report.failed else logging.DEBUG
        logger.log(
            level,
            "Sweep done reason=%s published=%s finalized=%s attempts_closed=%s incomplete=%s failed=%s",
            reason,
            report.published,
            report.finalized,
            report.attempts_closed,
            report.incomplete,
            report.failed,
        )
        return report

    def change_state(self, exam, new_state, valid_from=None, valid_until=None, actor=None):
        if exam is None:
            raise ValueError("exam is required")
        new_state = str(new_state)
        if new_state not in Exam.State.values:
            raise InvalidTransition(f"Unknown state: {new_state}")

        try:
            requested_from = self.clock.coerce(valid_from)
            requested_until = self.clock.coerce(valid_until)
        except ValueError as exc:
            raise LifecycleError(str(exc)) from exc

        closed = 0
        with transaction.atomic():
            locked = Exam.objects.select_for_update().get(pk=exam.pk)
            old_state = locked.state
            if new_state == old_state:
                exam.refresh_from_db()
                return exam
            if (old_state, new_state) not in MANUAL_TRANSITIONS:
                raise InvalidTransition(f"Cannot move exam from {old_state} to {new_state}.")

            now = self.clock.now_string()
            if new_state == Exam.State.PUBLISHED:
                locked.valid_from = requested_from or now
                if requested_until is not None:
                    locked.valid_until = requested_until
                if not self.evaluator.is_publishable(locked):
                    raise ExamNotPublishable(self.evaluator.missing_requirements(locked))
                changes = {
                    "state": Exam.State.PUBLISHED,
                    "valid_from": locked.valid_from,
                    "valid_until": locked.valid_until,
                    "published_at": now,
                }
            else:
                closed = self.closer.close_in_progress_attempts(locked, reason=REASON_MANUAL)
                changes = {
                    "state": Exam.State.FINALIZED,
                    "valid_until": now,
                    "finalized_at": now,
                }

            updated = Exam.objects.filter(pk=locked.pk, state=old_state).update(
                updated_at=timezone.now(),
                **changes,
            )
            if not updated:
                raise InvalidTransition("Exam state changed concurrently.")

        self._log_transition(locked.pk, old_state, new_state, REASON_MANUAL, actor=actor, attempts_closed=closed)
        exam.refresh_from_db()
        return exam

    def advance_wizard_step(self, exam, step) -> int:
        if exam is None:
            raise ValueError("exam is required")
        try:
            step = int(step)
        except (TypeError, ValueError):
            raise LifecycleError("step must be a number between 1 and 6.")
        if step not in WIZARD_STEPS:
            raise LifecycleError("step must be a number between 1 and 6.")

        with transaction.atomic():
            locked = Exam.objects.select_for_update().get(pk=exam.pk)
            if locked.state != Exam.State.DRAFT:
                raise InvalidTransition("Only draft exams can change their wizard step.")
            steps = self.evaluator.evaluate(locked)
            if not steps[f"step{step}"]:
                raise StepIncomplete(step, self.evaluator.missing_requirements(locked))

            if step > locked.wizard_step:
                Exam.objects.filter(pk=locked.pk, wizard_step__lt=step).update(
                    wizard_step=step,
                    updated_at=timezone.now(),
                )
                logger.info("Wizard step advanced exam_id=%s from=%s to=%s", locked.pk, locked.wizard_step, step)

        exam.refresh_from_db()
        return exam.wizard_step

    def _log_context(self, exam_id, old_state, new_state, reason, **extra):
        context = {"exam_id": exam_id, "old_state": old_state, "new_state": new_state, "reason": reason}
        context.update(extra)
        return context

    def _log_transition(self, exam_id, old_state, new_state, reason, actor=None, attempts_closed=0):
        logger.info(
            "Exam transition exam_id=%s old_state=%s new_state=%s reason=%s attempts_closed=%s actor=%s",
            exam_id,
            old_state,
            new_state,
            reason,
            attempts_closed,
            getattr(actor, "pk", None),
            extra=self._log_context(exam_id, old_state, new_state, reason, attempts_closed=attempts_closed),
        )
