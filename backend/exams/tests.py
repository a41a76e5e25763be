import json
from datetime import datetime
from io import StringIO
import threading
from unittest.mock import Mock, patch

from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase, override_settings, skipUnlessDBFeature
from django.test.utils import CaptureQueriesContext
from rest_framework.test import APIClient

from .exceptions import ExamNotAvailable, ExamNotPublishable, InvalidTransition, LifecycleError, StepIncomplete
from .models import Attempt, Exam, ExamQuestion, Question, ScoringRule, SubTest, Track
from .services.attempts import AttemptCloser
from .services.clock import CivilClock
from .services.completeness import WIZARD_STEPS, CompletenessEvaluator
from .services.lifecycle import ExamLifecycle, SweepReport
from .services.reconciliation import ThrottledSweep, load_exam, reconcile_on_access

NOW = "2026-03-10 12:00:00"
LAST_WEEK = "2026-03-03 12:00:00"
YESTERDAY = "2026-03-09 12:00:00"
TOMORROW = "2026-03-11 12:00:00"
NEXT_MONTH = "2026-04-10 12:00:00"

User = get_user_model()


def make_exam(complete=True, **fields):
    values = {
        "code": "ADM-2026",
        "title": "Admission Exam 2026",
        "description": "General admission exam for the 2026 intake.",
        "time_limit_minutes": 120,
        "access_mode": Exam.AccessMode.PUBLIC,
        "valid_from": YESTERDAY,
        "valid_until": NEXT_MONTH,
    }
    values.update(fields)
    exam = Exam.objects.create(**values)
    if complete:
        subtest = SubTest.objects.create(exam=exam, name="Mathematics", order=1)
        track = Track.objects.create(exam=exam, name="Primary teaching")
        ScoringRule.objects.create(track=track, subtest=subtest)
        question = Question.objects.create(text="How much is 2 + 2?")
        ExamQuestion.objects.create(exam=exam, question=question, subtest_id=subtest.id)
    return exam


def set_state(exam, state, **fields):
    Exam.objects.filter(pk=exam.pk).update(state=state, **fields)
    exam.refresh_from_db()
    return exam


def make_attempt(exam, examinee, started_at="2026-03-10 11:00:00", **fields):
    return Attempt.objects.create(exam=exam, examinee=examinee, started_at=started_at, **fields)


class AlwaysCompleteEvaluator(CompletenessEvaluator):
    def evaluate(self, exam):
        return {f"step{step}": True for step in WIZARD_STEPS}


class FrozenClockMixin:
    now = NOW

    def setUp(self):
        super().setUp()
        patcher = patch.object(CivilClock, "now_string", return_value=self.now)
        patcher.start()
        self.addCleanup(patcher.stop)

    def assertNoOpenAttemptsOnFinalizedExams(self):
        self.assertFalse(
            Attempt.objects.filter(exam__state=Exam.State.FINALIZED, state=Attempt.State.IN_PROGRESS).exists()
        )


class CivilClockTests(FrozenClockMixin, SimpleTestCase):
    def setUp(self):
        super().setUp()
        self.clock = CivilClock("America/Lima")

    def test_has_passed_is_inclusive(self):
        self.assertTrue(self.clock.has_passed(NOW))
        self.assertTrue(self.clock.has_passed(YESTERDAY))
        self.assertFalse(self.clock.has_passed("2026-03-10 12:00:01"))

    def test_absent_or_malformed_values_never_count_as_passed(self):
        self.assertFalse(self.clock.has_passed(None))
        self.assertFalse(self.clock.has_passed(""))
        with self.assertLogs("exams.services.clock", level="WARNING"):
            self.assertFalse(self.clock.has_passed("0000-00-00 00:00:00"))
        with self.assertLogs("exams.services.clock", level="WARNING"):
            self.assertFalse(self.clock.has_passed("2026-02-30 10:00:00"))
        with self.assertLogs("exams.services.clock", level="WARNING"):
            self.assertFalse(self.clock.has_passed("10/03/2026"))

    def test_has_not_arrived(self):
        self.assertTrue(self.clock.has_not_arrived(TOMORROW))
        self.assertFalse(self.clock.has_not_arrived(NOW))
        self.assertFalse(self.clock.has_not_arrived(None))

    def test_is_between_treats_missing_bounds_as_open(self):
        self.assertTrue(self.clock.is_between(None, None))
        self.assertTrue(self.clock.is_between(YESTERDAY, None))
        self.assertTrue(self.clock.is_between(None, TOMORROW))
        self.assertTrue(self.clock.is_between(NOW, TOMORROW))
        self.assertFalse(self.clock.is_between(TOMORROW, None))
        self.assertFalse(self.clock.is_between(YESTERDAY, NOW))

    def test_compare_sorts_missing_values_first(self):
        self.assertEqual(self.clock.compare(None, NOW), -1)
        self.assertEqual(self.clock.compare(NOW, None), 1)
        self.assertEqual(self.clock.compare(YESTERDAY, TOMORROW), -1)
        self.assertEqual(self.clock.compare(NOW, NOW), 0)

    def test_coerce_accepts_operator_input(self):
        self.assertEqual(self.clock.coerce("2026-03-10T08:30"), "2026-03-10 08:30:00")
        self.assertEqual(self.clock.coerce("2026-03-10 08:30:15.123"), "2026-03-10 08:30:15")
        self.assertEqual(self.clock.coerce("2026-03-10"), "2026-03-10 00:00:00")
        self.assertEqual(self.clock.coerce(datetime(2026, 3, 10, 8, 30, 15)), "2026-03-10 08:30:15")
        self.assertIsNone(self.clock.coerce(""))
        with self.assertRaises(ValueError):
            self.clock.coerce("next tuesday")
        with self.assertRaises(ValueError):
            self.clock.coerce("0000-00-00 00:00:00")

    def test_add_minutes_crosses_midnight(self):
        self.assertEqual(self.clock.add_minutes("2026-03-10 23:30:00", 60), "2026-03-11 00:30:00")

    def test_timezone_info(self):
        info = self.clock.timezone_info()
        self.assertEqual(info["timezone"], "America/Lima")
        self.assertEqual(info["now"], NOW)
        self.assertEqual(info["utc_offset"], "-05:00")


class CivilClockFormatTests(SimpleTestCase):
    def test_now_string_uses_sortable_layout(self):
        self.assertRegex(CivilClock().now_string(), r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


class CompletenessEvaluatorTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.evaluator = CompletenessEvaluator()

    def test_complete_exam_is_publishable(self):
        exam = make_exam()
        self.assertEqual(self.evaluator.evaluate(exam), {f"step{step}": True for step in WIZARD_STEPS})
        self.assertTrue(self.evaluator.is_publishable(exam))
        self.assertEqual(self.evaluator.completion_percent(exam), 100)
        self.assertIsNone(self.evaluator.next_step(exam))
        self.assertEqual(self.evaluator.missing_requirements(exam), [])

    def test_only_draft_exams_are_publishable(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        self.assertFalse(self.evaluator.is_publishable(exam))

    def test_exam_without_subtests_is_never_publishable(self):
        exam = make_exam()
        SubTest.objects.filter(exam=exam).delete()
        steps = self.evaluator.evaluate(exam)
        self.assertTrue(steps["step1"])
        self.assertTrue(steps["step6"])
        self.assertFalse(steps["step2"])
        self.assertFalse(self.evaluator.is_publishable(exam))

    def test_general_data_rules(self):
        cases = {
            "code": "   ",
            "title": "Too short",
            "description": "Short text",
            "time_limit_minutes": 20,
            "access_mode": "",
        }
        for field, value in cases.items():
            with self.subTest(field=field):
                exam = make_exam(**{field: value})
                self.assertFalse(self.evaluator.evaluate(exam)["step1"])
                self.assertFalse(self.evaluator.is_publishable(exam))

    def test_time_limit_bounds_are_inclusive(self):
        self.assertTrue(self.evaluator.evaluate(make_exam(time_limit_minutes=30))["step1"])
        self.assertTrue(self.evaluator.evaluate(make_exam(time_limit_minutes=600))["step1"])
        self.assertFalse(self.evaluator.evaluate(make_exam(time_limit_minutes=601))["step1"])

    def test_stale_scoring_rule_does_not_count(self):
        exam = make_exam()
        old_subtest = exam.subtests.get()
        new_subtest = SubTest.objects.create(exam=exam, name="Reading", order=2)
        ExamQuestion.objects.create(exam=exam, question=Question.objects.create(text="Q2"), subtest_id=new_subtest.id)
        old_subtest.delete()

        self.assertTrue(ScoringRule.objects.filter(track__exam=exam, subtest__isnull=True).exists())
        steps = self.evaluator.evaluate(exam)
        self.assertTrue(steps["step2"])
        self.assertFalse(steps["step4"])

    def test_scoring_rule_pointing_at_another_exam_does_not_count(self):
        exam = make_exam()
        other = make_exam(code="OTHER-1")
        ScoringRule.objects.filter(track__exam=exam).update(subtest=other.subtests.get())
        self.assertFalse(self.evaluator.evaluate(exam)["step4"])

    def test_every_subtest_needs_a_question(self):
        exam = make_exam()
        SubTest.objects.create(exam=exam, name="Communication", order=2)
        self.assertFalse(self.evaluator.evaluate(exam)["step5"])
        self.assertIn("Sub-test 'Communication' has no questions assigned.", self.evaluator.missing_requirements(exam))

    def test_vigency_rules(self):
        cases = [
            (YESTERDAY, None, False),
            (YESTERDAY, YESTERDAY, False),
            (TOMORROW, YESTERDAY, False),
            ("2026-01-01 00:00:00", "2028-01-01 00:00:00", True),
            ("2026-01-01 00:00:00", "2028-01-01 00:00:01", False),
            ("0000-00-00 00:00:00", NEXT_MONTH, False),
        ]
        for valid_from, valid_until, expected in cases:
            with self.subTest(valid_from=valid_from, valid_until=valid_until):
                exam = make_exam(valid_from=valid_from, valid_until=valid_until)
                self.assertEqual(self.evaluator.evaluate(exam)["step6"], expected)

    def test_leap_day_window_end(self):
        exam = make_exam(valid_from="2028-02-29 00:00:00", valid_until="2030-02-28 00:00:00")
        self.assertTrue(self.evaluator.evaluate(exam)["step6"])

    def test_wizard_progress(self):
        exam = make_exam(complete=False)
        self.assertEqual(self.evaluator.completion_percent(exam), 17 + 16)
        self.assertEqual(self.evaluator.next_step(exam), 2)
        self.assertTrue(self.evaluator.can_access_step(exam, 1))
        self.assertTrue(self.evaluator.can_access_step(exam, 2))
        self.assertFalse(self.evaluator.can_access_step(exam, 3))
        self.assertFalse(self.evaluator.can_access_step(exam, 7))

    def test_uses_prefetched_relations(self):
        exam = make_exam()
        exam = Exam.objects.prefetch_related("subtests", "tracks__scoring_rules", "exam_questions").get(pk=exam.pk)
        with CaptureQueriesContext(connection) as queries:
            self.assertTrue(self.evaluator.is_publishable(exam))
        selects = [query["sql"] for query in queries.captured_queries if query["sql"].upper().startswith("SELECT")]
        self.assertEqual(selects, [])

    def test_database_error_marks_step_incomplete(self):
        exam = make_exam()
        with patch.object(CompletenessEvaluator, "_question_problems", side_effect=DatabaseError("gone")):
            with self.assertLogs("exams.services.completeness", level="WARNING"):
                steps = self.evaluator.evaluate(exam)
        self.assertFalse(steps["step5"])
        self.assertTrue(steps["step4"])


class ExamLifecycleSweepTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.examinee = User.objects.create_user(username="examinee1", password="pass12345")
        self.other_examinee = User.objects.create_user(username="examinee2", password="pass12345")

    def test_due_draft_without_end_date_is_published(self):
        exam = make_exam(complete=False, valid_from=YESTERDAY, valid_until=None)
        lifecycle = ExamLifecycle(evaluator=AlwaysCompleteEvaluator())

        report = lifecycle.sweep()

        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.PUBLISHED)
        self.assertEqual(exam.published_at, NOW)
        self.assertIsNone(exam.valid_until)
        self.assertEqual((report.published, report.finalized), (1, 0))

    def test_expired_exam_is_finalized_and_late_attempt_closed_by_cleanup(self):
        exam = set_state(
            make_exam(valid_from=LAST_WEEK, valid_until=YESTERDAY),
            Exam.State.PUBLISHED,
            published_at=LAST_WEEK,
        )
        first = make_attempt(exam, self.examinee)
        second = make_attempt(exam, self.other_examinee)

        report = ExamLifecycle().sweep()

        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.FINALIZED)
        self.assertEqual(exam.finalized_at, NOW)
        self.assertEqual((report.finalized, report.attempts_closed), (1, 2))
        for attempt in (first, second):
            attempt.refresh_from_db()
            self.assertEqual(attempt.state, Attempt.State.SUBMITTED)
            self.assertEqual(attempt.ended_at, NOW)
            self.assertEqual(attempt.closed_by, Attempt.ClosedBy.FINALIZATION)
        self.assertNoOpenAttemptsOnFinalizedExams()

        late = make_attempt(exam, User.objects.create_user(username="late", password="pass12345"))
        call_command("close_finalized_exam_attempts", stdout=StringIO())

        late.refresh_from_db()
        self.assertEqual(late.state, Attempt.State.SUBMITTED)
        self.assertEqual(late.ended_at, NOW)
        self.assertEqual(late.closed_by, Attempt.ClosedBy.ORPHAN_CLEANUP)
        self.assertNoOpenAttemptsOnFinalizedExams()

    def test_end_date_equal_to_now_counts_as_expired(self):
        exam = set_state(make_exam(valid_from=LAST_WEEK, valid_until=NOW), Exam.State.PUBLISHED)
        outcome = ExamLifecycle().finalize_if_due(exam, reason="sweep")
        self.assertTrue(outcome.finalized)

        later = set_state(make_exam(code="LATER", valid_from=LAST_WEEK, valid_until="2026-03-10 12:00:01"),
                          Exam.State.PUBLISHED)
        self.assertFalse(ExamLifecycle().finalize_if_due(later, reason="sweep").finalized)

    def test_incomplete_exam_stays_draft_until_fixed(self):
        breakers = {
            "step1": lambda exam: Exam.objects.filter(pk=exam.pk).update(time_limit_minutes=10),
            "step2": lambda exam: SubTest.objects.filter(exam=exam).delete(),
            "step3": lambda exam: Track.objects.filter(exam=exam).delete(),
            "step4": lambda exam: ScoringRule.objects.filter(track__exam=exam).delete(),
            "step5": lambda exam: ExamQuestion.objects.filter(exam=exam).delete(),
            "step6": lambda exam: Exam.objects.filter(pk=exam.pk).update(valid_until=None),
        }
        for step, breaker in breakers.items():
            with self.subTest(step=step):
                exam = make_exam(code=f"GATE-{step}")
                breaker(exam)
                with self.assertLogs("exams.services.lifecycle", level="WARNING"):
                    report = ExamLifecycle().sweep()
                exam.refresh_from_db()
                self.assertEqual(exam.state, Exam.State.DRAFT)
                self.assertEqual(report.incomplete, 1)
                Exam.objects.filter(pk=exam.pk).delete()

    def test_fixing_the_failing_check_publishes_on_next_sweep(self):
        exam = make_exam()
        ExamQuestion.objects.filter(exam=exam).delete()
        with self.assertLogs("exams.services.lifecycle", level="WARNING"):
            ExamLifecycle().sweep()
        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.DRAFT)

        ExamQuestion.objects.create(
            exam=exam,
            question=Question.objects.create(text="Restored question"),
            subtest_id=exam.subtests.get().id,
        )
        report = ExamLifecycle().sweep()
        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.PUBLISHED)
        self.assertEqual(report.published, 1)

    def test_second_sweep_changes_nothing(self):
        due = make_exam(code="DUE")
        expired = set_state(make_exam(code="EXPIRED", valid_from=LAST_WEEK, valid_until=YESTERDAY),
                            Exam.State.PUBLISHED)
        make_attempt(expired, self.examinee)
        make_exam(code="FUTURE", valid_from=TOMORROW)

        first = ExamLifecycle().sweep()
        snapshot = list(Exam.objects.order_by("pk").values_list("pk", "state", "published_at", "finalized_at"))
        second = ExamLifecycle().sweep()

        self.assertEqual((first.published, first.finalized, first.attempts_closed), (1, 1, 1))
        self.assertFalse(second.changed)
        self.assertEqual(second.to_dict(), SweepReport().to_dict())
        self.assertEqual(
            list(Exam.objects.order_by("pk").values_list("pk", "state", "published_at", "finalized_at")),
            snapshot,
        )
        self.assertEqual(Exam.objects.get(pk=due.pk).state, Exam.State.PUBLISHED)

    def test_due_exam_goes_from_draft_to_finalized_in_one_sweep(self):
        exam = make_exam(valid_from=LAST_WEEK, valid_until=YESTERDAY)
        report = ExamLifecycle().sweep()
        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.FINALIZED)
        self.assertEqual((report.published, report.finalized), (1, 1))

    def test_states_never_move_backwards(self):
        finalized = set_state(make_exam(code="FIN"), Exam.State.FINALIZED, finalized_at=YESTERDAY)
        published = set_state(make_exam(code="PUB"), Exam.State.PUBLISHED, published_at=YESTERDAY)

        ExamLifecycle().sweep()
        finalized.refresh_from_db()
        published.refresh_from_db()

        self.assertEqual(finalized.state, Exam.State.FINALIZED)
        self.assertEqual(finalized.finalized_at, YESTERDAY)
        self.assertEqual(published.state, Exam.State.PUBLISHED)
        self.assertEqual(published.published_at, YESTERDAY)
        self.assertFalse(ExamLifecycle().publish_if_due(published, reason="sweep").published)

    def test_stale_instance_does_not_publish_twice(self):
        exam = make_exam()
        stale = Exam.objects.get(pk=exam.pk)
        lifecycle = ExamLifecycle()

        self.assertTrue(lifecycle.publish_if_due(exam, reason="sweep").published)
        self.assertFalse(lifecycle.publish_if_due(stale, reason="sweep").published)
        self.assertEqual(Exam.objects.get(pk=exam.pk).published_at, NOW)

    def test_losing_publish_racer_performs_no_write(self):
        class RacingEvaluator(AlwaysCompleteEvaluator):
            def is_publishable(self, exam):
                Exam.objects.filter(pk=exam.pk).update(state=Exam.State.PUBLISHED, published_at="2026-03-10 11:59:59")
                return True

        exam = make_exam()
        outcome = ExamLifecycle(evaluator=RacingEvaluator()).publish_if_due(exam, reason="sweep")

        self.assertFalse(outcome.published)
        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.PUBLISHED)
        self.assertEqual(exam.published_at, "2026-03-10 11:59:59")

    def test_finalize_rolls_back_attempt_closures_when_state_changed_underneath(self):
        class RacingCloser(AttemptCloser):
            def close_in_progress_attempts(self, exam, reason, closed_by=Attempt.ClosedBy.FINALIZATION):
                closed = super().close_in_progress_attempts(exam, reason, closed_by)
                Exam.objects.filter(pk=exam.pk).update(state=Exam.State.FINALIZED)
                return closed

        exam = set_state(make_exam(valid_from=LAST_WEEK, valid_until=YESTERDAY), Exam.State.PUBLISHED)
        attempt = make_attempt(exam, self.examinee)

        outcome = ExamLifecycle(closer=RacingCloser()).finalize_if_due(exam, reason="sweep")

        self.assertFalse(outcome.finalized)
        self.assertEqual(outcome.attempts_closed, 0)
        attempt.refresh_from_db()
        self.assertEqual(attempt.state, Attempt.State.IN_PROGRESS)

    def test_failure_on_one_exam_does_not_stop_the_sweep(self):
        broken = make_exam(code="BROKEN")
        healthy = make_exam(code="HEALTHY")
        original = ExamLifecycle.publish_if_due

        def flaky(lifecycle, exam, reason):
            if exam.pk == broken.pk:
                raise DatabaseError("deadlock detected")
            return original(lifecycle, exam, reason)

        with patch.object(ExamLifecycle, "publish_if_due", autospec=True, side_effect=flaky):
            with self.assertLogs("exams.services.lifecycle", level="ERROR"):
                report = ExamLifecycle().sweep()

        self.assertEqual((report.published, report.failed), (1, 1))
        self.assertEqual(Exam.objects.get(pk=healthy.pk).state, Exam.State.PUBLISHED)
        self.assertEqual(Exam.objects.get(pk=broken.pk).state, Exam.State.DRAFT)

    def test_transition_log_carries_exam_and_reason(self):
        exam = make_exam()
        with self.assertLogs("exams.services.lifecycle", level="INFO") as logs:
            ExamLifecycle().sweep(reason="batch")
        transition = [record for record in logs.records if record.getMessage().startswith("Exam transition")]
        self.assertEqual(len(transition), 1)
        self.assertEqual(transition[0].exam_id, exam.pk)
        self.assertEqual(transition[0].old_state, Exam.State.DRAFT)
        self.assertEqual(transition[0].new_state, Exam.State.PUBLISHED)
        self.assertEqual(transition[0].reason, "batch")

    def test_misuse_with_missing_exam_raises(self):
        with self.assertRaises(ValueError):
            ExamLifecycle().finalize_if_due(None, reason="sweep")


class ConcurrentSweepTests(FrozenClockMixin, TransactionTestCase):
    def setUp(self):
        super().setUp()
        self.exam = set_state(make_exam(valid_from=LAST_WEEK, valid_until=YESTERDAY), Exam.State.PUBLISHED)
        for index in range(3):
            make_attempt(self.exam, User.objects.create_user(username=f"examinee{index}", password="pass12345"))

    def test_committed_sweeps_finalize_once(self):
        first = ExamLifecycle().sweep()
        second = ExamLifecycle().sweep()

        self.assertEqual((first.finalized, first.attempts_closed), (1, 3))
        self.assertEqual((second.finalized, second.attempts_closed), (0, 0))
        self.assertEqual(Exam.objects.get(pk=self.exam.pk).finalized_at, NOW)
        self.assertNoOpenAttemptsOnFinalizedExams()

    @skipUnlessDBFeature("has_select_for_update")
    def test_parallel_sweeps_on_separate_connections_finalize_once(self):
        barrier = threading.Barrier(2)
        reports = []
        errors = []

        def run_sweep():
            try:
                barrier.wait(timeout=10)
                reports.append(ExamLifecycle().sweep())
            except Exception as exc:
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=run_sweep) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        self.assertEqual(errors, [])
        self.assertEqual(sum(report.finalized for report in reports), 1)
        self.assertEqual(sum(report.attempts_closed for report in reports), 3)
        self.assertEqual(sum(report.failed for report in reports), 0)
        self.assertEqual(Exam.objects.get(pk=self.exam.pk).state, Exam.State.FINALIZED)
        self.assertNoOpenAttemptsOnFinalizedExams()


class ManualStateChangeTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.lifecycle = ExamLifecycle()
        self.admin = User.objects.create_user(username="admin", password="pass12345", is_staff=True)

    def test_manual_publish_ignores_future_start(self):
        exam = make_exam(valid_from=TOMORROW)
        exam = self.lifecycle.change_state(exam, Exam.State.PUBLISHED, actor=self.admin)
        self.assertEqual(exam.state, Exam.State.PUBLISHED)
        self.assertEqual(exam.valid_from, NOW)
        self.assertEqual(exam.published_at, NOW)
        self.assertEqual(exam.valid_until, NEXT_MONTH)

    def test_manual_publish_accepts_operator_dates(self):
        exam = make_exam(valid_from=TOMORROW)
        exam = self.lifecycle.change_state(
            exam,
            Exam.State.PUBLISHED,
            valid_from="2026-03-10T08:00",
            valid_until="2026-05-01T18:30",
        )
        self.assertEqual(exam.valid_from, "2026-03-10 08:00:00")
        self.assertEqual(exam.valid_until, "2026-05-01 18:30:00")

    def test_manual_publish_keeps_completeness_gate(self):
        exam = make_exam(complete=False, valid_from=TOMORROW)
        with self.assertRaises(ExamNotPublishable) as ctx:
            self.lifecycle.change_state(exam, Exam.State.PUBLISHED)
        self.assertIn("At least one sub-test is required.", ctx.exception.missing)
        exam.refresh_from_db()
        self.assertEqual(exam.state, Exam.State.DRAFT)

    def test_manual_finalize_closes_attempts(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED, published_at=YESTERDAY)
        attempt = make_attempt(exam, User.objects.create_user(username="examinee1", password="pass12345"))

        exam = self.lifecycle.change_state(exam, Exam.State.FINALIZED)

        self.assertEqual(exam.state, Exam.State.FINALIZED)
        self.assertEqual(exam.valid_until, NOW)
        self.assertEqual(exam.finalized_at, NOW)
        attempt.refresh_from_db()
        self.assertEqual(attempt.state, Attempt.State.SUBMITTED)
        self.assertEqual(attempt.closed_by, Attempt.ClosedBy.FINALIZATION)
        self.assertTrue(Attempt.objects.filter(pk=attempt.pk).exists())

    def test_only_single_forward_steps_are_allowed(self):
        draft = make_exam(code="D", valid_from=TOMORROW)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.change_state(draft, Exam.State.FINALIZED)

        finalized = set_state(make_exam(code="F"), Exam.State.FINALIZED)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.change_state(finalized, Exam.State.PUBLISHED)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.change_state(finalized, "archived")

    def test_same_state_is_a_no_op(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED, published_at=YESTERDAY)
        exam = self.lifecycle.change_state(exam, Exam.State.PUBLISHED)
        self.assertEqual(exam.published_at, YESTERDAY)

    def test_unparseable_operator_date_is_rejected(self):
        exam = make_exam(valid_from=TOMORROW)
        with self.assertRaises(LifecycleError):
            self.lifecycle.change_state(exam, Exam.State.PUBLISHED, valid_from="soon")

    def test_wizard_step_only_moves_forward(self):
        exam = make_exam(valid_from=TOMORROW)
        self.assertEqual(self.lifecycle.advance_wizard_step(exam, 3), 3)
        self.assertEqual(self.lifecycle.advance_wizard_step(exam, 2), 3)

    def test_wizard_step_requires_completed_steps(self):
        exam = make_exam(complete=False, valid_from=TOMORROW)
        self.assertEqual(self.lifecycle.advance_wizard_step(exam, 1), 1)
        with self.assertRaises(StepIncomplete):
            self.lifecycle.advance_wizard_step(exam, 2)
        with self.assertRaises(LifecycleError):
            self.lifecycle.advance_wizard_step(exam, 8)

    def test_wizard_step_checks_only_the_target_step(self):
        exam = make_exam(complete=False, valid_from=TOMORROW, valid_until=NEXT_MONTH)
        self.assertFalse(self.lifecycle.evaluator.evaluate(exam)["step2"])
        self.assertEqual(self.lifecycle.advance_wizard_step(exam, 6), 6)

    def test_wizard_step_is_locked_after_publication(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        with self.assertRaises(InvalidTransition):
            self.lifecycle.advance_wizard_step(exam, 1)


class AttemptCloserTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.closer = AttemptCloser()
        self.examinee = User.objects.create_user(username="examinee1", password="pass12345")

    def test_closing_twice_is_a_no_op(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        make_attempt(exam, self.examinee)
        make_attempt(exam, User.objects.create_user(username="examinee2", password="pass12345"))

        self.assertEqual(self.closer.close_in_progress_attempts(exam, reason="manual"), 2)
        self.assertEqual(self.closer.close_in_progress_attempts(exam, reason="manual"), 0)

    def test_orphan_report(self):
        clean = set_state(make_exam(code="CLEAN"), Exam.State.FINALIZED)
        dirty = set_state(make_exam(code="DIRTY"), Exam.State.FINALIZED)
        open_exam = set_state(make_exam(code="OPEN"), Exam.State.PUBLISHED)
        make_attempt(clean, self.examinee, state=Attempt.State.SUBMITTED, ended_at=YESTERDAY)
        make_attempt(dirty, self.examinee)
        make_attempt(dirty, User.objects.create_user(username="examinee2", password="pass12345"))
        still_running = make_attempt(open_exam, self.examinee)

        report = self.closer.close_orphaned_attempts()

        self.assertEqual(report.exams_checked, 2)
        self.assertEqual(report.exams_affected, 1)
        self.assertEqual(report.attempts_closed, 2)
        self.assertEqual(report.exams, [{"exam_id": dirty.pk, "code": "DIRTY", "attempts_closed": 2}])
        still_running.refresh_from_db()
        self.assertEqual(still_running.state, Attempt.State.IN_PROGRESS)
        self.assertEqual(self.closer.close_orphaned_attempts().attempts_closed, 0)

    def test_submit_is_capped_by_time_budget(self):
        exam = set_state(make_exam(time_limit_minutes=60), Exam.State.PUBLISHED)
        overdue = make_attempt(exam, self.examinee, started_at="2026-03-10 10:00:00")
        on_time = make_attempt(
            exam,
            User.objects.create_user(username="examinee2", password="pass12345"),
            started_at="2026-03-10 11:30:00",
        )

        self.assertEqual(self.closer.submit_attempt(overdue).ended_at, "2026-03-10 11:00:00")
        self.assertEqual(self.closer.submit_attempt(on_time).ended_at, NOW)

    def test_submit_twice_keeps_first_end_time(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        attempt = make_attempt(exam, self.examinee, state=Attempt.State.SUBMITTED, ended_at=YESTERDAY)
        self.assertEqual(self.closer.submit_attempt(attempt).ended_at, YESTERDAY)

    def test_start_resumes_open_attempt(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        track = exam.tracks.get()
        attempt, created = self.closer.start_attempt(exam, self.examinee, track=track)
        again, created_again = self.closer.start_attempt(exam, self.examinee)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(attempt.pk, again.pk)
        self.assertEqual(attempt.started_at, NOW)
        self.assertEqual(attempt.track, track)

    def test_start_requires_open_public_exam(self):
        draft = make_exam(code="DRAFT", valid_from=TOMORROW)
        expired = set_state(make_exam(code="EXP", valid_from=LAST_WEEK, valid_until=NOW), Exam.State.PUBLISHED)
        private = set_state(make_exam(code="PRIV", access_mode=Exam.AccessMode.PRIVATE), Exam.State.PUBLISHED)
        for exam in (draft, expired, private):
            with self.subTest(code=exam.code):
                with self.assertRaises(ExamNotAvailable):
                    self.closer.start_attempt(exam, self.examinee)
        self.assertFalse(Attempt.objects.exists())

    def test_start_rejects_track_of_another_exam(self):
        exam = set_state(make_exam(code="A"), Exam.State.PUBLISHED)
        other = make_exam(code="B")
        with self.assertRaises(LifecycleError):
            self.closer.start_attempt(exam, self.examinee, track=other.tracks.get())


class ReconciliationTriggerTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        cache.clear()
        self.addCleanup(cache.clear)

    def test_load_exam_reconciles_before_returning(self):
        exam = make_exam()
        loaded = load_exam(exam.pk)
        self.assertEqual(loaded.state, Exam.State.PUBLISHED)
        self.assertEqual(loaded.published_at, NOW)

    def test_load_exam_propagates_missing_exam(self):
        with self.assertRaises(Exam.DoesNotExist):
            load_exam(999999)

    def test_lazy_reconcile_swallows_failures(self):
        exam = make_exam()
        with patch.object(ExamLifecycle, "reconcile", side_effect=DatabaseError("connection lost")):
            with self.assertLogs("exams.services.reconciliation", level="ERROR"):
                returned = reconcile_on_access(exam)
        self.assertIs(returned, exam)
        self.assertEqual(returned.state, Exam.State.DRAFT)

    def test_lazy_reconcile_skips_finalized_and_undated_exams(self):
        finalized = set_state(make_exam(code="FIN"), Exam.State.FINALIZED)
        undated = make_exam(code="NODATE", valid_from=None, valid_until=None)
        with patch.object(ExamLifecycle, "reconcile") as reconcile:
            reconcile_on_access(finalized)
            reconcile_on_access(undated)
        reconcile.assert_not_called()

    def test_throttled_sweep_runs_once_per_interval(self):
        lifecycle = Mock()
        lifecycle.sweep.return_value = SweepReport()
        sweep = ThrottledSweep(lifecycle=lifecycle)

        with patch("exams.services.reconciliation.time.time", return_value=1000.0):
            self.assertIsNotNone(sweep.maybe_run())
            self.assertIsNone(sweep.maybe_run())
        with patch("exams.services.reconciliation.time.time", return_value=1000.0 + settings.EXAM_SWEEP_INTERVAL_SECONDS):
            self.assertIsNotNone(sweep.maybe_run())

        self.assertEqual(lifecycle.sweep.call_count, 2)
        lifecycle.sweep.assert_called_with(reason="sweep")

    def test_marker_is_written_before_sweeping(self):
        lifecycle = Mock()

        def check_marker(reason):
            self.assertIsNotNone(cache.get(settings.EXAM_SWEEP_CACHE_KEY))
            return SweepReport()

        lifecycle.sweep.side_effect = check_marker
        ThrottledSweep(lifecycle=lifecycle).maybe_run()
        lifecycle.sweep.assert_called_once()

    def test_sweep_failure_never_reaches_the_request(self):
        lifecycle = Mock()
        lifecycle.sweep.side_effect = DatabaseError("locked")
        with self.assertLogs("exams.services.reconciliation", level="ERROR"):
            self.assertIsNone(ThrottledSweep(lifecycle=lifecycle).maybe_run())

    def test_unreadable_marker_is_treated_as_absent(self):
        cache.set(settings.EXAM_SWEEP_CACHE_KEY, "garbage")
        lifecycle = Mock()
        lifecycle.sweep.return_value = SweepReport()

        with self.assertLogs("exams.services.reconciliation", level="WARNING"):
            report = ThrottledSweep(lifecycle=lifecycle).maybe_run()

        self.assertIsNotNone(report)
        lifecycle.sweep.assert_called_once_with(reason="sweep")
        self.assertIsInstance(cache.get(settings.EXAM_SWEEP_CACHE_KEY), float)

    def test_throttled_sweep_applies_transitions(self):
        exam = make_exam()
        report = ThrottledSweep().maybe_run()
        self.assertEqual(report.published, 1)
        self.assertEqual(Exam.objects.get(pk=exam.pk).state, Exam.State.PUBLISHED)

    @override_settings(EXAM_SWEEP_ON_REQUEST=True)
    def test_middleware_triggers_sweep(self):
        with patch.object(ThrottledSweep, "maybe_run") as maybe_run:
            response = self.client.get("/")
        self.assertEqual(response.status_code, 200)
        maybe_run.assert_called_once()

    @override_settings(EXAM_SWEEP_ON_REQUEST=False)
    def test_middleware_can_be_disabled(self):
        with patch.object(ThrottledSweep, "maybe_run") as maybe_run:
            self.client.get("/")
        maybe_run.assert_not_called()


class ManagementCommandTests(FrozenClockMixin, TestCase):
    def test_reconcile_command_reports_counts(self):
        make_exam(code="DUE")
        set_state(make_exam(code="EXP", valid_from=LAST_WEEK, valid_until=YESTERDAY), Exam.State.PUBLISHED)

        out = StringIO()
        call_command("reconcile_exam_states", stdout=out)

        self.assertIn("published=1", out.getvalue())
        self.assertIn("finalized=1", out.getvalue())
        self.assertIn("failed=0", out.getvalue())

    def test_reconcile_command_json_output(self):
        make_exam()
        out = StringIO()
        call_command("reconcile_exam_states", "--json", stdout=out)
        self.assertEqual(json.loads(out.getvalue())["published"], 1)

    def test_reconcile_command_strict_mode_fails_on_errors(self):
        with patch.object(ExamLifecycle, "sweep", return_value=SweepReport(failed=1)):
            with self.assertRaises(CommandError):
                call_command("reconcile_exam_states", "--strict", stdout=StringIO())

    def test_cleanup_command_lists_affected_exams(self):
        exam = set_state(make_exam(code="DIRTY"), Exam.State.FINALIZED)
        make_attempt(exam, User.objects.create_user(username="examinee1", password="pass12345"))

        out = StringIO()
        call_command("close_finalized_exam_attempts", stdout=out)

        self.assertIn(f"exam {exam.pk} (DIRTY): closed 1", out.getvalue())
        self.assertIn("attempts_closed=1", out.getvalue())


class LifecycleAdminApiTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="pass12345", is_staff=True)
        self.examinee = User.objects.create_user(username="examinee1", password="pass12345")
        self.client.force_authenticate(user=self.admin)

    def test_admin_endpoints_require_staff(self):
        self.client.force_authenticate(user=self.examinee)
        self.assertEqual(self.client.get("/api/exams/lifecycle/status/").status_code, 403)
        self.assertEqual(self.client.post("/api/exams/lifecycle/reconcile/").status_code, 403)

    def test_status(self):
        exam = set_state(make_exam(), Exam.State.FINALIZED)
        make_attempt(exam, self.examinee)
        make_exam(code="DRAFT", valid_from=TOMORROW)

        response = self.client.get("/api/exams/lifecycle/status/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["exams"], {"draft": 1, "published": 0, "finalized": 1})
        self.assertEqual(response.data["orphaned_attempts"], 1)
        self.assertEqual(response.data["clock"]["now"], NOW)

    def test_reconcile_all(self):
        make_exam()
        response = self.client.post("/api/exams/lifecycle/reconcile/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["published"], 1)

    def test_close_orphans(self):
        exam = set_state(make_exam(), Exam.State.FINALIZED)
        make_attempt(exam, self.examinee)
        response = self.client.post("/api/exams/lifecycle/close-orphans/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["attempts_closed"], 1)

    def test_detail_reconciles_on_access(self):
        exam = make_exam()
        response = self.client.get(f"/api/exams/{exam.pk}/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["state"], "published")
        self.assertEqual(len(response.data["subtests"]), 1)

    def test_detail_not_found(self):
        self.assertEqual(self.client.get("/api/exams/424242/").status_code, 404)

    def test_change_state(self):
        exam = make_exam(valid_from=TOMORROW)
        response = self.client.patch(f"/api/exams/{exam.pk}/state/", {"state": "published"}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["state"], "published")
        self.assertEqual(response.data["published_at"], NOW)

    def test_change_state_errors(self):
        incomplete = make_exam(code="INC", complete=False, valid_from=TOMORROW)
        response = self.client.patch(f"/api/exams/{incomplete.pk}/state/", {"state": "published"}, format="json")
        self.assertEqual(response.status_code, 422)
        self.assertTrue(response.data["missing"])

        draft = make_exam(code="DRAFT", valid_from=TOMORROW)
        response = self.client.patch(f"/api/exams/{draft.pk}/state/", {"state": "finalized"}, format="json")
        self.assertEqual(response.status_code, 409)

        response = self.client.patch(f"/api/exams/{draft.pk}/state/", {"state": "archived"}, format="json")
        self.assertEqual(response.status_code, 400)

        response = self.client.patch(
            f"/api/exams/{draft.pk}/state/",
            {"state": "published", "valid_from": "whenever"},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_wizard_status(self):
        exam = make_exam(valid_from=TOMORROW)
        response = self.client.get(f"/api/exams/{exam.pk}/wizard/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["completion_percent"], 100)
        self.assertTrue(response.data["can_publish"])
        self.assertIsNone(response.data["next_step"])

    def test_wizard_step(self):
        exam = make_exam(valid_from=TOMORROW)
        response = self.client.post(f"/api/exams/{exam.pk}/wizard/step/", {"step": 4}, format="json")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["wizard_step"], 4)

        response = self.client.post(f"/api/exams/{exam.pk}/wizard/step/", {"step": 9}, format="json")
        self.assertEqual(response.status_code, 400)

        incomplete = make_exam(code="INC", complete=False, valid_from=TOMORROW)
        response = self.client.post(f"/api/exams/{incomplete.pk}/wizard/step/", {"step": 2}, format="json")
        self.assertEqual(response.status_code, 422)


class ExamineeApiTests(FrozenClockMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.examinee = User.objects.create_user(username="examinee1", password="pass12345")
        self.client.force_authenticate(user=self.examinee)

    def test_available_lists_open_public_exams(self):
        set_state(make_exam(code="OPEN"), Exam.State.PUBLISHED)
        due_draft = make_exam(code="DUE")
        make_exam(code="INCOMPLETE", complete=False)
        set_state(make_exam(code="PRIVATE", access_mode=Exam.AccessMode.PRIVATE), Exam.State.PUBLISHED)
        expired = set_state(make_exam(code="EXPIRED", valid_from=LAST_WEEK, valid_until=YESTERDAY),
                            Exam.State.PUBLISHED)

        with self.assertLogs("exams.services.lifecycle", level="INFO"):
            response = self.client.get("/api/exams/available/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual({item["code"] for item in response.data}, {"OPEN", "DUE"})
        self.assertEqual(Exam.objects.get(pk=due_draft.pk).state, Exam.State.PUBLISHED)
        self.assertEqual(Exam.objects.get(pk=expired.pk).state, Exam.State.FINALIZED)

    def test_start_and_resume(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        track = exam.tracks.get()

        first = self.client.post(f"/api/exams/{exam.pk}/start/", {"track_id": track.id}, format="json")
        second = self.client.post(f"/api/exams/{exam.pk}/start/", {}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(first.data["id"], second.data["id"])
        self.assertEqual(first.data["state"], "in_progress")

    def test_start_errors(self):
        closed = set_state(make_exam(code="CLOSED"), Exam.State.FINALIZED)
        self.assertEqual(self.client.post(f"/api/exams/{closed.pk}/start/").status_code, 409)

        exam = set_state(make_exam(code="OPEN"), Exam.State.PUBLISHED)
        response = self.client.post(f"/api/exams/{exam.pk}/start/", {"track_id": 999999}, format="json")
        self.assertEqual(response.status_code, 400)

        response = self.client.post(f"/api/exams/{exam.pk}/start/", {"track_id": "abc"}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertIn("track_id", response.data["error"])
        self.assertFalse(Attempt.objects.filter(exam=exam).exists())
        self.assertEqual(self.client.post("/api/exams/999999/start/").status_code, 404)

    def test_submit_own_attempt(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        attempt = make_attempt(exam, self.examinee)

        response = self.client.post(f"/api/exams/attempts/{attempt.pk}/submit/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["state"], "submitted")
        self.assertEqual(response.data["closed_by"], "examinee")
        self.assertEqual(response.data["ended_at"], NOW)

    def test_submit_after_expiry_reports_finalization(self):
        exam = set_state(make_exam(valid_from=LAST_WEEK, valid_until=YESTERDAY), Exam.State.PUBLISHED)
        attempt = make_attempt(exam, self.examinee, started_at=YESTERDAY)

        response = self.client.post(f"/api/exams/attempts/{attempt.pk}/submit/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["closed_by"], "finalization")
        self.assertEqual(Exam.objects.get(pk=exam.pk).state, Exam.State.FINALIZED)

    def test_cannot_submit_someone_elses_attempt(self):
        exam = set_state(make_exam(), Exam.State.PUBLISHED)
        other = User.objects.create_user(username="examinee2", password="pass12345")
        attempt = make_attempt(exam, other)
        response = self.client.post(f"/api/exams/attempts/{attempt.pk}/submit/")
        self.assertEqual(response.status_code, 404)
