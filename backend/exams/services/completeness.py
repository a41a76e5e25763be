from __future__ import annotations

import logging

from django.db import DatabaseError, transaction

from ..models import Exam
from .clock import CivilClock

logger = logging.getLogger(__name__)

WIZARD_STEPS = (1, 2, 3, 4, 5, 6)
STEP_WEIGHTS = {1: 17, 2: 17, 3: 17, 4: 17, 5: 16, 6: 16}

TITLE_LENGTH = (10, 255)
DESCRIPTION_LENGTH = (20, 50000)
TIME_LIMIT_MINUTES = (30, 600)
MAX_VIGENCY_YEARS = 2


def _add_years(value, years):
    try:
        return value.replace(year=value.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return value.replace(year=value.year + years, day=28)


class CompletenessEvaluator:
    """
    Read-only readiness check for the six wizard steps of an exam.

    Relations are read through the related managers, so prefetched
    collections are reused and anything missing is queried on demand.
    """

    def __init__(self, clock: CivilClock | None = None):
        self.clock = clock or CivilClock()

    def evaluate(self, exam) -> dict:
        problems = self._problems(exam)
        return {f"step{step}": not problems[step] for step in WIZARD_STEPS}

    def is_publishable(self, exam) -> bool:
        if exam is None:
            raise ValueError("exam is required")
        if exam.state != Exam.State.DRAFT:
            return False
        return all(self.evaluate(exam).values())

    def missing_requirements(self, exam) -> list[str]:
        problems = self._problems(exam)
        return [message for step in WIZARD_STEPS for message in problems[step]]

    def completion_percent(self, exam) -> int:
        steps = self.evaluate(exam)
        total = sum(STEP_WEIGHTS[step] for step in WIZARD_STEPS if steps[f"step{step}"])
        return min(100, total)

    def next_step(self, exam) -> int | None:
        steps = self.evaluate(exam)
        for step in WIZARD_STEPS:
            if not steps[f"step{step}"]:
                return step
        return None

    def can_access_step(self, exam, step: int) -> bool:
        if step not in WIZARD_STEPS:
            return False
        if step == 1:
            return True
        steps = self.evaluate(exam)
        return all(steps[f"step{previous}"] for previous in range(1, step))

    def _problems(self, exam) -> dict:
        if exam is None:
            raise ValueError("exam is required")
        checks = {
            1: self._general_data_problems,
            2: self._subtest_problems,
            3: self._track_problems,
            4: self._scoring_rule_problems,
            5: self._question_problems,
            6: self._vigency_problems,
        }
        problems = {}
        for step, check in checks.items():
            try:
                with transaction.atomic():
                    problems[step] = check(exam)
            except DatabaseError:
                logger.warning("Could not evaluate wizard step %s for exam_id=%s", step, exam.pk, exc_info=True)
                problems[step] = [f"Step {step} could not be verified."]
        return problems

    def _general_data_problems(self, exam):
        problems = []
        if not (exam.code or "").strip():
            problems.append("Exam code is required.")

        title_length = len((exam.title or "").strip())
        if not TITLE_LENGTH[0] <= title_length <= TITLE_LENGTH[1]:
            problems.append(f"Title must be between {TITLE_LENGTH[0]} and {TITLE_LENGTH[1]} characters.")

        description_length = len((exam.description or "").strip())
        if not DESCRIPTION_LENGTH[0] <= description_length <= DESCRIPTION_LENGTH[1]:
            problems.append(
                f"Description must be between {DESCRIPTION_LENGTH[0]} and {DESCRIPTION_LENGTH[1]} characters."
            )

        minutes = exam.time_limit_minutes
        if minutes is None or not TIME_LIMIT_MINUTES[0] <= minutes <= TIME_LIMIT_MINUTES[1]:
            problems.append(
                f"Time limit must be between {TIME_LIMIT_MINUTES[0]} and {TIME_LIMIT_MINUTES[1]} minutes."
            )

        if exam.access_mode not in Exam.AccessMode.values:
            problems.append("Access mode must be public or private.")
        return problems

    def _subtest_problems(self, exam):
        if not list(exam.subtests.all()):
            return ["At least one sub-test is required."]
        return []

    def _track_problems(self, exam):
        if not list(exam.tracks.all()):
            return ["At least one track is required."]
        return []

    def _scoring_rule_problems(self, exam):
        tracks = list(exam.tracks.all())
        if not tracks:
            return ["Scoring rules need at least one track."]

        subtest_ids = {subtest.pk for subtest in exam.subtests.all()}
        problems = []
        for track in tracks:
            has_valid_rule = any(rule.subtest_id in subtest_ids for rule in track.scoring_rules.all())
            if not has_valid_rule:
                problems.append(f"Track '{track.name}' has no scoring rule for a sub-test of this exam.")
        return problems

    def _question_problems(self, exam):
        subtests = list(exam.subtests.all())
        if not subtests:
            return ["Questions need at least one sub-test."]

        questions_per_subtest = {}
        for link in exam.exam_questions.all():
            if link.subtest_id is None:
                continue
            key = int(link.subtest_id)
            questions_per_subtest[key] = questions_per_subtest.get(key, 0) + 1

        problems = []
        for subtest in subtests:
            if not questions_per_subtest.get(int(subtest.pk)):
                logger.debug("Sub-test without questions exam_id=%s subtest_id=%s", exam.pk, subtest.pk)
                problems.append(f"Sub-test '{subtest.name}' has no questions assigned.")
        return problems

    def _vigency_problems(self, exam):
        valid_from = self.clock.parse(exam.valid_from, field="valid_from", exam_id=exam.pk)
        valid_until = self.clock.parse(exam.valid_until, field="valid_until", exam_id=exam.pk)
        if valid_from is None or valid_until is None:
            return ["Both vigency dates are required."]
        if valid_until <= valid_from:
            return ["Vigency end must be after its start."]
        if valid_until > _add_years(valid_from, MAX_VIGENCY_YEARS):
            return [f"Vigency window cannot exceed {MAX_VIGENCY_YEARS} years."]
        return []
