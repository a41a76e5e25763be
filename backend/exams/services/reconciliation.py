from __future__ import annotations

import logging
import time

from django.conf import settings
from django.core.cache import cache

from ..models import Exam
from .lifecycle import REASON_LAZY, REASON_SWEEP, ExamLifecycle

logger = logging.getLogger(__name__)


def load_exam(exam_id, queryset=None, lifecycle: ExamLifecycle | None = None):
    """Fetch one exam and bring its state up to date before handing it out."""
    if queryset is None:
        queryset = Exam.objects.all()
    exam = queryset.get(pk=exam_id)
    return reconcile_on_access(exam, lifecycle=lifecycle)


def reconcile_on_access(exam, lifecycle: ExamLifecycle | None = None):
    if exam is None:
        raise ValueError("exam is required")
    if exam.state == Exam.State.FINALIZED or not exam.has_vigency_dates:
        return exam

    try:
        outcome = (lifecycle or ExamLifecycle()).reconcile(exam, reason=REASON_LAZY)
        if outcome.changed:
            exam.refresh_from_db()
    except Exception:
        logger.exception(
            "Lazy reconciliation failed exam_id=%s state=%s",
            exam.pk,
            exam.state,
            extra={"exam_id": exam.pk, "reason": REASON_LAZY},
        )
    return exam


class ThrottledSweep:
    """
    Runs the all-exams sweep at most once per interval across requests.

    The cache marker only limits how often the sweep runs; the transitions
    themselves stay correct without it.
    """

    def __init__(self, lifecycle: ExamLifecycle | None = None, cache_backend=None):
        self._lifecycle = lifecycle
        self.cache = cache_backend or cache

    @property
    def lifecycle(self):
        if self._lifecycle is None:
            self._lifecycle = ExamLifecycle()
        return self._lifecycle

    @property
    def cache_key(self):
        return settings.EXAM_SWEEP_CACHE_KEY

    @property
    def interval_seconds(self):
        return max(5, int(settings.EXAM_SWEEP_INTERVAL_SECONDS))

    @property
    def marker_ttl_seconds(self):
        return max(self.interval_seconds, int(settings.EXAM_SWEEP_MARKER_TTL_SECONDS))

    def last_run(self):
        try:
            value = self.cache.get(self.cache_key)
        except Exception:
            logger.warning("Could not read sweep marker key=%s", self.cache_key, exc_info=True)
            return None
        if not value:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            logger.warning("Ignoring unreadable sweep marker key=%s value=%r", self.cache_key, value)
            return None

    def is_due(self, now=None) -> bool:
        now = time.time() if now is None else now
        last_run = self.last_run()
        return last_run is None or (now - last_run) >= self.interval_seconds

    def maybe_run(self):
        now = time.time()
        if not self.is_due(now):
            return None

        try:
            self.cache.set(self.cache_key, now, timeout=self.marker_ttl_seconds)
        except Exception:
            logger.warning("Could not store sweep marker, skipping sweep key=%s", self.cache_key, exc_info=True)
            return None

        try:
            return self.lifecycle.sweep(reason=REASON_SWEEP)
        except Exception:
            logger.exception("Throttled sweep failed")
            return None
