"""
Close in-progress attempts that still belong to finalized exams.

Run via cron next to reconcile_exam_states:
  python manage.py close_finalized_exam_attempts
"""
from django.core.management.base import BaseCommand

from exams.services.attempts import AttemptCloser
from exams.services.lifecycle import REASON_BATCH


class Command(BaseCommand):
    help = "Submit lingering in-progress attempts of finalized exams"

    def handle(self, *args, **options):
        report = AttemptCloser().close_orphaned_attempts(reason=REASON_BATCH)

        for item in report.exams:
            self.stdout.write(f"exam {item['exam_id']} ({item['code'] or '-'}): closed {item['attempts_closed']}")

        style = self.style.WARNING if report.failed else self.style.SUCCESS
        self.stdout.write(
            style(
                f"cleanup done exams_checked={report.exams_checked} exams_affected={report.exams_affected} "
                f"attempts_closed={report.attempts_closed} failed={report.failed}"
            )
        )
