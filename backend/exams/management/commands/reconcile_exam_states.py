"""
Publish exams whose vigency has started and finalize the ones whose vigency
has ended, closing their in-progress attempts.

Safe to run repeatedly; intended for cron:
  python manage.py reconcile_exam_states
"""
import json

from django.core.management.base import BaseCommand, CommandError

from exams.services.lifecycle import REASON_BATCH, ExamLifecycle


class Command(BaseCommand):
    help = "Apply due publish/finalize transitions to every exam"

    def add_arguments(self, parser):
        parser.add_argument("--json", action="store_true", help="Print the report as JSON")
        parser.add_argument("--strict", action="store_true", help="Exit with an error if any exam failed")

    def handle(self, *args, **options):
        report = ExamLifecycle().sweep(reason=REASON_BATCH)

        if options["json"]:
            self.stdout.write(json.dumps(report.to_dict(), sort_keys=True))
        else:
            style = self.style.WARNING if report.failed else self.style.SUCCESS
            self.stdout.write(
                style(
                    f"reconcile done published={report.published} finalized={report.finalized} "
                    f"attempts_closed={report.attempts_closed} incomplete={report.incomplete} "
                    f"failed={report.failed}"
                )
            )

        if options["strict"] and report.failed:
            raise CommandError(f"{report.failed} exam(s) failed to reconcile")
