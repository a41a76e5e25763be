from __future__ import annotations

from datetime import datetime, timedelta
import logging
import re
from zoneinfo import ZoneInfo

from django.conf import settings
from django.utils import timezone

logger = logging.getLogger(__name__)

CIVIL_FORMAT = "%Y-%m-%d %H:%M:%S"
ZERO_DATE = "0000-00-00 00:00:00"

_CIVIL_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")
_OPERATOR_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d")


class CivilClock:
    """
    Wall-clock time in the single civil zone exam dates are written in.

    Stored dates are fixed-layout strings, so every comparison here is a plain
    string comparison against now_string(). Read-path methods never raise: a
    malformed stored value behaves as if it were absent.
    """

    def __init__(self, tz_name: str | None = None):
        self.tz_name = tz_name or settings.EXAM_CIVIL_TIME_ZONE
        self.tz = ZoneInfo(self.tz_name)

    def now(self) -> datetime:
        return timezone.now().astimezone(self.tz).replace(tzinfo=None, microsecond=0)

    def now_string(self) -> str:
        return self.now().strftime(CIVIL_FORMAT)

    def normalize(self, value, field: str | None = None, exam_id=None) -> str | None:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value.strftime(CIVIL_FORMAT)
        text = str(value).strip()
        if not text:
            return None
        if text == ZERO_DATE or not _CIVIL_PATTERN.match(text):
            logger.warning("Ignoring malformed civil date exam_id=%s field=%s value=%r", exam_id, field, value)
            return None
        try:
            datetime.strptime(text, CIVIL_FORMAT)
        except ValueError:
            logger.warning("Ignoring impossible civil date exam_id=%s field=%s value=%r", exam_id, field, value)
            return None
        return text

    def parse(self, value, field: str | None = None, exam_id=None) -> datetime | None:
        text = self.normalize(value, field=field, exam_id=exam_id)
        if text is None:
            return None
        return datetime.strptime(text, CIVIL_FORMAT)

    def has_passed(self, value) -> bool:
        text = self.normalize(value)
        if text is None:
            return False
        return self.now_string() >= text

    def has_not_arrived(self, value) -> bool:
        text = self.normalize(value)
        if text is None:
            return False
        return self.now_string() < text

    def is_between(self, start, end) -> bool:
        start_text = self.normalize(start)
        end_text = self.normalize(end)
        now = self.now_string()
        if start_text is not None and now < start_text:
            return False
        if end_text is not None and now >= end_text:
            return False
        return True

    def compare(self, first, second) -> int:
        first_text = self.normalize(first)
        second_text = self.normalize(second)
        if first_text == second_text:
            return 0
        if first_text is None:
            return -1
        if second_text is None:
            return 1
        return -1 if first_text < second_text else 1

    def coerce(self, value) -> str | None:
        """Turn operator input (datetime, ISO text, missing seconds) into a civil string."""
        if value is None:
            return None
        if isinstance(value, datetime):
            if timezone.is_aware(value):
                value = value.astimezone(self.tz).replace(tzinfo=None)
            return value.replace(microsecond=0).strftime(CIVIL_FORMAT)

        text = str(value).strip()
        if not text:
            return None
        if text == ZERO_DATE:
            raise ValueError(f"Invalid date/time: {value!r}")
        text = text.replace("T", " ").split(".")[0]
        for fmt in _OPERATOR_FORMATS:
            try:
                return datetime.strptime(text, fmt).strftime(CIVIL_FORMAT)
            except ValueError:
                continue
        raise ValueError(f"Invalid date/time: {value!r}")

    def add_minutes(self, value: str, minutes: int) -> str:
        base = datetime.strptime(value, CIVIL_FORMAT)
        return (base + timedelta(minutes=int(minutes))).strftime(CIVIL_FORMAT)

    def timezone_info(self) -> dict:
        aware_now = timezone.now().astimezone(self.tz)
        offset_seconds = int(aware_now.utcoffset().total_seconds())
        sign = "+" if offset_seconds >= 0 else "-"
        hours, remainder = divmod(abs(offset_seconds), 3600)
        return {
            "timezone": self.tz_name,
            "now": self.now_string(),
            "utc_offset": f"{sign}{hours:02d}:{remainder // 60:02d}",
        }
