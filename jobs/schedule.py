from dataclasses import dataclass
from datetime import datetime, timedelta

MAX_SCAN_MINUTES = 366 * 24 * 60


@dataclass(frozen=True)
class CronSpec:
    """Five-field cron expression (minute hour day-of-month month day-of-week), UTC."""
    expression: str
    minutes: frozenset
    hours: frozenset
    days_of_month: frozenset
    months: frozenset
    days_of_week: frozenset
    days_of_month_restricted: bool = False
    days_of_week_restricted: bool = False

    def matches(self, moment: datetime) -> bool:
        # cron counts Sunday as 0, datetime.weekday() counts Monday as 0
        cron_dow = (moment.weekday() + 1) % 7
        day_of_month = moment.day in self.days_of_month
        day_of_week = cron_dow in self.days_of_week
        # When both day fields are restricted either one may match.
        if self.days_of_month_restricted and self.days_of_week_restricted:
            day = day_of_month or day_of_week
        else:
            day = day_of_month and day_of_week
        return moment.minute in self.minutes and moment.hour in self.hours and moment.month in self.months and day


def _parse_field(text: str, low: int, high: int) -> frozenset:
    values = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"Step must be positive in '{text}'")

        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(part)
            end = high if step != 1 else start

        if start < low or end > high or start > end:
            raise ValueError(f"Cron field '{text}' is outside [{low}, {high}]")
        values.update(range(start, end + 1, step))
    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    parts = expression.split()
    if len(parts) != 5:
        raise ValueError(f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'")
    return CronSpec(
        expression=expression,
        minutes=_parse_field(parts[0], 0, 59),
        hours=_parse_field(parts[1], 0, 23),
        days_of_month=_parse_field(parts[2], 1, 31),
        months=_parse_field(parts[3], 1, 12),
        days_of_week=_parse_field(parts[4], 0, 6),
        days_of_month_restricted=not parts[2].startswith("*"),
        days_of_week_restricted=not parts[4].startswith("*"),
    )


def next_run_after(spec: CronSpec, after: datetime) -> datetime:
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    for _ in range(MAX_SCAN_MINUTES):
        if spec.matches(candidate):
            return candidate
        candidate += timedelta(minutes=1)
    raise ValueError(f"No run of '{spec.expression}' within a year after {after.isoformat()}")
