"""
Cron expressions for scheduled triggers.

Standard five-field syntax (minute hour day-of-month month day-of-week) with
lists, ranges, steps, month/weekday names and the usual @-macros.
"""

from datetime import datetime
from typing import Dict, FrozenSet, List, Tuple

from controller.src.errors import ParseError

MACROS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}

MONTH_NAMES = {name: i for i, name in enumerate(
    ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], start=1
)}
DAY_NAMES = {name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])}

# (name, low, high, aliases)
FIELDS: List[Tuple[str, int, int, Dict[str, int]]] = [
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day of month", 1, 31, {}),
    ("month", 1, 12, MONTH_NAMES),
    ("day of week", 0, 7, DAY_NAMES),
]

def _value(token: str, field: str, low: int, high: int, aliases: Dict[str, int]) -> int:
    lowered = token.lower()
    if lowered in aliases:
        return aliases[lowered]
    if not token.isdigit():
        raise ParseError(f"Invalid {field} value '{token}' in cron expression")
    number = int(token)
    if number < low or number > high:
        raise ParseError(f"Cron {field} value {number} out of range {low}-{high}")
    return number

def _parse_field(text: str, field: str, low: int, high: int, aliases: Dict[str, int]) -> FrozenSet[int]:
    values = set()
    for part in text.split(","):
        if not part:
            raise ParseError(f"Empty list element in cron {field} field '{text}'")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) == 0:
                raise ParseError(f"Invalid step '{step_text}' in cron {field} field")
            step = int(step_text)
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start = _value(start_text, field, low, high, aliases)
            end = _value(end_text, field, low, high, aliases)
            if start > end:
                raise ParseError(f"Invalid range '{part}' in cron {field} field")
        else:
            start = _value(part, field, low, high, aliases)
            end = high if step > 1 else start
        values.update(range(start, end + 1, step))
    return frozenset(values)

class CronExpression:
    """A parsed cron expression that can be matched against a point in time."""

    def __init__(self, expression: str):
        if not isinstance(expression, str) or not expression.strip():
            raise ParseError("Cron expression must be a non-empty string")
        self.expression = expression.strip()
        text = MACROS.get(self.expression.lower(), self.expression)
        parts = text.split()
        if len(parts) != 5:
            raise ParseError(f"Cron expression '{expression}' must have 5 fields, got {len(parts)}")

        parsed = [
            _parse_field(part, name, low, high, aliases)
            for part, (name, low, high, aliases) in zip(parts, FIELDS)
        ]
        self.minutes, self.hours, self.days, self.months, weekdays = parsed
        # 7 is an alias for Sunday
        self.weekdays = frozenset(0 if d == 7 else d for d in weekdays)
        self._day_restricted = parts[2] != "*"
        self._weekday_restricted = parts[4] != "*"

    def matches(self, moment: datetime) -> bool:
        """True if the expression fires at the minute containing `moment`."""
        if moment.minute not in self.minutes or moment.hour not in self.hours:
            return False
        if moment.month not in self.months:
            return False
        day_ok = moment.day in self.days
        # datetime.weekday(): Monday == 0; cron: Sunday == 0
        weekday_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self._day_restricted and self._weekday_restricted:
            return day_ok or weekday_ok
        return day_ok and weekday_ok

    def __repr__(self):
        return f"CronExpression({self.expression!r})"

def validate_cron(expression: str) -> str:
    """Validate a cron expression, returning it normalised."""
    return CronExpression(expression).expression
