"""Cron grammar — 5-field (minute first) or 6-field (second first) expressions.

croniter expects an optional seconds field at the *end*, so 6-field
expressions are rotated before being handed to it.
"""

from __future__ import annotations

import time
from datetime import datetime

from croniter import croniter  # type: ignore[import-untyped]


class InvalidScheduleExpression(ValueError):
    """Raised for a cron string that does not parse under the 5/6-field grammar."""

    def __init__(self, expression: str) -> None:
        self.expression = expression
        super().__init__(f'Invalid cron expression: "{expression}"')


def _to_croniter(expression: str) -> str:
    fields = expression.split()
    if len(fields) == 6:
        fields = fields[1:] + fields[:1]
    return " ".join(fields)


def is_valid_expression(expression: str | None) -> bool:
    if not expression or not isinstance(expression, str):
        return False
    if len(expression.split()) not in (5, 6):
        return False
    try:
        return bool(croniter.is_valid(_to_croniter(expression)))
    except Exception:
        return False


def validate_expression(expression: str | None) -> str:
    """Return the expression unchanged, or raise InvalidScheduleExpression."""
    if not is_valid_expression(expression):
        raise InvalidScheduleExpression(str(expression))
    return expression  # type: ignore[return-value]


def next_fire_time(expression: str, base: datetime | None = None) -> datetime:
    """Next firing strictly after *base*.

    A naive *base* (the default is the current local time) is read as local
    wall-clock time and the result is naive too, so ``0 9 * * *`` stays at
    09:00 across DST changes. An aware *base* is scheduled in its own zone.
    """
    validate_expression(expression)
    base = base or datetime.now()
    return croniter(_to_croniter(expression), base).get_next(datetime)


def seconds_until(fire_at: datetime) -> float:
    """Seconds from now until *fire_at*; naive values are local wall time."""
    return fire_at.astimezone().timestamp() - time.time()
