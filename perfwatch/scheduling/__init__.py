"""Scheduling subsystem — cron grammar and the per-client job registry."""

from .cron import (
    InvalidScheduleExpression,
    is_valid_expression,
    next_fire_time,
    seconds_until,
    validate_expression,
)
from .registry import JobRegistry, ScheduledJob
