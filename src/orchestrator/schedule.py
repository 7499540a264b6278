"""
Cron-style scheduling of periodic verification for every protected item.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from database import DatabaseManager
from par2.models import VERIFY

# (low, high) bounds for minute, hour, day of month, month, day of week.
FIELD_BOUNDS = [(0, 59), (0, 23), (1, 31), (1, 12), (0, 7)]
DISABLED = "-1"


def _field_values(field: str, low: int, high: int) -> set[int]:
    values: set[int] = set()
    for part in field.split(","):
        part = part.strip()
        if not part:
            raise ValueError(f"Empty cron field: {field!r}")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            step = int(step_text)
            if step <= 0:
                raise ValueError(f"Invalid cron step: {field!r}")
        if part == "*":
            start, end = low, high
        elif "-" in part:
            start_text, end_text = part.split("-", 1)
            start, end = int(start_text), int(end_text)
        else:
            start = int(part)
            end = high if step > 1 else start
        if start < low or end > high or start > end:
            raise ValueError(f"Cron value out of range: {field!r}")
        values.update(range(start, end + 1, step))
    return values


def parse_cron(expression: str) -> Optional[list[set[int]]]:
    """Expand a 5-field cron expression; None when scheduling is disabled."""
    expression = str(expression).strip()
    if not expression or expression == DISABLED:
        return None
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(f"Cron expression needs 5 fields: {expression!r}")
    values = [_field_values(field, low, high) for field, (low, high) in zip(fields, FIELD_BOUNDS)]
    # Sunday may be written as 7.
    if 7 in values[4]:
        values[4].discard(7)
        values[4].add(0)
    return values


def cron_matches(expression: str, moment: datetime) -> bool:
    """Return True when moment falls on a minute selected by expression."""
    values = parse_cron(expression)
    if values is None:
        return False
    minutes, hours, days, months, weekdays = values
    fields = str(expression).split()
    day_match = moment.day in days
    weekday_match = (moment.weekday() + 1) % 7 in weekdays
    # As in cron(8): when both day fields are restricted, either may match.
    if not fields[2].startswith("*") and not fields[4].startswith("*"):
        day_ok = day_match or weekday_match
    else:
        day_ok = day_match and weekday_match
    return moment.minute in minutes and moment.hour in hours and moment.month in months and day_ok


def enqueue_scheduled_verifications(
    queue_service,
    db_manager: DatabaseManager,
    expression: str,
    now: Optional[datetime] = None,
    logger: Optional[logging.Logger] = None,
) -> list[int]:
    """Queue a forced verify for each protected item when the schedule is due."""
    logger = logger or logging.getLogger("par2protect")
    now = now or datetime.now()
    if not cron_matches(expression, now):
        logger.debug("Scheduled verification not due at %s", now.strftime("%Y-%m-%d %H:%M"))
        return []
    operation_ids = []
    for item in db_manager.list_items():
        response = queue_service.add_operation(
            VERIFY, {"id": item.id, "path": item.path, "force": True}, start_processor=False
        )
        operation_ids.append(response["operation_id"])
    if operation_ids:
        queue_service.ensure_processor()
    logger.info("Scheduled verification queued %s operation(s)", len(operation_ids))
    return operation_ids
