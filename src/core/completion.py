"""Completion advancer — successor creation for completion-gated rules.

When an instance of an ``IntervalDays(n, completion_gated=True)`` template is
completed, exactly one successor is scheduled ``n`` days after the day it was
actually completed (not the day it was scheduled for), so a late completion
shifts the whole chain.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.core.materializer import build_instance, occupied_dates
from src.data.models import IntervalDays, TaskInstance, Template, is_completion_gated

if TYPE_CHECKING:
    from src.data.db import TaskDB, TemplateDB

logger = logging.getLogger(__name__)


def completion_day(completed_at: datetime, tz: ZoneInfo) -> date:
    """Calendar day of a completion timestamp in the service timezone."""
    if completed_at.tzinfo is None:
        return completed_at.date()
    return completed_at.astimezone(tz).date()


def successor_date(rule: IntervalDays, completed_on: date) -> date:
    return completed_on + timedelta(days=rule.n)


class CompletionAdvancer:
    """Reacts to Scheduled -> Completed transitions."""

    def __init__(self, template_db: TemplateDB, task_db: TaskDB, tz: ZoneInfo | None = None) -> None:
        if tz is None:
            from src.config import settings
            tz = ZoneInfo(settings.TIMEZONE)
        self._template_db = template_db
        self._task_db = task_db
        self._tz = tz

    def advance(self, completed: TaskInstance) -> TaskInstance | None:
        """Create the successor of a completed instance, if its rule calls for one.

        Safe to call more than once for the same completion: a successor date
        that is already occupied (including by a soft-deleted instance) is
        left alone.
        """
        if completed.completed_at is None or completed.template_id is None:
            return None

        template = self._template_db.get_template(completed.template_id)
        if template is None:
            logger.warning("Completed task %s references missing template %s", completed.id, completed.template_id)
            return None
        if not template.is_active or not is_completion_gated(template.rule):
            return None

        next_date = successor_date(template.rule, completion_day(completed.completed_at, self._tz))
        return self._create_successor(template, next_date)

    def _create_successor(self, template: Template, next_date: date) -> TaskInstance | None:
        if next_date in occupied_dates(self._task_db, template, next_date, next_date):
            logger.info("Template %s: successor on %s already exists, skipping", template.id, next_date)
            return None

        successor = build_instance(template, next_date)
        self._task_db.add_task(successor)
        logger.info("Template %s '%s': next instance scheduled for %s", template.id, template.title, next_date)
        return successor
