"""Horizon materializer — turns a template into persisted task instances.

For a template and a date window, computes the dates the rule produces,
subtracts the dates already occupied by an existing instance (soft-deleted
ones included, so deletion is a durable fact), and creates only the rest.

Occupancy is re-read from the store on every call, which makes repeated and
concurrent invocations converge on the same set of rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING

from src.core.recurrence import MAX_WALK_STEPS, occurrences
from src.data.db import new_id, utcnow
from src.data.models import DateWindow, NoRepeat, TaskInstance, Template, is_completion_gated

if TYPE_CHECKING:
    from src.data.db import TaskDB

logger = logging.getLogger(__name__)


@dataclass
class MaterializeResult:
    created: list[TaskInstance] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.created)


def build_instance(template: Template, scheduled_date: date) -> TaskInstance:
    """A fresh Scheduled instance carrying the template's current metadata."""
    now = utcnow()
    return TaskInstance(
        id=new_id(),
        title=template.title,
        scheduled_date=scheduled_date,
        template_id=template.id,
        owner_user_id=template.owner_user_id,
        owner_group_id=template.owner_group_id,
        description=template.description,
        rule_snapshot=template.rule,
        created_at=now,
        updated_at=now,
    )


def occupied_dates(task_db: TaskDB, template: Template, start: date, end: date) -> set[date]:
    """Dates in [start, end] that already hold an instance, deleted or not."""
    existing = task_db.list_for_template(
        template.id, owner_key=template.owner_key, start=start, end=end, include_deleted=True,
    )
    return {t.scheduled_date for t in existing}


class HorizonMaterializer:
    """Creates the missing task instances for a template inside a window."""

    def __init__(self, task_db: TaskDB, max_steps: int = MAX_WALK_STEPS) -> None:
        self._task_db = task_db
        self._max_steps = max_steps

    def planned_dates(self, template: Template, window: DateWindow) -> list[date]:
        """Dates the rule produces inside the window (no occupancy check)."""
        if not template.is_active or isinstance(template.rule, NoRepeat):
            return []
        if is_completion_gated(template.rule):
            return []
        return list(occurrences(
            template.rule, window.start, window.end,
            anchor=template.start_date, max_steps=self._max_steps,
        ))

    def materialize(self, template: Template, window: DateWindow) -> MaterializeResult:
        """Create one instance per unoccupied rule date in the window.

        Inactive templates, NoRepeat rules and completion-gated intervals
        produce nothing here; the last are advanced by CompletionAdvancer.
        """
        result = MaterializeResult()
        planned = self.planned_dates(template, window)
        if not planned:
            return result

        occupied = occupied_dates(self._task_db, template, window.start, window.end)
        missing = [d for d in planned if d not in occupied]
        if not missing:
            logger.debug("Template %s: window %s..%s already covered", template.id, window.start, window.end)
            return result

        instances = [build_instance(template, d) for d in missing]
        self._task_db.commit([self._task_db.op_insert(t) for t in instances])
        result.created.extend(instances)

        logger.info(
            "Template %s '%s': created %d instances in %s..%s",
            template.id, template.title, len(instances), window.start, window.end,
        )
        return result
