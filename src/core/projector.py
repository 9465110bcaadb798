"""Virtual projector — display-only instances beyond the persisted horizon.

Pure read-time functions: nothing here writes. ``project`` extends a calendar
or list view past the materialization horizon, and ``merge_view`` combines
the projection with real rows so each (template, owner, day) shows up once.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Iterable, Union

from src.core.recurrence import occurrences
from src.data.models import (
    DateWindow,
    NoRepeat,
    TaskInstance,
    Template,
    VirtualInstance,
    is_completion_gated,
)

logger = logging.getLogger(__name__)

# A year of daily occurrences
MAX_PROJECTION_STEPS = 400

DisplayItem = Union[TaskInstance, VirtualInstance]


def _slot(template_id: str | None, owner_key: str, day: date) -> tuple:
    return (template_id, owner_key, day)


def project(
    templates: Iterable[Template],
    window: DateWindow,
    horizon_end: date,
    real_instances: Iterable[TaskInstance] = (),
) -> list[VirtualInstance]:
    """Virtual instances for every rule date in ``window`` after ``horizon_end``.

    Dates that already hold a real instance (soft-deleted included) are
    skipped. Inactive, NoRepeat and completion-gated templates never project.
    """
    start = max(window.start, horizon_end + timedelta(days=1))
    if start > window.end:
        return []

    occupied = {_slot(t.template_id, t.owner_key, t.scheduled_date) for t in real_instances}
    projected: list[VirtualInstance] = []

    for template in templates:
        if not template.is_active or isinstance(template.rule, NoRepeat):
            continue
        if is_completion_gated(template.rule):
            continue
        for day in occurrences(
            template.rule, start, window.end,
            anchor=template.start_date, max_steps=MAX_PROJECTION_STEPS,
        ):
            if _slot(template.id, template.owner_key, day) in occupied:
                continue
            projected.append(VirtualInstance(
                template_id=template.id,
                title=template.title,
                scheduled_date=day,
                owner_user_id=template.owner_user_id,
                owner_group_id=template.owner_group_id,
                description=template.description,
                rule_snapshot=template.rule,
            ))

    logger.debug("Projected %d virtual instances for %s..%s", len(projected), start, window.end)
    return projected


def merge_view(
    real_instances: Iterable[TaskInstance],
    virtual_instances: Iterable[VirtualInstance],
) -> list[DisplayItem]:
    """Merge real and virtual instances into one list ordered by date.

    A real instance always wins its slot. Soft-deleted real instances are
    hidden but still suppress any virtual instance on the same slot.
    """
    merged: dict[tuple, DisplayItem] = {}
    hidden: set[tuple] = set()

    for task in real_instances:
        key = _slot(task.template_id, task.owner_key, task.scheduled_date)
        if task.template_id is None:
            key = ("adhoc", task.id)
        if task.is_deleted:
            hidden.add(key)
            continue
        merged.setdefault(key, task)

    for virtual in virtual_instances:
        key = _slot(virtual.template_id, virtual.owner_key, virtual.scheduled_date)
        if key in hidden or key in merged:
            continue
        merged[key] = virtual

    return sorted(merged.values(), key=lambda item: (item.scheduled_date, item.title, item.id))
